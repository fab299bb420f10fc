from __future__ import annotations

import os

import uvicorn

from .app import create_app
from .logging_setup import configure_logging
from .settings import MonitorSettings, load_settings


def serve(settings: MonitorSettings, *, host: str | None = None, port: int | None = None) -> None:
    host = host or os.getenv("TESTFLIGHT_MONITOR_HOST", "0.0.0.0").strip() or "0.0.0.0"
    port = int(port or os.getenv("TESTFLIGHT_MONITOR_PORT", "8120"))
    app = create_app(settings)
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    serve(settings)


if __name__ == "__main__":
    main()
