from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)

PROBE_STRATEGIES = ("get", "head")

# Field name -> environment variable. Environment wins over the YAML file.
ENV_VARS: dict[str, str] = {
    "db_path": "TESTFLIGHT_MONITOR_DB_PATH",
    "sweep_interval_seconds": "TESTFLIGHT_SWEEP_INTERVAL_SECONDS",
    "initial_delay_seconds": "TESTFLIGHT_INITIAL_DELAY_SECONDS",
    "sweep_jitter_seconds": "TESTFLIGHT_SWEEP_JITTER_SECONDS",
    "probe_delay_seconds": "TESTFLIGHT_PROBE_DELAY_SECONDS",
    "probe_timeout_seconds": "TESTFLIGHT_PROBE_TIMEOUT_SECONDS",
    "probe_strategy": "TESTFLIGHT_PROBE_STRATEGY",
    "user_agent": "TESTFLIGHT_USER_AGENT",
    "max_body_chars": "TESTFLIGHT_MAX_BODY_CHARS",
    "stale_after_seconds": "TESTFLIGHT_STALE_AFTER_SECONDS",
    "scheduler_enabled": "TESTFLIGHT_SCHEDULER_ENABLED",
    "notifications_enabled": "TESTFLIGHT_NOTIFICATIONS_ENABLED",
    "discord_bot_token": "DISCORD_BOT_TOKEN",
    "discord_channel_id": "DISCORD_CHANNEL_ID",
    "discord_webhook_url": "DISCORD_WEBHOOK_URL",
    "telegram_bot_token": "TELEGRAM_BOT_TOKEN",
    "telegram_chat_id": "TELEGRAM_CHAT_ID",
    "admin_token": "TESTFLIGHT_ADMIN_TOKEN",
    "log_level": "LOG_LEVEL",
}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    s = str(raw).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(str(raw).strip())
    except Exception:
        return float(default)


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


@dataclass(frozen=True)
class MonitorSettings:
    db_path: str = field(default_factory=lambda: _env_str(ENV_VARS["db_path"], "data/testflight-monitor.db"))

    # Sweep cadence and pacing.
    sweep_interval_seconds: float = field(default_factory=lambda: _env_float(ENV_VARS["sweep_interval_seconds"], 300.0))
    initial_delay_seconds: float = field(default_factory=lambda: _env_float(ENV_VARS["initial_delay_seconds"], 30.0))
    sweep_jitter_seconds: float = field(default_factory=lambda: _env_float(ENV_VARS["sweep_jitter_seconds"], 60.0))
    probe_delay_seconds: float = field(default_factory=lambda: _env_float(ENV_VARS["probe_delay_seconds"], 2.0))
    stale_after_seconds: float = field(default_factory=lambda: _env_float(ENV_VARS["stale_after_seconds"], 300.0))
    scheduler_enabled: bool = field(default_factory=lambda: _env_bool(ENV_VARS["scheduler_enabled"], True))

    # Probing.
    probe_timeout_seconds: float = field(default_factory=lambda: _env_float(ENV_VARS["probe_timeout_seconds"], 30.0))
    probe_strategy: str = field(default_factory=lambda: _env_str(ENV_VARS["probe_strategy"], "get").lower())
    user_agent: str = field(default_factory=lambda: _env_str(ENV_VARS["user_agent"], DEFAULT_USER_AGENT))
    max_body_chars: int = field(default_factory=lambda: _env_int(ENV_VARS["max_body_chars"], 200_000))

    # Notifications. A sink is only active when its credentials are present.
    notifications_enabled: bool = field(default_factory=lambda: _env_bool(ENV_VARS["notifications_enabled"], True))
    discord_bot_token: str = field(default_factory=lambda: os.getenv(ENV_VARS["discord_bot_token"], "").strip())
    discord_channel_id: str = field(default_factory=lambda: os.getenv(ENV_VARS["discord_channel_id"], "").strip())
    discord_webhook_url: str = field(default_factory=lambda: os.getenv(ENV_VARS["discord_webhook_url"], "").strip())
    telegram_bot_token: str = field(default_factory=lambda: os.getenv(ENV_VARS["telegram_bot_token"], "").strip())
    telegram_chat_id: str = field(default_factory=lambda: os.getenv(ENV_VARS["telegram_chat_id"], "").strip())

    # Admin endpoints are disabled (503) while this is empty.
    admin_token: str = field(default_factory=lambda: os.getenv(ENV_VARS["admin_token"], "").strip())

    log_level: str = field(default_factory=lambda: _env_str(ENV_VARS["log_level"], "INFO"))

    def __post_init__(self) -> None:
        if float(self.sweep_interval_seconds) <= 0:
            raise ValueError("sweep_interval_seconds must be > 0")
        if float(self.probe_timeout_seconds) <= 0:
            raise ValueError("probe_timeout_seconds must be > 0")
        for name in ("initial_delay_seconds", "sweep_jitter_seconds", "probe_delay_seconds", "stale_after_seconds"):
            if float(getattr(self, name)) < 0:
                raise ValueError(f"{name} must be >= 0")
        if int(self.max_body_chars) <= 0:
            raise ValueError("max_body_chars must be > 0")
        if str(self.probe_strategy).lower() not in PROBE_STRATEGIES:
            raise ValueError(f"probe_strategy must be one of {', '.join(PROBE_STRATEGIES)}")

    @property
    def discord_configured(self) -> bool:
        return bool(self.discord_webhook_url or (self.discord_bot_token and self.discord_channel_id))

    @property
    def telegram_configured(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)


def load_settings(config_path: str | Path | None = None) -> MonitorSettings:
    """Load settings from an optional YAML file, with environment variables taking precedence."""
    if config_path is None:
        config_path = os.getenv("TESTFLIGHT_MONITOR_CONFIG") or None
    if config_path is None:
        return MonitorSettings()

    path = Path(config_path)
    raw: Any = {}
    if path.exists():
        with path.open("r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    known = {f.name for f in fields(MonitorSettings)}
    unknown = sorted(str(k) for k in raw if k not in known)
    if unknown:
        raise ValueError(f"Unknown config keys in {path}: {', '.join(unknown)}")

    overrides = {k: v for k, v in raw.items() if os.getenv(ENV_VARS[k]) is None}
    return MonitorSettings(**overrides)
