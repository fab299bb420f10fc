from __future__ import annotations

import asyncio
import hmac
from typing import Any

import httpx
import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from .clock import Clock
from .db import SqliteBuildRepository
from .errors import DuplicateBuildError, RepositoryError
from .models import Build, BuildStatus
from .notifier import NotificationDispatcher
from .scheduler import MonitorScheduler, SweepSelection, build_scheduler
from .schema import CreateBuildRequest
from .settings import MonitorSettings


logger = structlog.get_logger(__name__)

RECENT_LOGS_LIMIT = 5


def _public_build(b: Build) -> dict[str, Any]:
    data = b.to_dict()
    data.pop("is_public", None)
    return data


def create_app(
    settings: MonitorSettings | None = None,
    *,
    http_transport: httpx.AsyncBaseTransport | None = None,
    clock: Clock | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> FastAPI:
    app = FastAPI(title="TestFlight Monitor", version="0.1.0")
    app.state.settings = settings or MonitorSettings()
    app.state.repository = SqliteBuildRepository(app.state.settings.db_path)
    app.state.http_client = None
    app.state.scheduler = None

    @app.on_event("startup")
    async def _startup() -> None:
        settings2: MonitorSettings = app.state.settings
        await asyncio.to_thread(app.state.repository.ensure_schema)
        client_kwargs: dict[str, Any] = {}
        if http_transport is not None:
            client_kwargs["transport"] = http_transport
        app.state.http_client = httpx.AsyncClient(**client_kwargs)
        app.state.scheduler = build_scheduler(
            settings2,
            app.state.http_client,
            app.state.repository,
            clock=clock,
            dispatcher=dispatcher,
        )
        if settings2.scheduler_enabled:
            await app.state.scheduler.start()
        else:
            logger.info("Scheduler disabled; sweeps run on demand only")

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        scheduler: MonitorScheduler | None = app.state.scheduler
        if scheduler is not None:
            await scheduler.stop()
        client: httpx.AsyncClient | None = app.state.http_client
        if client is not None:
            await client.aclose()
            app.state.http_client = None

    @app.exception_handler(RepositoryError)
    async def _repository_error(_req: Request, exc: RepositoryError) -> JSONResponse:
        logger.error("Repository error while serving request", error=str(exc))
        return JSONResponse(status_code=500, content={"detail": "repository_error"})

    def _scheduler() -> MonitorScheduler:
        scheduler: MonitorScheduler | None = app.state.scheduler
        if scheduler is None:
            raise HTTPException(status_code=503, detail="scheduler_not_ready")
        return scheduler

    def _repo() -> SqliteBuildRepository:
        return app.state.repository

    def require_admin(authorization: str = Header(default="")) -> None:
        """Admin routes take `Authorization: Bearer <admin_token>`. No configured token disables them."""
        scheme, _, token = authorization.strip().partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise HTTPException(status_code=401, detail="missing_bearer_token")
        expected = app.state.settings.admin_token.strip()
        if not expected:
            raise HTTPException(status_code=503, detail="admin_token_not_configured")
        if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
            raise HTTPException(status_code=403, detail="invalid_admin_token")

    # --- public ---

    @app.get("/health")
    async def health() -> dict[str, Any]:
        scheduler: MonitorScheduler | None = app.state.scheduler
        return {"ok": True, "scheduler_running": bool(scheduler and scheduler.running)}

    @app.get("/api/public/builds")
    async def public_builds() -> dict[str, Any]:
        builds = await asyncio.to_thread(_repo().list_builds, public_only=True)
        return {"builds": [_public_build(b) for b in builds]}

    @app.get("/api/public/stats")
    async def public_stats() -> dict[str, Any]:
        counts = await asyncio.to_thread(_repo().status_counts, public_only=True)
        return {
            "total": counts["total"],
            "active": counts[BuildStatus.ACTIVE.value],
            "expired": counts[BuildStatus.EXPIRED.value],
        }

    # --- admin ---

    @app.get("/api/builds")
    async def api_list_builds(_auth: None = Depends(require_admin)) -> dict[str, Any]:
        def _load() -> list[dict[str, Any]]:
            repo = _repo()
            out = []
            for b in repo.list_builds():
                item = b.to_dict()
                item["logs"] = [e.to_dict() for e in repo.list_logs(b.id, limit=RECENT_LOGS_LIMIT)]
                out.append(item)
            return out

        return {"builds": await asyncio.to_thread(_load)}

    @app.post("/api/builds", status_code=201)
    async def api_create_build(req: CreateBuildRequest, _auth: None = Depends(require_admin)) -> dict[str, Any]:
        try:
            build = await asyncio.to_thread(
                _repo().create_build,
                name=req.name,
                version=req.version,
                build_number=req.build_number,
                url=req.url,
                notes=req.notes,
                is_public=req.is_public,
            )
        except DuplicateBuildError as exc:
            raise HTTPException(status_code=409, detail="build_already_exists") from exc
        logger.info("Build added", build_id=build.id, build=build.name, version=build.version)
        return {"ok": True, "build": build.to_dict()}

    @app.get("/api/builds/{build_id}")
    async def api_get_build(build_id: str, _auth: None = Depends(require_admin)) -> dict[str, Any]:
        build = await asyncio.to_thread(_repo().get_build, build_id)
        if build is None:
            raise HTTPException(status_code=404, detail="build_not_found")
        logs = await asyncio.to_thread(_repo().list_logs, build_id, limit=RECENT_LOGS_LIMIT)
        return {"build": build.to_dict(), "logs": [e.to_dict() for e in logs]}

    @app.delete("/api/builds/{build_id}")
    async def api_delete_build(build_id: str, _auth: None = Depends(require_admin)) -> dict[str, Any]:
        deleted = await asyncio.to_thread(_repo().delete_build, build_id)
        if not deleted:
            raise HTTPException(status_code=404, detail="build_not_found")
        logger.info("Build removed", build_id=build_id)
        return {"ok": True}

    @app.get("/api/stats")
    async def api_stats(_auth: None = Depends(require_admin)) -> dict[str, Any]:
        counts = await asyncio.to_thread(_repo().status_counts)
        return {
            "total": counts["total"],
            "active": counts[BuildStatus.ACTIVE.value],
            "expired": counts[BuildStatus.EXPIRED.value],
            "errors": counts[BuildStatus.ERROR.value],
        }

    @app.get("/api/monitor/status")
    async def api_monitor_status(_auth: None = Depends(require_admin)) -> dict[str, Any]:
        return _scheduler().status()

    @app.post("/api/monitor/sweep")
    async def api_monitor_sweep(stale: bool = False, _auth: None = Depends(require_admin)) -> dict[str, Any]:
        selection = SweepSelection.STALE if stale else SweepSelection.DUE
        summary = await _scheduler().run_sweep(selection)
        return summary.to_dict()

    @app.post("/api/monitor/start")
    async def api_monitor_start(_auth: None = Depends(require_admin)) -> dict[str, Any]:
        scheduler = _scheduler()
        await scheduler.start()
        return {"ok": True, "running": scheduler.running}

    @app.post("/api/monitor/stop")
    async def api_monitor_stop(_auth: None = Depends(require_admin)) -> dict[str, Any]:
        scheduler = _scheduler()
        await scheduler.stop()
        return {"ok": True, "running": scheduler.running}

    return app
