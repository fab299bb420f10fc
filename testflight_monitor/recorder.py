"""Transition detection and check-history recording.

Every recorded check appends exactly one log row. The build's status is written
only when it differs from the persisted one; otherwise only ``last_checked_at_ts``
moves. The two writes are independent: a failure in one never skips the other,
and a status-change event is emitted only after the status write succeeded.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from .clock import Clock, SystemClock
from .errors import RecordingError, RepositoryError
from .models import Build, BuildStatus, CheckLogEntry
from .notifier import NotificationDispatcher, StatusChangeEvent

if TYPE_CHECKING:
    from .repository import BuildRepository


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RecordOutcome:
    build_id: str
    new_status: BuildStatus
    checked_at_ts: float
    build: Build | None = None
    previous_status: BuildStatus | None = None
    transitioned: bool = False
    status_persisted: bool = False
    log_persisted: bool = False
    log_id: int | None = None
    missing: bool = False
    notified: bool = False
    errors: tuple[tuple[str, RepositoryError], ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors and not self.missing


class TransitionRecorder:
    def __init__(
        self,
        repository: "BuildRepository",
        dispatcher: NotificationDispatcher | None = None,
        *,
        clock: Clock | None = None,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.clock = clock or SystemClock()

    async def record(
        self,
        build_id: str,
        status: BuildStatus,
        message: str,
        duration_ms: float,
        http_status: int | None = None,
        error_detail: str | None = None,
    ) -> RecordOutcome:
        """Persist one check result.

        Returns the outcome when both writes succeeded (or the build no longer
        exists). Raises ``RecordingError`` carrying the outcome when any write
        failed; the event is never emitted in that case unless the status write
        itself went through.
        """
        new_status = BuildStatus.parse(status)
        checked_at = self.clock.now()
        errors: list[tuple[str, RepositoryError]] = []

        build: Build | None = None
        read_ok = True
        try:
            build = await asyncio.to_thread(self.repository.get_build, build_id)
        except RepositoryError as e:
            read_ok = False
            errors.append(("get_build", e))
            logger.error("Reading build before recording failed", build_id=build_id, error=str(e))

        if read_ok and build is None:
            logger.warning("Build disappeared before its check was recorded", build_id=build_id)
            return RecordOutcome(build_id=build_id, new_status=new_status, checked_at_ts=checked_at, missing=True)

        log_id: int | None = None
        try:
            log_id = await asyncio.to_thread(
                self.repository.append_log,
                CheckLogEntry(
                    build_id=build_id,
                    status=new_status,
                    message=message,
                    duration_ms=float(duration_ms),
                    checked_at_ts=checked_at,
                    http_status=http_status,
                    error_detail=error_detail,
                ),
            )
        except RepositoryError as e:
            errors.append(("append_log", e))
            logger.error("Appending check log failed", build_id=build_id, error=str(e))

        previous = build.status if build is not None else None
        transitioned = previous is not None and previous is not new_status
        status_persisted = False
        if build is not None:
            try:
                if transitioned:
                    await asyncio.to_thread(self.repository.update_status, build_id, new_status, checked_at)
                    status_persisted = True
                else:
                    await asyncio.to_thread(self.repository.mark_checked, build_id, checked_at)
            except RepositoryError as e:
                op = "update_status" if transitioned else "mark_checked"
                errors.append((op, e))
                logger.error("Persisting build status failed", build_id=build_id, op=op, error=str(e))

        notified = False
        if transitioned and status_persisted and build is not None and previous is not None:
            await self.dispatcher.emit(
                StatusChangeEvent(
                    build=build,
                    previous_status=previous,
                    new_status=new_status,
                    message=message,
                    checked_at_ts=checked_at,
                )
            )
            notified = True

        outcome = RecordOutcome(
            build_id=build_id,
            new_status=new_status,
            checked_at_ts=checked_at,
            build=build,
            previous_status=previous,
            transitioned=transitioned,
            status_persisted=status_persisted,
            log_persisted=log_id is not None,
            log_id=log_id,
            notified=notified,
            errors=tuple(errors),
        )
        if errors:
            raise RecordingError(outcome)
        return outcome
