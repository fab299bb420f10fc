"""Sweep scheduling for build status checks."""

from __future__ import annotations

import asyncio
import random
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .checker import BuildChecker
from .classifier import classifier_for_strategy
from .clock import Clock, SystemClock
from .errors import RecordingError
from .models import ROUTINE_STATUSES, Build
from .notifier import NotificationDispatcher, build_dispatcher
from .probe import HttpProber
from .recorder import TransitionRecorder
from .settings import MonitorSettings

if TYPE_CHECKING:
    from .repository import BuildRepository


logger = structlog.get_logger(__name__)

SWEEP_JOB_ID = "testflight-sweep"
INITIAL_SWEEP_JOB_ID = "testflight-initial-sweep"


class SweepSelection(str, Enum):
    DUE = "due"
    STALE = "stale"


@dataclass(frozen=True)
class SweepResult:
    id: str
    name: str
    status: str
    url: str
    error: str | None = None


@dataclass(frozen=True)
class SweepSummary:
    selection: SweepSelection
    started_at_ts: float
    finished_at_ts: float
    checked: int = 0
    errors: int = 0
    transitions: int = 0
    results: tuple[SweepResult, ...] = ()
    skipped: bool = False
    aborted: bool = False
    stopped: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["selection"] = self.selection.value
        data["results"] = [asdict(r) for r in self.results]
        return data


@dataclass
class _SweepCounters:
    checked: int = 0
    errors: int = 0
    transitions: int = 0
    results: list[SweepResult] = field(default_factory=list)


class MonitorScheduler:
    """Owns the sweep lifecycle: periodic wake-ups, the at-most-one-sweep guard and cooperative stop.

    Sweeps probe builds serially with ``probe_delay_seconds`` between probes.
    ``stop()`` prevents further scheduled sweeps; an in-flight sweep finishes its
    current probe and then returns with ``stopped=True``.
    """

    def __init__(
        self,
        settings: MonitorSettings,
        repository: "BuildRepository",
        checker: BuildChecker,
        *,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.checker = checker
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random()

        self.running = False
        self._sweeping = False
        self._cancel_requested = False
        self._scheduler: AsyncIOScheduler | None = None
        self.last_sweep_started_at_ts: float | None = None
        self.last_sweep_finished_at_ts: float | None = None
        self.last_summary: SweepSummary | None = None

    @property
    def sweeping(self) -> bool:
        return self._sweeping

    async def start(self) -> None:
        """Register the periodic and initial-delay sweep jobs. Must run inside the event loop."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(
            self._scheduled_sweep,
            trigger=IntervalTrigger(seconds=float(self.settings.sweep_interval_seconds)),
            id=SWEEP_JOB_ID,
            name="TestFlight status sweep",
            max_instances=1,
            coalesce=True,
        )
        first_run = datetime.now(timezone.utc) + timedelta(seconds=float(self.settings.initial_delay_seconds))
        scheduler.add_job(
            self._scheduled_sweep,
            trigger=DateTrigger(run_date=first_run),
            id=INITIAL_SWEEP_JOB_ID,
            name="Initial TestFlight status sweep",
            max_instances=1,
        )
        scheduler.start()
        self._scheduler = scheduler
        self.running = True
        self._cancel_requested = False
        logger.info(
            "Monitor scheduler started",
            interval_seconds=self.settings.sweep_interval_seconds,
            initial_delay_seconds=self.settings.initial_delay_seconds,
            jitter_seconds=self.settings.sweep_jitter_seconds,
        )

    async def stop(self) -> None:
        if self._sweeping:
            self._cancel_requested = True
        if not self.running:
            return
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        self.running = False
        logger.info("Monitor scheduler stopped", sweep_in_flight=self._sweeping)

    def next_run_at(self) -> datetime | None:
        if self._scheduler is None:
            return None
        times = [
            job.next_run_time
            for job in self._scheduler.get_jobs()
            if getattr(job, "next_run_time", None) is not None
        ]
        return min(times) if times else None

    def status(self) -> dict[str, Any]:
        next_run = self.next_run_at()
        return {
            "running": self.running,
            "sweeping": self._sweeping,
            "interval_seconds": float(self.settings.sweep_interval_seconds),
            "initial_delay_seconds": float(self.settings.initial_delay_seconds),
            "jitter_seconds": float(self.settings.sweep_jitter_seconds),
            "probe_delay_seconds": float(self.settings.probe_delay_seconds),
            "probe_strategy": self.settings.probe_strategy,
            "next_run_at": next_run.isoformat() if next_run else None,
            "last_sweep_started_at_ts": self.last_sweep_started_at_ts,
            "last_sweep_finished_at_ts": self.last_sweep_finished_at_ts,
            "last_summary": self.last_summary.to_dict() if self.last_summary else None,
        }

    async def _scheduled_sweep(self) -> None:
        if not self.running:
            return
        try:
            await self.run_sweep(SweepSelection.DUE, jitter=True)
        except Exception as e:
            logger.error("Scheduled sweep crashed", error=f"{type(e).__name__}: {e}")

    async def _select(self, selection: SweepSelection) -> list[Build]:
        if selection is SweepSelection.STALE:
            cutoff = self.clock.now() - float(self.settings.stale_after_seconds)
            return await asyncio.to_thread(self.repository.find_stale_builds, checked_before_ts=cutoff)
        return await asyncio.to_thread(self.repository.find_due_builds, ROUTINE_STATUSES)

    async def run_sweep(self, selection: SweepSelection = SweepSelection.DUE, *, jitter: bool = False) -> SweepSummary:
        """Run one sweep now. Returns immediately with ``skipped=True`` while another sweep is in flight."""
        selection = SweepSelection(selection)
        if self._sweeping:
            now = self.clock.now()
            logger.info("Sweep already in progress; skipping", selection=selection.value)
            return SweepSummary(selection=selection, started_at_ts=now, finished_at_ts=now, skipped=True)

        self._sweeping = True
        try:
            return await self._sweep(selection, jitter=jitter)
        finally:
            self._sweeping = False
            self._cancel_requested = False

    async def _sweep(self, selection: SweepSelection, *, jitter: bool) -> SweepSummary:
        if jitter and float(self.settings.sweep_jitter_seconds) > 0:
            delay = self.rng.uniform(0.0, float(self.settings.sweep_jitter_seconds))
            logger.debug("Delaying sweep start", jitter_seconds=round(delay, 2))
            await self.clock.sleep(delay)

        started = self.clock.now()
        self.last_sweep_started_at_ts = started
        if self._cancel_requested:
            return self._finish(SweepSummary(selection=selection, started_at_ts=started, finished_at_ts=started, stopped=True))

        try:
            builds = await self._select(selection)
        except Exception as e:
            logger.error("Selecting builds for sweep failed", selection=selection.value, error=str(e))
            return self._finish(
                SweepSummary(
                    selection=selection,
                    started_at_ts=started,
                    finished_at_ts=self.clock.now(),
                    aborted=True,
                    error=f"{type(e).__name__}: {e}",
                )
            )

        logger.info("Sweep started", selection=selection.value, builds=len(builds))
        counters = _SweepCounters()
        stopped = False
        for i, build in enumerate(builds):
            if self._cancel_requested:
                stopped = True
                break
            if i > 0:
                await self.clock.sleep(float(self.settings.probe_delay_seconds))
                if self._cancel_requested:
                    stopped = True
                    break
            await self._check_one(build, counters)

        summary = SweepSummary(
            selection=selection,
            started_at_ts=started,
            finished_at_ts=self.clock.now(),
            checked=counters.checked,
            errors=counters.errors,
            transitions=counters.transitions,
            results=tuple(counters.results),
            stopped=stopped,
        )
        logger.info(
            "Sweep finished",
            selection=selection.value,
            checked=summary.checked,
            errors=summary.errors,
            transitions=summary.transitions,
            stopped=stopped,
        )
        return self._finish(summary)

    async def _check_one(self, build: Build, counters: _SweepCounters) -> None:
        counters.checked += 1
        try:
            result = await self.checker.check(build)
        except RecordingError as e:
            outcome = e.outcome
            counters.errors += 1
            if outcome.transitioned and outcome.status_persisted:
                counters.transitions += 1
            logger.error("Recording check failed", build_id=build.id, error=str(e))
            counters.results.append(SweepResult(build.id, build.name, outcome.new_status.value, build.url, str(e)))
            return
        except Exception as e:
            counters.errors += 1
            logger.error("Checking build failed", build_id=build.id, error=f"{type(e).__name__}: {e}")
            counters.results.append(SweepResult(build.id, build.name, build.status.value, build.url, f"{type(e).__name__}: {e}"))
            return

        outcome = result.outcome
        if outcome.missing:
            counters.errors += 1
            counters.results.append(
                SweepResult(build.id, build.name, outcome.new_status.value, build.url, "build no longer exists")
            )
            return
        if outcome.transitioned:
            counters.transitions += 1
        counters.results.append(SweepResult(build.id, build.name, outcome.new_status.value, build.url))

    def _finish(self, summary: SweepSummary) -> SweepSummary:
        self.last_sweep_finished_at_ts = summary.finished_at_ts
        self.last_summary = summary
        return summary


def build_scheduler(
    settings: MonitorSettings,
    http_client: httpx.AsyncClient,
    repository: "BuildRepository",
    *,
    clock: Clock | None = None,
    dispatcher: NotificationDispatcher | None = None,
    rng: random.Random | None = None,
) -> MonitorScheduler:
    """Wire prober, classifier, recorder and notification sinks for the configured probe strategy."""
    clock = clock or SystemClock()
    prober = HttpProber(
        http_client,
        timeout_seconds=settings.probe_timeout_seconds,
        user_agent=settings.user_agent,
        method=settings.probe_strategy.upper(),
        max_body_chars=settings.max_body_chars,
    )
    classifier = classifier_for_strategy(settings.probe_strategy)
    if dispatcher is None:
        dispatcher = build_dispatcher(settings, http_client)
    recorder = TransitionRecorder(repository, dispatcher, clock=clock)
    checker = BuildChecker(prober, classifier, recorder)
    return MonitorScheduler(settings, repository, checker, clock=clock, rng=rng)
