from __future__ import annotations

import asyncio
import itertools
from pathlib import Path
from typing import Any, Awaitable, Callable

import pytest
import structlog

from testflight_monitor.db import SqliteBuildRepository
from testflight_monitor.errors import NotificationError
from testflight_monitor.models import Build, BuildStatus
from testflight_monitor.notifier import StatusChangeEvent


class FakeClock:
    """Manual clock: sleeps are recorded and advance ``now`` instantly."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = float(start)
        self.sleeps: list[float] = []
        self.on_sleep: Callable[[float], Awaitable[None]] | None = None

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += float(seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(float(seconds))
        self._now += float(seconds)
        if self.on_sleep is not None:
            await self.on_sleep(seconds)
        await asyncio.sleep(0)


class RecordingSink:
    def __init__(self, name: str = "recording", *, fail: bool = False) -> None:
        self.name = name
        self.fail = fail
        self.events: list[StatusChangeEvent] = []

    async def send(self, event: StatusChangeEvent) -> None:
        if self.fail:
            raise NotificationError(f"{self.name} is down")
        self.events.append(event)


@pytest.fixture(autouse=True)
def log_events() -> list[dict[str, Any]]:
    with structlog.testing.capture_logs() as captured:
        yield captured


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "testflight-monitor.db")


@pytest.fixture
def repo(db_path: str) -> SqliteBuildRepository:
    r = SqliteBuildRepository(db_path)
    r.ensure_schema()
    return r


@pytest.fixture
def add_build(repo: SqliteBuildRepository) -> Callable[..., Build]:
    counter = itertools.count(1)

    def _add(
        name: str | None = None,
        *,
        status: BuildStatus = BuildStatus.PENDING,
        url: str | None = None,
        is_public: bool = True,
        notes: str | None = None,
    ) -> Build:
        n = next(counter)
        return repo.create_build(
            name=name or f"App {n}",
            version="1.0",
            build_number=str(n),
            url=url or f"https://testflight.apple.com/join/CODE{n}",
            notes=notes,
            is_public=is_public,
            status=status,
        )

    return _add
