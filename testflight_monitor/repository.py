from __future__ import annotations

from typing import Iterable, Protocol

from .models import Build, BuildStatus, CheckLogEntry


class BuildRepository(Protocol):
    """Persistence surface used by the monitor core. Every method may raise RepositoryError."""

    def find_due_builds(self, statuses: Iterable[BuildStatus]) -> list[Build]: ...

    def find_stale_builds(self, *, checked_before_ts: float) -> list[Build]: ...

    def get_build(self, build_id: str) -> Build | None: ...

    def update_status(self, build_id: str, status: BuildStatus, checked_at_ts: float) -> None: ...

    def mark_checked(self, build_id: str, checked_at_ts: float) -> None: ...

    def append_log(self, entry: CheckLogEntry) -> int: ...
