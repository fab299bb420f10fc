"""Error taxonomy for the monitor."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .recorder import RecordOutcome


class RepositoryError(Exception):
    """Persistence failure (connectivity or constraint violation)."""


class DuplicateBuildError(RepositoryError):
    """A build with the same URL or (version, build number) already exists."""


class RecordingError(RepositoryError):
    """One or more writes of a check failed. Both writes were still attempted."""

    def __init__(self, outcome: "RecordOutcome") -> None:
        self.outcome = outcome
        reasons = "; ".join(f"{op}: {err}" for op, err in outcome.errors)
        super().__init__(f"recording check for build {outcome.build_id} failed: {reasons}")


class NotificationError(Exception):
    """Delivery of a status-change notification failed."""
