from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any


class BuildStatus(str, Enum):
    """Closed status taxonomy. The string values are part of the public contract."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    NOT_FOUND = "NOT_FOUND"
    ERROR = "ERROR"

    @classmethod
    def parse(cls, value: Any) -> "BuildStatus":
        if isinstance(value, cls):
            return value
        s = str(value or "").strip().upper()
        try:
            return cls(s)
        except ValueError:
            raise ValueError(f"Unknown build status: {value!r}") from None


# Builds worth re-polling on the routine sweep.
ROUTINE_STATUSES: tuple[BuildStatus, ...] = (BuildStatus.PENDING, BuildStatus.ACTIVE)

STATUS_EMOJI: dict[BuildStatus, str] = {
    BuildStatus.PENDING: "⏳",
    BuildStatus.ACTIVE: "✅",
    BuildStatus.EXPIRED: "❌",
    BuildStatus.NOT_FOUND: "🚫",
    BuildStatus.ERROR: "⚠️",
}

STATUS_COLORS: dict[BuildStatus, int] = {
    BuildStatus.PENDING: 0xFFFF00,
    BuildStatus.ACTIVE: 0x00FF00,
    BuildStatus.EXPIRED: 0xFF0000,
    BuildStatus.NOT_FOUND: 0x808080,
    BuildStatus.ERROR: 0xFF6600,
}


def status_label(status: BuildStatus) -> str:
    return f"{STATUS_EMOJI.get(status, '❓')} {status.value}"


@dataclass(frozen=True)
class Build:
    id: str
    name: str
    version: str
    build_number: str
    url: str
    status: BuildStatus
    created_at_ts: float
    notes: str | None = None
    is_public: bool = True
    last_checked_at_ts: float | None = None

    @classmethod
    def from_row(cls, row: Any) -> "Build":
        return cls(
            id=str(row["id"]),
            name=str(row["name"]),
            version=str(row["version"]),
            build_number=str(row["build_number"]),
            url=str(row["url"]),
            status=BuildStatus.parse(row["status"]),
            created_at_ts=float(row["created_at_ts"]),
            notes=row["notes"],
            is_public=bool(row["is_public"]),
            last_checked_at_ts=float(row["last_checked_at_ts"]) if row["last_checked_at_ts"] is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class CheckLogEntry:
    """One probe outcome. Rows are append-only."""

    build_id: str
    status: BuildStatus
    message: str
    duration_ms: float
    checked_at_ts: float
    http_status: int | None = None
    error_detail: str | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: Any) -> "CheckLogEntry":
        return cls(
            id=int(row["id"]),
            build_id=str(row["build_id"]),
            status=BuildStatus.parse(row["status"]),
            message=str(row["message"] or ""),
            duration_ms=float(row["duration_ms"] or 0.0),
            checked_at_ts=float(row["checked_at_ts"]),
            http_status=int(row["http_status"]) if row["http_status"] is not None else None,
            error_detail=row["error_detail"],
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data
