from __future__ import annotations

import sqlite3
import time
import uuid
from pathlib import Path
from typing import Any, Iterable

from .errors import DuplicateBuildError, RepositoryError
from .models import Build, BuildStatus, CheckLogEntry


SCHEMA_VERSION = 1

_STATUS_CHECK = ", ".join(f"'{s.value}'" for s in BuildStatus)


def _utc_ts() -> float:
    return float(time.time())


def _uuid() -> str:
    return str(uuid.uuid4())


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    if p != ":memory:":
        Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.Error:
        pass
    return conn


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return
    if cur == 0:
        _apply_v1(conn)
        conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))
        return
    raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS builds (
          id TEXT PRIMARY KEY,
          name TEXT NOT NULL,
          version TEXT NOT NULL,
          build_number TEXT NOT NULL,
          url TEXT NOT NULL UNIQUE,
          notes TEXT,
          is_public INTEGER NOT NULL DEFAULT 1,
          status TEXT NOT NULL DEFAULT 'PENDING' CHECK (status IN ({_STATUS_CHECK})),
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL,
          last_checked_at_ts REAL,
          UNIQUE(version, build_number)
        );
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS build_logs (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          build_id TEXT NOT NULL REFERENCES builds(id) ON DELETE CASCADE,
          status TEXT NOT NULL CHECK (status IN ({_STATUS_CHECK})),
          message TEXT NOT NULL,
          duration_ms REAL NOT NULL,
          http_status INTEGER,
          error_detail TEXT,
          checked_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_builds_status_checked ON builds(status, last_checked_at_ts);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_build_logs_build ON build_logs(build_id, id DESC);")


# Never-checked builds first, then oldest-checked, then oldest-created.
_DUE_ORDER = "ORDER BY (last_checked_at_ts IS NOT NULL), last_checked_at_ts ASC, created_at_ts ASC, id ASC"


class SqliteBuildRepository:
    """SQLite-backed build and check-log store. One short-lived connection per operation."""

    def __init__(self, db_path: str) -> None:
        self.db_path = str(db_path)

    def _run(self, fn, *args: Any, **kwargs: Any) -> Any:
        try:
            conn = _connect(self.db_path)
        except sqlite3.Error as e:
            raise RepositoryError(f"cannot open database {self.db_path}: {e}") from e
        try:
            _ensure_schema_conn(conn)
            return fn(conn, *args, **kwargs)
        except sqlite3.IntegrityError as e:
            msg = str(e)
            if "UNIQUE" in msg.upper():
                raise DuplicateBuildError(msg) from e
            raise RepositoryError(msg) from e
        except sqlite3.Error as e:
            raise RepositoryError(f"{type(e).__name__}: {e}") from e
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        self._run(lambda conn: None)

    # --- core monitor surface ---

    def find_due_builds(self, statuses: Iterable[BuildStatus]) -> list[Build]:
        wanted = [BuildStatus.parse(s).value for s in statuses]
        if not wanted:
            return []

        def _q(conn: sqlite3.Connection) -> list[Build]:
            marks = ", ".join("?" for _ in wanted)
            rows = conn.execute(f"SELECT * FROM builds WHERE status IN ({marks}) {_DUE_ORDER}", wanted).fetchall()
            return [Build.from_row(r) for r in rows]

        return self._run(_q)

    def find_stale_builds(self, *, checked_before_ts: float) -> list[Build]:
        def _q(conn: sqlite3.Connection) -> list[Build]:
            rows = conn.execute(
                f"SELECT * FROM builds WHERE last_checked_at_ts IS NULL OR last_checked_at_ts < ? {_DUE_ORDER}",
                (float(checked_before_ts),),
            ).fetchall()
            return [Build.from_row(r) for r in rows]

        return self._run(_q)

    def get_build(self, build_id: str) -> Build | None:
        def _q(conn: sqlite3.Connection) -> Build | None:
            row = conn.execute("SELECT * FROM builds WHERE id=?", (build_id,)).fetchone()
            return Build.from_row(row) if row else None

        return self._run(_q)

    def update_status(self, build_id: str, status: BuildStatus, checked_at_ts: float) -> None:
        value = BuildStatus.parse(status).value

        def _q(conn: sqlite3.Connection) -> None:
            conn.execute(
                "UPDATE builds SET status=?, last_checked_at_ts=?, updated_at_ts=? WHERE id=?",
                (value, float(checked_at_ts), _utc_ts(), build_id),
            )

        self._run(_q)

    def mark_checked(self, build_id: str, checked_at_ts: float) -> None:
        def _q(conn: sqlite3.Connection) -> None:
            conn.execute("UPDATE builds SET last_checked_at_ts=? WHERE id=?", (float(checked_at_ts), build_id))

        self._run(_q)

    def append_log(self, entry: CheckLogEntry) -> int:
        def _q(conn: sqlite3.Connection) -> int:
            cur = conn.execute(
                """
                INSERT INTO build_logs (build_id, status, message, duration_ms, http_status, error_detail, checked_at_ts)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.build_id,
                    BuildStatus.parse(entry.status).value,
                    entry.message,
                    float(entry.duration_ms),
                    int(entry.http_status) if entry.http_status is not None else None,
                    entry.error_detail,
                    float(entry.checked_at_ts),
                ),
            )
            return int(cur.lastrowid)

        return self._run(_q)

    # --- build management ---

    def create_build(
        self,
        *,
        name: str,
        version: str,
        build_number: str,
        url: str,
        notes: str | None = None,
        is_public: bool = True,
        status: BuildStatus = BuildStatus.PENDING,
        build_id: str | None = None,
    ) -> Build:
        bid = build_id or _uuid()
        now = _utc_ts()

        def _q(conn: sqlite3.Connection) -> Build:
            conn.execute(
                """
                INSERT INTO builds (id, name, version, build_number, url, notes, is_public, status, created_at_ts, updated_at_ts)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (bid, name, version, build_number, url, notes, 1 if is_public else 0, BuildStatus.parse(status).value, now, now),
            )
            row = conn.execute("SELECT * FROM builds WHERE id=?", (bid,)).fetchone()
            return Build.from_row(row)

        return self._run(_q)

    def list_builds(self, *, public_only: bool = False, limit: int | None = None) -> list[Build]:
        def _q(conn: sqlite3.Connection) -> list[Build]:
            sql = "SELECT * FROM builds"
            if public_only:
                sql += " WHERE is_public=1"
            sql += " ORDER BY created_at_ts DESC, id ASC"
            params: tuple[Any, ...] = ()
            if limit is not None:
                sql += " LIMIT ?"
                params = (max(0, int(limit)),)
            return [Build.from_row(r) for r in conn.execute(sql, params).fetchall()]

        return self._run(_q)

    def delete_build(self, build_id: str) -> bool:
        def _q(conn: sqlite3.Connection) -> bool:
            cur = conn.execute("DELETE FROM builds WHERE id=?", (build_id,))
            return int(cur.rowcount or 0) > 0

        return self._run(_q)

    def list_logs(self, build_id: str, *, limit: int = 5) -> list[CheckLogEntry]:
        def _q(conn: sqlite3.Connection) -> list[CheckLogEntry]:
            rows = conn.execute(
                "SELECT * FROM build_logs WHERE build_id=? ORDER BY id DESC LIMIT ?",
                (build_id, max(0, int(limit))),
            ).fetchall()
            return [CheckLogEntry.from_row(r) for r in rows]

        return self._run(_q)

    def count_logs(self, build_id: str) -> int:
        def _q(conn: sqlite3.Connection) -> int:
            row = conn.execute("SELECT COUNT(*) AS n FROM build_logs WHERE build_id=?", (build_id,)).fetchone()
            return int(row["n"])

        return self._run(_q)

    def status_counts(self, *, public_only: bool = False) -> dict[str, int]:
        """Build count per status plus a 'total' key."""

        def _q(conn: sqlite3.Connection) -> dict[str, int]:
            sql = "SELECT status, COUNT(*) AS n FROM builds"
            if public_only:
                sql += " WHERE is_public=1"
            sql += " GROUP BY status"
            out = {s.value: 0 for s in BuildStatus}
            for r in conn.execute(sql).fetchall():
                out[str(r["status"])] = int(r["n"])
            out["total"] = sum(out[s.value] for s in BuildStatus)
            return out

        return self._run(_q)
