# buildpipe/state.py
from __future__ import annotations

import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

from buildpipe.errors import NotFoundError, StoreUnavailable
from buildpipe.models import BuildRecord, LogEntry, Phase


def now() -> float: return time.time()


_SCHEMA = """
PRAGMA foreign_keys = ON;

-- One canonical record per build, addressed only by build_id.
CREATE TABLE IF NOT EXISTS builds(
  build_id   TEXT PRIMARY KEY,
  record     TEXT NOT NULL,            -- BuildRecord JSON
  phase      TEXT NOT NULL,            -- queued|running|succeeded|failed
  created_at REAL NOT NULL,
  updated_at REAL NOT NULL,
  expires_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS builds_by_created ON builds(created_at);
CREATE INDEX IF NOT EXISTS builds_by_phase ON builds(phase, created_at);

-- Append-only log list per build; seq is the builder's line number (NULL if unsequenced).
CREATE TABLE IF NOT EXISTS build_logs(
  id         INTEGER PRIMARY KEY AUTOINCREMENT,
  build_id   TEXT NOT NULL,
  seq        INTEGER,
  line       TEXT NOT NULL,
  emitted_at TEXT NOT NULL,
  expires_at REAL NOT NULL,
  UNIQUE(build_id, seq)
);
CREATE INDEX IF NOT EXISTS build_logs_by_build ON build_logs(build_id, id);
"""


class BuildStore:
    """TTL'd build records plus per-build log lists, kept in one SQLite file.

    Every call opens its own connection so the store can be shared between the
    bus pump, executor threads and the HTTP workers without sharing handles.
    """

    def __init__(self, db_path: str | Path, retention_s: int = 24 * 3600):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.retention_s = retention_s

    @classmethod
    def from_config(cls, cfg: dict) -> "BuildStore":
        return cls(cfg["STATE_DB"], cfg["RETENTION_S"])

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        # Pragmas suitable for single-writer/multi-reader patterns
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.executescript(_SCHEMA)
        return conn

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._open()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"cannot open state store {self.db_path}: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreUnavailable(f"state store error: {e}") from e
        finally:
            conn.close()

    # ── records ──────────────────────────────────────────────────────────────

    def create_build(self, record: BuildRecord) -> bool:
        """Insert the record; returns False if a live record already exists (redelivered request)."""
        t = now()
        with self._conn() as c:
            c.execute("DELETE FROM builds WHERE build_id=? AND expires_at<=?", (record.id, t))
            cur = c.execute(
                """INSERT OR IGNORE INTO builds(build_id, record, phase, created_at, updated_at, expires_at)
                   VALUES(?,?,?,?,?,?)""",
                (record.id, record.model_dump_json(), record.phase.value, t, t, t + self.retention_s),
            )
            c.commit()
            return cur.rowcount == 1

    def get_build(self, build_id: str) -> BuildRecord:
        with self._conn() as c:
            row = c.execute(
                "SELECT record FROM builds WHERE build_id=? AND expires_at>?", (build_id, now())
            ).fetchone()
        if not row:
            raise NotFoundError(f"build not found: {build_id}")
        return BuildRecord.model_validate_json(row["record"])

    def find_build(self, build_id: str) -> Optional[BuildRecord]:
        try:
            return self.get_build(build_id)
        except NotFoundError:
            return None

    def update_build(
        self, build_id: str, mutate: Callable[[BuildRecord], Optional[BuildRecord]]
    ) -> Tuple[BuildRecord, bool]:
        """Read-modify-write under BEGIN IMMEDIATE, so concurrent writers serialize.

        ``mutate`` returns the new record, or None to leave it untouched.
        Returns (record, changed).
        """
        with self._conn() as c:
            c.execute("BEGIN IMMEDIATE")
            t = now()
            row = c.execute(
                "SELECT record FROM builds WHERE build_id=? AND expires_at>?", (build_id, t)
            ).fetchone()
            if not row:
                c.rollback()
                raise NotFoundError(f"build not found: {build_id}")
            current = BuildRecord.model_validate_json(row["record"])
            updated = mutate(current)
            if updated is None:
                c.rollback()
                return current, False
            c.execute(
                "UPDATE builds SET record=?, phase=?, updated_at=?, expires_at=? WHERE build_id=?",
                (updated.model_dump_json(), updated.phase.value, t, t + self.retention_s, build_id),
            )
            c.execute("UPDATE build_logs SET expires_at=? WHERE build_id=?", (t + self.retention_s, build_id))
            c.commit()
            return updated, True

    def list_builds(self, limit: int = 100) -> List[BuildRecord]:
        with self._conn() as c:
            rows = c.execute(
                "SELECT record FROM builds WHERE expires_at>? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (now(), limit),
            ).fetchall()
        return [BuildRecord.model_validate_json(r["record"]) for r in rows]

    def list_stalled(self, phase: Phase, older_than_s: float) -> List[BuildRecord]:
        """Live builds still in ``phase`` whose last update is older than ``older_than_s``."""
        t = now()
        with self._conn() as c:
            rows = c.execute(
                """SELECT record FROM builds
                   WHERE phase=? AND updated_at<=? AND expires_at>?
                   ORDER BY created_at ASC""",
                (phase.value, t - older_than_s, t),
            ).fetchall()
        return [BuildRecord.model_validate_json(r["record"]) for r in rows]

    # ── logs ─────────────────────────────────────────────────────────────────

    def append_log(self, entry: LogEntry) -> bool:
        """Append one line; a (build_id, seq) already stored is ignored. Returns True if written."""
        t = now()
        with self._conn() as c:
            cur = c.execute(
                """INSERT OR IGNORE INTO build_logs(build_id, seq, line, emitted_at, expires_at)
                   VALUES(?,?,?,?,?)""",
                (entry.build_id, entry.seq, entry.line, entry.emitted_at.isoformat(), t + self.retention_s),
            )
            c.execute(
                "UPDATE builds SET expires_at=? WHERE build_id=? AND expires_at>?",
                (t + self.retention_s, entry.build_id, t),
            )
            c.commit()
            return cur.rowcount == 1

    def get_logs(self, build_id: str) -> List[LogEntry]:
        with self._conn() as c:
            rows = c.execute(
                """SELECT build_id, seq, line, emitted_at FROM build_logs
                   WHERE build_id=? AND expires_at>?
                   ORDER BY id""",
                (build_id, now()),
            ).fetchall()
        return [LogEntry(build_id=r["build_id"], seq=r["seq"], line=r["line"], emitted_at=r["emitted_at"])
                for r in rows]

    def purge_expired(self) -> int:
        t = now()
        with self._conn() as c:
            n = c.execute("DELETE FROM builds WHERE expires_at<=?", (t,)).rowcount
            n += c.execute("DELETE FROM build_logs WHERE expires_at<=?", (t,)).rowcount
            c.commit()
        return n
