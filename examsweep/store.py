"""SQLite persistence for exam history, fingerprints, scan history, and the cleanup log."""

from __future__ import annotations

import contextlib
import datetime as dt
import logging
import os
import sqlite3
from pathlib import Path
from typing import Any, Iterable, Iterator, Sequence

from .config import ensure_parent
from .errors import CorruptState
from .models import ArchiveOutcome, ExamPeriod, Trigger, from_epoch, iso_or_none

logger = logging.getLogger(__name__)

# Bump SCHEMA_VERSION for every change. Raise MIN_READER_VERSION only when a
# change makes the database unreadable for older releases.
SCHEMA_VERSION = 3
MIN_READER_VERSION = 1

_SCHEMA_V1 = """
CREATE TABLE IF NOT EXISTS meta (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS file_events (
  path TEXT PRIMARY KEY,
  created_at REAL NOT NULL,
  category TEXT NOT NULL,
  first_seen REAL NOT NULL,
  last_seen REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_created ON file_events(created_at, category);

CREATE TABLE IF NOT EXISTS fingerprints (
  path TEXT PRIMARY KEY,
  size INTEGER NOT NULL,
  mtime REAL NOT NULL,
  fingerprint TEXT NOT NULL,
  hashed_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS scan_runs (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  root TEXT NOT NULL,
  scanned_at REAL NOT NULL,
  total_files INTEGER DEFAULT 0,
  total_bytes INTEGER DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_scan_runs_root ON scan_runs(root, scanned_at);

CREATE TABLE IF NOT EXISTS exam_periods (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT,
  started_at REAL NOT NULL,
  ended_at REAL,
  trigger_kind TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS exam_tracked_files (
  period_id INTEGER NOT NULL,
  path TEXT NOT NULL,
  added_at REAL NOT NULL,
  PRIMARY KEY (period_id, path),
  FOREIGN KEY(period_id) REFERENCES exam_periods(id)
);

CREATE TABLE IF NOT EXISTS tracker_state (
  id INTEGER PRIMARY KEY CHECK (id = 1),
  active_period_id INTEGER,
  FOREIGN KEY(active_period_id) REFERENCES exam_periods(id)
);

INSERT OR IGNORE INTO tracker_state(id, active_period_id) VALUES (1, NULL);

CREATE TABLE IF NOT EXISTS outcomes (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  path TEXT NOT NULL,
  action_taken TEXT NOT NULL,
  destination TEXT,
  timestamp TEXT NOT NULL,
  restorable_until TEXT,
  status TEXT NOT NULL,
  error TEXT
);
"""

# v2: relocation ledger backing restore and purge.
_SCHEMA_V2 = """
CREATE TABLE IF NOT EXISTS relocations (
  slot_id TEXT PRIMARY KEY,
  outcome_id INTEGER NOT NULL,
  kind TEXT NOT NULL,
  original_path TEXT NOT NULL,
  current_path TEXT NOT NULL,
  moved_at REAL NOT NULL,
  restorable_until REAL,
  restored_at REAL,
  purged_at REAL,
  FOREIGN KEY(outcome_id) REFERENCES outcomes(id)
);

CREATE INDEX IF NOT EXISTS idx_relocations_outcome ON relocations(outcome_id);
CREATE INDEX IF NOT EXISTS idx_relocations_window ON relocations(kind, restorable_until);
"""

# v3: outcomes written before their move stay pending until confirmed.
_SCHEMA_V3 = """
ALTER TABLE outcomes ADD COLUMN slot_id TEXT;
CREATE INDEX IF NOT EXISTS idx_outcomes_status ON outcomes(status);
"""

MIGRATIONS: dict[int, str] = {1: _SCHEMA_V1, 2: _SCHEMA_V2, 3: _SCHEMA_V3}


def _db_path(path: str | None) -> str | bytes | None:
    """Paths that are not valid UTF-8 are stored as their raw bytes."""
    if path is None:
        return None
    try:
        path.encode("utf-8")
    except UnicodeEncodeError:
        return os.fsencode(path)
    return path


def _py_path(value: str | bytes | None) -> str | None:
    if isinstance(value, bytes):
        return os.fsdecode(value)
    return value


class StateStore:
    """Single-writer SQLite store. Writes go through transaction()."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        ensure_parent(self.db_path)
        self._depth = 0
        self.conn = sqlite3.connect(str(self.db_path), isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        try:
            self.conn.execute("PRAGMA journal_mode=WAL;")
            self.conn.execute("PRAGMA synchronous=NORMAL;")
            self.conn.execute("PRAGMA foreign_keys=ON;")
            self._init_schema()
            self.validate()
        except (CorruptState, sqlite3.OperationalError):
            # locked or unwritable, not damaged
            self.conn.close()
            raise
        except sqlite3.DatabaseError as exc:
            self.conn.close()
            raise CorruptState(f"State database unreadable: {self.db_path} ({exc})") from exc

    # ------------------------------ Lifecycle ------------------------------- #

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "StateStore":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """All-or-nothing write section; nested calls join the outer transaction."""
        if self._depth:
            self._depth += 1
            try:
                yield self.conn
            finally:
                self._depth -= 1
            return

        self.conn.execute("BEGIN IMMEDIATE")
        self._depth = 1
        try:
            yield self.conn
        except BaseException:
            self._depth = 0
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
            raise
        self._depth = 0
        try:
            self.conn.execute("COMMIT")
        except sqlite3.Error:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
            raise

    def _init_schema(self) -> None:
        tables = {
            r["name"]
            for r in self.conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        }
        user_tables = {t for t in tables if not t.startswith("sqlite_")}

        if not user_tables:
            with self.transaction():
                for version in sorted(MIGRATIONS):
                    self._run_script(MIGRATIONS[version])
                self._set_meta("schema_version", str(SCHEMA_VERSION))
                self._set_meta("min_reader_version", str(MIN_READER_VERSION))
            logger.info("state_created path=%s schema=%s", self.db_path, SCHEMA_VERSION)
            return

        if "meta" not in user_tables:
            raise CorruptState(f"State database has no schema version: {self.db_path}")

        version = self._meta_int("schema_version")
        min_reader = self._meta_int("min_reader_version", default=1)
        if min_reader > SCHEMA_VERSION:
            raise CorruptState(
                f"State database requires reader version {min_reader}; this release reads up to {SCHEMA_VERSION}"
            )
        if version < SCHEMA_VERSION:
            with self.transaction():
                for step in range(version + 1, SCHEMA_VERSION + 1):
                    self._run_script(MIGRATIONS[step])
                self._set_meta("schema_version", str(SCHEMA_VERSION))
            logger.info("state_migrated path=%s from=%s to=%s", self.db_path, version, SCHEMA_VERSION)

    def _run_script(self, script: str) -> None:
        # executescript() would commit the open transaction, so run statements one by one.
        for statement in script.split(";"):
            if statement.strip():
                self.conn.execute(statement)

    def _set_meta(self, key: str, value: str) -> None:
        self.conn.execute(
            "INSERT INTO meta(key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, value),
        )

    def _meta_int(self, key: str, default: int | None = None) -> int:
        row = self.conn.execute("SELECT value FROM meta WHERE key=?", (key,)).fetchone()
        if row is None:
            if default is not None:
                return default
            raise CorruptState(f"State database is missing '{key}': {self.db_path}")
        try:
            return int(row["value"])
        except (TypeError, ValueError) as exc:
            raise CorruptState(f"Invalid '{key}' in state database: {row['value']!r}") from exc

    def schema_version(self) -> int:
        return self._meta_int("schema_version")

    def validate(self) -> None:
        check = self.conn.execute("PRAGMA quick_check").fetchone()
        if check is None or check[0] != "ok":
            raise CorruptState(f"State database failed integrity check: {check[0] if check else 'no result'}")

        rows = self.conn.execute("SELECT id, active_period_id FROM tracker_state").fetchall()
        if len(rows) != 1:
            raise CorruptState(f"Tracker state must hold exactly one row, found {len(rows)}")
        active_id = rows[0]["active_period_id"]
        if active_id is not None:
            period = self.conn.execute("SELECT ended_at FROM exam_periods WHERE id=?", (active_id,)).fetchone()
            if period is None or period["ended_at"] is not None:
                raise CorruptState(f"Tracker points at missing or closed exam period {active_id}")
        open_count = self.conn.execute("SELECT COUNT(*) FROM exam_periods WHERE ended_at IS NULL").fetchone()[0]
        if open_count > 1:
            raise CorruptState(f"{open_count} exam periods are open; at most one may be active")

    @classmethod
    def recover(cls, db_path: Path) -> Path | None:
        """Move a damaged database aside so a fresh one can be created. Nothing is deleted."""
        db_path = Path(db_path)
        if not db_path.exists():
            return None
        stamp = dt.datetime.now().strftime("%Y%m%d_%H%M%S")
        target = db_path.with_name(f"{db_path.name}.corrupt-{stamp}")
        os.replace(db_path, target)
        for suffix in ("-wal", "-shm"):
            side = db_path.with_name(db_path.name + suffix)
            if side.exists():
                os.replace(side, target.with_name(target.name + suffix))
        logger.warning("state_recovered path=%s moved_to=%s", db_path, target)
        return target

    # ---------------------------- File history ------------------------------ #

    def record_file_events(self, rows: Iterable[tuple[str, float, str]], seen_ts: float) -> None:
        self.conn.executemany(
            """
            INSERT INTO file_events(path, created_at, category, first_seen, last_seen)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(path) DO UPDATE SET
              created_at=excluded.created_at,
              category=excluded.category,
              last_seen=excluded.last_seen
            """,
            [(_db_path(path), created, category, seen_ts, seen_ts) for path, created, category in rows],
        )

    def study_creations(
        self, since_ts: float, until_ts: float, categories: Sequence[str]
    ) -> tuple[int, float | None]:
        """Distinct paths created in [since, until] with one of the categories, and the earliest time."""
        marks = ",".join("?" for _ in categories)
        row = self.conn.execute(
            f"""
            SELECT COUNT(DISTINCT path) AS c, MIN(created_at) AS first
            FROM file_events
            WHERE created_at >= ? AND created_at <= ? AND category IN ({marks})
            """,
            (since_ts, until_ts, *categories),
        ).fetchone()
        return int(row["c"]), (float(row["first"]) if row["first"] is not None else None)

    def latest_creation(self, categories: Sequence[str]) -> float | None:
        marks = ",".join("?" for _ in categories)
        row = self.conn.execute(
            f"SELECT MAX(created_at) AS last FROM file_events WHERE category IN ({marks})",
            tuple(categories),
        ).fetchone()
        return float(row["last"]) if row["last"] is not None else None

    def paths_created_between(self, since_ts: float, until_ts: float) -> list[str]:
        rows = self.conn.execute(
            "SELECT path FROM file_events WHERE created_at >= ? AND created_at <= ? ORDER BY path",
            (since_ts, until_ts),
        ).fetchall()
        return [_py_path(r["path"]) for r in rows]

    # ---------------------------- Fingerprints ------------------------------ #

    def cached_fingerprint(self, path: str, size: int, mtime: float) -> str | None:
        row = self.conn.execute(
            "SELECT fingerprint FROM fingerprints WHERE path=? AND size=? AND mtime=?",
            (_db_path(path), size, mtime),
        ).fetchone()
        return str(row["fingerprint"]) if row else None

    def put_fingerprints(self, rows: Iterable[tuple[str, int, float, str]], hashed_ts: float) -> None:
        self.conn.executemany(
            """
            INSERT INTO fingerprints(path, size, mtime, fingerprint, hashed_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(path) DO UPDATE SET
              size=excluded.size,
              mtime=excluded.mtime,
              fingerprint=excluded.fingerprint,
              hashed_at=excluded.hashed_at
            """,
            [(_db_path(path), size, mtime, fp, hashed_ts) for path, size, mtime, fp in rows],
        )

    # ------------------------------ Scan runs ------------------------------- #

    def record_scan_run(self, root: str, scanned_ts: float, total_files: int, total_bytes: int) -> int:
        cur = self.conn.execute(
            "INSERT INTO scan_runs(root, scanned_at, total_files, total_bytes) VALUES (?, ?, ?, ?)",
            (_db_path(root), scanned_ts, total_files, total_bytes),
        )
        return int(cur.lastrowid)

    def scanned_roots(self) -> list[str]:
        rows = self.conn.execute("SELECT DISTINCT root FROM scan_runs ORDER BY root").fetchall()
        return [_py_path(r["root"]) for r in rows]

    def last_scan(self, root: str | None = None) -> dt.datetime | None:
        if root is None:
            row = self.conn.execute("SELECT MAX(scanned_at) AS ts FROM scan_runs").fetchone()
        else:
            row = self.conn.execute(
                "SELECT MAX(scanned_at) AS ts FROM scan_runs WHERE root=?", (_db_path(root),)
            ).fetchone()
        return from_epoch(row["ts"]) if row["ts"] is not None else None

    # ------------------------------ Exam state ------------------------------ #

    def active_period_id(self) -> int | None:
        row = self.conn.execute("SELECT active_period_id FROM tracker_state WHERE id=1").fetchone()
        return int(row["active_period_id"]) if row and row["active_period_id"] is not None else None

    def set_active_period(self, period_id: int | None) -> None:
        self.conn.execute("UPDATE tracker_state SET active_period_id=? WHERE id=1", (period_id,))

    def insert_period(self, name: str | None, started_ts: float, trigger: Trigger) -> int:
        cur = self.conn.execute(
            "INSERT INTO exam_periods(name, started_at, ended_at, trigger_kind) VALUES (?, ?, NULL, ?)",
            (name, started_ts, trigger.value),
        )
        return int(cur.lastrowid)

    def close_period(self, period_id: int, ended_ts: float) -> None:
        self.conn.execute("UPDATE exam_periods SET ended_at=? WHERE id=?", (ended_ts, period_id))

    def update_period(self, period_id: int, name: str | None, started_ts: float, ended_ts: float | None) -> None:
        self.conn.execute(
            "UPDATE exam_periods SET name=COALESCE(?, name), started_at=?, ended_at=? WHERE id=?",
            (name, started_ts, ended_ts, period_id),
        )

    def add_tracked_files(self, period_id: int, paths: Iterable[str], added_ts: float) -> int:
        before = self.conn.total_changes
        self.conn.executemany(
            "INSERT OR IGNORE INTO exam_tracked_files(period_id, path, added_at) VALUES (?, ?, ?)",
            [(period_id, _db_path(p), added_ts) for p in paths],
        )
        return self.conn.total_changes - before

    def last_period_end(self) -> float | None:
        row = self.conn.execute("SELECT MAX(ended_at) AS ts FROM exam_periods").fetchone()
        return float(row["ts"]) if row["ts"] is not None else None

    def period(self, period_id: int) -> ExamPeriod:
        row = self.conn.execute("SELECT * FROM exam_periods WHERE id=?", (period_id,)).fetchone()
        if row is None:
            raise CorruptState(f"Exam period not found: {period_id}")
        return self._period_from_row(row)

    def periods(self) -> list[ExamPeriod]:
        rows = self.conn.execute("SELECT * FROM exam_periods ORDER BY id").fetchall()
        return [self._period_from_row(r) for r in rows]

    def _period_from_row(self, row: sqlite3.Row) -> ExamPeriod:
        tracked = {
            _py_path(r["path"])
            for r in self.conn.execute(
                "SELECT path FROM exam_tracked_files WHERE period_id=?", (row["id"],)
            ).fetchall()
        }
        try:
            trigger = Trigger(row["trigger_kind"])
        except ValueError as exc:
            raise CorruptState(f"Unknown exam trigger {row['trigger_kind']!r} for period {row['id']}") from exc
        return ExamPeriod(
            id=int(row["id"]),
            name=row["name"],
            started_at=from_epoch(row["started_at"]),
            ended_at=from_epoch(row["ended_at"]) if row["ended_at"] is not None else None,
            trigger=trigger,
            tracked_file_paths=tracked,
        )

    def tracked_paths(self, active: bool) -> set[str]:
        clause = "p.ended_at IS NULL" if active else "p.ended_at IS NOT NULL"
        rows = self.conn.execute(
            f"""
            SELECT DISTINCT t.path
            FROM exam_tracked_files t JOIN exam_periods p ON p.id = t.period_id
            WHERE {clause}
            """
        ).fetchall()
        return {_py_path(r["path"]) for r in rows}

    # ----------------------------- Outcome log ------------------------------ #

    def append_outcome(self, outcome: ArchiveOutcome, slot_id: str | None = None) -> int:
        cur = self.conn.execute(
            """
            INSERT INTO outcomes(path, action_taken, destination, timestamp, restorable_until, status, error, slot_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                _db_path(outcome.path),
                outcome.action_taken,
                _db_path(outcome.destination),
                outcome.timestamp.isoformat(),
                iso_or_none(outcome.restorable_until),
                outcome.status,
                _db_path(outcome.error),
                slot_id,
            ),
        )
        return int(cur.lastrowid)

    def finish_outcome(self, outcome_id: int, status: str, error: str | None = None) -> bool:
        """Settle a pending entry. Entries that already settled are never rewritten."""
        cur = self.conn.execute(
            "UPDATE outcomes SET status=?, error=? WHERE id=? AND status='pending'",
            (status, _db_path(error), outcome_id),
        )
        return cur.rowcount == 1

    def pending_outcomes(self) -> list[dict[str, Any]]:
        rows = self.conn.execute("SELECT * FROM outcomes WHERE status='pending' ORDER BY id").fetchall()
        return [
            {
                "id": int(r["id"]),
                "path": _py_path(r["path"]),
                "action_taken": r["action_taken"],
                "slot_id": r["slot_id"],
            }
            for r in rows
        ]

    def outcomes(self, limit: int = 200) -> list[ArchiveOutcome]:
        rows = self.conn.execute("SELECT * FROM outcomes ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [
            ArchiveOutcome(
                path=_py_path(r["path"]),
                action_taken=r["action_taken"],
                destination=_py_path(r["destination"]),
                timestamp=dt.datetime.fromisoformat(r["timestamp"]),
                restorable_until=dt.datetime.fromisoformat(r["restorable_until"]) if r["restorable_until"] else None,
                status=r["status"],
                error=_py_path(r["error"]),
                outcome_id=int(r["id"]),
            )
            for r in rows
        ]

    # ----------------------------- Relocations ------------------------------ #

    def insert_relocation(
        self,
        slot_id: str,
        outcome_id: int,
        kind: str,
        original_path: str,
        current_path: str,
        moved_ts: float,
        restorable_until_ts: float | None,
    ) -> None:
        self.conn.execute(
            """
            INSERT INTO relocations(slot_id, outcome_id, kind, original_path, current_path, moved_at, restorable_until)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                slot_id,
                outcome_id,
                kind,
                _db_path(original_path),
                _db_path(current_path),
                moved_ts,
                restorable_until_ts,
            ),
        )

    def delete_relocation(self, slot_id: str) -> None:
        self.conn.execute("DELETE FROM relocations WHERE slot_id=?", (slot_id,))

    @staticmethod
    def _relocation_from_row(row: sqlite3.Row | None) -> dict[str, Any] | None:
        if row is None:
            return None
        data = dict(row)
        data["original_path"] = _py_path(data["original_path"])
        data["current_path"] = _py_path(data["current_path"])
        return data

    def relocation(self, slot_id: str) -> dict[str, Any] | None:
        row = self.conn.execute("SELECT * FROM relocations WHERE slot_id=?", (slot_id,)).fetchone()
        return self._relocation_from_row(row)

    def relocation_for_outcome(self, outcome_id: int) -> dict[str, Any] | None:
        row = self.conn.execute("SELECT * FROM relocations WHERE outcome_id=?", (outcome_id,)).fetchone()
        return self._relocation_from_row(row)

    def slot_exists(self, slot_id: str) -> bool:
        return self.conn.execute("SELECT 1 FROM relocations WHERE slot_id=?", (slot_id,)).fetchone() is not None

    def mark_restored(self, slot_id: str, ts: float) -> None:
        self.conn.execute("UPDATE relocations SET restored_at=? WHERE slot_id=?", (ts, slot_id))

    def mark_purged(self, slot_id: str, ts: float) -> None:
        self.conn.execute("UPDATE relocations SET purged_at=? WHERE slot_id=?", (ts, slot_id))

    def expired_trash(self, now_ts: float) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT r.* FROM relocations r JOIN outcomes o ON o.id = r.outcome_id
            WHERE r.kind='trash' AND o.status='applied' AND r.restored_at IS NULL AND r.purged_at IS NULL
              AND r.restorable_until IS NOT NULL AND r.restorable_until < ?
            ORDER BY r.moved_at
            """,
            (now_ts,),
        ).fetchall()
        return [self._relocation_from_row(r) for r in rows]

    def held_archives(self, moved_before_ts: float | None = None) -> list[dict[str, Any]]:
        """Archive relocations that were neither restored nor purged, oldest first."""
        query = (
            "SELECT r.* FROM relocations r JOIN outcomes o ON o.id = r.outcome_id"
            " WHERE r.kind='archive' AND o.status='applied' AND r.restored_at IS NULL AND r.purged_at IS NULL"
        )
        params: tuple[Any, ...] = ()
        if moved_before_ts is not None:
            query += " AND r.moved_at < ?"
            params = (moved_before_ts,)
        rows = self.conn.execute(query + " ORDER BY r.moved_at, r.slot_id", params).fetchall()
        return [self._relocation_from_row(r) for r in rows]
