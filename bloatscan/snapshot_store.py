"""SQLite persistence for projects, snapshots and alert history.

Every operation opens its own connection so the store can be shared across
worker threads. Writes for one project are serialized by a per-project lock;
each persist is a single transaction committed with ``synchronous=FULL``
before the call returns.
"""

from __future__ import annotations

import contextlib
import dataclasses
import datetime as dt
import json
import os
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Any, Iterable, Iterator

from bloatscan.scan_config import ensure_parent, now_utc_iso, now_utc_precise
from bloatscan.scan_errors import InvalidConfigError, NotFoundError, PersistenceError

# ------------------------------ Data Models --------------------------------- #


@dataclasses.dataclass(slots=True, frozen=True)
class FileStamp:
    size_bytes: int
    modified_at: float


@dataclasses.dataclass(slots=True)
class ScanResult:
    root_path: str
    total_size_bytes: int
    file_count: int
    entries: dict[str, FileStamp]
    duplicate_summary: dict[str, Any] = dataclasses.field(default_factory=dict)
    bloat_summary: dict[str, Any] = dataclasses.field(default_factory=dict)
    errors: list[dict[str, Any]] = dataclasses.field(default_factory=list)


@dataclasses.dataclass(slots=True, frozen=True)
class Project:
    project_id: str
    root_path: str
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclasses.dataclass(slots=True, frozen=True)
class Snapshot:
    snapshot_id: int
    project_id: str
    taken_at: str
    total_size_bytes: int
    file_count: int
    duplicate_summary: dict[str, Any]
    bloat_summary: dict[str, Any]
    errors_count: int = 0
    entries: dict[str, FileStamp] | None = None

    def to_dict(self, include_entries: bool = False) -> dict[str, Any]:
        out: dict[str, Any] = {
            "snapshot_id": self.snapshot_id,
            "project_id": self.project_id,
            "taken_at": self.taken_at,
            "total_size_bytes": self.total_size_bytes,
            "file_count": self.file_count,
            "errors_count": self.errors_count,
            "duplicate_summary": self.duplicate_summary,
            "bloat_summary": self.bloat_summary,
        }
        if include_entries and self.entries is not None:
            out["entries"] = {
                p: {"size_bytes": s.size_bytes, "modified_at": s.modified_at} for p, s in sorted(self.entries.items())
            }
        return out


def project_id_for(root_path: str) -> str:
    """Stable identity for a root: rescans of the same directory share it."""
    resolved = os.path.realpath(os.path.expanduser(root_path))
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"file://{resolved}"))


# --------------------------------- Store ------------------------------------ #


class SnapshotStore:
    """Append-only snapshot history keyed by project."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        try:
            ensure_parent(db_path)
        except OSError as exc:
            raise PersistenceError(f"Cannot create database directory: {exc}", str(db_path)) from exc
        self._init_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open database: {exc}", str(self.db_path)) from exc
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=FULL;")
            conn.execute("PRAGMA foreign_keys=ON;")
            yield conn
        except sqlite3.Error as exc:
            raise PersistenceError(f"Database operation failed: {exc}", str(self.db_path)) from exc
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS projects (
                  project_id TEXT PRIMARY KEY,
                  root_path TEXT NOT NULL UNIQUE,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS snapshots (
                  snapshot_id INTEGER PRIMARY KEY AUTOINCREMENT,
                  project_id TEXT NOT NULL,
                  taken_at TEXT NOT NULL,
                  total_size_bytes INTEGER NOT NULL,
                  file_count INTEGER NOT NULL,
                  errors_count INTEGER NOT NULL DEFAULT 0,
                  duplicate_summary_json TEXT NOT NULL,
                  bloat_summary_json TEXT NOT NULL,
                  FOREIGN KEY(project_id) REFERENCES projects(project_id)
                );

                CREATE INDEX IF NOT EXISTS idx_snapshots_project_taken ON snapshots(project_id, taken_at);

                CREATE TABLE IF NOT EXISTS snapshot_entries (
                  snapshot_id INTEGER NOT NULL,
                  path TEXT NOT NULL,
                  size_bytes INTEGER NOT NULL,
                  modified_at REAL NOT NULL,
                  PRIMARY KEY(snapshot_id, path),
                  FOREIGN KEY(snapshot_id) REFERENCES snapshots(snapshot_id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS alerts (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  project_id TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  severity TEXT NOT NULL,
                  category TEXT NOT NULL,
                  message TEXT NOT NULL,
                  related_snapshot_ids_json TEXT NOT NULL,
                  FOREIGN KEY(project_id) REFERENCES projects(project_id)
                );

                CREATE INDEX IF NOT EXISTS idx_alerts_project ON alerts(project_id, id);
                """
            )
            conn.commit()

    def _project_lock(self, project_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = self._locks[project_id] = threading.Lock()
            return lock

    # ------------------------------ Projects -------------------------------- #

    def ensure_project(self, root_path: str) -> Project:
        resolved = os.path.realpath(os.path.expanduser(root_path))
        project_id = project_id_for(resolved)
        with self._project_lock(project_id), self._connect() as conn:
            with conn:
                conn.execute(
                    "INSERT OR IGNORE INTO projects(project_id, root_path, created_at) VALUES (?, ?, ?)",
                    (project_id, resolved, now_utc_iso()),
                )
            row = conn.execute("SELECT * FROM projects WHERE project_id=?", (project_id,)).fetchone()
        return _project_from_row(row)

    def get_project(self, project_id: str) -> Project:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM projects WHERE project_id=?", (project_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Project not found: {project_id}")
        return _project_from_row(row)

    def find_project(self, root_path: str) -> Project | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM projects WHERE project_id=?", (project_id_for(root_path),)
            ).fetchone()
        return _project_from_row(row) if row else None

    def list_projects(self) -> list[Project]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM projects ORDER BY created_at, project_id").fetchall()
        return [_project_from_row(r) for r in rows]

    # ------------------------------ Snapshots ------------------------------- #

    def persist(self, project_id: str, scan_result: ScanResult) -> Snapshot:
        """Append an immutable snapshot; durable once this returns."""
        with self._project_lock(project_id), self._connect() as conn:
            exists = conn.execute("SELECT 1 FROM projects WHERE project_id=?", (project_id,)).fetchone()
            if exists is None:
                raise NotFoundError(f"Project not found: {project_id}")
            with conn:
                last = conn.execute(
                    "SELECT MAX(taken_at) AS t FROM snapshots WHERE project_id=?", (project_id,)
                ).fetchone()["t"]
                taken_at = _next_taken_at(last)
                cur = conn.execute(
                    """
                    INSERT INTO snapshots(
                      project_id, taken_at, total_size_bytes, file_count, errors_count,
                      duplicate_summary_json, bloat_summary_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        project_id,
                        taken_at,
                        scan_result.total_size_bytes,
                        scan_result.file_count,
                        len(scan_result.errors),
                        json.dumps(scan_result.duplicate_summary, sort_keys=True),
                        json.dumps(scan_result.bloat_summary, sort_keys=True),
                    ),
                )
                snapshot_id = int(cur.lastrowid)
                conn.executemany(
                    "INSERT INTO snapshot_entries(snapshot_id, path, size_bytes, modified_at) VALUES (?, ?, ?, ?)",
                    (
                        (snapshot_id, path, stamp.size_bytes, stamp.modified_at)
                        for path, stamp in scan_result.entries.items()
                    ),
                )

        return Snapshot(
            snapshot_id=snapshot_id,
            project_id=project_id,
            taken_at=taken_at,
            total_size_bytes=scan_result.total_size_bytes,
            file_count=scan_result.file_count,
            duplicate_summary=scan_result.duplicate_summary,
            bloat_summary=scan_result.bloat_summary,
            errors_count=len(scan_result.errors),
            entries=dict(scan_result.entries),
        )

    def list_snapshots(self, project_id: str, with_entries: bool = False) -> list[Snapshot]:
        """Snapshots of a project, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM snapshots WHERE project_id=? ORDER BY taken_at, snapshot_id",
                (project_id,),
            ).fetchall()
            return [self._snapshot_from_row(conn, r, with_entries) for r in rows]

    list = list_snapshots

    def get(self, snapshot_id: int, with_entries: bool = True) -> Snapshot:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM snapshots WHERE snapshot_id=?", (snapshot_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"Snapshot not found: {snapshot_id}")
            return self._snapshot_from_row(conn, row, with_entries)

    def latest(self, project_id: str, with_entries: bool = False) -> Snapshot | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM snapshots WHERE project_id=? ORDER BY taken_at DESC, snapshot_id DESC LIMIT 1",
                (project_id,),
            ).fetchone()
            return self._snapshot_from_row(conn, row, with_entries) if row else None

    def prune(self, project_id: str, keep_last: int) -> list[int]:
        """Delete all but the newest ``keep_last`` snapshots; returns removed ids."""
        if keep_last < 1:
            raise InvalidConfigError(f"keep_last must be >= 1, got {keep_last}")
        with self._project_lock(project_id), self._connect() as conn:
            with conn:
                rows = conn.execute(
                    "SELECT snapshot_id FROM snapshots WHERE project_id=? ORDER BY taken_at DESC, snapshot_id DESC",
                    (project_id,),
                ).fetchall()
                doomed = [int(r["snapshot_id"]) for r in rows[keep_last:]]
                conn.executemany("DELETE FROM snapshot_entries WHERE snapshot_id=?", ((s,) for s in doomed))
                conn.executemany("DELETE FROM snapshots WHERE snapshot_id=?", ((s,) for s in doomed))
        return sorted(doomed)

    def _snapshot_from_row(self, conn: sqlite3.Connection, row: sqlite3.Row, with_entries: bool) -> Snapshot:
        entries = None
        if with_entries:
            entries = {
                r["path"]: FileStamp(int(r["size_bytes"]), float(r["modified_at"]))
                for r in conn.execute(
                    "SELECT path, size_bytes, modified_at FROM snapshot_entries WHERE snapshot_id=?",
                    (row["snapshot_id"],),
                )
            }
        return Snapshot(
            snapshot_id=int(row["snapshot_id"]),
            project_id=row["project_id"],
            taken_at=row["taken_at"],
            total_size_bytes=int(row["total_size_bytes"]),
            file_count=int(row["file_count"]),
            duplicate_summary=json.loads(row["duplicate_summary_json"]),
            bloat_summary=json.loads(row["bloat_summary_json"]),
            errors_count=int(row["errors_count"]),
            entries=entries,
        )

    # ------------------------------- Alerts --------------------------------- #

    def record_alerts(self, project_id: str, alerts: Iterable[dict[str, Any]]) -> int:
        rows = [
            (
                project_id,
                now_utc_iso(),
                a["severity"],
                a["category"],
                a["message"],
                json.dumps(list(a.get("related_snapshot_ids", []))),
            )
            for a in alerts
        ]
        if not rows:
            return 0
        with self._connect() as conn:
            with conn:
                conn.executemany(
                    """
                    INSERT INTO alerts(project_id, created_at, severity, category, message, related_snapshot_ids_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
        return len(rows)

    def list_alerts(self, project_id: str, limit: int = 200) -> list[dict[str, Any]]:
        """Alert history, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM alerts WHERE project_id=? ORDER BY id DESC LIMIT ?",
                (project_id, limit),
            ).fetchall()
        return [
            {
                "id": int(r["id"]),
                "created_at": r["created_at"],
                "severity": r["severity"],
                "category": r["category"],
                "message": r["message"],
                "related_snapshot_ids": json.loads(r["related_snapshot_ids_json"]),
            }
            for r in rows
        ]


def _project_from_row(row: sqlite3.Row) -> Project:
    return Project(project_id=row["project_id"], root_path=row["root_path"], created_at=row["created_at"])


def _next_taken_at(last: str | None) -> str:
    # Snapshots of one project must be strictly ordered in time.
    now = now_utc_precise()
    if last is not None:
        floor = dt.datetime.fromisoformat(last) + dt.timedelta(microseconds=1)
        if now < floor:
            now = floor
    return now.isoformat(timespec="microseconds")
