"""
SQLite store writer for the commit history ingestion pipeline.

Persists `commits` and `commit_files` idempotently. Each commit is written
in its own transaction, so a reader never sees part of a commit's rows.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional, Union

from config.constants import (
    EVENT_CONFLICT,
    EVENT_OVERWRITTEN,
    EVENT_SKIPPED,
    RUN_COMPLETED,
    RUN_RUNNING,
    SCHEMA_VERSION,
    TIMESTAMP_FORMAT,
)
from config.settings import ConflictPolicy, settings
from commit_ingest.errors import WriteConflict
from commit_ingest.normalizer import CommitFileRow, CommitRow, NormalizedCommit, SkippedCommit

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS commits (
    id           TEXT PRIMARY KEY,
    summary      TEXT NOT NULL,
    author_name  TEXT NOT NULL,
    author_email TEXT NOT NULL,
    author_when  DATETIME NOT NULL
);

CREATE TABLE IF NOT EXISTS commit_files (
    id      TEXT NOT NULL REFERENCES commits(id),
    name    TEXT NOT NULL,
    added   INTEGER NOT NULL CHECK (added >= 0),
    deleted INTEGER NOT NULL CHECK (deleted >= 0),
    PRIMARY KEY (id, name)
);

CREATE INDEX IF NOT EXISTS idx_commit_files_name ON commit_files(name);
CREATE INDEX IF NOT EXISTS idx_commits_author_when ON commits(author_when);

-- Run metadata; checkpoint is set only when a run walked the whole history
CREATE TABLE IF NOT EXISTS ingest_runs (
    run_id            INTEGER PRIMARY KEY AUTOINCREMENT,
    repo_path         TEXT NOT NULL,
    head              TEXT,
    resume_from       TEXT,
    checkpoint        TEXT,
    started_at        TEXT NOT NULL,
    finished_at       TEXT,
    status            TEXT NOT NULL,
    history_truncated INTEGER NOT NULL DEFAULT 0,
    ingested          INTEGER NOT NULL DEFAULT 0,
    unchanged         INTEGER NOT NULL DEFAULT 0,
    overwritten       INTEGER NOT NULL DEFAULT 0,
    skipped           INTEGER NOT NULL DEFAULT 0,
    conflicts         INTEGER NOT NULL DEFAULT 0
);

-- Skipped, conflicting and overwritten commits, enumerable after a run
CREATE TABLE IF NOT EXISTS ingest_events (
    event_id    INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id      INTEGER,
    commit_id   TEXT NOT NULL,
    kind        TEXT NOT NULL,
    detail      TEXT,
    recorded_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_ingest_events_commit ON ingest_events(commit_id);
"""


class WriteOutcome(str, Enum):
    """Result of writing one commit."""
    INSERTED = "inserted"
    UNCHANGED = "unchanged"
    OVERWRITTEN = "overwritten"


def _now() -> str:
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)


class SQLiteStore:
    """
    Writes normalized commits to SQLite.

    Features:
    - Existence check per commit identity; re-ingestion adds no rows
    - One transaction per commit (all file rows or none)
    - Conflict detection for stored commits whose content changed
    - Audit tables for runs and skipped/conflicting commits
    """

    def __init__(
        self,
        db_path: Optional[Union[str, Path]] = None,
        busy_timeout: Optional[float] = None
    ):
        """
        Initialize the store.

        Args:
            db_path: SQLite database file (default: from settings).
                ":memory:" keeps everything in memory.
            busy_timeout: Seconds to wait on a locked database.
        """
        self.db_path = str(db_path or settings.store.db_path)
        self.busy_timeout = busy_timeout or settings.store.busy_timeout

        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

        # Statistics
        self.commits_written = 0
        self.file_rows_written = 0
        self.commits_unchanged = 0
        self.commits_overwritten = 0

    @property
    def conn(self) -> sqlite3.Connection:
        """Get or open the connection."""
        if self._conn is None:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                self.db_path,
                timeout=self.busy_timeout,
                isolation_level=None,  # Transactions are explicit
                check_same_thread=False
            )
            self._conn.execute("PRAGMA foreign_keys = ON")
            if self.db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode = WAL")
                self._conn.execute("PRAGMA synchronous = NORMAL")
        return self._conn

    def initialize(self) -> None:
        """Create the schema if it does not exist."""
        self.conn.executescript(SCHEMA)
        self.conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        logger.debug(f"Schema ready in {self.db_path}")

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize writers and commit or roll back as one unit."""
        with self._lock:
            conn = self.conn
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def write(
        self,
        normalized: NormalizedCommit,
        policy: ConflictPolicy = ConflictPolicy.REJECT,
        run_id: Optional[int] = None
    ) -> WriteOutcome:
        """
        Persist one commit and its file rows atomically.

        Args:
            normalized: The commit to write.
            policy: What to do when the stored commit differs.
            run_id: Run to attribute overwrite events to.

        Returns:
            The WriteOutcome.

        Raises:
            WriteConflict: Stored content differs and policy is REJECT.
        """
        commit = normalized.commit
        with self._transaction() as conn:
            existing = self._load(conn, commit.id)

            if existing is None:
                self._insert(conn, normalized)
                self.commits_written += 1
                self.file_rows_written += len(normalized.files)
                return WriteOutcome.INSERTED

            if existing == normalized:
                self.commits_unchanged += 1
                return WriteOutcome.UNCHANGED

            detail = _describe_difference(existing, normalized)
            if policy is not ConflictPolicy.OVERWRITE:
                raise WriteConflict(commit.id, detail)

            logger.warning(f"Overwriting stored commit {commit.id[:12]}: {detail}")
            conn.execute("DELETE FROM commit_files WHERE id = ?", (commit.id,))
            conn.execute("DELETE FROM commits WHERE id = ?", (commit.id,))
            self._insert(conn, normalized)
            self._event(conn, run_id, commit.id, EVENT_OVERWRITTEN, detail)
            self.commits_overwritten += 1
            self.file_rows_written += len(normalized.files)
            return WriteOutcome.OVERWRITTEN

    def _insert(self, conn: sqlite3.Connection, normalized: NormalizedCommit) -> None:
        c = normalized.commit
        conn.execute(
            "INSERT INTO commits (id, summary, author_name, author_email, author_when) "
            "VALUES (?, ?, ?, ?, ?)",
            (c.id, c.summary, c.author_name, c.author_email, c.author_when)
        )
        conn.executemany(
            "INSERT INTO commit_files (id, name, added, deleted) VALUES (?, ?, ?, ?)",
            [(f.id, f.name, f.added, f.deleted) for f in normalized.files]
        )

    def _load(self, conn: sqlite3.Connection, commit_id: str) -> Optional[NormalizedCommit]:
        row = conn.execute(
            "SELECT id, summary, author_name, author_email, author_when "
            "FROM commits WHERE id = ?",
            (commit_id,)
        ).fetchone()
        if row is None:
            return None
        files = conn.execute(
            "SELECT id, name, added, deleted FROM commit_files WHERE id = ? ORDER BY name",
            (commit_id,)
        ).fetchall()
        return NormalizedCommit(
            commit=CommitRow(*row),
            files=tuple(CommitFileRow(*f) for f in files)
        )

    def get_commit(self, commit_id: str) -> Optional[NormalizedCommit]:
        """Load a stored commit with its file rows."""
        with self._lock:
            return self._load(self.conn, commit_id)

    def has_commit(self, commit_id: str) -> bool:
        with self._lock:
            row = self.conn.execute(
                "SELECT 1 FROM commits WHERE id = ?", (commit_id,)
            ).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def _event(
        self,
        conn: sqlite3.Connection,
        run_id: Optional[int],
        commit_id: str,
        kind: str,
        detail: str
    ) -> None:
        conn.execute(
            "INSERT INTO ingest_events (run_id, commit_id, kind, detail, recorded_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (run_id, commit_id, kind, detail, _now())
        )

    def record_skipped(self, skipped: SkippedCommit, run_id: Optional[int] = None) -> None:
        """Record a commit that could not be summarized."""
        with self._transaction() as conn:
            self._event(conn, run_id, skipped.id, EVENT_SKIPPED, f"{skipped.kind}: {skipped.reason}")

    def record_conflict(self, commit_id: str, detail: str, run_id: Optional[int] = None) -> None:
        """Record a rejected write conflict."""
        with self._transaction() as conn:
            self._event(conn, run_id, commit_id, EVENT_CONFLICT, detail)

    def skipped_ids(self) -> list[str]:
        """Commits skipped by earlier runs that have not been stored since."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT DISTINCT commit_id FROM ingest_events "
                "WHERE kind = ? AND commit_id NOT IN (SELECT id FROM commits) "
                "ORDER BY commit_id",
                (EVENT_SKIPPED,)
            ).fetchall()
        return [r[0] for r in rows]

    def events(self, run_id: Optional[int] = None) -> list[tuple[str, str, str]]:
        """(commit_id, kind, detail) audit events, optionally for one run."""
        query = "SELECT commit_id, kind, detail FROM ingest_events"
        params: tuple = ()
        if run_id is not None:
            query += " WHERE run_id = ?"
            params = (run_id,)
        with self._lock:
            return [tuple(r) for r in self.conn.execute(query + " ORDER BY event_id", params)]

    # ------------------------------------------------------------------
    # Runs and checkpoints
    # ------------------------------------------------------------------

    def begin_run(self, repo_path: str, head: Optional[str], resume_from: Optional[str]) -> int:
        """Insert a running ingest_runs row and return its id."""
        with self._transaction() as conn:
            cur = conn.execute(
                "INSERT INTO ingest_runs (repo_path, head, resume_from, started_at, status) "
                "VALUES (?, ?, ?, ?, ?)",
                (repo_path, head, resume_from, _now(), RUN_RUNNING)
            )
            return cur.lastrowid

    def finish_run(
        self,
        run_id: int,
        status: str,
        checkpoint: Optional[str],
        history_truncated: bool,
        ingested: int,
        unchanged: int,
        overwritten: int,
        skipped: int,
        conflicts: int
    ) -> None:
        """Close an ingest_runs row with its final counts."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE ingest_runs SET finished_at = ?, status = ?, checkpoint = ?, history_truncated = ?, "
                "ingested = ?, unchanged = ?, overwritten = ?, skipped = ?, conflicts = ? "
                "WHERE run_id = ?",
                (_now(), status, checkpoint, int(history_truncated), ingested, unchanged,
                 overwritten, skipped, conflicts, run_id)
            )

    def last_checkpoint(self, repo_path: Optional[str] = None) -> Optional[str]:
        """Checkpoint of the most recent completed run, optionally for one repository."""
        query = "SELECT checkpoint FROM ingest_runs WHERE status = ? AND checkpoint IS NOT NULL"
        params: tuple = (RUN_COMPLETED,)
        if repo_path is not None:
            query += " AND repo_path = ?"
            params += (repo_path,)
        with self._lock:
            row = self.conn.execute(query + " ORDER BY run_id DESC LIMIT 1", params).fetchone()
        return row[0] if row else None

    def recent_runs(self, limit: int = 10) -> list[dict]:
        """Most recent ingest_runs rows as dictionaries."""
        with self._lock:
            cur = self.conn.execute(
                "SELECT * FROM ingest_runs ORDER BY run_id DESC LIMIT ?", (limit,)
            )
            columns = [d[0] for d in cur.description]
            return [dict(zip(columns, row)) for row in cur.fetchall()]

    def get_stats(self) -> dict:
        """Get writer statistics and relation sizes."""
        with self._lock:
            commits = self.conn.execute("SELECT COUNT(*) FROM commits").fetchone()[0]
            files = self.conn.execute("SELECT COUNT(*) FROM commit_files").fetchone()[0]
        return {
            'commits_written': self.commits_written,
            'file_rows_written': self.file_rows_written,
            'commits_unchanged': self.commits_unchanged,
            'commits_overwritten': self.commits_overwritten,
            'commits_total': commits,
            'commit_files_total': files
        }

    def close(self) -> None:
        """Close the connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def _describe_difference(stored: NormalizedCommit, incoming: NormalizedCommit) -> str:
    """Short human-readable description of how two versions differ."""
    parts = []
    for field_name in ("summary", "author_name", "author_email", "author_when"):
        if getattr(stored.commit, field_name) != getattr(incoming.commit, field_name):
            parts.append(field_name)
    if stored.files != incoming.files:
        stored_names = {f.name for f in stored.files}
        incoming_names = {f.name for f in incoming.files}
        if stored_names != incoming_names:
            parts.append("file set")
        else:
            parts.append("line counts")
    return "stored content differs in " + ", ".join(parts)
