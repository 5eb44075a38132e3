"""
SQLite persistence for code jobs.

A job's ``JobState`` is stored as JSON so that a later invocation (the
resume scheduler or the CLI) can pick it up where it stopped.
Tables:
  - jobs: (topic, name) -> state JSON, active flag, waiting deadline
  - job_stops: stop requests for active jobs
  - branch_leases: code prefix -> job holding the branch, expiry
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from .models import JobState


class JobStore:
    """
    SQLite-backed job store.

    Thread-safe: every operation opens its own connection.
    """

    def __init__(
        self,
        db_path: str | Path,
        save_stale_seconds: float = 3.0,
        lease_ttl_seconds: int = 900,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the job store.

        Args:
            db_path: Path to SQLite database file.
            save_stale_seconds: Minimum interval between lazy state writes.
            lease_ttl_seconds: Lifetime of a branch lease without renewal.
            clock: Injectable for tests.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.save_stale_seconds = save_stale_seconds
        self.lease_ttl_seconds = lease_ttl_seconds
        self._clock = clock
        self._last_save: dict[tuple[str, str], float] = {}
        self._lock = threading.Lock()

        logger.info(f"Initializing job store at {self.db_path}")
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    topic TEXT NOT NULL,
                    name TEXT NOT NULL,
                    state TEXT NOT NULL,
                    status TEXT NOT NULL,
                    code_prefix TEXT,
                    active INTEGER NOT NULL DEFAULT 1,
                    waiting_until REAL NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at REAL NOT NULL,
                    PRIMARY KEY (topic, name)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS job_stops (
                    topic TEXT NOT NULL,
                    name TEXT NOT NULL,
                    requested_at TEXT NOT NULL,
                    PRIMARY KEY (topic, name)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS branch_leases (
                    code_prefix TEXT PRIMARY KEY,
                    job_name TEXT NOT NULL,
                    expires_at REAL NOT NULL
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_active
                ON jobs(topic, active)
            """)

    # =========================================================================
    # Job state
    # =========================================================================

    def save_state(self, state: JobState) -> None:
        """Insert or update a job. Transient jobs are never persisted."""
        if state.transient:
            return
        now = self._clock()
        waiting_until = now + state.waiting / 1000 if state.waiting else 0
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO jobs (topic, name, state, status, code_prefix, active,
                                  waiting_until, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?)
                ON CONFLICT(topic, name) DO UPDATE SET
                    state = excluded.state,
                    status = excluded.status,
                    waiting_until = excluded.waiting_until,
                    updated_at = excluded.updated_at
            """, (
                state.topic,
                state.name,
                json.dumps(state.to_dict()),
                state.state,
                state.data.code_prefix,
                waiting_until,
                state.create_time or datetime.now(timezone.utc).isoformat(),
                now,
            ))
        with self._lock:
            self._last_save[(state.topic, state.name)] = now

    def write_state_lazy(self, state: JobState) -> bool:
        """Save unless the last save is younger than ``save_stale_seconds``."""
        with self._lock:
            last = self._last_save.get((state.topic, state.name), 0)
        if self._clock() - last < self.save_stale_seconds:
            return False
        self.save_state(state)
        return True

    def load_state(self, topic: str, name: str) -> Optional[JobState]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT state FROM jobs WHERE topic = ? AND name = ?",
                (topic, name),
            ).fetchone()
        if row is None:
            return None
        return JobState.from_dict(json.loads(row["state"]))

    def list_jobs(self, topic: str, include_history: bool = True) -> list[dict[str, Any]]:
        """Job summaries, newest first."""
        query = """
            SELECT name, status, code_prefix, active, waiting_until, created_at, state
            FROM jobs WHERE topic = ?
        """
        if not include_history:
            query += " AND active = 1"
        query += " ORDER BY created_at DESC"
        with self._get_connection() as conn:
            rows = conn.execute(query, (topic,)).fetchall()
        summaries = []
        for row in rows:
            state = json.loads(row["state"])
            summaries.append({
                "name": row["name"],
                "state": row["status"],
                "phase": state.get("phase"),
                "codePrefix": row["code_prefix"],
                "active": bool(row["active"]),
                "waitingUntil": row["waiting_until"] or None,
                "createTime": row["created_at"],
                "progress": state.get("progress", {}),
                "error": state.get("error"),
                "cancelled": state.get("cancelled", False),
            })
        return summaries

    def list_incomplete(self, topic: str, stale_after: Optional[float] = None) -> list[JobState]:
        """
        Active jobs that may be resumed now.

        A job qualifies when it is not running and its waiting deadline has
        passed, or when it claims to run but has not been saved for
        ``stale_after`` seconds.
        """
        now = self._clock()
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT state, status, updated_at FROM jobs
                WHERE topic = ? AND active = 1 AND waiting_until <= ?
                ORDER BY created_at
            """, (topic, now)).fetchall()
        jobs = []
        for row in rows:
            if row["status"] == "running":
                if stale_after is None or now - row["updated_at"] < stale_after:
                    continue
            jobs.append(JobState.from_dict(json.loads(row["state"])))
        return jobs

    def complete(self, state: JobState) -> None:
        """Move a stopped job to the history."""
        if state.transient:
            return
        self.save_state(state)
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE jobs SET active = 0, waiting_until = 0 WHERE topic = ? AND name = ?",
                (state.topic, state.name),
            )
        with self._lock:
            self._last_save.pop((state.topic, state.name), None)
        logger.info(f"moved job {state.topic}/{state.name} to history.")

    def prune_history(self, topic: str, days: int = 7) -> int:
        """Delete history entries older than ``days``. Returns the number deleted."""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM jobs WHERE topic = ? AND active = 0 AND created_at < ?",
                (topic, cutoff),
            )
            deleted = cursor.rowcount
        if deleted:
            logger.info(f"pruned {deleted} {topic} jobs older than {days} days")
        return deleted

    # =========================================================================
    # Stop requests
    # =========================================================================

    def request_stop(self, topic: str, name: str) -> bool:
        """Request cancellation of an active job. Returns False if there is none."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT active FROM jobs WHERE topic = ? AND name = ?",
                (topic, name),
            ).fetchone()
            if row is None or not row["active"]:
                return False
            conn.execute("""
                INSERT INTO job_stops (topic, name, requested_at) VALUES (?, ?, ?)
                ON CONFLICT(topic, name) DO NOTHING
            """, (topic, name, datetime.now(timezone.utc).isoformat()))
        logger.info(f"job {topic}/{name} is scheduled to be stopped.")
        return True

    def is_stop_requested(self, topic: str, name: str) -> bool:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM job_stops WHERE topic = ? AND name = ?",
                (topic, name),
            ).fetchone()
        return row is not None

    def clear_stop(self, topic: str, name: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "DELETE FROM job_stops WHERE topic = ? AND name = ?",
                (topic, name),
            )

    # =========================================================================
    # Branch leases
    # =========================================================================

    def acquire_lease(self, code_prefix: str, job_name: str) -> bool:
        """
        Take the lease of a branch for a job.

        Succeeds if the lease is free, expired, or already held by the job.
        """
        now = self._clock()
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO branch_leases (code_prefix, job_name, expires_at)
                VALUES (?, ?, ?)
                ON CONFLICT(code_prefix) DO UPDATE SET
                    job_name = excluded.job_name,
                    expires_at = excluded.expires_at
                WHERE branch_leases.expires_at < ? OR branch_leases.job_name = excluded.job_name
            """, (code_prefix, job_name, now + self.lease_ttl_seconds, now))
            row = conn.execute(
                "SELECT job_name FROM branch_leases WHERE code_prefix = ?",
                (code_prefix,),
            ).fetchone()
        return row is not None and row["job_name"] == job_name

    def release_lease(self, code_prefix: str, job_name: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "DELETE FROM branch_leases WHERE code_prefix = ? AND job_name = ?",
                (code_prefix, job_name),
            )

    def lease_holder(self, code_prefix: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT job_name FROM branch_leases WHERE code_prefix = ? AND expires_at >= ?",
                (code_prefix, self._clock()),
            ).fetchone()
        return row["job_name"] if row else None
