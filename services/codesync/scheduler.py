"""
Background scheduler resuming deferred code jobs.

Uses APScheduler to poll the job store for active jobs whose rate-limit
wait has passed (or whose runner disappeared) and re-invokes them. History
older than ``jobs.history_days`` is pruned periodically.
"""

from __future__ import annotations

import signal
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from .config import Config
from .job import TOPIC, CodeJob, create_code_job
from .job_store import JobStore
from .models import JobState
from .utils import StatusCodeError

RESUME_JOB_ID = "resume-code-jobs"
PRUNE_JOB_ID = "prune-job-history"


@dataclass
class ResumeStatus:
    """Counters of the resume loop."""
    last_poll: Optional[datetime] = None
    resumed: int = 0
    completed: int = 0
    deferred: int = 0
    error_count: int = 0


class JobResumeScheduler:
    """
    Periodically resumes incomplete code jobs.

    Only one poll runs at a time; a job already being resumed by this
    process is not picked up twice.
    """

    def __init__(
        self,
        config: Config,
        store: Optional[JobStore] = None,
        job_factory: Callable[[Config, JobState, JobStore], CodeJob] = create_code_job,
    ):
        self.config = config
        self.store = store or JobStore(
            config.jobs.path,
            save_stale_seconds=config.sync.save_stale_seconds,
            lease_ttl_seconds=config.sync.lease_ttl_seconds,
        )
        self.job_factory = job_factory

        self._scheduler = BackgroundScheduler(
            timezone="UTC",
            job_defaults={
                "max_instances": 1,  # Only one poll at a time
                "misfire_grace_time": 60,
            },
        )
        self.status = ResumeStatus()
        self._active: set[str] = set()
        self._lock = threading.Lock()
        self._running = False

        logger.info("JobResumeScheduler initialized")

    def start(self) -> None:
        """Start the scheduler."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        logger.info("Starting resume scheduler")
        self._scheduler.add_job(
            self.poll,
            trigger=IntervalTrigger(seconds=self.config.scheduler.poll_interval),
            id=RESUME_JOB_ID,
            name="Resume code jobs",
            replace_existing=True,
        )
        self._scheduler.add_job(
            self.prune,
            trigger=IntervalTrigger(hours=6),
            id=PRUNE_JOB_ID,
            name="Prune job history",
            replace_existing=True,
        )
        self._scheduler.start()
        self._setup_signal_handlers()
        self._running = True
        logger.info(f"Scheduler started (poll interval: {self.config.scheduler.poll_interval}s)")

    def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return
        logger.info("Stopping scheduler")
        self._running = False
        self._scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped")

    def wait(self) -> None:
        """Block until scheduler is stopped."""
        try:
            while self._running:
                time.sleep(1)
        except KeyboardInterrupt:
            self.stop()

    def get_status(self) -> dict[str, Any]:
        job = self._scheduler.get_job(RESUME_JOB_ID)
        return {
            "is_scheduled": job is not None,
            "next_run": str(job.next_run_time) if job and job.next_run_time else None,
            "last_poll": str(self.status.last_poll) if self.status.last_poll else None,
            "resumed": self.status.resumed,
            "completed": self.status.completed,
            "deferred": self.status.deferred,
            "error_count": self.status.error_count,
            "active": sorted(self._active),
        }

    # =========================================================================
    # Scheduled work
    # =========================================================================

    def poll(self) -> int:
        """Resume every job that is due. Returns the number of jobs resumed."""
        self.status.last_poll = datetime.now(timezone.utc)
        try:
            due = self.store.list_incomplete(TOPIC, stale_after=self.config.sync.lease_ttl_seconds)
        except Exception as e:
            self.status.error_count += 1
            logger.error(f"Unable to list incomplete jobs: {e}")
            return 0

        resumed = 0
        for state in due:
            if self.resume(state) is not None:
                resumed += 1
        if resumed:
            logger.info(f"Resumed {resumed} code jobs")
        return resumed

    def resume(self, state: JobState) -> Optional[JobState]:
        """Invoke one job. Returns its final state, or None if it did not run."""
        with self._lock:
            if state.name in self._active:
                return None
            self._active.add(state.name)
        try:
            logger.info(f"Resuming job {state.topic}/{state.name} (phase: {state.phase.value if state.phase else 'none'})")
            job = self.job_factory(self.config, state, self.store)
            try:
                result = job.invoke()
            finally:
                job.close()
            self.status.resumed += 1
            if result.state == "stopped":
                self.status.completed += 1
            else:
                self.status.deferred += 1
            return result
        except StatusCodeError as e:
            if e.status == 409:
                logger.info(f"Job {state.name} not resumed: {e}")
            else:
                self.status.error_count += 1
                logger.error(f"Job {state.name} could not be resumed: {e}")
            return None
        except Exception as e:
            self.status.error_count += 1
            logger.error(f"Job {state.name} could not be resumed: {e}")
            return None
        finally:
            with self._lock:
                self._active.discard(state.name)

    def prune(self) -> int:
        try:
            return self.store.prune_history(TOPIC, self.config.jobs.history_days)
        except Exception as e:
            logger.error(f"Failed to prune job history: {e}")
            return 0

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down")
            self.stop()

        signal.signal(signal.SIGINT, handler)
        signal.signal(signal.SIGTERM, handler)


def create_scheduler(config_path: Optional[str | Path] = None) -> JobResumeScheduler:
    """
    Create and configure the resume scheduler.

    Args:
        config_path: Path to sync_config.yaml.

    Returns:
        Configured JobResumeScheduler instance.
    """
    config = Config.load(config_path)

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Config error: {error}")
        raise ValueError(f"Invalid configuration: {errors}")

    return JobResumeScheduler(config)
