"""
The code sync job.

A job advances strictly forward through its phases::

    collect -> sync -> postProcess -> flushCache -> completed

``state.phase`` names the phase being run. Everything a later invocation
needs is kept on the ``JobState``, so a job interrupted by a long rate limit
(``RetryDeferredError``) or a crash is resumed from the phase it was in.
A job cannot be resumed during collect unless it was waiting for a rate
limit, in which case the collect starts over.
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from loguru import logger

from .collect import ChangeCollector
from .config import Config, ProjectConfig, SyncConfig
from .downstream import DownstreamClient
from .github_client import PERMISSION_ERROR, GitHubClient
from .job_store import JobStore
from .models import Change, ChangeEvent, ChangeType, JobState, Phase
from .postprocess import ConfigPostProcessor, EffectExecutor, EffectOutcome, SideEffect, plan_flush
from .resources import ResourceSyncer
from .retry import Ok, RequestBudget, RetryScheduler
from .storage import Bucket, create_bucket
from .utils import CodeSyncError, JobResumeError, RetryDeferredError, StatusCodeError, timed_operation

TOPIC = "code"

PHASE_ORDER = [Phase.COLLECT, Phase.SYNC, Phase.POST_PROCESS, Phase.FLUSH_CACHE, Phase.COMPLETED]

ALLOWED_TRANSITIONS: dict[Optional[Phase], set[Phase]] = {
    None: {Phase.COLLECT},
    Phase.COLLECT: {Phase.SYNC},
    Phase.SYNC: {Phase.POST_PROCESS},
    Phase.POST_PROCESS: {Phase.FLUSH_CACHE},
    Phase.FLUSH_CACHE: {Phase.COMPLETED},
    Phase.COMPLETED: set(),
}

# seconds between stop request lookups while a phase runs
STOP_CHECK_SECONDS = 5.0


def next_phase(phase: Optional[Phase]) -> Optional[Phase]:
    """Phase following ``phase``; None once completed."""
    if phase is None:
        return Phase.COLLECT
    index = PHASE_ORDER.index(phase)
    if index + 1 < len(PHASE_ORDER):
        return PHASE_ORDER[index + 1]
    return None


def job_name(now: Optional[datetime] = None) -> str:
    """``job-YYYY-MM-DD-HH-MM-SS-<8 hex>``"""
    now = now or datetime.now(timezone.utc)
    return f"job-{now:%Y-%m-%d-%H-%M-%S}-{uuid.uuid4().hex[:8]}"


def deployment_url(event: ChangeEvent) -> str:
    return f"https://{event.code_ref}--{event.code_repo}--{event.code_owner}.aem.page"


def new_job_state(
    event: ChangeEvent,
    changes: list[Change],
    user: Optional[str] = None,
    transient: bool = False,
) -> JobState:
    return JobState(
        topic=TOPIC,
        name=job_name(),
        data=event,
        changes=changes,
        create_time=datetime.now(timezone.utc).isoformat(),
        user=user,
        transient=transient,
    )


class CodeJob:
    """
    Runs one code sync job against its collaborators.

    Args:
        state: The job state; mutated in place.
        github: Client for the project's repository.
        code_bus / content_bus: Object storage.
        downstream: Purge, discovery and config services.
        store: Job persistence. Without it nothing is persisted.
        project: Project settings (header rules, default branch).
        settings: Concurrency and retry settings.
        sleep / clock: Injectable for tests.
    """

    def __init__(
        self,
        state: JobState,
        github: GitHubClient,
        code_bus: Bucket,
        content_bus: Bucket,
        downstream: DownstreamClient,
        store: Optional[JobStore] = None,
        project: Optional[ProjectConfig] = None,
        settings: Optional[SyncConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.state = state
        self.github = github
        self.downstream = downstream
        self.store = store
        self.settings = settings or SyncConfig()
        self._clock = clock
        self._last_stop_check = 0.0

        default_branch = project.default_branch if project else "main"
        self.retry = RetryScheduler(
            on_wait=self._on_wait,
            is_cancelled=lambda: self.check_stopped(force=True),
            poll_interval=self.settings.idle_poll_seconds,
            max_wait=self.settings.max_wait_seconds,
            sleep=sleep,
            clock=clock,
        )
        self.collector = ChangeCollector(github, code_bus, default_branch)
        self.syncer = ResourceSyncer(
            github,
            code_bus,
            max_workers=self.settings.max_workers,
            headers=project.headers if project else None,
            is_cancelled=self.check_stopped,
            on_progress=self.write_state_lazy,
            request_budget=RequestBudget(self.settings.requests_per_minute, sleep=sleep, clock=clock),
        )
        self.post_processor = ConfigPostProcessor(
            code_bus,
            content_bus,
            default_branch=default_branch,
            content_bus_id=project.content_bus_id if project else "",
        )
        self.executor = EffectExecutor(code_bus, content_bus, downstream)
        self.effect_outcomes: list[EffectOutcome] = []

    def __str__(self) -> str:
        return f"{self.state.topic}/{self.state.name}"

    def close(self) -> None:
        """Close the HTTP clients."""
        self.github.close()
        self.downstream.close()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def invoke(self) -> JobState:
        """
        Run the job and record its outcome.

        Errors raised by ``run`` are recorded on the state. A job deferred by
        a long rate limit stays active so the resume scheduler picks it up.
        """
        state = self.state
        if self.check_stopped(force=True) and state.phase is None:
            logger.info(f"job {self} stopped before it started.")
            self._stop()
            return state

        leased = self._acquire_lease()
        try:
            state.state = "running"
            state.start_time = datetime.now(timezone.utc).isoformat()
            state.stop_time = None
            self.write_state()
            logger.info(f"job {self} started.")

            try:
                self.run()
            except RetryDeferredError as e:
                logger.info(f"job {self} deferred: {e}")
                state.state = "created"
                self.write_state()
                return state
            except Exception as e:
                logger.warning(f"error during job execution: {e}")
                state.error = str(e)

            self._stop()
        finally:
            if leased:
                self.store.release_lease(state.data.code_prefix, state.name)
            logger.info(f"job {self} finalized.")
        return state

    def run(self) -> None:
        """Run the remaining phases. Fatal errors propagate."""
        state = self.state
        if state.phase == Phase.COLLECT:
            if not state.waiting:
                raise JobResumeError(
                    "job cannot be resumed during the collect phase. please provide a smaller input set."
                )
            state.phase = None
        state.waiting = 0

        try:
            self._run_phases()
        except RetryDeferredError:
            raise
        except Exception:
            self._finish_deployment()
            raise
        self._finish_deployment()

    def set_phase(self, phase: Phase) -> None:
        if phase not in ALLOWED_TRANSITIONS[self.state.phase]:
            current = self.state.phase.value if self.state.phase else "none"
            raise CodeSyncError(f"invalid phase transition: {current} -> {phase.value}")
        self.state.phase = phase
        logger.info(f"[code] job {self} entering phase {phase.value}")
        self.write_state()

    # =========================================================================
    # Phases
    # =========================================================================

    def _run_phases(self) -> None:
        state = self.state

        if state.phase is None:
            self._start_deployment()
            self.set_phase(Phase.COLLECT)
            strategy = self.retry.run_with_retry(lambda: self.collector.collect(state), "collect")
            if strategy is None:
                logger.info(f"job {self} cancelled during collect.")
                return
            state.progress.total = (
                sum(1 for c in state.changes if c.type != ChangeType.IGNORED.value)
                + len(state.resources)
            )
            state.progress.ignored = 0
            self.set_phase(next_phase(state.phase))

        if state.phase == Phase.SYNC:
            if self.check_stopped(force=True):
                logger.info(f"job {self} cancelled. skipping sync.")
                return
            done = self.retry.run_with_retry(lambda: self.syncer.sync(state), "sync")
            if not done:
                logger.info(f"job {self} cancelled during sync.")
                return
            state.progress.ignored = sum(1 for r in state.resources if r.skipped)
            self.set_phase(next_phase(state.phase))

        if state.phase == Phase.POST_PROCESS:
            with timed_operation(f"[code] post processing {state.data.code_prefix}"):
                self._execute(self.post_processor.plan(state))
            self.set_phase(next_phase(state.phase))

        if state.phase == Phase.FLUSH_CACHE:
            with timed_operation(f"[code] flushing cache for {state.data.code_prefix}"):
                self._execute(plan_flush(state))
            self.set_phase(next_phase(state.phase))

    def _execute(self, effects: list[SideEffect]) -> None:
        if not effects:
            return
        outcomes = self.executor.execute(self.state, effects)
        self.effect_outcomes.extend(outcomes)
        failed = [o for o in outcomes if not o.ok]
        if failed:
            logger.warning(f"[code] {len(failed)} of {len(outcomes)} side effects failed")

    # =========================================================================
    # Deployments
    # =========================================================================

    def _start_deployment(self) -> None:
        event = self.state.data
        if not event.deployment_allowed or event.deployment_ok:
            return
        if event.deployment_id:
            event.deployment_ok = self._update_deployment("in_progress")
        else:
            result = self.github.create_deployment(
                event.owner,
                event.repo,
                event.branch,
                environment=event.branch,
                description=f"code sync of {event.code_prefix}",
            )
            if isinstance(result, Ok) and result.value:
                event.deployment_id = result.value
                self._update_deployment("in_progress")
                event.deployment_ok = True
            else:
                self._log_deployment_error(result, "create")
                event.deployment_ok = False
        self.write_state()

    def _finish_deployment(self) -> None:
        event = self.state.data
        if not event.deployment_ok:
            return
        self._update_deployment("success" if self.state.phase == Phase.COMPLETED else "failure")

    def _update_deployment(self, deployment_state: str) -> bool:
        """False only if the integration lacks the deployment permission."""
        event = self.state.data
        result = self.github.update_deployment(
            event.owner,
            event.repo,
            event.deployment_id,
            deployment_state,
            environment_url=deployment_url(event),
        )
        if isinstance(result, Ok):
            return True
        return not self._log_deployment_error(result, f"update (state={deployment_state})")

    def _log_deployment_error(self, result, action: str) -> bool:
        """Log a failed deployment call. Returns True for permission errors."""
        event = self.state.data
        message = str(getattr(result, "error", None) or getattr(result, "message", ""))
        if PERMISSION_ERROR in message:
            logger.info(f"missing deployment permissions on {event.owner}/{event.repo}")
            return True
        logger.error(f"failed to {action} deployment on {event.owner}/{event.repo}: {message}")
        return False

    # =========================================================================
    # State handling
    # =========================================================================

    def check_stopped(self, force: bool = False) -> bool:
        """True if the job was cancelled or a stop was requested."""
        state = self.state
        if state.cancelled:
            return True
        if state.transient or self.store is None:
            return False
        now = self._clock()
        if not force and now - self._last_stop_check < STOP_CHECK_SECONDS:
            return False
        self._last_stop_check = now
        if self.store.is_stop_requested(state.topic, state.name):
            logger.info(f"job {self} is scheduled to be stopped.")
            state.cancelled = True
        return state.cancelled

    def write_state(self) -> None:
        if self.store is not None:
            self.store.save_state(self.state)

    def write_state_lazy(self) -> None:
        if self.store is not None:
            self.store.write_state_lazy(self.state)

    def _on_wait(self, remaining_ms: int) -> None:
        self.state.waiting = remaining_ms
        if remaining_ms == 0:
            self.write_state()
        else:
            self.write_state_lazy()

    def _acquire_lease(self) -> bool:
        state = self.state
        if self.store is None or state.transient or not self.settings.branch_lease:
            return False
        if not self.store.acquire_lease(state.data.code_prefix, state.name):
            holder = self.store.lease_holder(state.data.code_prefix)
            raise StatusCodeError(
                f"[{state.data.code_prefix}] branch is being synced by job {holder}.",
                409,
            )
        return True

    def _stop(self) -> None:
        state = self.state
        state.stop_time = datetime.now(timezone.utc).isoformat()
        state.state = "stopped"
        if self.store is not None:
            self.store.complete(state)
            self.store.clear_stop(state.topic, state.name)
        logger.info(f"job {self} stopped{' (cancelled)' if state.cancelled else ''}.")


# =============================================================================
# Factory
# =============================================================================

def create_code_job(
    config: Config,
    state: JobState,
    store: Optional[JobStore] = None,
    github: Optional[GitHubClient] = None,
    downstream: Optional[DownstreamClient] = None,
) -> CodeJob:
    """Wire a job for ``state`` from the configuration."""
    event = state.data
    project = config.get_project(event.org, event.site)
    if project is None:
        raise CodeSyncError(f"project not configured: {event.org}/{event.site}")

    if github is None:
        github = GitHubClient(
            token=config.github.token or None,
            base_url=config.github.base_url,
            raw_url=config.github.raw_url,
            timeout=config.github.timeout,
            user_agent=config.github.user_agent,
            default_wait=config.sync.rate_limit_wait_seconds,
        )
    code_bus = create_bucket(config.storage, "code", config.sync.storage_workers)
    content_bus = create_bucket(config.storage, "content", config.sync.storage_workers)
    return CodeJob(
        state,
        github=github,
        code_bus=code_bus,
        content_bus=content_bus,
        downstream=downstream or DownstreamClient(config.downstream),
        store=store,
        project=project,
        settings=config.sync,
    )
