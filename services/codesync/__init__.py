"""
Code Bus Synchronization Service

Mirrors the file tree of a GitHub repository into the object storage code
bus that serves a published site, driven by push, branch and tag events.

Features:
- Incremental, copy-from-base-branch and full tree-walk collection
- Rate limit handling with idle waits and resumable jobs
- Config rebuild side effects (head.html, fstab.yaml, query/sitemap config)
- Cache purging of changed code paths
"""

from .config import (
    Config,
    ProjectConfig,
    GitHubConfig,
    StorageConfig,
    SyncConfig,
    DownstreamConfig,
    JobsConfig,
    SchedulerConfig,
)
from .models import (
    Change,
    ChangeEvent,
    ChangeType,
    JobState,
    Phase,
    Progress,
    RateLimitInfo,
    Resource,
)
from .storage import Bucket, FileSystemBucket, ObjectInfo, S3Bucket, create_bucket
from .retry import Ok, RateLimited, Fatal, RequestBudget, RetryScheduler, compute_retry_at
from .github_client import GitHubClient, GitTree, GitTreeEntry, CommitInfo
from .tree import TreeDiffer, diff_tree
from .collect import ChangeCollector, CollectStrategy, IgnoreRules, select_strategy
from .resources import ResourceSyncer, content_type_for, is_compressible
from .postprocess import ConfigPostProcessor, EffectExecutor, parse_mount_table, plan_flush
from .downstream import DownstreamClient
from .events import prepare_event, sanitize_name, ensure_rate_limit
from .job_store import JobStore
from .job import CodeJob, create_code_job, new_job_state, next_phase
from .scheduler import JobResumeScheduler, create_scheduler
from .utils import (
    setup_logging,
    timed_operation,
    compute_surrogate_key,
    CodeSyncError,
    StatusCodeError,
    RateLimitError,
    EventError,
    JobResumeError,
    RetryDeferredError,
    StorageError,
    ConfigError,
)

__all__ = [
    # Config
    "Config",
    "ProjectConfig",
    "GitHubConfig",
    "StorageConfig",
    "SyncConfig",
    "DownstreamConfig",
    "JobsConfig",
    "SchedulerConfig",
    # Models
    "Change",
    "ChangeEvent",
    "ChangeType",
    "JobState",
    "Phase",
    "Progress",
    "RateLimitInfo",
    "Resource",
    # Storage
    "Bucket",
    "FileSystemBucket",
    "S3Bucket",
    "create_bucket",
    "ObjectInfo",
    # Retry
    "Ok",
    "RateLimited",
    "Fatal",
    "RequestBudget",
    "RetryScheduler",
    "compute_retry_at",
    # GitHub
    "GitHubClient",
    "GitTree",
    "GitTreeEntry",
    "CommitInfo",
    # Phases
    "TreeDiffer",
    "diff_tree",
    "ChangeCollector",
    "CollectStrategy",
    "IgnoreRules",
    "select_strategy",
    "ResourceSyncer",
    "content_type_for",
    "is_compressible",
    "ConfigPostProcessor",
    "EffectExecutor",
    "parse_mount_table",
    "plan_flush",
    "DownstreamClient",
    # Jobs
    "prepare_event",
    "sanitize_name",
    "ensure_rate_limit",
    "JobStore",
    "CodeJob",
    "create_code_job",
    "new_job_state",
    "next_phase",
    "JobResumeScheduler",
    "create_scheduler",
    # Utils
    "setup_logging",
    "timed_operation",
    "compute_surrogate_key",
    "CodeSyncError",
    "StatusCodeError",
    "RateLimitError",
    "EventError",
    "JobResumeError",
    "RetryDeferredError",
    "StorageError",
    "ConfigError",
]
