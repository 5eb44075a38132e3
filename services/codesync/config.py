"""
Configuration management for the code bus sync service.

Loads and validates settings from sync_config.yaml with environment variable overrides.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml
from loguru import logger


@dataclass
class ProjectConfig:
    """Configuration for a single project (org/site) mirrored into the code bus."""
    org: str
    site: str
    source_url: str  # https://github.com/{owner}/{repo}
    code_owner: str = ""
    code_repo: str = ""
    content_bus_id: str = ""
    default_branch: str = "main"
    installation_id: int | None = None
    deployments: bool = False
    headers: dict[str, dict[str, str]] = field(default_factory=dict)

    def __post_init__(self):
        if not self.code_owner:
            self.code_owner = self.org
        if not self.code_repo:
            self.code_repo = self.site

    @property
    def name(self) -> str:
        return f"{self.org}/{self.site}"

    @property
    def owner(self) -> str:
        return self._source_parts()[0]

    @property
    def repo(self) -> str:
        return self._source_parts()[1]

    def _source_parts(self) -> tuple[str, str]:
        parts = urlparse(self.source_url).path.strip("/").split("/")
        if len(parts) < 2:
            return "", ""
        repo = parts[1]
        if repo.endswith(".git"):
            repo = repo[:-4]
        return parts[0], repo


@dataclass
class GitHubConfig:
    """GitHub API endpoints and credentials."""
    base_url: str = "https://api.github.com"
    raw_url: str = "https://raw.githubusercontent.com"
    token: str = ""
    timeout: float = 20.0
    user_agent: str = "codesync/1.0"


@dataclass
class StorageConfig:
    """Object storage locations for the code bus and content bus."""
    backend: str = "filesystem"  # filesystem | s3
    code_bus_path: str = "./data/code-bus"
    content_bus_path: str = "./data/content-bus"
    # s3 backend
    code_bus_bucket: str = ""
    content_bus_bucket: str = ""
    region: str = ""
    endpoint_url: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    session_token: str = ""


@dataclass
class SyncConfig:
    """Concurrency and rate-limit retry settings."""
    max_workers: int = 12  # github-bound work
    storage_workers: int = 50  # storage-only work
    rate_limit_wait_seconds: int = 60
    max_wait_seconds: int = 0  # 0 = wait as long as github asks
    idle_poll_seconds: float = 2.0
    save_stale_seconds: float = 3.0
    branch_lease: bool = True
    lease_ttl_seconds: int = 900
    requests_per_minute: int = 900  # 0 = unthrottled


@dataclass
class DownstreamConfig:
    """Endpoints of the services notified after a sync."""
    purge_url: str = ""
    discovery_url: str = ""
    content_config_url: str = ""
    mount_deploy_url: str = ""
    token: str = ""
    timeout: float = 10.0


@dataclass
class JobsConfig:
    """Job persistence settings."""
    path: str = "./cache/codesync-jobs.db"
    history_days: int = 7


@dataclass
class SchedulerConfig:
    """Background resume scheduler settings."""
    enabled: bool = True
    poll_interval: int = 30


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    file: str = "./logs/codesync.log"
    max_size_mb: int = 50
    backup_count: int = 5


@dataclass
class Config:
    """
    Main configuration container.

    Loads from sync_config.yaml with optional environment variable overrides.
    """
    projects: list[ProjectConfig] = field(default_factory=list)
    github: GitHubConfig = field(default_factory=GitHubConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    downstream: DownstreamConfig = field(default_factory=DownstreamConfig)
    jobs: JobsConfig = field(default_factory=JobsConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> "Config":
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to sync_config.yaml. If None, uses default locations.

        Returns:
            Config instance with loaded settings.
        """
        if config_path is None:
            # Try default locations
            candidates = [
                Path("sync_config.yaml"),
                Path(__file__).parent.parent.parent / "sync_config.yaml",
                Path("/etc/codesync/sync_config.yaml"),
            ]
            for candidate in candidates:
                if candidate.exists():
                    config_path = candidate
                    break
            else:
                raise FileNotFoundError(
                    "Config file not found. Tried: " + ", ".join(str(c) for c in candidates)
                )

        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        logger.info(f"Loading config from {config_path}")

        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}

        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create Config from dictionary."""
        config = cls()

        if "projects" in data:
            config.projects = [
                ProjectConfig(**project) for project in data["projects"] or []
            ]

        if "github" in data:
            gh = data["github"]
            config.github = GitHubConfig(
                base_url=gh.get("base_url", config.github.base_url),
                raw_url=gh.get("raw_url", config.github.raw_url),
                token=gh.get("token", config.github.token),
                timeout=gh.get("timeout", config.github.timeout),
                user_agent=gh.get("user_agent", config.github.user_agent),
            )

        if "storage" in data:
            st = data["storage"]
            config.storage = StorageConfig(
                backend=st.get("backend", config.storage.backend),
                code_bus_path=st.get("code_bus_path", config.storage.code_bus_path),
                content_bus_path=st.get("content_bus_path", config.storage.content_bus_path),
                code_bus_bucket=st.get("code_bus_bucket", config.storage.code_bus_bucket),
                content_bus_bucket=st.get("content_bus_bucket", config.storage.content_bus_bucket),
                region=st.get("region", config.storage.region),
                endpoint_url=st.get("endpoint_url", config.storage.endpoint_url),
                access_key_id=st.get("access_key_id", config.storage.access_key_id),
                secret_access_key=st.get("secret_access_key", config.storage.secret_access_key),
                session_token=st.get("session_token", config.storage.session_token),
            )

        # Parse sync retry settings
        if "sync" in data:
            sync_cfg = data["sync"]
            config.sync = SyncConfig(
                max_workers=sync_cfg.get("max_workers", config.sync.max_workers),
                storage_workers=sync_cfg.get("storage_workers", config.sync.storage_workers),
                rate_limit_wait_seconds=sync_cfg.get("rate_limit_wait_seconds", config.sync.rate_limit_wait_seconds),
                max_wait_seconds=sync_cfg.get("max_wait_seconds", config.sync.max_wait_seconds),
                idle_poll_seconds=sync_cfg.get("idle_poll_seconds", config.sync.idle_poll_seconds),
                save_stale_seconds=sync_cfg.get("save_stale_seconds", config.sync.save_stale_seconds),
                branch_lease=sync_cfg.get("branch_lease", config.sync.branch_lease),
                lease_ttl_seconds=sync_cfg.get("lease_ttl_seconds", config.sync.lease_ttl_seconds),
                requests_per_minute=sync_cfg.get("requests_per_minute", config.sync.requests_per_minute),
            )

        if "downstream" in data:
            ds = data["downstream"]
            config.downstream = DownstreamConfig(
                purge_url=ds.get("purge_url", config.downstream.purge_url),
                discovery_url=ds.get("discovery_url", config.downstream.discovery_url),
                content_config_url=ds.get("content_config_url", config.downstream.content_config_url),
                mount_deploy_url=ds.get("mount_deploy_url", config.downstream.mount_deploy_url),
                token=ds.get("token", config.downstream.token),
                timeout=ds.get("timeout", config.downstream.timeout),
            )

        if "jobs" in data:
            jobs = data["jobs"]
            config.jobs = JobsConfig(
                path=jobs.get("path", config.jobs.path),
                history_days=jobs.get("history_days", config.jobs.history_days),
            )

        if "scheduler" in data:
            sched = data["scheduler"]
            config.scheduler = SchedulerConfig(
                enabled=sched.get("enabled", config.scheduler.enabled),
                poll_interval=sched.get("poll_interval", config.scheduler.poll_interval),
            )

        # Parse logging settings
        if "logging" in data:
            log_cfg = data["logging"]
            config.logging = LoggingConfig(
                level=log_cfg.get("level", config.logging.level),
                file=log_cfg.get("file", config.logging.file),
                max_size_mb=log_cfg.get("max_size_mb", config.logging.max_size_mb),
                backup_count=log_cfg.get("backup_count", config.logging.backup_count),
            )

        # Apply environment variable overrides
        config._apply_env_overrides()

        return config

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        if os.getenv("GITHUB_TOKEN"):
            self.github.token = os.getenv("GITHUB_TOKEN")
        if os.getenv("GH_BASE_URL"):
            self.github.base_url = os.getenv("GH_BASE_URL")
        if os.getenv("GH_RAW_URL"):
            self.github.raw_url = os.getenv("GH_RAW_URL")

        if os.getenv("CODESYNC_CODE_BUS"):
            self.storage.code_bus_path = os.getenv("CODESYNC_CODE_BUS")
        if os.getenv("CODESYNC_STORAGE_BACKEND"):
            self.storage.backend = os.getenv("CODESYNC_STORAGE_BACKEND")
        if os.getenv("CODESYNC_CONTENT_BUS"):
            self.storage.content_bus_path = os.getenv("CODESYNC_CONTENT_BUS")
        if os.getenv("CODESYNC_CODE_BUS_BUCKET"):
            self.storage.code_bus_bucket = os.getenv("CODESYNC_CODE_BUS_BUCKET")
        if os.getenv("CODESYNC_CONTENT_BUS_BUCKET"):
            self.storage.content_bus_bucket = os.getenv("CODESYNC_CONTENT_BUS_BUCKET")
        if os.getenv("AWS_ENDPOINT_URL"):
            self.storage.endpoint_url = os.getenv("AWS_ENDPOINT_URL")
        if os.getenv("CODESYNC_JOBS_DB"):
            self.jobs.path = os.getenv("CODESYNC_JOBS_DB")

        if os.getenv("CODESYNC_PURGE_URL"):
            self.downstream.purge_url = os.getenv("CODESYNC_PURGE_URL")
        if os.getenv("CODESYNC_PURGE_TOKEN"):
            self.downstream.token = os.getenv("CODESYNC_PURGE_TOKEN")

    def get_project(self, org: str, site: str) -> ProjectConfig | None:
        """Get a project configuration by org and site."""
        for project in self.projects:
            if project.org == org and project.site == site:
                return project
        return None

    def get_project_by_name(self, name: str) -> ProjectConfig | None:
        """Get a project configuration by its ``org/site`` name."""
        org, _, site = name.partition("/")
        return self.get_project(org, site)

    def validate(self) -> list[str]:
        """
        Validate configuration and return list of errors.
        Empty list means configuration is valid.
        """
        errors = []

        if not self.projects:
            errors.append("No projects configured")

        seen_names = set()
        for project in self.projects:
            if project.name in seen_names:
                errors.append(f"Duplicate project: {project.name}")
            seen_names.add(project.name)

            if not project.owner or not project.repo:
                errors.append(f"Project '{project.name}' has invalid source_url: {project.source_url!r}")
            for pattern, headers in project.headers.items():
                if not isinstance(headers, dict):
                    errors.append(f"Project '{project.name}' headers for '{pattern}' must be a mapping")

        if self.sync.max_workers < 1:
            errors.append("sync.max_workers must be at least 1")
        if self.sync.storage_workers < 1:
            errors.append("sync.storage_workers must be at least 1")
        if self.sync.rate_limit_wait_seconds < 1:
            errors.append("sync.rate_limit_wait_seconds must be positive")
        if self.sync.max_wait_seconds < 0:
            errors.append("sync.max_wait_seconds cannot be negative")
        if self.sync.requests_per_minute < 0:
            errors.append("sync.requests_per_minute cannot be negative")

        if self.storage.backend not in ("filesystem", "s3"):
            errors.append(f"Unknown storage.backend: {self.storage.backend!r}")
        elif self.storage.backend == "s3":
            if not self.storage.code_bus_bucket or not self.storage.content_bus_bucket:
                errors.append("storage.code_bus_bucket and storage.content_bus_bucket are required for the s3 backend")

        return errors
