"""
Data model of a code sync job.

Everything that survives between invocations lives on ``JobState`` and is
serialized to JSON with camelCase keys, the format the admin API exposes.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Optional


def _camel(name: str) -> str:
    head, *tail = name.split("_")
    return head + "".join(part.title() for part in tail)


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


class _Serializable:
    """Flat dataclass <-> camelCase dict conversion. None values are omitted."""

    def to_dict(self) -> dict[str, Any]:
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, Enum):
                value = value.value
            result[_camel(f.name)] = value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        names = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in (data or {}).items():
            name = _snake(key)
            if name in names:
                kwargs[name] = value
        return cls(**kwargs)


class ChangeType(str, Enum):
    """Classification of a path in a change set."""
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    IGNORED = "ignored"


class Phase(str, Enum):
    """Phases of a code job, in execution order."""
    COLLECT = "collect"
    SYNC = "sync"
    POST_PROCESS = "postProcess"
    FLUSH_CACHE = "flushCache"
    COMPLETED = "completed"


@dataclass
class Change(_Serializable):
    """One line of a change set."""
    path: str
    type: str
    commit: Optional[str] = None
    content_type: Optional[str] = None
    # filled in during sync
    last_modified: Optional[str] = None
    content_length: Optional[int] = None
    time: Optional[str] = None

    @property
    def is_removal(self) -> bool:
        return self.type in (ChangeType.DELETED.value, ChangeType.IGNORED.value)


@dataclass
class Resource(_Serializable):
    """Outcome of synchronizing one file."""
    resource_path: str
    status: int = 200
    content_length: Optional[int] = None
    content_type: Optional[str] = None
    last_modified: Optional[str] = None
    deleted: Optional[bool] = None
    skipped: Optional[bool] = None
    error: Optional[str] = None

    @classmethod
    def from_change(
        cls,
        change: Change,
        status: int = 200,
        error: Optional[str] = None,
        last_modified: Optional[str] = None,
    ) -> "Resource":
        resource = cls(resource_path=f"/{change.path}", status=status, error=error)
        if change.type == ChangeType.DELETED.value:
            resource.deleted = True
        else:
            resource.last_modified = change.last_modified or last_modified
            resource.content_type = change.content_type
        resource.content_length = change.content_length
        return resource

    @property
    def key(self) -> str:
        """Path relative to the branch prefix."""
        return self.resource_path[1:]


@dataclass
class RateLimitInfo(_Serializable):
    """Snapshot of the GitHub core rate limit."""
    limit: int = 0
    remaining: int = 0
    reset: int = 0  # epoch seconds
    used: int = 0


@dataclass
class Progress(_Serializable):
    total: int = 0
    processed: int = 0
    failed: int = 0
    ignored: int = 0


@dataclass
class ChangeEvent(_Serializable):
    """Coordinates and bookkeeping of the event a job was created for."""
    owner: str
    repo: str
    ref: str
    branch: str
    code_owner: str
    code_repo: str
    code_ref: str
    code_prefix: str
    org: str = ""
    site: str = ""
    tag: bool = False
    sha: Optional[str] = None
    base_ref: Optional[str] = None
    installation_id: Optional[int] = None
    deployment_id: Optional[int] = None
    deployment_allowed: bool = False
    deployment_ok: bool = False
    delete_tree: bool = False
    tree_sync_reason: Optional[str] = None
    github_rate_limit: Optional[dict[str, Any]] = None

    @property
    def source_ref(self) -> str:
        return self.branch or self.ref

    @property
    def rro(self) -> str:
        """``{ref}--{repo}--{owner}`` prefix used by code surrogate keys."""
        return f"{self.code_ref}--{self.code_repo}--{self.code_owner}"


@dataclass
class JobState:
    """Persistent state of a code job."""
    topic: str
    name: str
    data: ChangeEvent
    state: str = "created"
    phase: Optional[Phase] = None
    changes: list[Change] = field(default_factory=list)
    resources: list[Resource] = field(default_factory=list)
    progress: Progress = field(default_factory=Progress)
    cancelled: bool = False
    waiting: int = 0  # remaining retry wait in ms
    error: Optional[str] = None
    create_time: Optional[str] = None
    start_time: Optional[str] = None
    stop_time: Optional[str] = None
    user: Optional[str] = None
    transient: bool = False

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "topic": self.topic,
            "name": self.name,
            "state": self.state,
            "data": self.data.to_dict(),
            "changes": [change.to_dict() for change in self.changes],
            "resources": [resource.to_dict() for resource in self.resources],
            "progress": self.progress.to_dict(),
            "cancelled": self.cancelled,
            "waiting": self.waiting,
            "transient": self.transient,
        }
        if self.phase is not None:
            result["phase"] = self.phase.value
        for key in ("error", "create_time", "start_time", "stop_time", "user"):
            value = getattr(self, key)
            if value is not None:
                result[_camel(key)] = value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobState":
        phase = data.get("phase")
        return cls(
            topic=data["topic"],
            name=data["name"],
            state=data.get("state", "created"),
            phase=Phase(phase) if phase else None,
            data=ChangeEvent.from_dict(data.get("data", {})),
            changes=[Change.from_dict(c) for c in data.get("changes", [])],
            resources=[Resource.from_dict(r) for r in data.get("resources", [])],
            progress=Progress.from_dict(data.get("progress", {})),
            cancelled=data.get("cancelled", False),
            waiting=data.get("waiting", 0),
            error=data.get("error"),
            create_time=data.get("createTime"),
            start_time=data.get("startTime"),
            stop_time=data.get("stopTime"),
            user=data.get("user"),
            transient=data.get("transient", False),
        )
