"""
Turns incoming push/branch/tag notifications and manual sync requests into
a ``ChangeEvent`` plus its initial change list.
"""

from __future__ import annotations

import re
import time
import unicodedata
from typing import Any, Optional

from loguru import logger

from .config import ProjectConfig
from .github_client import GitHubClient
from .models import Change, ChangeEvent, ChangeType
from .utils import EventError, RateLimitError

_VALID_PATH = re.compile(r"^[/a-zA-Z0-9._-]*$")
_CHANGE_TYPES = {t.value for t in ChangeType}


def sanitize_name(name: Optional[str]) -> str:
    """
    Lowercase ``name``, strip diacritics and collapse every run of characters
    outside ``[a-z0-9]`` into a single dash.
    """
    if not name:
        return ""
    normalized = unicodedata.normalize("NFD", name.lower())
    stripped = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    return re.sub(r"[^a-z0-9]+", "-", stripped).strip("-")


def code_prefix(code_owner: str, code_repo: str, code_ref: str) -> str:
    return f"/{code_owner}/{code_repo}/{code_ref}/"


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() == "true"
    return bool(value)


def _parse_changes(raw_changes: Any) -> list[Change]:
    if not isinstance(raw_changes, list):
        raise EventError("changes must be a list", 400)
    changes = []
    for raw in raw_changes:
        if not isinstance(raw, dict) or not raw.get("path") or not raw.get("type"):
            raise EventError(f"invalid change: {raw!r}", 400)
        change_type = str(raw["type"]).lower()
        if change_type not in _CHANGE_TYPES:
            raise EventError(f"invalid change type: {raw['type']!r}", 400)
        changes.append(Change(
            path=str(raw["path"]).lstrip("/") or "*",
            type=change_type,
            commit=raw.get("commit"),
            content_type=raw.get("contentType"),
            time=raw.get("time"),
        ))
    return changes


def _manual_change(path: str, method: str) -> Change:
    path = path.strip() or "/*"
    if path.endswith("/*") and path != "/*":
        raise EventError("recursive updates are only supported for the root path.", 400)
    path = path.lstrip("/")
    if path != "*" and not _VALID_PATH.match(path):
        raise EventError(f"invalid path: {path}", 404)
    change_type = ChangeType.DELETED if method.upper() == "DELETE" else ChangeType.MODIFIED
    return Change(path=path, type=change_type.value)


def prepare_event(
    payload: dict[str, Any],
    project: ProjectConfig,
    method: str = "POST",
) -> tuple[ChangeEvent, list[Change]]:
    """
    Validate an event payload and resolve its code bus coordinates.

    ``payload`` carries ``branch`` (or ``ref``), optional ``tag``,
    ``baseRef``, ``installationId``, ``deploymentId`` and either a list of
    ``changes`` or a single manual ``path`` (``/*`` for the whole branch).
    The code owner/repo always come from the project configuration.
    """
    branch = payload.get("branch") or payload.get("ref")
    if not branch:
        raise EventError("malformed event: branch missing", 400)
    if not project.owner or not project.repo:
        raise EventError(f"project {project.name} has no github source", 400)

    code_ref = sanitize_name(branch)
    if not code_ref:
        raise EventError(f"malformed event: invalid branch {branch!r}", 400)

    if "changes" in payload:
        changes = _parse_changes(payload["changes"])
    else:
        changes = [_manual_change(payload.get("path", "/*"), method)]

    installation_id = payload.get("installationId", project.installation_id)
    event = ChangeEvent(
        owner=project.owner,
        repo=project.repo,
        ref=payload.get("ref") or branch,
        branch=branch,
        code_owner=project.code_owner,
        code_repo=project.code_repo,
        code_ref=code_ref,
        code_prefix=code_prefix(project.code_owner, project.code_repo, code_ref),
        org=project.org,
        site=project.site,
        tag=_as_bool(payload.get("tag", False)),
        base_ref=payload.get("baseRef"),
        installation_id=installation_id,
        deployment_id=payload.get("deploymentId"),
        deployment_allowed=bool(project.deployments and installation_id),
    )
    logger.info(
        f"[code] event for {event.owner}/{event.repo}/{branch} -> {event.code_prefix} "
        f"({len(changes)} changes)"
    )
    return event, changes


def ensure_rate_limit(github: GitHubClient) -> None:
    """Reject new jobs while the github budget is exhausted."""
    info = github.get_rate_limit()
    if info is None or info.remaining > 0:
        return
    wait = max(0, info.reset - int(time.time()))
    raise RateLimitError(
        f"github rate limit exhausted. resets in {wait}s (at {info.reset}).",
        float(info.reset),
    )
