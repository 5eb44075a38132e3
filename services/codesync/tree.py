"""
Tree differ: full change set between a commit and the stored code bus.

Classification is structural only. A path in the tree and in storage is
``modified`` even if its content did not change; the resource syncer skips
unchanged files later by comparing last-modified metadata.
"""

from __future__ import annotations

from typing import Iterable

from loguru import logger

from .github_client import GitHubClient, GitTreeEntry
from .models import Change, ChangeEvent, ChangeType
from .retry import ApiResult, Fatal, Ok, RateLimited
from .storage import Bucket
from .utils import StatusCodeError

CONFIG_PATH = "helix-config.json"
SHA_PATH = ".sha"
INTERNAL_PATHS = (CONFIG_PATH, SHA_PATH)


def diff_tree(
    entries: Iterable[GitTreeEntry],
    commit: str,
    stored_paths: Iterable[str],
) -> list[Change]:
    """
    Classify tree blobs against stored paths.

    Returns the changes sorted by path; every path appears exactly once.
    """
    changes: dict[str, Change] = {}
    for entry in entries:
        if entry.type == "blob":
            changes[entry.path] = Change(path=entry.path, type=ChangeType.ADDED.value, commit=commit)

    for path in stored_paths:
        if path in INTERNAL_PATHS:
            continue
        change = changes.get(path)
        if change is not None:
            change.type = ChangeType.MODIFIED.value
        else:
            changes[path] = Change(path=path, type=ChangeType.DELETED.value)

    return [changes[path] for path in sorted(changes)]


class TreeDiffer:
    """Computes the change set for full tree syncs."""

    def __init__(self, github: GitHubClient, code_bus: Bucket):
        self.github = github
        self.code_bus = code_bus

    def compute_changes(self, event: ChangeEvent, sha: str) -> ApiResult:
        """
        Diff the tree at ``sha`` against the objects stored for the branch.

        Returns ``Ok(list[Change])``. A truncated tree is fatal.
        """
        ref = event.source_ref
        context = f"Unable to list tree for {event.code_owner}/{event.code_repo}/{ref}"
        logger.info(f"fetching tree for {event.owner}/{event.repo}/{ref} ({sha}) from github")

        result = self.github.get_tree(event.owner, event.repo, sha, branch=ref)
        if isinstance(result, RateLimited):
            return RateLimited(f"{context}: {result.message}", result.retry_at)
        if isinstance(result, Fatal):
            status = getattr(result.error, "status", 500)
            logger.error(f"{context}: {result.error}")
            return Fatal(StatusCodeError(f"{context}: {result.error}", status))

        tree = result.value
        if tree.truncated:
            logger.error(f"{context}: tree too large")
            return Fatal(StatusCodeError(f"{context}: tree too large to sync. rejecting truncated result.", 500))

        logger.info(f"fetching code-bus list from {event.owner}/{event.repo}/{event.code_ref}")
        stored = self.code_bus.list(f"{event.code_owner}/{event.code_repo}/{event.code_ref}/")
        changes = diff_tree(tree.entries, sha, [obj.path for obj in stored])

        counts = {t.value: 0 for t in ChangeType}
        for change in changes:
            counts[change.type] += 1
        deleted = [c.path for c in changes if c.type == ChangeType.DELETED.value]
        for path in deleted[:10]:
            logger.info(f"code-bus file missing in github. marking as deleted: {event.owner}/{event.repo}/{ref}/{path}")
        logger.info(
            f"tree events for {event.owner}/{event.repo}/{ref}. "
            f"added:{counts['added']}, modified:{counts['modified']}, deleted:{counts['deleted']}"
        )
        return Ok(changes)
