"""
Collect phase: decide how a branch is synchronized and build its change set.

The strategy is selected once from the event:

  - DELETE_ALL      the branch was deleted; the whole prefix goes
  - INCREMENTAL     ordinary push; changes come from the event payload
  - COPY_SIBLING    new branch with a synced base branch; copy its objects
  - FULL_TREE_WALK  anything else; diff the full tree against storage
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatchcase
from typing import Callable, Optional

from loguru import logger

from .events import sanitize_name
from .github_client import GitHubClient
from .models import Change, ChangeType, JobState, Resource
from .resources import content_type_for
from .retry import ApiResult, Fatal, Ok, RateLimited
from .storage import Bucket
from .tree import CONFIG_PATH, SHA_PATH, TreeDiffer
from .utils import StatusCodeError

IGNORE_FILE = ".hlxignore"
BRANCH_PATH = "*"

_VALID_PATH = re.compile(r"^[/a-zA-Z0-9._-]*$")


def is_valid_path(path: str) -> bool:
    """Paths served by the delivery network are limited to these characters."""
    return bool(_VALID_PATH.match(path))


# =============================================================================
# Ignore rules
# =============================================================================

@dataclass
class IgnoreRule:
    pattern: str
    negated: bool = False
    dir_only: bool = False
    anchored: bool = False
    # matches below any folder (leading "**/")
    anywhere: bool = False

    def matches(self, parts: list[str], is_dir: bool) -> bool:
        if self.dir_only and not is_dir:
            return False
        if self.anywhere and self.anchored:
            return any(fnmatchcase("/".join(parts[start:]), self.pattern) for start in range(len(parts)))
        if self.anchored:
            return fnmatchcase("/".join(parts), self.pattern)
        return fnmatchcase(parts[-1], self.pattern)


@dataclass
class IgnoreRules:
    """gitignore style rules read from ``.hlxignore``."""
    rules: list[IgnoreRule] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str) -> "IgnoreRules":
        rules = []
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            rule = IgnoreRule(pattern=line)
            if line.startswith("!"):
                rule.negated = True
                line = line[1:]
            if line.endswith("/"):
                rule.dir_only = True
                line = line.rstrip("/")
            if line.startswith("**/"):
                rule.anywhere = True
                line = line[3:]
            if line.startswith("/") and not rule.anywhere:
                rule.anchored = True
                line = line[1:]
            elif "/" in line:
                rule.anchored = True
            rule.pattern = line
            if line:
                rules.append(rule)
        return cls(rules)

    def ignores(self, path: str) -> bool:
        """True if ``path`` or one of its parent folders is ignored."""
        parts = path.strip("/").split("/")
        for end in range(1, len(parts) + 1):
            prefix = parts[:end]
            is_dir = end < len(parts)
            ignored = False
            for rule in self.rules:
                if rule.matches(prefix, is_dir):
                    ignored = not rule.negated
            if ignored:
                return True
        return False


def make_path_filter(ignore: IgnoreRules) -> Callable[[str], bool]:
    """Return a predicate telling whether a repository path may be synced."""
    def path_filter(path: str) -> bool:
        if not path:
            return False
        if path in (CONFIG_PATH, SHA_PATH):
            # internal objects are never overwritten from github
            return False
        if path.startswith("node_modules/") or "/node_modules/" in path:
            return False
        if not is_valid_path(path):
            logger.info(f"[code] ignoring path with unsupported characters: {path}")
            return False
        return not ignore.ignores(path)

    return path_filter


# =============================================================================
# Strategy selection
# =============================================================================

class CollectStrategy(str, Enum):
    INCREMENTAL = "incremental"
    FULL_TREE_WALK = "fullTreeWalk"
    COPY_SIBLING = "copySibling"
    DELETE_ALL = "deleteAll"


@dataclass
class StrategyDecision:
    strategy: CollectStrategy
    reason: Optional[str] = None
    base_ref: Optional[str] = None


def select_strategy(state: JobState, code_bus: Bucket) -> StrategyDecision:
    """Pick the collect strategy for a job from its event and the stored base branch."""
    event = state.data
    branch_op = next((c for c in state.changes if c.path == BRANCH_PATH), None)
    ignore_modified = any(c.path == IGNORE_FILE for c in state.changes)

    if branch_op is not None and branch_op.type.lower() == ChangeType.DELETED.value:
        return StrategyDecision(CollectStrategy.DELETE_ALL)
    if branch_op is None and not ignore_modified:
        return StrategyDecision(CollectStrategy.INCREMENTAL)

    base_ref = sanitize_name(event.base_ref) if event.base_ref else ""
    if ignore_modified:
        return StrategyDecision(CollectStrategy.FULL_TREE_WALK, f"{IGNORE_FILE} modified")
    if event.tag:
        return StrategyDecision(CollectStrategy.FULL_TREE_WALK, "tag created")
    if not base_ref:
        return StrategyDecision(CollectStrategy.FULL_TREE_WALK, "no base ref")
    if base_ref == event.code_ref:
        return StrategyDecision(CollectStrategy.FULL_TREE_WALK, "base ref identical to new branch")
    if code_bus.head(f"{event.code_owner}/{event.code_repo}/{base_ref}/{SHA_PATH}") is None:
        return StrategyDecision(CollectStrategy.FULL_TREE_WALK, "base ref .sha does not exist", base_ref)
    return StrategyDecision(CollectStrategy.COPY_SIBLING, "requested", base_ref)


# =============================================================================
# Strategy handlers
# =============================================================================

@dataclass
class CollectContext:
    state: JobState
    decision: StrategyDecision
    changes: list[Change]  # event changes without branch operations, filtered
    path_filter: Callable[[str], bool]
    sha: str = ""


@dataclass
class CollectResult:
    changes: list[Change] = field(default_factory=list)
    resources: list[Resource] = field(default_factory=list)


class IncrementalCollector:
    def compute_changes(self, ctx: CollectContext) -> ApiResult:
        return Ok(CollectResult(changes=list(ctx.changes)))


class FullTreeWalkCollector:
    def __init__(self, differ: TreeDiffer):
        self.differ = differ

    def compute_changes(self, ctx: CollectContext) -> ApiResult:
        result = self.differ.compute_changes(ctx.state.data, ctx.sha)
        if not isinstance(result, Ok):
            return result
        changes = result.value
        for change in changes:
            if not ctx.path_filter(change.path):
                change.type = ChangeType.IGNORED.value
        return Ok(CollectResult(changes=changes))


class CopySiblingCollector:
    def __init__(self, code_bus: Bucket):
        self.code_bus = code_bus

    def compute_changes(self, ctx: CollectContext) -> ApiResult:
        event = ctx.state.data
        src = f"{event.code_owner}/{event.code_repo}/{ctx.decision.base_ref}/"
        logger.info(f"[code][{event.code_prefix}*] using base '{ctx.decision.base_ref}' for new branch copy.")
        copied = self.code_bus.copy_deep(src, event.code_prefix, lambda info: ctx.path_filter(info.path))
        resources = [
            Resource(
                resource_path=f"/{info.path}",
                status=200,
                content_type=info.content_type,
                content_length=info.content_length,
                last_modified=info.meta.get("x-source-last-modified") or info.last_modified,
            )
            for info in copied
        ]
        return Ok(CollectResult(changes=list(ctx.changes), resources=resources))


class DeleteAllCollector:
    def __init__(self, protected_branches: set[str]):
        self.protected_branches = protected_branches

    def compute_changes(self, ctx: CollectContext) -> ApiResult:
        event = ctx.state.data
        if event.code_ref in self.protected_branches:
            return Fatal(StatusCodeError(
                f"[{event.code_prefix}] cowardly refusing to delete potential default branch.",
                400,
            ))
        event.delete_tree = True
        resource = Resource(resource_path=f"/{BRANCH_PATH}", status=200, deleted=True)
        return Ok(CollectResult(resources=[resource]))


# =============================================================================
# Collector
# =============================================================================

class ChangeCollector:
    """Runs the collect phase for a job state."""

    def __init__(
        self,
        github: GitHubClient,
        code_bus: Bucket,
        default_branch: str = "main",
    ):
        self.github = github
        self.code_bus = code_bus
        self.handlers = {
            CollectStrategy.INCREMENTAL: IncrementalCollector(),
            CollectStrategy.FULL_TREE_WALK: FullTreeWalkCollector(TreeDiffer(github, code_bus)),
            CollectStrategy.COPY_SIBLING: CopySiblingCollector(code_bus),
            CollectStrategy.DELETE_ALL: DeleteAllCollector({"main", "master", sanitize_name(default_branch)}),
        }

    def collect(self, state: JobState) -> ApiResult:
        """
        Compute ``state.changes`` and the initial ``state.resources``.

        Returns ``Ok(strategy)`` when done. Nothing is written to the job
        state unless the phase completes.
        """
        event = state.data
        decision = select_strategy(state, self.code_bus)
        logger.info(f"[code][{event.code_prefix}] collect strategy: {decision.strategy.value}")

        if decision.strategy == CollectStrategy.DELETE_ALL:
            ctx = CollectContext(state=state, decision=decision, changes=[], path_filter=lambda path: False)
            return self._apply(state, decision, self.handlers[decision.strategy].compute_changes(ctx))

        self._snapshot_rate_limit(state)

        result = self.fetch_ignore(state)
        if not isinstance(result, Ok):
            return result
        path_filter = make_path_filter(result.value)

        changes = [
            c for c in state.changes
            if c.path not in (BRANCH_PATH, IGNORE_FILE) and path_filter(c.path)
        ]

        sha_result = self.github.get_ref_sha(event.owner, event.repo, event.source_ref, event.tag)
        if isinstance(sha_result, RateLimited):
            return sha_result
        if isinstance(sha_result, Fatal):
            logger.error(f"[code][{event.code_prefix}] unable to get sha for ref {event.source_ref}: {sha_result.error}")
            if getattr(sha_result.error, "status", None) == 401:
                return sha_result
            return Fatal(StatusCodeError(f"[{event.code_prefix}] branch not found.", 404))
        event.sha = sha_result.value

        if decision.reason and decision.strategy == CollectStrategy.FULL_TREE_WALK:
            logger.info(f"[code][{event.code_prefix}*] {decision.reason}. enumerating files.")

        ctx = CollectContext(
            state=state,
            decision=decision,
            changes=changes,
            path_filter=path_filter,
            sha=event.sha,
        )
        outcome = self._apply(state, decision, self.handlers[decision.strategy].compute_changes(ctx))
        self._snapshot_rate_limit(state)
        return outcome

    def fetch_ignore(self, state: JobState) -> ApiResult:
        """Load ``.hlxignore``. A missing (404) or inaccessible (403) file ignores nothing."""
        event = state.data
        ref = event.source_ref
        result = self.github.fetch_content(event.owner, event.repo, ref, IGNORE_FILE, branch=event.branch)
        if not isinstance(result, Ok):
            return result
        response = result.value
        if response.is_success:
            return Ok(IgnoreRules.parse(response.text))
        if response.status_code in (403, 404):
            logger.info(f"[code] No {IGNORE_FILE} found in github {event.owner}/{event.repo}/{ref}.")
            return Ok(IgnoreRules())
        return Fatal(StatusCodeError(f"Unable to fetch hlxignore: {response.status_code}", response.status_code))

    def _apply(self, state: JobState, decision: StrategyDecision, result: ApiResult) -> ApiResult:
        if not isinstance(result, Ok):
            return result
        collected: CollectResult = result.value
        if decision.reason:
            state.data.tree_sync_reason = decision.reason
        for change in collected.changes:
            # event types are handled case-insensitively
            change.type = change.type.lower()
            if not change.content_type:
                change.content_type = content_type_for(change.path)
        state.changes = collected.changes
        state.resources = collected.resources
        return Ok(decision.strategy)

    def _snapshot_rate_limit(self, state: JobState) -> None:
        info = self.github.get_rate_limit()
        if info is not None:
            state.data.github_rate_limit = info.to_dict()
            logger.info(
                f"[code] github rate limit for {state.data.owner}/{state.data.repo}: "
                f"{info.remaining}/{info.limit} (reset {info.reset})"
            )
