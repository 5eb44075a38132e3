"""
Post-processing of synced resources.

``ConfigPostProcessor.plan`` inspects the synced paths and returns the side
effects a change implies (aggregate config rebuild, content bus artifacts,
downstream notifications and purges). ``plan_flush`` computes the cache
purge of the flushCache phase. Neither writes anything: ``EffectExecutor``
runs the effects one by one, and a failing effect never stops the others.

Distinguished files:
  - head.html                    -> aggregate ``head`` section, head purge
  - fstab.yaml (default branch)  -> aggregate ``fstab``/``content``, deploy,
                                    content config merge, reindex, purge
  - helix-query.yaml /
    helix-sitemap.yaml (default) -> content bus ``preview/.helix`` artifacts
  - robots.txt, sidekick config  -> config purge only
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import yaml
from loguru import logger

from .downstream import DownstreamClient
from .events import sanitize_name
from .models import JobState, Resource
from .storage import Bucket
from .tree import CONFIG_PATH
from .utils import ConfigError, compute_surrogate_key, http_date

CONFIG_VERSION = 2
HEAD_PATH = "head.html"
FSTAB_PATH = "fstab.yaml"
SIDEKICK_CONFIG_PATH = "tools/sidekick/config.json"
ROBOTS_PATH = "robots.txt"

OTHER_CONFIG_FILES = {
    "helix-query.yaml": "query",
    "helix-sitemap.yaml": "sitemap",
}

# code paths above this count are purged with the branch-wide code key
MAX_PURGE_PATHS = 10


# =============================================================================
# Side effects
# =============================================================================

@dataclass
class WriteObject:
    bus: str  # 'code' or 'content'
    key: str
    body: bytes
    content_type: str
    meta: dict[str, str] = field(default_factory=dict)
    compress: bool = True


@dataclass
class RemoveObject:
    bus: str
    key: str


@dataclass
class Purge:
    keys: list[str] = field(default_factory=list)
    paths: list[str] = field(default_factory=list)
    scope: str = "preview-and-live"


@dataclass
class DeployMountTable:
    fstab: dict[str, Any]


@dataclass
class MergeContentConfig:
    content_bus_id: str


@dataclass
class Reindex:
    pass


SideEffect = Union[WriteObject, RemoveObject, Purge, DeployMountTable, MergeContentConfig, Reindex]


@dataclass
class EffectOutcome:
    effect: SideEffect
    ok: bool
    error: Optional[str] = None


# =============================================================================
# Mount table
# =============================================================================

def compute_content_bus_id(url: str) -> str:
    """Content bus id of a root mount point: sha256 hex, 59 characters."""
    return hashlib.sha256(url.encode("utf-8")).hexdigest()[:59]


def parse_mount_table(text: str) -> dict[str, Any]:
    """
    Parse and validate ``fstab.yaml``.

    Mount points map a web path to a URL string or to an object with a
    ``url``. Returns the normalized table (``mountpoints`` values are
    always objects). Raises ``ConfigError`` on invalid input.
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("mount table must be a mapping")
    mountpoints = data.get("mountpoints")
    if not isinstance(mountpoints, dict) or not mountpoints:
        raise ConfigError("mount table has no mountpoints")

    normalized = {}
    for path, value in mountpoints.items():
        if not isinstance(path, str) or not path.startswith("/"):
            raise ConfigError(f"invalid mount path: {path!r}")
        if isinstance(value, str):
            value = {"url": value}
        if not isinstance(value, dict) or not isinstance(value.get("url"), str):
            raise ConfigError(f"mount point {path} has no url")
        if not value["url"].startswith(("http://", "https://")):
            raise ConfigError(f"mount point {path} has an invalid url: {value['url']}")
        normalized[path] = dict(value)

    result = dict(data)
    result["mountpoints"] = normalized
    return result


# =============================================================================
# Planning
# =============================================================================

def plan_flush(state: JobState) -> list[SideEffect]:
    """Cache purge for the flushCache phase."""
    event = state.data
    if event.delete_tree:
        branch_key = f"{event.code_ref}--{event.code_owner}--{event.code_repo}"
        return [Purge(keys=[branch_key, f"{branch_key}_code"])]

    paths = [r.resource_path for r in state.resources if r.status in (200, 204)]
    if not paths:
        return []

    rro = event.rro
    keys: list[str] = []
    purge_paths: list[str] = []
    if len(paths) > MAX_PURGE_PATHS:
        keys.append(f"{rro}_code")
    else:
        for path in paths:
            keys.append(compute_surrogate_key(f"{rro}{path}"))
            purge_paths.append(path)
    if f"/{HEAD_PATH}" in paths:
        keys.append(f"{rro}_head")
    if f"/{FSTAB_PATH}" in paths:
        keys.extend([f"{rro}_head", f"{rro}_404"])
    return [Purge(keys=list(dict.fromkeys(keys)), paths=purge_paths)]


class ConfigPostProcessor:
    """Plans the config side effects of a completed sync."""

    def __init__(
        self,
        code_bus: Bucket,
        content_bus: Bucket,
        default_branch: str = "main",
        content_bus_id: str = "",
    ):
        self.code_bus = code_bus
        self.content_bus = content_bus
        self.default_branch = sanitize_name(default_branch) or "main"
        self.content_bus_id = content_bus_id

    def plan(self, state: JobState) -> list[SideEffect]:
        event = state.data
        if event.delete_tree:
            return []

        changed = {r.key: r for r in state.resources if r.status < 300}
        is_main = event.code_ref == self.default_branch
        effects: list[SideEffect] = []

        previous = self._load_aggregate(event.code_prefix)
        aggregate, aggregate_effects = self._plan_aggregate(state, changed, previous, is_main)
        effects.extend(aggregate_effects)

        purge_config = False
        purge_head = False
        if HEAD_PATH in changed:
            purge_config = purge_head = True
        if is_main and (ROBOTS_PATH in changed or SIDEKICK_CONFIG_PATH in changed):
            purge_config = True
        if event.tree_sync_reason:
            # a tree sync may have changed anything the config depends on
            logger.info(
                f"[code] forcing config purge for {event.code_owner}/{event.code_repo}/{event.code_ref} "
                f"due to tree sync: {event.tree_sync_reason}"
            )
            purge_config = purge_head = True
        if purge_config:
            keys = [compute_surrogate_key(f"{event.site}--{event.org}_config.json")]
            if purge_head:
                keys.append(f"{event.rro}_head")
            effects.append(Purge(keys=keys, scope="config"))

        if is_main:
            effects.extend(self._plan_other_config(state, changed, aggregate))
        return effects

    # =========================================================================
    # Aggregate config
    # =========================================================================

    def _load_aggregate(self, prefix: str) -> dict[str, Any]:
        data = self.code_bus.get(f"{prefix}{CONFIG_PATH}")
        if not data:
            return {}
        try:
            return json.loads(data)
        except ValueError:
            logger.warning(f"[code] ignoring invalid {prefix}{CONFIG_PATH}")
            return {}

    def _plan_aggregate(
        self,
        state: JobState,
        changed: dict[str, Resource],
        previous: dict[str, Any],
        is_main: bool,
    ) -> tuple[dict[str, Any], list[SideEffect]]:
        event = state.data
        key = f"{event.code_prefix}{CONFIG_PATH}"
        fstab = changed.get(FSTAB_PATH) if is_main else None

        if fstab is not None and fstab.deleted:
            logger.info(f"[code] {FSTAB_PATH} deleted. removing {key}")
            return {}, [RemoveObject("code", key)]

        aggregate = dict(previous)
        effects: list[SideEffect] = []
        updated = False

        head = changed.get(HEAD_PATH)
        if head is not None:
            if head.deleted:
                updated = aggregate.pop("head", None) is not None
            else:
                html = self.code_bus.get(f"{event.code_prefix}{HEAD_PATH}")
                if html is not None:
                    aggregate["head"] = {
                        "data": {"html": html.decode("utf-8", errors="replace")},
                        "lastModified": head.last_modified or http_date(),
                    }
                    updated = True

        if fstab is not None:
            fstab_effects = self._plan_fstab(state, fstab, aggregate, previous)
            if fstab_effects:
                effects.extend(fstab_effects)
                updated = True

        if updated:
            aggregate["version"] = CONFIG_VERSION
            aggregate.setdefault("created", previous.get("created") or http_date())
            aggregate["lastModified"] = http_date()
            effects.insert(0, WriteObject(
                bus="code",
                key=key,
                body=json.dumps(aggregate, indent=2).encode("utf-8"),
                content_type="application/json",
            ))
        return aggregate, effects

    def _plan_fstab(
        self,
        state: JobState,
        resource: Resource,
        aggregate: dict[str, Any],
        previous: dict[str, Any],
    ) -> list[SideEffect]:
        """Mutates ``aggregate`` only if the mount table is valid."""
        event = state.data
        data = self.code_bus.get(f"{event.code_prefix}{FSTAB_PATH}")
        if data is None:
            logger.warning(f"[code] {FSTAB_PATH} reported as synced but missing in the code bus")
            return []
        try:
            fstab = parse_mount_table(data.decode("utf-8"))
        except (ConfigError, UnicodeDecodeError) as e:
            logger.info(f"[code] fstab config from {FSTAB_PATH} not valid: {e}")
            return []

        previous_id = (previous.get("content") or {}).get("contentBusId") or self.content_bus_id
        root = fstab["mountpoints"].get("/")
        content_bus_id = compute_content_bus_id(root["url"]) if root else previous_id

        aggregate["fstab"] = {"data": fstab, "lastModified": resource.last_modified or http_date()}
        if content_bus_id:
            aggregate["content"] = {"contentBusId": content_bus_id}

        effects: list[SideEffect] = [DeployMountTable(fstab)]
        keys: list[str] = []
        if content_bus_id:
            effects.append(MergeContentConfig(content_bus_id))
            keys.extend([content_bus_id, f"p_{content_bus_id}"])
        effects.append(Reindex())
        if previous_id and previous_id != content_bus_id:
            keys.extend([previous_id, f"p_{previous_id}"])
        if keys:
            effects.append(Purge(keys=keys))
        return effects

    # =========================================================================
    # Query and sitemap config
    # =========================================================================

    def _plan_other_config(
        self,
        state: JobState,
        changed: dict[str, Resource],
        aggregate: dict[str, Any],
    ) -> list[SideEffect]:
        event = state.data
        keys = [key for key in OTHER_CONFIG_FILES if key in changed]
        if not keys:
            return []
        if "fstab" not in aggregate:
            logger.info(f"[code] no mount table for {event.code_owner}/{event.code_repo}. ignoring {keys}")
            return []
        content_bus_id = (aggregate.get("content") or {}).get("contentBusId") or self.content_bus_id
        if not content_bus_id:
            logger.info(f"[code] no content bus for {event.code_owner}/{event.code_repo}. ignoring {keys}")
            return []

        original = self._original_site(content_bus_id)
        project = f"{event.code_owner}/{event.code_repo}"
        if original != project:
            logger.info(f"[code] ignoring change to {keys}: original repository is: {original}")
            return []

        effects: list[SideEffect] = []
        for key in keys:
            content_path = f"{content_bus_id}/preview/.helix/{OTHER_CONFIG_FILES[key]}.yaml"
            if changed[key].deleted:
                logger.info(f"[code] removing {content_path}")
                effects.append(RemoveObject("content", content_path))
                continue
            data = self.code_bus.get(f"{event.code_prefix}{key}")
            if data is None:
                continue
            try:
                parsed = yaml.safe_load(data)
            except yaml.YAMLError as e:
                logger.error(f"[code] Unable to store {key}: {e}")
                continue
            if parsed is not None and not isinstance(parsed, dict):
                logger.error(f"[code] Unable to store {key}: not a mapping")
                continue
            logger.info(f"[code] uploading {content_path}")
            effects.append(WriteObject("content", content_path, data, "text/yaml", compress=False))
        return effects

    def _original_site(self, content_bus_id: str) -> Optional[str]:
        data = self.content_bus.get(f"{content_bus_id}/.hlx.json")
        if not data:
            return None
        try:
            return json.loads(data).get("original-site")
        except (ValueError, AttributeError):
            return None


# =============================================================================
# Execution
# =============================================================================

class EffectExecutor:
    """Runs side effects, isolating each one's failure."""

    def __init__(self, code_bus: Bucket, content_bus: Bucket, downstream: DownstreamClient):
        self.buses = {"code": code_bus, "content": content_bus}
        self.downstream = downstream

    def execute(self, state: JobState, effects: list[SideEffect]) -> list[EffectOutcome]:
        outcomes = []
        for effect in effects:
            try:
                self._run(state, effect)
                outcomes.append(EffectOutcome(effect, True))
            except Exception as e:
                logger.error(f"[code] {type(effect).__name__} failed: {e}")
                outcomes.append(EffectOutcome(effect, False, str(e)))
        return outcomes

    def _run(self, state: JobState, effect: SideEffect) -> None:
        event = state.data
        if isinstance(effect, WriteObject):
            self.buses[effect.bus].put(effect.key, effect.body, effect.content_type, effect.meta, effect.compress)
        elif isinstance(effect, RemoveObject):
            self.buses[effect.bus].remove(effect.key)
        elif isinstance(effect, Purge):
            self.downstream.purge(event.org, event.site, keys=effect.keys, paths=effect.paths, scope=effect.scope)
        elif isinstance(effect, DeployMountTable):
            self.downstream.deploy_mount_table(event.org, event.site, effect.fstab)
        elif isinstance(effect, MergeContentConfig):
            self.downstream.merge_content_config(event.org, event.site, effect.content_bus_id)
        elif isinstance(effect, Reindex):
            self.downstream.reindex(event.org, event.site)
        else:
            raise TypeError(f"unknown side effect: {effect!r}")
