"""
Sync phase: mirror every collected change into the code bus.

Handles:
- Content type detection and compressibility
- Conditional skip when the stored source timestamp is unchanged
- Last-modified that never moves backwards
- Per-resource failure isolation
- Aborting the whole batch on a github rate limit
- The ``.sha`` checkpoint written after the batch
"""

from __future__ import annotations

import json
import mimetypes
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from fnmatch import fnmatchcase
from typing import Callable, Optional, Union

from loguru import logger

from .github_client import GitHubClient
from .models import Change, ChangeType, JobState, Resource
from .retry import ApiResult, Fatal, Ok, RateLimited, RequestBudget
from .storage import Bucket, ObjectInfo
from .utils import CallTimer, http_date, parse_http_date

DEFAULT_CONTENT_TYPE = "application/octet-stream"

# deterministic types for the files a site repository usually holds
CONTENT_TYPES = {
    ".md": "text/markdown",
    ".html": "text/html",
    ".htm": "text/html",
    ".css": "text/css",
    ".js": "text/javascript",
    ".mjs": "text/javascript",
    ".txt": "text/plain",
    ".csv": "text/csv",
    ".yaml": "text/yaml",
    ".yml": "text/yaml",
    ".json": "application/json",
    ".xml": "application/xml",
    ".svg": "image/svg+xml",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".avif": "image/avif",
    ".ico": "image/x-icon",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".ttf": "font/ttf",
    ".otf": "font/otf",
    ".pdf": "application/pdf",
    ".mp3": "audio/mpeg",
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".zip": "application/zip",
    ".gz": "application/gzip",
    ".wasm": "application/wasm",
}

COMPRESSIBLE_TYPES = {
    "application/json",
    "application/javascript",
    "application/xml",
    "application/manifest+json",
    "application/ld+json",
    "image/svg+xml",
}

SHA_FILE = ".sha"

# upstream commit date of a stored object, before any forward adjustment
SOURCE_DATE_META = "x-source-commit-date"


def content_type_for(path: str) -> str:
    """Content type by extension. ``text/*`` types get a utf-8 charset."""
    dot = path.rfind(".")
    ext = path[dot:].lower() if dot > path.rfind("/") else ""
    content_type = CONTENT_TYPES.get(ext)
    if content_type is None:
        content_type = mimetypes.guess_type(path, strict=False)[0] or DEFAULT_CONTENT_TYPE
    if content_type.startswith("text/") and "charset" not in content_type:
        content_type += "; charset=utf-8"
    return content_type


def is_compressible(content_type: Optional[str]) -> bool:
    """Text and JSON-like content is compressed; binary and media content is not."""
    base = (content_type or DEFAULT_CONTENT_TYPE).split(";")[0].strip().lower()
    if base.startswith("text/"):
        return True
    if base.endswith("+json") or base.endswith("+xml"):
        return True
    return base in COMPRESSIBLE_TYPES


def header_modifiers(headers: dict[str, dict[str, str]], web_path: str) -> dict[str, str]:
    """Merge the configured headers of every glob matching ``web_path``, in order."""
    result: dict[str, str] = {}
    for pattern, values in (headers or {}).items():
        if fnmatchcase(web_path, pattern):
            for name, value in values.items():
                result[name.lower()] = str(value)
    return result


Outcome = Union[Resource, RateLimited, None]


class ResourceSyncer:
    """
    Applies a job's changes to the code bus with bounded concurrency.

    Results are collected on the calling thread; workers never touch the
    job state directly.
    """

    def __init__(
        self,
        github: GitHubClient,
        code_bus: Bucket,
        max_workers: int = 12,
        headers: Optional[dict[str, dict[str, str]]] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
        on_progress: Optional[Callable[[], None]] = None,
        request_budget: Optional[RequestBudget] = None,
    ):
        self.github = github
        self.code_bus = code_bus
        self.max_workers = max_workers
        self.headers = headers or {}
        self.is_cancelled = is_cancelled
        self.on_progress = on_progress
        self.request_budget = request_budget
        self.storage_timer = CallTimer("storage")
        self._counter = 0
        self._lock = threading.Lock()
        self._latest_modified: Optional[datetime] = None

    # =========================================================================
    # Public API
    # =========================================================================

    def sync(self, state: JobState) -> ApiResult:
        """
        Sync all changes not yet present in ``state.resources``.

        Returns ``Ok(True)`` when the batch is done, ``Ok(False)`` if the job
        was cancelled, or the first ``RateLimited`` hit by any worker.
        """
        event = state.data
        start = time.perf_counter()

        if event.delete_tree:
            with self.storage_timer.measure("rmdir"):
                removed = self.code_bus.rmdir(event.code_prefix)
            logger.info(f"[code] removed {removed} objects below {event.code_prefix}")
            return Ok(True)

        done = {resource.resource_path for resource in state.resources}
        pending = [change for change in state.changes if f"/{change.path}" not in done]
        if len(pending) < len(state.changes):
            logger.info(f"[code] resuming sync: {len(state.changes) - len(pending)} resources already processed")

        abort = threading.Event()
        limited: Optional[RateLimited] = None
        cancelled = False

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [
                executor.submit(self._process, change, state, abort)
                for change in pending
            ]
            for future in as_completed(futures):
                outcome = future.result()
                if isinstance(outcome, RateLimited):
                    if limited is None:
                        limited = outcome
                    abort.set()
                elif isinstance(outcome, Resource):
                    self._record(state, outcome)
                if not abort.is_set() and self.is_cancelled and self.is_cancelled():
                    cancelled = True
                    abort.set()

        state.resources.sort(key=lambda r: r.resource_path)

        if limited is not None:
            logger.warning(f"[code] sync aborted by rate limit: {limited.message}")
            return limited
        if cancelled:
            logger.warning("[code] sync cancelled")
            return Ok(False)

        self.store_sha(state)
        self._log_metric(state, time.perf_counter() - start)
        return Ok(True)

    def store_sha(self, state: JobState) -> None:
        """Write the ``.sha`` checkpoint. Failures are logged, not raised."""
        event = state.data
        if not event.sha:
            return
        path = f"{event.code_prefix}{SHA_FILE}"
        existing = self.code_bus.head(path)
        if existing is not None and existing.meta.get("x-commit-id") == event.sha:
            logger.info(f"[code][--] {path} already at {event.sha}")
            return
        last_modified = http_date(self._latest_modified) if self._latest_modified else http_date()
        meta = {
            "x-commit-id": event.sha,
            "x-source-last-modified": last_modified,
        }
        try:
            logger.info(f"[code][--] uploading {path} to storage")
            with self.storage_timer.measure("put"):
                self.code_bus.put(path, event.sha, "text/plain", meta, compress=False)
        except Exception as e:
            logger.error(f"[code][--] uploading {path} to storage failed: {e}")

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _record(self, state: JobState, resource: Resource) -> None:
        state.resources.append(resource)
        if resource.status >= 400:
            state.progress.failed += 1
        else:
            state.progress.processed += 1
        if self.on_progress:
            self.on_progress()

    def _next_nr(self) -> int:
        with self._lock:
            nr = self._counter
            self._counter += 1
            return nr

    def _process(self, change: Change, state: JobState, abort: threading.Event) -> Outcome:
        if abort.is_set():
            return None
        nr = self._next_nr()
        event = state.data
        path = f"{event.code_prefix}{change.path}"

        with self.storage_timer.measure("head"):
            old = self.code_bus.head(path)

        if change.is_removal:
            return self._remove(nr, change, path, old)

        if self.request_budget is not None:
            self.request_budget.acquire()
            if abort.is_set():
                return None

        ref = change.commit or event.source_ref

        # last modified: event time, cached value, or the last commit touching the file
        if change.time and not change.last_modified:
            parsed = parse_http_date(change.time)
            if parsed:
                change.last_modified = http_date(parsed)
        if not change.last_modified:
            result = self.github.get_last_commit(event.owner, event.repo, ref, change.path)
            if isinstance(result, RateLimited):
                return result
            commit = result.value if isinstance(result, Ok) else None
            if commit is not None:
                parsed = parse_http_date(commit.date)
                if parsed:
                    change.last_modified = http_date(parsed)
                if not change.commit:
                    change.commit = commit.sha

        # the stored commit date is the upstream value, last modified may have been moved forward
        old_modified = parse_http_date(old.meta.get("x-source-last-modified")) if old else None
        old_source = parse_http_date(old.meta.get(SOURCE_DATE_META) or old.meta.get("x-source-last-modified")) if old else None
        source_modified = change.last_modified
        new_modified = parse_http_date(change.last_modified)
        if old_source and new_modified and old_source == new_modified:
            logger.info(f"[code][{nr}] {path} unchanged since {change.last_modified}. skipping.")
            resource = Resource.from_change(change, status=304)
            resource.skipped = True
            resource.content_length = old.content_length
            return resource

        result = self.github.fetch_content(
            event.owner,
            event.repo,
            ref,
            change.path,
            branch=event.branch,
            use_api=bool(event.tree_sync_reason),
        )
        if isinstance(result, RateLimited):
            return result
        if isinstance(result, Fatal):
            logger.error(f"[code][{nr}] reading {event.owner}/{event.repo}/{ref}/{change.path} from github error: {result.error}")
            return Resource.from_change(change, 500, f"error reading from github: {result.error}")
        response = result.value
        if not response.is_success:
            return Resource.from_change(change, response.status_code, "error reading from github")

        body = response.content
        change.content_length = len(body)

        # never travel back in time, it breaks cache invalidation
        if old_modified and new_modified and new_modified <= old_modified:
            logger.info(
                f"[code][{nr}] ignoring last modified from github. last modified is older "
                f"than existing file in code-bus: {path}"
            )
            new_modified = old_modified + timedelta(seconds=1)
            change.last_modified = http_date(new_modified)
        logger.info(f"[code][{nr}] fetched {event.owner}/{event.repo}/{ref}/{change.path} from github. {len(body)} bytes")

        meta = header_modifiers(self.headers, f"/{change.path}")
        meta["x-commit-id"] = change.commit or ""
        if change.last_modified:
            meta["x-source-last-modified"] = change.last_modified
            meta[SOURCE_DATE_META] = source_modified
        compress = is_compressible(change.content_type)
        if not compress:
            logger.info(f"[code][{nr}] storing {path} uncompressed")

        try:
            with self.storage_timer.measure("put"):
                self.code_bus.put(path, body, change.content_type or DEFAULT_CONTENT_TYPE, meta, compress)
        except Exception as e:
            logger.error(f"[code][{nr}] uploading {path} to storage failed: {e}")
            return Resource.from_change(change, 500, f"uploading failed: {e}")

        if new_modified:
            with self._lock:
                if self._latest_modified is None or new_modified > self._latest_modified:
                    self._latest_modified = new_modified
        logger.info(f"[code][{nr}] uploaded {path} to storage")
        return Resource.from_change(change, 200, last_modified=http_date())

    def _remove(self, nr: int, change: Change, path: str, old: Optional[ObjectInfo]) -> Resource:
        if old is None:
            if change.type == ChangeType.IGNORED.value:
                logger.info(f"[code][{nr}] ignored {path} does not exist in storage.")
                resource = Resource.from_change(change, status=304)
                resource.skipped = True
                return resource
            logger.info(f"[code][{nr}] deleted {path} does not exist in storage.")
            return Resource.from_change(change, status=204)

        logger.info(f"[code][{nr}] removing {path} from storage.")
        try:
            with self.storage_timer.measure("remove"):
                self.code_bus.remove(path)
        except Exception as e:
            logger.error(f"[code][{nr}] removing {path} from storage failed: {e}")
            return Resource.from_change(change, 500, str(e))
        resource = Resource.from_change(change, status=204)
        resource.deleted = True
        return resource

    def _log_metric(self, state: JobState, elapsed: float) -> None:
        event = state.data
        metric = {
            "metric": "code-sync",
            "owner": event.owner,
            "repo": event.repo,
            "ref": event.code_ref,
            "installationId": event.installation_id,
            "time": round(elapsed * 1000),
            "downloaded": self.github.bytes_downloaded,
            "github": self.github.timer.to_dict(),
            "storage": self.storage_timer.to_dict(),
            "treeSync": event.tree_sync_reason or "n/a",
        }
        logger.bind(metric=metric).info(json.dumps({"metric": metric}))
