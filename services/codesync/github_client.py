"""
GitHub API client used by the code sync job.

Every call returns an ``ApiResult`` (see ``retry.py``) instead of raising:
401 responses are fatal, 429 responses (and 403 with an exhausted budget)
are rate limited, anything else that is not 2xx is fatal with the
requested URL and branch in the message.

Endpoints:
  - GET  /repos/{owner}/{repo}/branches/{branch}            - branch head
  - GET  /repos/{owner}/{repo}/git/ref/tags/{tag}           - tag ref
  - GET  /repos/{owner}/{repo}/git/trees/{sha}?recursive=1  - file tree
  - GET  {raw_url}/{owner}/{repo}/{ref}/{path}              - raw content
  - GET  /repos/{owner}/{repo}/contents/{path}?ref=         - content API
  - GET  /repos/{owner}/{repo}/commits?per_page=1&sha=&path= - last commit
  - GET  /rate_limit                                        - budget
  - POST /repos/{owner}/{repo}/deployments[/{id}/statuses]  - deployments
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote

import httpx
from loguru import logger

from .models import RateLimitInfo
from .retry import ApiResult, Fatal, Ok, RateLimited, compute_retry_at
from .utils import CallTimer, StatusCodeError

DEPLOYMENT_TASK = "aem-code-sync"
PERMISSION_ERROR = "Resource not accessible by integration"


@dataclass
class GitTreeEntry:
    """Represents an entry in a git tree."""
    path: str
    sha: str
    type: str  # 'blob' or 'tree'
    mode: str
    size: Optional[int] = None


@dataclass
class GitTree:
    """Recursive tree listing of a commit."""
    sha: str
    entries: list[GitTreeEntry]
    truncated: bool = False


@dataclass
class CommitInfo:
    """Most recent commit touching a path."""
    sha: str
    date: Optional[str]  # ISO-8601 committer date


class GitHubClient:
    """
    GitHub REST client with rate limit classification.

    Thread-safe: the sync phase shares one client between its workers.
    """

    BASE_URL = "https://api.github.com"
    RAW_URL = "https://raw.githubusercontent.com"

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: str = BASE_URL,
        raw_url: str = RAW_URL,
        timeout: float = 20.0,
        user_agent: str = "codesync/1.0",
        default_wait: float = 60,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize GitHub client.

        Args:
            token: GitHub token. If not provided, loaded from GITHUB_TOKEN.
            base_url: REST API base URL.
            raw_url: Raw content base URL.
            timeout: Request timeout in seconds.
            user_agent: User-Agent header value.
            default_wait: Wait (seconds) when a 429 carries no usable hint.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        if token is None:
            token = os.getenv("GITHUB_TOKEN")
            if token:
                logger.info("GitHub token loaded from environment")
            else:
                logger.warning("No GitHub token provided - using unauthenticated API (60 req/hour limit)")

        self.token = token
        self.base_url = base_url.rstrip("/")
        self.raw_url = raw_url.rstrip("/")
        self.default_wait = default_wait

        headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": user_agent,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._client = httpx.Client(
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

        self.rate_limit: Optional[RateLimitInfo] = None
        self.timer = CallTimer("github")
        self.bytes_downloaded = 0
        self._lock = threading.Lock()

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # =========================================================================
    # Refs and trees
    # =========================================================================

    def get_branch_sha(self, owner: str, repo: str, branch: str) -> ApiResult:
        """Resolve the head commit of a branch."""
        url = f"{self.base_url}/repos/{owner}/{repo}/branches/{quote(branch)}"
        result = self._get_json(url, f"unable to get branch {owner}/{repo}/{branch}", "branch")
        if isinstance(result, Ok):
            return Ok(result.value["commit"]["sha"])
        return result

    def get_tag_sha(self, owner: str, repo: str, tag: str) -> ApiResult:
        """Resolve the object a tag points to."""
        url = f"{self.base_url}/repos/{owner}/{repo}/git/ref/tags/{quote(tag)}"
        result = self._get_json(url, f"unable to get tag {owner}/{repo}/{tag}", "tag")
        if isinstance(result, Ok):
            return Ok(result.value["object"]["sha"])
        return result

    def get_ref_sha(self, owner: str, repo: str, ref: str, tag: bool = False) -> ApiResult:
        if tag:
            return self.get_tag_sha(owner, repo, ref)
        return self.get_branch_sha(owner, repo, ref)

    def get_tree(self, owner: str, repo: str, sha: str, branch: str = "") -> ApiResult:
        """Get the recursive file tree of a commit. ``truncated`` is passed through."""
        url = f"{self.base_url}/repos/{owner}/{repo}/git/trees/{sha}"
        result = self._get_json(
            url,
            f"unable to fetch tree {owner}/{repo}/{sha} (branch: {branch})",
            "tree",
            params={"recursive": "1"},
        )
        if not isinstance(result, Ok):
            return result
        data = result.value
        entries = [
            GitTreeEntry(
                path=item["path"],
                sha=item["sha"],
                type=item["type"],
                mode=item.get("mode", ""),
                size=item.get("size"),
            )
            for item in data.get("tree", [])
        ]
        return Ok(GitTree(sha=data.get("sha", sha), entries=entries, truncated=bool(data.get("truncated"))))

    # =========================================================================
    # Content
    # =========================================================================

    def fetch_content(
        self,
        owner: str,
        repo: str,
        ref: str,
        path: str,
        branch: str = "",
        use_api: bool = False,
    ) -> ApiResult:
        """
        Fetch the raw content of a file.

        Uses the raw URL unless ``use_api`` is set. A 429 from the raw URL
        falls back to the authenticated content API. Non-2xx responses are
        returned as ``Ok(response)`` so callers can record them per file;
        only rate limits and transport errors are reported otherwise.
        """
        if not use_api:
            url = f"{self.raw_url}/{owner}/{repo}/{quote(ref)}/{quote(path)}"
            try:
                with self.timer.measure("fetch"):
                    response = self._client.get(url)
            except httpx.HTTPError as e:
                return Fatal(StatusCodeError(f"error fetching {url} (branch: {branch}): {e}", 502))
            if response.status_code != 429:
                self._log_error_response(response, f"fetching {url} (branch: {branch})")
                self._count_bytes(response)
                return Ok(response)
            logger.info(f"raw fetch rate limited for {owner}/{repo}/{ref}/{path}, using content API")

        url = f"{self.base_url}/repos/{owner}/{repo}/contents/{quote(path)}"
        limited = self._check_budget(url)
        if limited is not None:
            return limited
        try:
            with self.timer.measure("fetch"):
                response = self._client.get(
                    url,
                    params={"ref": ref},
                    headers={"Accept": "application/vnd.github.raw"},
                )
        except httpx.HTTPError as e:
            return Fatal(StatusCodeError(f"error fetching {url} (branch: {branch}): {e}", 502))
        self._update_rate_limit(response)
        if self._is_rate_limited(response):
            return self._rate_limited(response, f"fetching {url} (branch: {branch})")
        self._log_error_response(response, f"fetching {url} (branch: {branch})")
        self._count_bytes(response)
        return Ok(response)

    def get_last_commit(self, owner: str, repo: str, ref: str, path: str) -> ApiResult:
        """Most recent commit touching ``path`` on ``ref``. ``Ok(None)`` if unknown."""
        url = f"{self.base_url}/repos/{owner}/{repo}/commits"
        params = {"page": "1", "per_page": "1", "sha": ref, "path": path}
        result = self._get_json(url, f"error fetching commits for {path} (branch: {ref})", "lastModified", params=params)
        if isinstance(result, Fatal):
            # only the timestamp is lost, the file itself can still be synced
            logger.warning(str(result.error))
            return Ok(None)
        if not isinstance(result, Ok):
            return result
        commits = result.value or []
        if not commits:
            return Ok(None)
        commit = commits[0]
        return Ok(CommitInfo(
            sha=commit.get("sha", ""),
            date=(commit.get("commit") or {}).get("committer", {}).get("date"),
        ))

    # =========================================================================
    # Rate limit and deployments
    # =========================================================================

    def get_rate_limit(self) -> Optional[RateLimitInfo]:
        """
        Fetch the current core rate limit. Never raises.

        The /rate_limit endpoint does not count against the budget.
        """
        try:
            response = self._client.get(f"{self.base_url}/rate_limit")
            response.raise_for_status()
            core = response.json().get("resources", {}).get("core", {})
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Could not check rate limit: {e}")
            return None
        info = RateLimitInfo(
            limit=core.get("limit", 0),
            remaining=core.get("remaining", 0),
            reset=core.get("reset", 0),
            used=core.get("used", 0),
        )
        with self._lock:
            self.rate_limit = info
        return info

    def create_deployment(
        self,
        owner: str,
        repo: str,
        ref: str,
        environment: str,
        description: str = "",
    ) -> ApiResult:
        """Create a deployment. Returns ``Ok(deployment_id)``."""
        url = f"{self.base_url}/repos/{owner}/{repo}/deployments"
        payload = {
            "ref": ref,
            "task": DEPLOYMENT_TASK,
            "auto_merge": False,
            "required_contexts": [],
            "environment": environment,
            "transient_environment": ref != "main",
            "description": description,
        }
        result = self._send("POST", url, f"unable to create deployment for {owner}/{repo}/{ref}", payload)
        if isinstance(result, Ok):
            return Ok(result.value.get("id"))
        return result

    def update_deployment(
        self,
        owner: str,
        repo: str,
        deployment_id: int,
        state: str,
        environment_url: str = "",
        log_url: str = "",
    ) -> ApiResult:
        """Post a deployment status (``in_progress``, ``success``, ``failure``)."""
        url = f"{self.base_url}/repos/{owner}/{repo}/deployments/{deployment_id}/statuses"
        payload = {"state": state, "environment_url": environment_url, "log_url": log_url}
        result = self._send("POST", url, f"unable to update deployment {deployment_id} of {owner}/{repo}", payload)
        if isinstance(result, Ok):
            return Ok(True)
        return result

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _get_json(
        self,
        url: str,
        message: str,
        operation: str,
        params: Optional[dict[str, str]] = None,
    ) -> ApiResult:
        limited = self._check_budget(url)
        if limited is not None:
            return limited
        try:
            with self.timer.measure(operation):
                response = self._client.get(url, params=params)
        except httpx.HTTPError as e:
            return Fatal(StatusCodeError(f"{message}: {e}", 502))
        self._update_rate_limit(response)
        error = self._classify(response, message)
        if error is not None:
            return error
        return Ok(response.json())

    def _send(self, method: str, url: str, message: str, payload: dict[str, Any]) -> ApiResult:
        try:
            with self.timer.measure("deployment"):
                response = self._client.request(method, url, json=payload)
        except httpx.HTTPError as e:
            return Fatal(StatusCodeError(f"{message}: {e}", 502))
        self._update_rate_limit(response)
        error = self._classify(response, message)
        if error is not None:
            return error
        return Ok(response.json() if response.content else {})

    def _classify(self, response: httpx.Response, message: str) -> Optional[ApiResult]:
        """Map an error response to a result. None for 2xx responses."""
        if response.is_success:
            return None
        if response.status_code == 401:
            return Fatal(StatusCodeError(f"{message}: authorization error", 401))
        if self._is_rate_limited(response):
            return self._rate_limited(response, message)
        detail = _error_detail(response)
        return Fatal(StatusCodeError(f"{message}: {response.status_code} {detail}".rstrip(), response.status_code))

    def _is_rate_limited(self, response: httpx.Response) -> bool:
        if response.status_code == 429:
            return True
        return (
            response.status_code == 403
            and response.headers.get("x-ratelimit-remaining") == "0"
        )

    def _rate_limited(self, response: httpx.Response, message: str) -> RateLimited:
        retry_at = compute_retry_at(
            response.headers.get("retry-after"),
            response.headers.get("x-ratelimit-reset"),
            default_wait=self.default_wait,
        )
        logger.warning(f"{message}: rate limited until {time.strftime('%H:%M:%S', time.gmtime(retry_at))} UTC")
        return RateLimited(message, retry_at)

    def _check_budget(self, url: str) -> Optional[RateLimited]:
        """Fail fast without a request when the known budget is exhausted."""
        with self._lock:
            info = self.rate_limit
        if info is not None and info.remaining == 0 and info.reset > time.time():
            return RateLimited(f"rate limit exhausted, not requesting {url}", float(info.reset))
        return None

    def _update_rate_limit(self, response: httpx.Response) -> None:
        """Update rate limit tracking from response headers."""
        remaining = response.headers.get("x-ratelimit-remaining")
        if remaining is None:
            return
        info = RateLimitInfo(
            limit=int(response.headers.get("x-ratelimit-limit", 0)),
            remaining=int(remaining),
            reset=int(response.headers.get("x-ratelimit-reset", 0)),
            used=int(response.headers.get("x-ratelimit-used", 0)),
        )
        with self._lock:
            self.rate_limit = info
        # Warn when approaching limit
        if info.remaining < 10:
            logger.warning(f"Rate limit low: {info.remaining}/{info.limit} requests remaining")
        elif info.remaining < 50:
            logger.info(f"Rate limit: {info.remaining}/{info.limit} requests remaining")

    def _log_error_response(self, response: httpx.Response, message: str) -> None:
        if not response.is_success:
            logger.warning(f"error {message}: {response.status_code} {_error_detail(response)}")

    def _count_bytes(self, response: httpx.Response) -> None:
        if response.is_success:
            with self._lock:
                self.bytes_downloaded += len(response.content)


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        return str(data.get("message", ""))
    return ""
