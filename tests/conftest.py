"""
Shared fixtures: an in-memory GitHub served through httpx.MockTransport,
file system buckets, an in-memory S3 client and a downstream double that
records its calls.
"""

import hashlib
import io
import json
import time
from collections import Counter
from datetime import datetime, timezone

import httpx
import pytest
from botocore.exceptions import ClientError

from services.codesync import (
    CodeJob,
    FileSystemBucket,
    GitHubClient,
    ProjectConfig,
    SyncConfig,
    new_job_state,
    prepare_event,
)

OWNER = "adobe"
REPO = "helix-website"
COMMIT_DATE = "2024-01-10T10:00:00Z"


class FakeGitHub:
    """Minimal GitHub API and raw content host for one repository."""

    def __init__(self, owner: str = OWNER, repo: str = REPO):
        self.owner = owner
        self.repo = repo
        self.files: dict[str, bytes] = {}
        self.branches: dict[str, str] = {"main": "commit-main"}
        self.tags: dict[str, str] = {}
        self.truncated = False
        self.commit_dates: dict[str, str] = {}
        self.remaining = 4999
        self.rate_limits: dict[str, int] = {}
        self.deployment_states: list[str] = []
        self.deployment_error: str = ""
        self.requests: list[httpx.Request] = []
        self.fetched: Counter = Counter()

    def limit(self, path: str, times: int = 2) -> None:
        """Answer the next ``times`` content requests for ``path`` with 429."""
        self.rate_limits[path] = times

    @staticmethod
    def commit_sha(path: str) -> str:
        """Last commit id reported for ``path``."""
        return hashlib.sha1(path.encode()).hexdigest()

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self, **kwargs) -> GitHubClient:
        return GitHubClient(token="test-token", transport=self.transport(), **kwargs)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "raw.githubusercontent.com":
            return self._raw(request)
        return self._api(request)

    # raw.githubusercontent.com/{owner}/{repo}/{ref}/{path}
    def _raw(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.lstrip("/").split("/", 3)
        if len(parts) < 4 or parts[:2] != [self.owner, self.repo]:
            return httpx.Response(404, text="404: Not Found")
        return self._content(parts[3])

    def _content(self, path: str) -> httpx.Response:
        if self.rate_limits.get(path, 0) > 0:
            self.rate_limits[path] -= 1
            return httpx.Response(429, headers={"retry-after": "1"}, text="slow down")
        if path not in self.files:
            return httpx.Response(404, text="404: Not Found")
        self.fetched[path] += 1
        return httpx.Response(200, content=self.files[path])

    def _api(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/rate_limit":
            return httpx.Response(200, json={"resources": {"core": {
                "limit": 5000,
                "remaining": self.remaining,
                "reset": int(time.time()) + 3600,
                "used": 5000 - self.remaining,
            }}})

        prefix = f"/repos/{self.owner}/{self.repo}/"
        if not path.startswith(prefix):
            return httpx.Response(404, json={"message": "Not Found"})
        rest = path[len(prefix):]

        if rest.startswith("branches/"):
            sha = self.branches.get(rest[len("branches/"):])
            if sha is None:
                return httpx.Response(404, json={"message": "Branch not found"})
            return httpx.Response(200, json={"commit": {"sha": sha}})

        if rest.startswith("git/ref/tags/"):
            sha = self.tags.get(rest[len("git/ref/tags/"):])
            if sha is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json={"object": {"sha": sha}})

        if rest.startswith("git/trees/"):
            sha = rest[len("git/trees/"):]
            return httpx.Response(200, json={
                "sha": f"tree-{sha}",
                "truncated": self.truncated,
                "tree": [
                    {"path": p, "type": "blob", "sha": f"blob-{p}", "mode": "100644", "size": len(b)}
                    for p, b in sorted(self.files.items())
                ],
            })

        if rest == "commits":
            file_path = request.url.params.get("path", "")
            if file_path not in self.files:
                return httpx.Response(200, json=[])
            return httpx.Response(200, json=[{
                "sha": self.commit_sha(file_path),
                "commit": {"committer": {"date": self.commit_dates.get(file_path, COMMIT_DATE)}},
            }])

        if rest.startswith("contents/"):
            return self._content(rest[len("contents/"):])

        if rest == "deployments" and request.method == "POST":
            if self.deployment_error:
                return httpx.Response(403, json={"message": self.deployment_error})
            return httpx.Response(201, json={"id": 42})

        if rest.startswith("deployments/") and rest.endswith("/statuses"):
            if self.deployment_error:
                return httpx.Response(403, json={"message": self.deployment_error})
            self.deployment_states.append(json.loads(request.content)["state"])
            return httpx.Response(201, json={})

        return httpx.Response(404, json={"message": "Not Found"})


class RecordingDownstream:
    """Stands in for DownstreamClient and records every call."""

    def __init__(self, fail_on: tuple[str, ...] = ()):
        self.calls: list[tuple[str, dict]] = []
        self.fail_on = fail_on
        self.closed = False

    def _record(self, name: str, **kwargs) -> bool:
        if name in self.fail_on:
            raise RuntimeError(f"{name} unavailable")
        self.calls.append((name, kwargs))
        return True

    def purge(self, org, site, keys=None, paths=None, scope="preview-and-live"):
        return self._record("purge", keys=list(keys or []), paths=list(paths or []), scope=scope)

    def reindex(self, org, site):
        return self._record("reindex")

    def merge_content_config(self, org, site, content_bus_id):
        return self._record("merge_content_config", content_bus_id=content_bus_id)

    def deploy_mount_table(self, org, site, fstab):
        return self._record("deploy_mount_table", fstab=fstab)

    def close(self):
        self.closed = True

    def named(self, name: str) -> list[dict]:
        return [kwargs for call, kwargs in self.calls if call == name]


class RecordingBucket(FileSystemBucket):
    """File system bucket counting the mutating calls."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.ops: list[tuple[str, str]] = []

    def put(self, key, body, content_type="application/octet-stream", meta=None, compress=True):
        self.ops.append(("put", key.lstrip("/")))
        super().put(key, body, content_type, meta, compress)

    def remove(self, key):
        self.ops.append(("remove", key.lstrip("/")))
        super().remove(key)

    def rmdir(self, prefix):
        self.ops.append(("rmdir", prefix.lstrip("/")))
        return super().rmdir(prefix)

    def writes(self) -> list[str]:
        return [key for op, key in self.ops if op == "put"]


class FakeS3Client:
    """In-memory stand-in for the parts of the boto3 S3 client a bucket uses."""

    def __init__(self, page_size: int = 2):
        self.objects: dict[tuple[str, str], dict] = {}
        self.page_size = page_size
        self.calls: list[str] = []

    @staticmethod
    def _missing(operation: str, code: str) -> ClientError:
        return ClientError(
            {"Error": {"Code": code, "Message": "Not Found"}, "ResponseMetadata": {"HTTPStatusCode": 404}},
            operation,
        )

    def put_object(self, Bucket, Key, Body, ContentType="binary/octet-stream", Metadata=None, ContentEncoding=None):
        self.calls.append("put_object")
        self.objects[(Bucket, Key)] = {
            "Body": Body,
            "ContentType": ContentType,
            "ContentEncoding": ContentEncoding,
            "Metadata": dict(Metadata or {}),
            "LastModified": datetime(2024, 1, 10, 10, 0, tzinfo=timezone.utc),
        }
        return {}

    def head_object(self, Bucket, Key):
        self.calls.append("head_object")
        obj = self.objects.get((Bucket, Key))
        if obj is None:
            raise self._missing("HeadObject", "404")
        response = {k: v for k, v in obj.items() if k != "Body" and v is not None}
        response["ContentLength"] = len(obj["Body"])
        return response

    def get_object(self, Bucket, Key):
        self.calls.append("get_object")
        if (Bucket, Key) not in self.objects:
            raise self._missing("GetObject", "NoSuchKey")
        response = self.head_object(Bucket, Key)
        response["Body"] = io.BytesIO(self.objects[(Bucket, Key)]["Body"])
        return response

    def delete_object(self, Bucket, Key):
        self.calls.append("delete_object")
        self.objects.pop((Bucket, Key), None)
        return {}

    def delete_objects(self, Bucket, Delete):
        self.calls.append("delete_objects")
        for item in Delete["Objects"]:
            self.objects.pop((Bucket, item["Key"]), None)
        return {}

    def copy_object(self, Bucket, CopySource, Key, MetadataDirective="COPY"):
        self.calls.append("copy_object")
        source = self.objects.get((CopySource["Bucket"], CopySource["Key"]))
        if source is None:
            raise self._missing("CopyObject", "NoSuchKey")
        self.objects[(Bucket, Key)] = dict(source, Metadata=dict(source["Metadata"]))
        return {}

    def get_paginator(self, operation: str):
        assert operation == "list_objects_v2"
        return self

    def paginate(self, Bucket, Prefix="", Delimiter=None):
        """Pages of ``page_size`` keys, folding keys below a delimiter into common prefixes."""
        self.calls.append("list_objects_v2")
        keys = sorted(key for bucket, key in self.objects if bucket == Bucket and key.startswith(Prefix))
        entries = []
        seen = set()
        for key in keys:
            rest = key[len(Prefix):]
            if Delimiter and Delimiter in rest:
                folder = Prefix + rest.split(Delimiter, 1)[0] + Delimiter
                if folder not in seen:
                    seen.add(folder)
                    entries.append(("CommonPrefixes", {"Prefix": folder}))
                continue
            obj = self.objects[(Bucket, key)]
            entries.append(("Contents", {"Key": key, "Size": len(obj["Body"]), "LastModified": obj["LastModified"]}))
        for start in range(0, max(len(entries), 1), self.page_size):
            page: dict = {}
            for kind, entry in entries[start:start + self.page_size]:
                page.setdefault(kind, []).append(entry)
            yield page


@pytest.fixture
def fake_github():
    return FakeGitHub()


@pytest.fixture
def github(fake_github):
    client = fake_github.client()
    yield client
    client.close()


@pytest.fixture
def code_bus(tmp_path):
    return RecordingBucket(tmp_path / "code-bus", "code-bus", workers=4)


@pytest.fixture
def content_bus(tmp_path):
    return RecordingBucket(tmp_path / "content-bus", "content-bus", workers=4)


@pytest.fixture
def downstream():
    return RecordingDownstream()


@pytest.fixture
def project():
    return ProjectConfig(
        org=OWNER,
        site=REPO,
        source_url=f"https://github.com/{OWNER}/{REPO}",
    )


@pytest.fixture
def settings():
    return SyncConfig(max_workers=4, idle_poll_seconds=0.01)


@pytest.fixture
def make_state(project):
    """Build a transient job state from an event payload."""
    def factory(payload, method="POST", transient=True):
        event, changes = prepare_event(payload, project, method)
        return new_job_state(event, changes, transient=transient)
    return factory


@pytest.fixture
def make_job(github, code_bus, content_bus, downstream, project, settings):
    """Wire a CodeJob against the fakes."""
    def factory(state, store=None, **overrides):
        options = {
            "github": github,
            "code_bus": code_bus,
            "content_bus": content_bus,
            "downstream": downstream,
            "store": store,
            "project": project,
            "settings": settings,
        }
        options.update(overrides)
        return CodeJob(state, **options)
    return factory


@pytest.fixture
def s3_client():
    return FakeS3Client()
