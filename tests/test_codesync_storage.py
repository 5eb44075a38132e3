"""
Tests for the file system and S3 buckets.
"""

import gzip
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from services.codesync import FileSystemBucket, S3Bucket, create_bucket
from services.codesync.config import StorageConfig
from services.codesync.utils import StorageError


@pytest.fixture
def bucket(tmp_path):
    return FileSystemBucket(tmp_path / "bus", "code-bus", workers=2)


class TestObjects:
    """Test single object operations."""

    def test_put_and_get(self, bucket):
        bucket.put("/o/r/main/a.md", "hello", "text/markdown", {"x-commit-id": "abc"})

        assert bucket.get("o/r/main/a.md") == b"hello"
        info = bucket.head("/o/r/main/a.md")
        assert info.key == "o/r/main/a.md"
        assert info.content_type == "text/markdown"
        assert info.content_length == 5
        assert info.meta == {"x-commit-id": "abc"}
        assert info.last_modified.endswith("GMT")

    def test_compression_is_transparent(self, bucket, tmp_path):
        bucket.put("a.txt", b"a" * 100)
        bucket.put("b.png", b"png", compress=False)

        assert (tmp_path / "bus" / "objects" / "a.txt").read_bytes() != b"a" * 100
        assert (tmp_path / "bus" / "objects" / "b.png").read_bytes() == b"png"
        assert bucket.get("a.txt") == b"a" * 100
        assert bucket.head("a.txt").content_length == 100

    def test_overwrite_replaces_metadata(self, bucket):
        bucket.put("a.md", b"1", meta={"x-source-last-modified": "old"})
        bucket.put("a.md", b"2", meta={"x-commit-id": "new"})

        assert bucket.get("a.md") == b"2"
        assert bucket.head("a.md").meta == {"x-commit-id": "new"}

    def test_missing(self, bucket):
        assert bucket.get("nope") is None
        assert bucket.head("nope") is None

    def test_remove(self, bucket):
        bucket.put("a.md", b"a")
        bucket.remove("/a.md")
        bucket.remove("/never-existed.md")

        assert bucket.get("a.md") is None

    @pytest.mark.parametrize("key", ["", "/", "folder/"])
    def test_invalid_key(self, bucket, key):
        with pytest.raises(StorageError):
            bucket.put(key, b"x")


class TestPrefixes:
    """Test listing, copying and removing below a prefix."""

    def _populate(self, bucket):
        for key in ("o/r/main/a.md", "o/r/main/.sha", "o/r/main/x/b.js", "o/r/dev/c.md", "o/other/main/d.md"):
            bucket.put(key, key.encode(), meta={"x-commit-id": "c"})

    def test_list(self, bucket):
        self._populate(bucket)

        listed = bucket.list("/o/r/main/")

        assert [i.path for i in listed] == [".sha", "a.md", "x/b.js"]
        assert listed[1].key == "o/r/main/a.md"
        assert bucket.list("o/r/missing/") == []

    def test_list_folders(self, bucket):
        self._populate(bucket)
        assert bucket.list_folders("o/r/") == ["o/r/dev/", "o/r/main/"]
        assert bucket.list_folders("o/none/") == []

    def test_copy_deep(self, bucket):
        self._populate(bucket)

        copied = bucket.copy_deep("/o/r/main/", "/o/r/feature/", lambda info: info.path != ".sha")

        assert sorted(i.path for i in copied) == ["a.md", "x/b.js"]
        assert bucket.get("o/r/feature/x/b.js") == b"o/r/main/x/b.js"
        assert bucket.head("o/r/feature/a.md").meta == {"x-commit-id": "c"}
        assert bucket.head("o/r/feature/.sha") is None

    def test_rmdir(self, bucket):
        self._populate(bucket)

        assert bucket.rmdir("/o/r/main/") == 3
        assert bucket.list("o/r/main/") == []
        assert bucket.get("o/r/dev/c.md") == b"o/r/dev/c.md"
        assert bucket.rmdir("o/r/main/") == 0

    def test_rmdir_refuses_root(self, bucket):
        with pytest.raises(StorageError):
            bucket.rmdir("/")


@pytest.fixture
def s3_bucket(s3_client):
    return S3Bucket("code", "code-bus", workers=2, client=s3_client)


class TestS3Objects:
    """Test single object operations against S3."""

    def test_put_and_get(self, s3_bucket, s3_client):
        s3_bucket.put("/o/r/main/a.md", "hello", "text/markdown", {"x-commit-id": "abc"})

        stored = s3_client.objects[("code", "o/r/main/a.md")]
        assert stored["ContentEncoding"] == "gzip"
        assert gzip.decompress(stored["Body"]) == b"hello"
        assert s3_bucket.get("o/r/main/a.md") == b"hello"
        info = s3_bucket.head("/o/r/main/a.md")
        assert info.key == "o/r/main/a.md"
        assert info.content_type == "text/markdown"
        assert info.meta == {"x-commit-id": "abc"}
        assert info.last_modified == "Wed, 10 Jan 2024 10:00:00 GMT"

    def test_uncompressed(self, s3_bucket, s3_client):
        s3_bucket.put("b.png", b"png", "image/png", compress=False)

        stored = s3_client.objects[("code", "b.png")]
        assert stored["Body"] == b"png"
        assert stored["ContentEncoding"] is None
        assert s3_bucket.get("b.png") == b"png"
        assert s3_bucket.head("b.png").content_length == 3

    def test_missing(self, s3_bucket):
        assert s3_bucket.get("nope") is None
        assert s3_bucket.head("nope") is None

    def test_remove(self, s3_bucket):
        s3_bucket.put("a.md", b"a")
        s3_bucket.remove("/a.md")
        assert s3_bucket.get("a.md") is None

    @pytest.mark.parametrize("key", ["", "/", "folder/"])
    def test_invalid_key(self, s3_bucket, key):
        with pytest.raises(StorageError):
            s3_bucket.put(key, b"x")

    def test_access_denied_is_a_storage_error(self):
        client = MagicMock()
        client.head_object.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "Forbidden"}, "ResponseMetadata": {"HTTPStatusCode": 403}},
            "HeadObject",
        )
        client.put_object.side_effect = client.head_object.side_effect
        bucket = S3Bucket("code", client=client)

        with pytest.raises(StorageError):
            bucket.head("a.md")
        with pytest.raises(StorageError):
            bucket.put("a.md", b"a")
        client.head_object.assert_called_once_with(Bucket="code", Key="a.md")

    def test_bucket_name_required(self):
        with pytest.raises(StorageError):
            S3Bucket("")


class TestS3Prefixes:
    """Test listing, copying and removing below a prefix in S3."""

    def _populate(self, bucket):
        for key in ("o/r/main/a.md", "o/r/main/.sha", "o/r/main/x/b.js", "o/r/dev/c.md", "o/other/main/d.md"):
            bucket.put(key, key.encode(), meta={"x-commit-id": "c"})

    def test_list_spans_pages(self, s3_bucket):
        self._populate(s3_bucket)

        listed = s3_bucket.list("/o/r/main/")

        assert [i.path for i in listed] == [".sha", "a.md", "x/b.js"]
        assert listed[1].key == "o/r/main/a.md"
        assert s3_bucket.list("o/r/missing/") == []

    def test_list_folders(self, s3_bucket):
        self._populate(s3_bucket)
        assert s3_bucket.list_folders("o/r/") == ["o/r/dev/", "o/r/main/"]
        assert s3_bucket.list_folders("o/") == ["o/other/", "o/r/"]
        assert s3_bucket.list_folders("o/none/") == []

    def test_copy_deep_keeps_metadata(self, s3_bucket):
        self._populate(s3_bucket)

        copied = s3_bucket.copy_deep("/o/r/main/", "/o/r/feature/", lambda info: info.path != ".sha")

        assert sorted(i.path for i in copied) == ["a.md", "x/b.js"]
        assert all(i.meta == {"x-commit-id": "c"} for i in copied)
        assert s3_bucket.get("o/r/feature/x/b.js") == b"o/r/main/x/b.js"
        assert s3_bucket.head("o/r/feature/a.md").meta == {"x-commit-id": "c"}
        assert s3_bucket.head("o/r/feature/.sha") is None

    def test_rmdir_batches(self, s3_bucket, s3_client, monkeypatch):
        monkeypatch.setattr("services.codesync.storage.DELETE_BATCH_SIZE", 2)
        self._populate(s3_bucket)

        assert s3_bucket.rmdir("/o/r/main/") == 3
        assert s3_client.calls.count("delete_objects") == 2
        assert s3_bucket.list("o/r/main/") == []
        assert s3_bucket.get("o/r/dev/c.md") == b"o/r/dev/c.md"

    def test_rmdir_reports_failed_keys(self, s3_bucket, s3_client, monkeypatch):
        self._populate(s3_bucket)
        monkeypatch.setattr(
            s3_client,
            "delete_objects",
            lambda Bucket, Delete: {"Errors": [{"Key": "o/r/main/a.md", "Message": "Access Denied"}]},
        )
        with pytest.raises(StorageError) as exc_info:
            s3_bucket.rmdir("o/r/main/")
        assert "o/r/main/a.md" in str(exc_info.value)

    def test_rmdir_refuses_root(self, s3_bucket):
        with pytest.raises(StorageError):
            s3_bucket.rmdir("/")


class TestCreateBucket:
    """Test choosing the storage backend from the configuration."""

    def test_filesystem(self, tmp_path):
        storage = StorageConfig(code_bus_path=str(tmp_path / "code"), content_bus_path=str(tmp_path / "content"))
        bucket = create_bucket(storage, "content", workers=3)
        assert isinstance(bucket, FileSystemBucket)
        assert bucket.name == "content-bus"
        assert bucket.root == tmp_path / "content"

    def test_s3(self):
        storage = StorageConfig(
            backend="s3",
            code_bus_bucket="helix-code-bus",
            content_bus_bucket="helix-content-bus",
            region="us-east-1",
            endpoint_url="http://localhost:9000",
            access_key_id="key",
            secret_access_key="secret",
        )
        bucket = create_bucket(storage, "code")
        assert isinstance(bucket, S3Bucket)
        assert bucket.bucket == "helix-code-bus"
        assert bucket._client_kwargs() == {
            "region_name": "us-east-1",
            "endpoint_url": "http://localhost:9000",
            "aws_access_key_id": "key",
            "aws_secret_access_key": "secret",
        }

    def test_unknown_backend(self):
        with pytest.raises(StorageError):
            create_bucket(StorageConfig(backend="gcs"), "code")
