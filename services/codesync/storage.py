"""
Object storage for the code bus and the content bus.

``Bucket`` defines the operations the sync job relies on. ``FileSystemBucket``
implements them on a local directory. Object bodies live under ``objects/``
and their metadata in JSON sidecars under ``meta/``:

    <root>/objects/<key>       - body (gzip encoded when stored compressed)
    <root>/meta/<key>.json     - content type, metadata map, last modified

``S3Bucket`` stores the same objects in an S3 (or S3 compatible) bucket, with
the metadata map as user metadata and ``Content-Encoding: gzip`` on
compressed bodies.
"""

from __future__ import annotations

import gzip
import json
import os
import shutil
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from .config import StorageConfig
from .utils import StorageError, http_date

# S3 DeleteObjects accepts at most this many keys per request
DELETE_BATCH_SIZE = 1000


@dataclass
class ObjectInfo:
    """Metadata of a stored object."""
    key: str
    path: str  # relative to the listed prefix
    content_length: int = 0
    content_type: str = "application/octet-stream"
    last_modified: Optional[str] = None
    meta: dict[str, str] = field(default_factory=dict)


def _normalize(key: str) -> str:
    return key.lstrip("/")


class Bucket:
    """Interface of an object storage bucket."""

    name: str = "bucket"

    def get(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def put(
        self,
        key: str,
        body: bytes | str,
        content_type: str = "application/octet-stream",
        meta: Optional[dict[str, str]] = None,
        compress: bool = True,
    ) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError

    def head(self, key: str) -> Optional[ObjectInfo]:
        raise NotImplementedError

    def list(self, prefix: str) -> list[ObjectInfo]:
        raise NotImplementedError

    def list_folders(self, prefix: str) -> list[str]:
        raise NotImplementedError

    def copy_deep(
        self,
        src: str,
        dst: str,
        filter_fn: Optional[Callable[[ObjectInfo], bool]] = None,
    ) -> list[ObjectInfo]:
        raise NotImplementedError

    def rmdir(self, prefix: str) -> int:
        raise NotImplementedError


class FileSystemBucket(Bucket):
    """Bucket stored in a local directory."""

    def __init__(self, root: str | Path, name: str = "code-bus", workers: int = 50):
        self.root = Path(root)
        self.name = name
        self.workers = max(1, workers)
        self._objects = self.root / "objects"
        self._meta = self.root / "meta"
        self._objects.mkdir(parents=True, exist_ok=True)
        self._meta.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"FileSystemBucket({self.name!r}, {str(self.root)!r})"

    # =========================================================================
    # Single objects
    # =========================================================================

    def get(self, key: str) -> Optional[bytes]:
        key = _normalize(key)
        body_path = self._objects / key
        if not body_path.is_file():
            return None
        data = body_path.read_bytes()
        sidecar = self._read_sidecar(key)
        if sidecar.get("compressed"):
            data = gzip.decompress(data)
        return data

    def put(
        self,
        key: str,
        body: bytes | str,
        content_type: str = "application/octet-stream",
        meta: Optional[dict[str, str]] = None,
        compress: bool = True,
    ) -> None:
        key = _normalize(key)
        if not key or key.endswith("/"):
            raise StorageError(f"invalid object key: {key!r}")
        if isinstance(body, str):
            body = body.encode("utf-8")

        stored = gzip.compress(body) if compress else body
        sidecar = {
            "contentType": content_type,
            "contentLength": len(body),
            "lastModified": http_date(),
            "compressed": compress,
            "meta": dict(meta or {}),
        }
        try:
            self._atomic_write(self._objects / key, stored)
            self._atomic_write(
                self._meta / f"{key}.json",
                json.dumps(sidecar).encode("utf-8"),
            )
        except OSError as e:
            raise StorageError(f"unable to store {self.name}/{key}: {e}") from e
        logger.debug(f"[{self.name}] put {key} ({len(body)} bytes)")

    def remove(self, key: str) -> None:
        key = _normalize(key)
        try:
            (self._objects / key).unlink(missing_ok=True)
            (self._meta / f"{key}.json").unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"unable to remove {self.name}/{key}: {e}") from e
        logger.debug(f"[{self.name}] removed {key}")

    def head(self, key: str) -> Optional[ObjectInfo]:
        key = _normalize(key)
        if not (self._objects / key).is_file():
            return None
        return self._info(key, key)

    # =========================================================================
    # Prefix operations
    # =========================================================================

    def list(self, prefix: str) -> list[ObjectInfo]:
        """List all objects below ``prefix`` (recursively), sorted by key."""
        prefix = _normalize(prefix)
        base = self._objects / prefix
        if not base.is_dir():
            return []
        result = []
        for path in sorted(base.rglob("*")):
            if not path.is_file() or path.name.startswith(".tmp-"):
                continue
            key = path.relative_to(self._objects).as_posix()
            result.append(self._info(key, key[len(prefix):]))
        return result

    def list_folders(self, prefix: str) -> list[str]:
        """List the immediate sub folders of ``prefix`` as prefixes ending with '/'."""
        prefix = _normalize(prefix)
        base = self._objects / prefix
        if not base.is_dir():
            return []
        return sorted(
            f"{prefix}{child.name}/" for child in base.iterdir() if child.is_dir()
        )

    def copy_deep(
        self,
        src: str,
        dst: str,
        filter_fn: Optional[Callable[[ObjectInfo], bool]] = None,
    ) -> list[ObjectInfo]:
        """
        Copy every object below ``src`` to the same relative path below ``dst``.

        Returns the copied objects (``path`` relative to the prefixes).
        """
        src = _normalize(src)
        dst = _normalize(dst)
        selected = [
            info for info in self.list(src)
            if filter_fn is None or filter_fn(info)
        ]

        def copy_one(info: ObjectInfo) -> ObjectInfo:
            target = f"{dst}{info.path}"
            try:
                self._atomic_copy(self._objects / info.key, self._objects / target)
                self._atomic_copy(
                    self._meta / f"{info.key}.json",
                    self._meta / f"{target}.json",
                )
            except OSError as e:
                raise StorageError(f"unable to copy {info.key} to {target}: {e}") from e
            return info

        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            copied = list(executor.map(copy_one, selected))
        logger.info(f"[{self.name}] copied {len(copied)} objects from {src} to {dst}")
        return copied

    def rmdir(self, prefix: str) -> int:
        """Remove every object below ``prefix``. Returns the number removed."""
        prefix = _normalize(prefix)
        if not prefix:
            raise StorageError("refusing to remove the bucket root")
        count = len(self.list(prefix))
        with self._lock:
            shutil.rmtree(self._objects / prefix, ignore_errors=True)
            shutil.rmtree(self._meta / prefix, ignore_errors=True)
        logger.info(f"[{self.name}] removed {count} objects below {prefix}")
        return count

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _info(self, key: str, path: str) -> ObjectInfo:
        sidecar = self._read_sidecar(key)
        return ObjectInfo(
            key=key,
            path=path,
            content_length=sidecar.get("contentLength", 0),
            content_type=sidecar.get("contentType", "application/octet-stream"),
            last_modified=sidecar.get("lastModified"),
            meta=sidecar.get("meta", {}),
        )

    def _read_sidecar(self, key: str) -> dict:
        try:
            return json.loads((self._meta / f"{key}.json").read_text("utf-8"))
        except FileNotFoundError:
            return {}

    def _atomic_write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _atomic_copy(self, src: Path, dst: Path) -> None:
        if not src.exists():
            return
        self._atomic_write(dst, src.read_bytes())


def _is_not_found(error: ClientError) -> bool:
    code = error.response.get("Error", {}).get("Code")
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return code in ("404", "NoSuchKey", "NotFound") or status == 404


class S3Bucket(Bucket):
    """
    Bucket stored in S3.

    The boto3 client is created on first use from the configured region,
    endpoint and credentials. Without explicit credentials boto3 falls back
    to the environment, the shared profile or the instance role.
    """

    def __init__(
        self,
        bucket: str,
        name: str = "code-bus",
        workers: int = 50,
        region: str = "",
        endpoint_url: str = "",
        access_key_id: str = "",
        secret_access_key: str = "",
        session_token: str = "",
        client: Any = None,
    ):
        if not bucket:
            raise StorageError(f"{name}: S3 bucket name is required")
        self.bucket = bucket
        self.name = name
        self.workers = max(1, workers)
        self.region = region
        self.endpoint_url = endpoint_url
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._session_token = session_token
        self._client = client

    def __repr__(self) -> str:
        return f"S3Bucket({self.name!r}, {self.bucket!r})"

    def _client_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if self.region:
            kwargs["region_name"] = self.region
        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url
        if self._access_key_id and self._secret_access_key:
            kwargs["aws_access_key_id"] = self._access_key_id
            kwargs["aws_secret_access_key"] = self._secret_access_key
            if self._session_token:
                kwargs["aws_session_token"] = self._session_token
        return kwargs

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("s3", **self._client_kwargs())
        return self._client

    # =========================================================================
    # Single objects
    # =========================================================================

    def get(self, key: str) -> Optional[bytes]:
        key = _normalize(key)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_not_found(e):
                return None
            raise StorageError(f"unable to read {self.name}/{key}: {e}") from e
        data = response["Body"].read()
        if response.get("ContentEncoding") == "gzip":
            data = gzip.decompress(data)
        return data

    def put(
        self,
        key: str,
        body: bytes | str,
        content_type: str = "application/octet-stream",
        meta: Optional[dict[str, str]] = None,
        compress: bool = True,
    ) -> None:
        key = _normalize(key)
        if not key or key.endswith("/"):
            raise StorageError(f"invalid object key: {key!r}")
        if isinstance(body, str):
            body = body.encode("utf-8")

        kwargs: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": gzip.compress(body) if compress else body,
            "ContentType": content_type,
            "Metadata": {k.lower(): str(v) for k, v in (meta or {}).items()},
        }
        if compress:
            kwargs["ContentEncoding"] = "gzip"
        try:
            self.client.put_object(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"unable to store {self.name}/{key}: {e}") from e
        logger.debug(f"[{self.name}] put {key} ({len(body)} bytes)")

    def remove(self, key: str) -> None:
        key = _normalize(key)
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"unable to remove {self.name}/{key}: {e}") from e
        logger.debug(f"[{self.name}] removed {key}")

    def head(self, key: str) -> Optional[ObjectInfo]:
        key = _normalize(key)
        return self._head(key, key)

    # =========================================================================
    # Prefix operations
    # =========================================================================

    def list(self, prefix: str) -> list[ObjectInfo]:
        """
        List all objects below ``prefix`` (recursively), sorted by key.

        Listings carry no user metadata; ``head`` an object to read it.
        """
        prefix = _normalize(prefix)
        result = [
            ObjectInfo(
                key=obj["Key"],
                path=obj["Key"][len(prefix):],
                content_length=obj.get("Size", 0),
                last_modified=http_date(obj["LastModified"]) if obj.get("LastModified") else None,
            )
            for page in self._pages(prefix)
            for obj in page.get("Contents", [])
        ]
        return sorted(result, key=lambda info: info.key)

    def list_folders(self, prefix: str) -> list[str]:
        """List the immediate sub folders of ``prefix`` as prefixes ending with '/'."""
        prefix = _normalize(prefix)
        return sorted(
            common["Prefix"]
            for page in self._pages(prefix, delimiter="/")
            for common in page.get("CommonPrefixes", [])
        )

    def copy_deep(
        self,
        src: str,
        dst: str,
        filter_fn: Optional[Callable[[ObjectInfo], bool]] = None,
    ) -> list[ObjectInfo]:
        """
        Copy every object below ``src`` to the same relative path below ``dst``.

        Returns the copied objects, with their metadata, in listing order.
        """
        src = _normalize(src)
        dst = _normalize(dst)
        selected = [
            info for info in self.list(src)
            if filter_fn is None or filter_fn(info)
        ]

        def copy_one(info: ObjectInfo) -> ObjectInfo:
            target = f"{dst}{info.path}"
            try:
                self.client.copy_object(
                    Bucket=self.bucket,
                    CopySource={"Bucket": self.bucket, "Key": info.key},
                    Key=target,
                    MetadataDirective="COPY",
                )
            except (ClientError, BotoCoreError) as e:
                raise StorageError(f"unable to copy {info.key} to {target}: {e}") from e
            return self._head(info.key, info.path) or info

        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            copied = list(executor.map(copy_one, selected))
        logger.info(f"[{self.name}] copied {len(copied)} objects from {src} to {dst}")
        return copied

    def rmdir(self, prefix: str) -> int:
        """Remove every object below ``prefix``. Returns the number removed."""
        prefix = _normalize(prefix)
        if not prefix:
            raise StorageError("refusing to remove the bucket root")
        keys = [info.key for info in self.list(prefix)]
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start:start + DELETE_BATCH_SIZE]
            try:
                response = self.client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                )
            except (ClientError, BotoCoreError) as e:
                raise StorageError(f"unable to remove {self.name}/{prefix}: {e}") from e
            errors = response.get("Errors", [])
            if errors:
                raise StorageError(
                    f"unable to remove {len(errors)} objects below {self.name}/{prefix}: "
                    f"{errors[0].get('Key')}: {errors[0].get('Message')}"
                )
        logger.info(f"[{self.name}] removed {len(keys)} objects below {prefix}")
        return len(keys)

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _head(self, key: str, path: str) -> Optional[ObjectInfo]:
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_not_found(e):
                return None
            raise StorageError(f"unable to read {self.name}/{key}: {e}") from e
        return ObjectInfo(
            key=key,
            path=path,
            content_length=response.get("ContentLength", 0),
            content_type=response.get("ContentType", "application/octet-stream"),
            last_modified=http_date(response["LastModified"]) if response.get("LastModified") else None,
            meta=dict(response.get("Metadata", {})),
        )

    def _pages(self, prefix: str, delimiter: str = "") -> Iterator[dict]:
        paginator = self.client.get_paginator("list_objects_v2")
        page_config = {"Delimiter": delimiter} if delimiter else {}
        try:
            yield from paginator.paginate(Bucket=self.bucket, Prefix=prefix, **page_config)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"unable to list {self.name}/{prefix}: {e}") from e


def create_bucket(storage: StorageConfig, bus: str, workers: int = 50) -> Bucket:
    """Open the ``code`` or ``content`` bus on the configured backend."""
    name = f"{bus}-bus"
    if storage.backend == "s3":
        return S3Bucket(
            storage.code_bus_bucket if bus == "code" else storage.content_bus_bucket,
            name,
            workers,
            region=storage.region,
            endpoint_url=storage.endpoint_url,
            access_key_id=storage.access_key_id,
            secret_access_key=storage.secret_access_key,
            session_token=storage.session_token,
        )
    if storage.backend != "filesystem":
        raise StorageError(f"unknown storage backend: {storage.backend!r}")
    return FileSystemBucket(storage.code_bus_path if bus == "code" else storage.content_bus_path, name, workers)
