"""Object store capability: list, streamed get and put of named blobs.

Implementations:
- S3ObjectStore: any S3-compatible service (Cloudflare R2, AWS S3, MinIO) via boto3
- LocalObjectStore: a directory tree, for local runs and tests
- HttpSource: read-only http(s) source used by the single-asset ingest pipeline

All transport failures surface as ObjectStoreError so the orchestrator can
record them as stage failures without knowing the backend.
"""

import contextlib
import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Iterator, Optional

import boto3
import httpx
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from hlspipe.config import StorageConfig

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
    ".mp4": "video/mp4",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class ObjectStoreError(Exception):
    """Raised when a list, get or put against the store fails."""


def content_type_for(name: str) -> str:
    """Map a key or filename to the Content-Type it is published with."""
    return CONTENT_TYPES.get(PurePosixPath(name).suffix.lower(), DEFAULT_CONTENT_TYPE)


def join_key(*parts: str) -> str:
    """Join key segments with single slashes."""
    return "/".join(p.strip("/") for p in parts if p and p.strip("/"))


class ObjectStore(ABC):
    """Abstract blob store used by the orchestrator."""

    @abstractmethod
    def list(self, prefix: str) -> list[str]:
        """Return every key starting with prefix."""
        ...

    @abstractmethod
    def get(self, key: str) -> Iterator[bytes]:
        """Stream the blob stored under key as byte chunks."""
        ...

    @abstractmethod
    def put(self, key: str, stream: BinaryIO, content_type: str) -> None:
        """Store the contents of stream under key."""
        ...


class S3ObjectStore(ObjectStore):
    """S3-compatible object store backed by a boto3 client.

    boto3 clients are thread-safe, so one instance can serve every worker.
    """

    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        region: str = "auto",
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        connect_timeout: float = 30.0,
        read_timeout: float = 300.0,
        client=None,
    ):
        self.bucket = bucket
        if client is None:
            client_kwargs = {
                "region_name": region,
                "config": BotoConfig(
                    connect_timeout=connect_timeout,
                    read_timeout=read_timeout,
                    retries={"max_attempts": 3, "mode": "standard"},
                ),
            }
            if endpoint_url:
                client_kwargs["endpoint_url"] = endpoint_url
            if access_key_id and secret_access_key:
                client_kwargs["aws_access_key_id"] = access_key_id
                client_kwargs["aws_secret_access_key"] = secret_access_key
            client = boto3.client("s3", **client_kwargs)
        self._client = client

    @classmethod
    def from_config(cls, config: StorageConfig) -> "S3ObjectStore":
        return cls(
            bucket=config.bucket,
            endpoint_url=config.resolved_endpoint(),
            region=config.region,
            access_key_id=config.access_key_id,
            secret_access_key=config.secret_access_key,
            connect_timeout=config.connect_timeout_seconds,
            read_timeout=config.read_timeout_seconds,
        )

    def list(self, prefix: str) -> list[str]:
        keys = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
        except (BotoCoreError, ClientError) as e:
            raise ObjectStoreError(f"Listing s3://{self.bucket}/{prefix} failed: {e}") from e
        return keys

    def get(self, key: str) -> Iterator[bytes]:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            body = response["Body"]
            try:
                yield from body.iter_chunks(CHUNK_SIZE)
            finally:
                body.close()
        except (BotoCoreError, ClientError) as e:
            raise ObjectStoreError(f"Download of s3://{self.bucket}/{key} failed: {e}") from e

    def put(self, key: str, stream: BinaryIO, content_type: str) -> None:
        try:
            # upload_fileobj switches to multipart for large files
            self._client.upload_fileobj(
                stream,
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type},
            )
        except (BotoCoreError, ClientError) as e:
            raise ObjectStoreError(f"Upload to s3://{self.bucket}/{key} failed: {e}") from e
        logger.debug(f"S3 put: s3://{self.bucket}/{key} ({content_type})")


class LocalObjectStore(ObjectStore):
    """Object store laid out as files under a root directory.

    Keys map to relative paths; path traversal outside the root is rejected.
    Puts are atomic (temp file + rename) so listings never see partial blobs.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root) or path == self.root:
            raise ObjectStoreError(f"Invalid object key: {key!r}")
        return path

    def list(self, prefix: str) -> list[str]:
        keys = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path.name.startswith("."):
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def get(self, key: str) -> Iterator[bytes]:
        path = self._path(key)
        try:
            with open(path, "rb") as f:
                while chunk := f.read(CHUNK_SIZE):
                    yield chunk
        except OSError as e:
            raise ObjectStoreError(f"Reading {key} failed: {e}") from e

    def put(self, key: str, stream: BinaryIO, content_type: str) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
            try:
                with os.fdopen(fd, "wb") as f:
                    shutil.copyfileobj(stream, f, CHUNK_SIZE)
                os.replace(tmp_path, path)
            except BaseException:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise ObjectStoreError(f"Writing {key} failed: {e}") from e


class HttpSource(ObjectStore):
    """Read-only source that treats each key as an http(s) URL."""

    def __init__(self, timeout: float = 300.0, client: Optional[httpx.Client] = None):
        self._client = client or httpx.Client(
            follow_redirects=True,
            timeout=httpx.Timeout(timeout, connect=30.0),
        )

    def list(self, prefix: str) -> list[str]:
        raise ObjectStoreError("HTTP sources cannot be listed; pass URLs explicitly")

    def get(self, key: str) -> Iterator[bytes]:
        logger.info(f"Downloading video from: {key}")
        try:
            with self._client.stream("GET", key) as response:
                response.raise_for_status()
                yield from response.iter_bytes(CHUNK_SIZE)
        except httpx.HTTPError as e:
            raise ObjectStoreError(f"Failed to download {key}: {e}") from e

    def put(self, key: str, stream: BinaryIO, content_type: str) -> None:
        raise ObjectStoreError("HTTP sources are read-only")

    def close(self) -> None:
        self._client.close()


def build_object_store(config: StorageConfig) -> ObjectStore:
    """Return the configured object store backend."""
    if config.backend == "local":
        logger.debug(f"Using local object store at {config.local_root}")
        return LocalObjectStore(config.local_root)
    logger.debug(f"Using S3 object store bucket={config.bucket} endpoint={config.resolved_endpoint()}")
    return S3ObjectStore.from_config(config)
