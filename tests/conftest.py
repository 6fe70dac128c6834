"""
Pytest configuration and shared fixtures for bitstore tests.

This module provides:
- Storage configuration fixtures with temporary paths
- An in-memory fake of the aioboto3 S3 client
- Initialized backend fixtures (S3 and local)
- Test data fixtures
"""

import asyncio
import base64
import hashlib
import zlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from botocore.exceptions import ClientError

from bitstore.core.config import StorageConfig
from bitstore.storage.local import LocalStorageBackend
from bitstore.storage.s3 import S3StorageBackend


# ============================================================================
# Fake S3 provider
# ============================================================================

def client_error(code: str, status: int, operation: str) -> ClientError:
    """Build a botocore ClientError the way the provider would return it."""
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} (fake)"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


class FakeStreamingBody:
    """Mimics aiobotocore's StreamingBody: async read, async context manager."""

    def __init__(self, data: bytes):
        self._data = data
        self._position = 0
        self.closed = False

    async def read(self, amt: Optional[int] = None) -> bytes:
        if amt is None or amt < 0:
            amt = len(self._data) - self._position
        chunk = self._data[self._position:self._position + amt]
        self._position += len(chunk)
        return chunk

    def close(self) -> None:
        self.closed = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.close()


class FakeS3Client:
    """In-memory S3 with just the calls the backend makes.

    ``failures`` maps a method name to an exception raised on every call.
    """

    def __init__(self):
        self.buckets: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.failures: Dict[str, Exception] = {}
        self.calls: List[str] = []
        self.create_bucket_args: List[Dict[str, Any]] = []
        self.staged_paths: List[str] = []
        self.put_headers: List[Dict[str, Any]] = []

    def _check(self, method: str) -> None:
        self.calls.append(method)
        if method in self.failures:
            raise self.failures[method]

    def _bucket(self, name: str, operation: str) -> Dict[str, Dict[str, Any]]:
        if name not in self.buckets:
            raise client_error("NoSuchBucket", 404, operation)
        return self.buckets[name]

    async def head_bucket(self, Bucket: str):
        self._check("head_bucket")
        if Bucket not in self.buckets:
            raise client_error("404", 404, "HeadBucket")
        return {}

    async def create_bucket(self, Bucket: str, **kwargs):
        self._check("create_bucket")
        self.create_bucket_args.append({"Bucket": Bucket, **kwargs})
        if Bucket in self.buckets:
            raise client_error("BucketAlreadyOwnedByYou", 409, "CreateBucket")
        self.buckets[Bucket] = {}
        return {}

    async def put_object(
        self,
        Bucket: str,
        Key: str,
        Body: Any,
        ContentLength: int,
        ContentMD5: Optional[str] = None,
        ChecksumCRC32: Optional[str] = None,
    ):
        self._check("put_object")
        objects = self._bucket(Bucket, "PutObject")
        self.staged_paths.append(Body.name)
        self.put_headers.append({"ContentMD5": ContentMD5, "ChecksumCRC32": ChecksumCRC32})
        data = Body.read()
        assert len(data) == ContentLength
        if ContentMD5 is not None and ContentMD5 != base64.b64encode(hashlib.md5(data).digest()).decode():
            raise client_error("BadDigest", 400, "PutObject")
        crc = base64.b64encode(zlib.crc32(data).to_bytes(4, "big")).decode()
        if ChecksumCRC32 is not None and ChecksumCRC32 != crc:
            raise client_error("BadDigest", 400, "PutObject")
        # Let concurrent uploads interleave
        await asyncio.sleep(0)
        etag = '"' + hashlib.md5(data).hexdigest() + '"'
        objects[Key] = {
            "data": data,
            "ETag": etag,
            "LastModified": datetime.now(timezone.utc).replace(microsecond=0),
        }
        return {"ETag": etag}

    async def get_object(self, Bucket: str, Key: str):
        self._check("get_object")
        objects = self._bucket(Bucket, "GetObject")
        if Key not in objects:
            raise client_error("NoSuchKey", 404, "GetObject")
        data = objects[Key]["data"]
        return {"Body": FakeStreamingBody(data), "ContentLength": len(data)}

    async def head_object(self, Bucket: str, Key: str):
        self._check("head_object")
        objects = self._bucket(Bucket, "HeadObject")
        if Key not in objects:
            raise client_error("404", 404, "HeadObject")
        stored = objects[Key]
        return {
            "ContentLength": len(stored["data"]),
            "ETag": stored["ETag"],
            "LastModified": stored["LastModified"],
        }

    async def delete_object(self, Bucket: str, Key: str):
        self._check("delete_object")
        self._bucket(Bucket, "DeleteObject").pop(Key, None)
        return {}


class FakeSession:
    """Stands in for ``aioboto3.Session``; hands out one shared FakeS3Client."""

    REGIONS = ["us-east-1", "us-west-2", "eu-west-1", "eu-central-1"]

    def __init__(self, client: Optional[FakeS3Client] = None):
        self.fake_client = client or FakeS3Client()
        self.client_kwargs: List[Dict[str, Any]] = []
        self.open_clients = 0

    def get_available_partitions(self) -> List[str]:
        return ["aws"]

    def get_available_regions(self, service_name: str, partition_name: str = "aws") -> List[str]:
        return list(self.REGIONS)

    def client(self, service_name: str, **kwargs):
        assert service_name == "s3"
        self.client_kwargs.append(kwargs)

        @asynccontextmanager
        async def _client():
            self.open_clients += 1
            try:
                yield self.fake_client
            finally:
                self.open_clients -= 1

        return _client()


# ============================================================================
# Configuration fixtures
# ============================================================================

@pytest.fixture
def staging_dir(tmp_path: Path) -> Path:
    path = tmp_path / "staging"
    path.mkdir()
    return path


@pytest.fixture
def storage_config(tmp_path: Path, staging_dir: Path) -> StorageConfig:
    """Storage configuration with fake credentials and temporary paths."""
    return StorageConfig(
        access_key="test-access-key",
        secret_key="test-secret-key",
        endpoint_url="http://s3.test:9000",
        bucket_name="bitstore-test",
        public_url="https://repo.example.org",
        staging_dir=str(staging_dir),
        local_path=str(tmp_path / "assetstore"),
    )


# ============================================================================
# Storage fixtures
# ============================================================================

@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def fake_s3(fake_session: FakeSession) -> FakeS3Client:
    return fake_session.fake_client


@pytest.fixture
async def s3_backend(storage_config: StorageConfig, fake_session: FakeSession):
    """Initialized S3 backend talking to the in-memory fake."""
    backend = S3StorageBackend(storage_config, session=fake_session)
    await backend.init()
    yield backend
    await backend.close()


@pytest.fixture
async def local_backend(storage_config: StorageConfig):
    """Initialized local filesystem backend in a temporary directory."""
    backend = LocalStorageBackend(storage_config)
    await backend.init()
    yield backend
    await backend.close()


# ============================================================================
# Test data fixtures
# ============================================================================

@pytest.fixture
def sample_bytes() -> bytes:
    """A payload larger than one copy chunk, with every byte value present."""
    return bytes(range(256)) * 600


# ============================================================================
# Utility functions
# ============================================================================

async def read_stream(stream: Any) -> bytes:
    """Read and close a stream returned by ``get``."""
    async with stream:
        return await stream.read()


class NonSeekableStream:
    """A sync readable stream with no seek/tell, like a socket or pipe."""

    def __init__(self, data: bytes, chunk: int = 1000):
        self._data = data
        self._position = 0
        self._chunk = chunk

    def read(self, size: int = -1) -> bytes:
        size = min(size, self._chunk) if size and size > 0 else self._chunk
        chunk = self._data[self._position:self._position + size]
        self._position += len(chunk)
        return chunk


class FailingStream:
    """Yields some bytes, then fails like a broken local read."""

    def __init__(self, data: bytes, fail_after: int = 1):
        self._data = data
        self._reads = 0
        self._fail_after = fail_after

    def read(self, size: int = -1) -> bytes:
        self._reads += 1
        if self._reads > self._fail_after:
            raise OSError("simulated read failure")
        return self._data
