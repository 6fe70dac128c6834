"""
Local filesystem storage backend tests.
"""

import asyncio
import hashlib
import io
from pathlib import Path

import pytest

from bitstore.core.errors import ErrorCode, StorageError
from bitstore.storage.local import LocalReadStream, LocalStorageBackend
from bitstore.storage.models import DescriptorField
from tests.conftest import FailingStream, read_stream


def digest(identifier: str) -> str:
    return hashlib.sha256(identifier.encode('utf-8')).hexdigest()


# ============================================================================
# Layout tests
# ============================================================================

@pytest.mark.unit
def test_local_path_is_sharded(storage_config):
    """Test objects live three shard levels below the root."""
    backend = LocalStorageBackend(storage_config)
    name = digest("abcdef123")

    assert backend.get_local_path("abcdef123") == \
        Path(storage_config.local_path) / name[0:2] / name[2:4] / name[4:6] / name


@pytest.mark.unit
def test_short_identifiers_are_sharded_too(storage_config):
    """Test a two-character identifier never maps onto a shard directory."""
    backend = LocalStorageBackend(storage_config)
    base = Path(storage_config.local_path)

    path = backend.get_local_path("ab")

    assert path.relative_to(base).parts[:3] == (path.name[0:2], path.name[2:4], path.name[4:6])
    assert len(path.relative_to(base).parts) == 4


@pytest.mark.unit
def test_local_path_applies_subfolder(storage_config):
    """Test the subfolder becomes a directory above the shards."""
    config = storage_config.model_copy(update={"subfolder": "assets"})
    backend = LocalStorageBackend(config)
    name = digest("abcdef123")

    assert backend.get_local_path("abcdef123") == \
        Path(storage_config.local_path) / "assets" / name[0:2] / name[2:4] / name[4:6] / name


@pytest.mark.unit
def test_local_path_rejects_invalid_identifier(storage_config):
    """Test identifiers are validated before any path is built."""
    backend = LocalStorageBackend(storage_config)

    with pytest.raises(StorageError) as exc_info:
        backend.get_local_path("../etc/passwd")

    assert exc_info.value.code == ErrorCode.INVALID_IDENTIFIER


@pytest.mark.unit
@pytest.mark.asyncio
async def test_init_creates_base_directory(storage_config):
    """Test init creates the root directory and can be repeated."""
    backend = LocalStorageBackend(storage_config)
    assert not Path(storage_config.local_path).exists()

    await backend.init()
    await backend.init()

    assert Path(storage_config.local_path).is_dir()
    assert backend.ready


@pytest.mark.unit
@pytest.mark.asyncio
async def test_init_fails_when_directory_cannot_be_created(storage_config, tmp_path):
    """Test an unusable root directory fails initialization."""
    blocker = tmp_path / "file"
    blocker.write_bytes(b"")
    config = storage_config.model_copy(update={"local_path": str(blocker / "store")})

    with pytest.raises(StorageError) as exc_info:
        await LocalStorageBackend(config).init()

    assert exc_info.value.code == ErrorCode.INITIALIZATION_FAILED


@pytest.mark.unit
@pytest.mark.asyncio
async def test_operations_before_init_are_rejected(storage_config):
    """Test operations on an uninitialized backend raise NOT_INITIALIZED."""
    backend = LocalStorageBackend(storage_config)

    with pytest.raises(StorageError) as exc_info:
        await backend.put("abc", io.BytesIO(b"data"))

    assert exc_info.value.code == ErrorCode.NOT_INITIALIZED


# ============================================================================
# Contract tests
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_round_trip(local_backend, sample_bytes):
    """Test stored content reads back unchanged with an MD5 checksum."""
    identifier = local_backend.generate_id()

    descriptor = await local_backend.put(identifier, io.BytesIO(sample_bytes))

    assert await read_stream(await local_backend.get(identifier)) == sample_bytes
    assert descriptor.size_bytes == len(sample_bytes)
    assert descriptor.checksum == hashlib.md5(sample_bytes).hexdigest()
    assert descriptor.checksum_algorithm == "MD5"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_get_returns_closeable_stream(local_backend):
    """Test the stream from get works with async with and reads in chunks."""
    await local_backend.put("abcdef123", io.BytesIO(b"0123456789"))

    stream = await local_backend.get("abcdef123")

    assert isinstance(stream, LocalReadStream)
    async with stream as opened:
        assert await opened.read(4) == b"0123"
        assert await opened.read() == b"456789"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_checksum_stability(local_backend, sample_bytes):
    """Test about reports the same metadata put returned."""
    descriptor = await local_backend.put("abcdef123", io.BytesIO(sample_bytes))

    about = await local_backend.about("abcdef123")

    assert about.checksum == descriptor.checksum
    assert about.size_bytes == descriptor.size_bytes
    assert about.modified == descriptor.modified


@pytest.mark.unit
@pytest.mark.asyncio
async def test_about_absent_returns_none(local_backend):
    """Test about returns None for an identifier never stored."""
    assert await local_backend.about("never-stored", [DescriptorField.SIZE_BYTES]) is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_about_returns_only_requested_fields(local_backend):
    """Test about leaves unrequested fields empty."""
    await local_backend.put("abcdef123", io.BytesIO(b"data"))

    about = await local_backend.about("abcdef123", [DescriptorField.SIZE_BYTES])

    assert about.size_bytes == 4
    assert about.checksum is None
    assert about.modified is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_get_missing_is_not_found(local_backend):
    """Test get of an identifier never stored raises NOT_FOUND."""
    with pytest.raises(StorageError) as exc_info:
        await local_backend.get("never-stored")

    assert exc_info.value.code == ErrorCode.NOT_FOUND


@pytest.mark.unit
@pytest.mark.asyncio
async def test_short_identifier_is_independent_of_longer_ones(local_backend):
    """Test an identifier that prefixes a stored one is still absent, then storable."""
    await local_backend.put("abcdef0123", io.BytesIO(b"data"))

    assert await local_backend.about("ab", [DescriptorField.SIZE_BYTES]) is None
    with pytest.raises(StorageError) as exc_info:
        await local_backend.get("ab")
    assert exc_info.value.code == ErrorCode.NOT_FOUND

    await local_backend.put("ab", io.BytesIO(b"short"))

    assert await read_stream(await local_backend.get("ab")) == b"short"
    assert await read_stream(await local_backend.get("abcdef0123")) == b"data"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_identifiers_with_slashes_do_not_collide(local_backend):
    """Test 'a/b' and 'a' are stored as separate objects."""
    await local_backend.put("a/b", io.BytesIO(b"nested"))
    await local_backend.put("a", io.BytesIO(b"flat"))

    assert await read_stream(await local_backend.get("a/b")) == b"nested"
    assert await read_stream(await local_backend.get("a")) == b"flat"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_directory_at_object_path_counts_as_absent(local_backend):
    """Test a directory where an object should be is reported as absent."""
    local_backend.get_local_path("abcdef123").mkdir(parents=True)

    assert await local_backend.about("abcdef123") is None
    with pytest.raises(StorageError) as exc_info:
        await local_backend.get("abcdef123")
    assert exc_info.value.code == ErrorCode.NOT_FOUND


@pytest.mark.unit
@pytest.mark.asyncio
async def test_long_identifier_round_trip(local_backend):
    """Test identifiers longer than a file name can hold are still stored."""
    identifier = "x" * 600

    await local_backend.put(identifier, io.BytesIO(b"data"))

    assert await read_stream(await local_backend.get(identifier)) == b"data"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_overwrite_replaces_content(local_backend):
    """Test a second put to the same identifier replaces the content."""
    await local_backend.put("abcdef123", io.BytesIO(b"first version"))
    await local_backend.put("abcdef123", io.BytesIO(b"second"))

    assert await read_stream(await local_backend.get("abcdef123")) == b"second"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_failed_put_keeps_previous_content(local_backend):
    """Test a failed put leaves the previous content and no temp file."""
    await local_backend.put("abcdef123", io.BytesIO(b"original"))

    with pytest.raises(StorageError) as exc_info:
        await local_backend.put("abcdef123", FailingStream(b"partial"))

    assert exc_info.value.code == ErrorCode.STAGING_FAILED
    assert await read_stream(await local_backend.get("abcdef123")) == b"original"
    object_path = local_backend.get_local_path("abcdef123")
    assert [p.name for p in object_path.parent.iterdir()] == [object_path.name]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_remove_prunes_empty_directories(local_backend, storage_config):
    """Test remove deletes shard directories it leaves empty."""
    await local_backend.put("abcdef123", io.BytesIO(b"data"))

    await local_backend.remove("abcdef123")

    assert await local_backend.about("abcdef123") is None
    assert list(Path(storage_config.local_path).iterdir()) == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_remove_keeps_other_objects(local_backend):
    """Test removing one object leaves the others readable."""
    await local_backend.put("abcdef111", io.BytesIO(b"one"))
    await local_backend.put("abcdef222", io.BytesIO(b"two"))

    await local_backend.remove("abcdef111")

    assert await read_stream(await local_backend.get("abcdef222")) == b"two"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_remove_is_idempotent(local_backend):
    """Test removing a missing object is not an error."""
    await local_backend.remove("never-stored")
    await local_backend.put("abcdef123", io.BytesIO(b"data"))
    await local_backend.remove("abcdef123")
    await local_backend.remove("abcdef123")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_concurrent_puts_with_distinct_identifiers(local_backend):
    """Test concurrent puts of distinct identifiers all land intact."""
    payloads = {local_backend.generate_id(): f"payload-{i}".encode() * (i + 1) for i in range(25)}

    await asyncio.gather(*(
        local_backend.put(identifier, io.BytesIO(data))
        for identifier, data in payloads.items()
    ))

    for identifier, expected in payloads.items():
        about = await local_backend.about(identifier, [DescriptorField.SIZE_BYTES])
        assert about.size_bytes == len(expected)
        assert await read_stream(await local_backend.get(identifier)) == expected
