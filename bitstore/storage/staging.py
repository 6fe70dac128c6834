"""Stream copying and upload staging helpers shared by the backends."""

import inspect
import os
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Sequence

import aiofiles
import aiofiles.os

from bitstore.core.errors import staging_error
from bitstore.core.logging_config import get_logger


logger = get_logger(__name__)

CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class StagedFile:
    """A complete local copy of an upload, ready to be sent."""

    path: str
    size_bytes: int


async def read_chunk(stream: Any, size: int = CHUNK_SIZE) -> bytes:
    """Read from a sync (``BinaryIO``) or async (aiofiles, StreamingBody) stream."""
    chunk = stream.read(size)
    if inspect.isawaitable(chunk):
        chunk = await chunk
    return chunk


async def copy_stream(stream: Any, out: Any, *hashers: Any) -> int:
    """Copy ``stream`` into the aiofiles handle ``out`` in chunks.

    Args:
        stream: Source stream, consumed to EOF
        out: Destination opened with ``aiofiles.open(..., 'wb')``
        hashers: Objects with an ``update`` method (hashlib, botocore
            checksums) fed every chunk

    Returns:
        int: Number of bytes written
    """
    written = 0
    while chunk := await read_chunk(stream):
        await out.write(chunk)
        for hasher in hashers:
            hasher.update(chunk)
        written += len(chunk)
    return written


async def discard(path: str) -> None:
    """Delete a file, treating an already missing file as deleted."""
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass


# Leaves room for mkstemp's random part and suffix within a 255-byte name
STAGE_PREFIX_BYTES = 64


def _stage_prefix(identifier: str) -> str:
    head = identifier.replace('/', '_').encode('utf-8')[:STAGE_PREFIX_BYTES]
    return head.decode('utf-8', errors='ignore') + "-"


@asynccontextmanager
async def staged_copy(
    stream: Any,
    identifier: str,
    staging_dir: Optional[str] = None,
    hashers: Sequence[Any] = (),
) -> AsyncIterator[StagedFile]:
    """Copy ``stream`` to a per-call unique temp file and yield it.

    The temp file name is the start of the identifier plus a random
    disambiguator, so concurrent uploads of the same identifier never
    collide. ``hashers`` are fed the content while it is copied. The file is
    removed when the block exits, whether it succeeded or raised.

    Raises:
        StorageError: STAGING_FAILED on local I/O errors
    """
    try:
        fd, path = tempfile.mkstemp(
            prefix=_stage_prefix(identifier),
            suffix=".stage",
            dir=staging_dir,
        )
        os.close(fd)
    except OSError as exc:
        logger.error(
            "staging_file_create_failed",
            identifier=identifier,
            staging_dir=staging_dir,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise staging_error(
            "Could not create staging file",
            {"identifier": identifier, "staging_dir": staging_dir},
        ) from exc

    try:
        try:
            async with aiofiles.open(path, 'wb') as out:
                size_bytes = await copy_stream(stream, out, *hashers)
        except OSError as exc:
            logger.error(
                "staging_copy_failed",
                identifier=identifier,
                staging_path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise staging_error(
                "Could not stage upload",
                {"identifier": identifier},
            ) from exc

        logger.debug(
            "staging_copy_complete",
            identifier=identifier,
            staging_path=path,
            size_bytes=size_bytes,
        )
        yield StagedFile(path=path, size_bytes=size_bytes)
    finally:
        await discard(path)
