"""Local filesystem storage backend."""

import hashlib
import os
import stat
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import aiofiles
import aiofiles.os

from bitstore.core.config import StorageConfig
from bitstore.core.errors import (
    initialization_error,
    not_found_error,
    not_initialized_error,
    provider_error,
    staging_error,
)
from bitstore.core.logging_config import get_logger
from bitstore.storage.keys import build_key, generate_id, normalize_prefix
from bitstore.storage.models import AssetDescriptor, DescriptorField, resolve_fields
from bitstore.storage.staging import copy_stream, discard, read_chunk


logger = get_logger(__name__)


def _md5():
    return hashlib.md5(usedforsecurity=False)


class LocalReadStream:
    """Read handle returned by ``get``.

    Wraps the aiofiles handle so callers can close it with ``async with``,
    the same way they close an S3 streaming body.
    """

    def __init__(self, handle: Any):
        self._handle = handle

    @property
    def name(self) -> str:
        return self._handle.name

    async def read(self, size: int = -1) -> bytes:
        return await self._handle.read(size)

    async def close(self) -> None:
        await self._handle.close()

    async def __aenter__(self) -> "LocalReadStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class LocalStorageBackend:
    """Local filesystem storage implementation.

    Stores each bitstream as one file below ``local_path``. The file name is
    the SHA-256 hex digest of the identifier, sharded into three levels of
    two-character directories (``ab/cd/ef/abcdef...``) so no single
    directory grows unbounded. Objects only ever live at the fourth level
    and every directory name is two characters long, so no identifier can
    map onto a shard directory, and long identifiers never exceed the
    filesystem's name limit. Suitable for development and single-server
    deployments.
    """

    CHECKSUM_ALGORITHM = "MD5"
    DIRECTORY_LEVELS = 3
    DIGITS_PER_LEVEL = 2

    def __init__(self, config: StorageConfig):
        """Initialize local storage backend.

        Args:
            config: Storage configuration; ``local_path`` is the root directory
        """
        self.config = config
        self.base_path = Path(config.local_path)
        self.prefix = normalize_prefix(config.subfolder)
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    async def __aenter__(self) -> "LocalStorageBackend":
        await self.init()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def init(self) -> None:
        """Create the root directory if needed. Idempotent.

        Raises:
            StorageError: INITIALIZATION_FAILED if the directory cannot be created
        """
        if self._ready:
            return
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error(
                "local_storage_init_failed",
                base_path=str(self.base_path),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise initialization_error(
                f"Could not create storage directory {self.base_path}",
                {"base_path": str(self.base_path)},
            ) from exc

        self._ready = True
        logger.info("local_storage_ready", base_path=str(self.base_path), subfolder=self.prefix or None)

    async def close(self) -> None:
        self._ready = False

    def generate_id(self) -> str:
        return generate_id()

    def get_local_path(self, identifier: str) -> Path:
        """Get the absolute filesystem path of a bitstream.

        Args:
            identifier: Storage identifier

        Returns:
            Path: ``base_path/[subfolder/]ab/cd/ef/<digest>``
        """
        build_key(self.prefix, identifier)
        name = hashlib.sha256(identifier.encode('utf-8')).hexdigest()

        directory = self.base_path / self.prefix if self.prefix else self.base_path
        for level in range(self.DIRECTORY_LEVELS):
            start = level * self.DIGITS_PER_LEVEL
            directory = directory / name[start:start + self.DIGITS_PER_LEVEL]
        return directory / name

    def _require_ready(self) -> None:
        if not self._ready:
            raise not_initialized_error("Local storage backend is not initialized")

    async def get(self, identifier: str) -> Any:
        """Open a bitstream for reading.

        Returns:
            LocalReadStream: use ``async with`` or ``await stream.close()``

        Raises:
            StorageError: NOT_FOUND if no file exists, PROVIDER_UNAVAILABLE on other I/O errors
        """
        self._require_ready()
        full_path = self.get_local_path(identifier)

        try:
            handle = await aiofiles.open(full_path, 'rb')
        except (FileNotFoundError, IsADirectoryError) as exc:
            logger.info("local_storage_get_not_found", identifier=identifier, full_path=str(full_path))
            raise not_found_error(
                f"Bitstream not found: {identifier}",
                {"identifier": identifier},
            ) from exc
        except OSError as exc:
            logger.error(
                "local_storage_get_failed",
                identifier=identifier,
                full_path=str(full_path),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise provider_error(
                f"Get failed: {exc}",
                {"identifier": identifier, "operation": "get"},
            ) from exc

        logger.info("local_storage_get_success", identifier=identifier)
        return LocalReadStream(handle)

    async def put(self, identifier: str, stream: Any) -> AssetDescriptor:
        """Write a bitstream to a private temp file, then move it into place.

        ``os.replace`` makes the new content visible in one step, so readers
        see either the previous file or the complete new one.

        Raises:
            StorageError: STAGING_FAILED on local I/O errors
        """
        self._require_ready()
        full_path = self.get_local_path(identifier)

        logger.debug("local_storage_put_started", identifier=identifier, full_path=str(full_path))

        try:
            full_path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(
                prefix=f".{full_path.name}-",
                suffix=".stage",
                dir=full_path.parent,
            )
            os.close(fd)
        except OSError as exc:
            logger.error(
                "local_storage_put_failed",
                identifier=identifier,
                full_path=str(full_path),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise staging_error(
                f"Could not prepare {full_path.parent}",
                {"identifier": identifier},
            ) from exc

        hasher = _md5()
        try:
            async with aiofiles.open(temp_path, 'wb') as out:
                bytes_written = await copy_stream(stream, out, hasher)
            await aiofiles.os.replace(temp_path, full_path)
            file_stat = await aiofiles.os.stat(full_path)
        except OSError as exc:
            logger.error(
                "local_storage_put_failed",
                identifier=identifier,
                full_path=str(full_path),
                error_type=type(exc).__name__,
                error=str(exc),
                exc_info=True,
            )
            raise staging_error(
                f"Could not write bitstream {identifier}",
                {"identifier": identifier},
            ) from exc
        finally:
            await discard(temp_path)

        descriptor = AssetDescriptor(
            identifier=identifier,
            size_bytes=bytes_written,
            checksum=hasher.hexdigest(),
            checksum_algorithm=self.CHECKSUM_ALGORITHM,
            modified=datetime.fromtimestamp(file_stat.st_mtime, tz=timezone.utc),
        )

        logger.info(
            "local_storage_put_success",
            identifier=identifier,
            bytes_written=bytes_written,
            checksum=descriptor.checksum,
        )
        return descriptor

    async def _file_checksum(self, full_path: Path) -> str:
        hasher = _md5()
        async with aiofiles.open(full_path, 'rb') as f:
            while chunk := await read_chunk(f):
                hasher.update(chunk)
        return hasher.hexdigest()

    async def about(
        self,
        identifier: str,
        fields: Optional[Iterable] = None,
    ) -> Optional[AssetDescriptor]:
        """Describe a bitstream from the filesystem.

        The checksum is computed by reading the file, since a plain
        filesystem keeps no stored digest. Anything but a regular file at
        the object path counts as absent.
        """
        self._require_ready()
        full_path = self.get_local_path(identifier)
        requested = resolve_fields(fields)

        try:
            file_stat = await aiofiles.os.stat(full_path)
            if not stat.S_ISREG(file_stat.st_mode):
                logger.warning("local_storage_about_not_a_file", identifier=identifier, full_path=str(full_path))
                return None
            data: Dict[str, Any] = {"identifier": identifier}
            if DescriptorField.SIZE_BYTES in requested:
                data["size_bytes"] = file_stat.st_size
            if DescriptorField.CHECKSUM in requested:
                data["checksum"] = await self._file_checksum(full_path)
            if DescriptorField.CHECKSUM_ALGORITHM in requested:
                data["checksum_algorithm"] = self.CHECKSUM_ALGORITHM
            if DescriptorField.MODIFIED in requested:
                data["modified"] = datetime.fromtimestamp(file_stat.st_mtime, tz=timezone.utc)
        except FileNotFoundError:
            logger.debug("local_storage_about_absent", identifier=identifier)
            return None
        except OSError as exc:
            logger.error(
                "local_storage_about_failed",
                identifier=identifier,
                full_path=str(full_path),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise provider_error(
                f"About failed: {exc}",
                {"identifier": identifier, "operation": "about"},
            ) from exc

        return AssetDescriptor(**data)

    async def remove(self, identifier: str) -> None:
        """Delete a bitstream and prune the shard directories it leaves empty."""
        self._require_ready()
        full_path = self.get_local_path(identifier)

        try:
            full_path.unlink()
        except FileNotFoundError:
            logger.debug("local_storage_remove_absent", identifier=identifier)
            return
        except OSError as exc:
            logger.error(
                "local_storage_remove_failed",
                identifier=identifier,
                full_path=str(full_path),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise provider_error(
                f"Remove failed: {exc}",
                {"identifier": identifier, "operation": "remove"},
            ) from exc

        self._prune_empty_parents(full_path)
        logger.info("local_storage_remove_success", identifier=identifier)

    def _prune_empty_parents(self, full_path: Path) -> None:
        base = self.base_path.resolve()
        for parent in full_path.parents:
            if parent.resolve() == base:
                break
            try:
                parent.rmdir()
            except OSError:
                # Not empty, or already removed by a concurrent call
                break
