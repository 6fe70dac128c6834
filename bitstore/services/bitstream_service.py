"""
Bitstream Service Layer - Content Entity Orchestration

Bridges a caller-owned content record and a storage backend. The storage
layer only returns descriptors; this service copies them onto the record
so callers persist size and checksum alongside their own metadata.
"""
from typing import Any, Iterable, Optional

from pydantic import BaseModel

from bitstore.core.errors import StorageError
from bitstore.core.logging_config import get_logger
from bitstore.storage.models import AssetDescriptor, DescriptorField
from bitstore.storage.protocol import StorageBackend

logger = get_logger(__name__)


class Bitstream(BaseModel):
    """Minimal content record as seen by the storage layer.

    ``internal_id`` is the storage identifier; the remaining fields are
    filled in from the descriptor of the last successful store.
    """

    internal_id: Optional[str] = None
    size_bytes: Optional[int] = None
    checksum: Optional[str] = None
    checksum_algorithm: Optional[str] = None

    def apply(self, descriptor: AssetDescriptor) -> None:
        """Copy whatever the descriptor carries onto this record."""
        if descriptor.size_bytes is not None:
            self.size_bytes = descriptor.size_bytes
        if descriptor.checksum is not None:
            self.checksum = descriptor.checksum
        if descriptor.checksum_algorithm is not None:
            self.checksum_algorithm = descriptor.checksum_algorithm


class BitstreamService:
    """
    Stores and retrieves the content of Bitstream records.

    Responsibilities:
    - Assign storage identifiers to new records
    - Keep size/checksum on the record in step with the stored object
    - Translate "absent" results into plain booleans for existence checks

    Does NOT know about:
    - Which backend is in use (works against StorageBackend only)
    - Persisting the record itself (the caller owns that)
    """

    def __init__(self, storage: StorageBackend):
        self.storage = storage

    def register(self, bitstream: Bitstream) -> str:
        """Assign a fresh storage identifier unless the record already has one."""
        if not bitstream.internal_id:
            bitstream.internal_id = self.storage.generate_id()
            logger.debug("bitstream_registered", internal_id=bitstream.internal_id)
        return bitstream.internal_id

    def _identifier(self, bitstream: Bitstream) -> str:
        if not bitstream.internal_id:
            raise ValueError("Bitstream has no internal_id; call register() first")
        return bitstream.internal_id

    async def store(self, bitstream: Bitstream, stream: Any) -> AssetDescriptor:
        """
        Store content for a record and update the record from the result.

        The record is only modified after the backend reports success, so a
        failed store leaves size and checksum untouched.

        Raises:
            StorageError: Propagated from the backend
        """
        identifier = self.register(bitstream)

        logger.info("bitstream_store_started", internal_id=identifier)
        descriptor = await self.storage.put(identifier, stream)
        bitstream.apply(descriptor)

        logger.info(
            "bitstream_store_complete",
            internal_id=identifier,
            size_bytes=bitstream.size_bytes,
            checksum=bitstream.checksum,
            checksum_algorithm=bitstream.checksum_algorithm,
        )
        return descriptor

    async def retrieve(self, bitstream: Bitstream) -> Any:
        """Open the record's content. The caller closes the returned stream."""
        return await self.storage.get(self._identifier(bitstream))

    async def read_all(self, bitstream: Bitstream) -> bytes:
        """Read the record's whole content into memory."""
        stream = await self.retrieve(bitstream)
        async with stream:
            return await stream.read()

    async def describe(
        self,
        bitstream: Bitstream,
        fields: Optional[Iterable] = None,
    ) -> Optional[AssetDescriptor]:
        """Fetch technical metadata for the record's content, or None if absent."""
        return await self.storage.about(self._identifier(bitstream), fields)

    async def exists(self, bitstream: Bitstream) -> bool:
        if not bitstream.internal_id:
            return False
        descriptor = await self.storage.about(bitstream.internal_id, [DescriptorField.SIZE_BYTES])
        return descriptor is not None

    async def verify(self, bitstream: Bitstream) -> bool:
        """Check the stored checksum against the one recorded on the record.

        Returns:
            bool: False if the content is missing or its checksum differs
        """
        descriptor = await self.describe(bitstream, [DescriptorField.CHECKSUM])
        if descriptor is None:
            logger.warning("bitstream_verify_missing", internal_id=bitstream.internal_id)
            return False

        matches = (
            descriptor.checksum == bitstream.checksum
            and descriptor.checksum_algorithm == bitstream.checksum_algorithm
        )
        if not matches:
            logger.warning(
                "bitstream_verify_mismatch",
                internal_id=bitstream.internal_id,
                recorded=bitstream.checksum,
                stored=descriptor.checksum,
            )
        return matches

    async def delete(self, bitstream: Bitstream) -> None:
        """Remove the record's content. Deleting missing content succeeds."""
        identifier = self._identifier(bitstream)
        try:
            await self.storage.remove(identifier)
        except StorageError as exc:
            logger.error(
                "bitstream_delete_failed",
                internal_id=identifier,
                code=exc.code.value,
                retryable=exc.retryable,
            )
            raise
        logger.info("bitstream_deleted", internal_id=identifier)
