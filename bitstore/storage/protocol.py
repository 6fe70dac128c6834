"""Storage backend protocol definition."""

from typing import Any, Iterable, Optional, Protocol, runtime_checkable

from bitstore.storage.models import AssetDescriptor


@runtime_checkable
class StorageBackend(Protocol):
    """Protocol defining the interface for bitstream storage backends.

    Callers work against this protocol only, so local disk and S3-compatible
    object storage are interchangeable. Every operation except
    ``generate_id`` requires a completed ``init`` and may then be called
    from any number of concurrent tasks.
    """

    async def init(self) -> None:
        """Prepare the backend for use. Idempotent.

        Raises:
            StorageError: INITIALIZATION_FAILED if the namespace cannot be
                resolved or created
        """
        ...

    def generate_id(self) -> str:
        """Return a fresh opaque identifier without touching the backend."""
        ...

    async def get(self, identifier: str) -> Any:
        """Open a stored bitstream for reading.

        Returns:
            An async readable stream positioned at the first byte; it is an
            async context manager and the caller is responsible for closing it

        Raises:
            StorageError: NOT_FOUND or PROVIDER_UNAVAILABLE
        """
        ...

    async def put(self, identifier: str, stream: Any) -> AssetDescriptor:
        """Store a bitstream, replacing any previous content.

        Args:
            identifier: Storage identifier
            stream: Readable binary stream, consumed to EOF (sync or async ``read``)

        Returns:
            AssetDescriptor: Size, checksum, checksum algorithm and modification time

        Raises:
            StorageError: PROVIDER_UNAVAILABLE or STAGING_FAILED
        """
        ...

    async def about(
        self,
        identifier: str,
        fields: Optional[Iterable] = None,
    ) -> Optional[AssetDescriptor]:
        """Describe a stored bitstream.

        Args:
            identifier: Storage identifier
            fields: DescriptorField members (or names) to populate; None for all

        Returns:
            AssetDescriptor with only the requested fields, or None if the
            identifier has no stored object

        Raises:
            StorageError: PROVIDER_UNAVAILABLE or METADATA_MALFORMED
        """
        ...

    async def remove(self, identifier: str) -> None:
        """Delete a stored bitstream. Removing a missing identifier succeeds.

        Raises:
            StorageError: PROVIDER_UNAVAILABLE
        """
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...
