"""Storage abstraction layer for local and S3-compatible object storage."""

from typing import Optional

from bitstore.core.config import Settings, StorageConfig, settings as default_settings
from .keys import full_key, generate_id
from .models import AssetDescriptor, DescriptorField
from .protocol import StorageBackend
from .local import LocalStorageBackend
# S3 backend imported lazily when needed


def create_storage(
    settings: Optional[Settings] = None,
    config: Optional[StorageConfig] = None,
) -> StorageBackend:
    """Factory function for storage backends.

    Builds a new, uninitialized backend selected by ``STORAGE_BACKEND``. The
    caller owns the instance: call ``await backend.init()`` once, share it,
    and ``await backend.close()`` on shutdown.

    Args:
        settings: Settings to read (defaults to the process settings)
        config: Explicit storage configuration (defaults to one built from settings)

    Returns:
        StorageBackend: Configured storage backend instance

    Raises:
        ValueError: If unknown storage backend is configured
    """
    settings = settings or default_settings
    config = config or StorageConfig.from_settings(settings)

    if settings.STORAGE_BACKEND == "local":
        return LocalStorageBackend(config)
    elif settings.STORAGE_BACKEND == "s3":
        # Lazy import to avoid requiring aioboto3 when using local storage
        from .s3 import S3StorageBackend
        return S3StorageBackend(config)
    else:
        raise ValueError(f"Unknown storage backend: {settings.STORAGE_BACKEND}")


__all__ = [
    "create_storage",
    "StorageBackend",
    "LocalStorageBackend",
    "AssetDescriptor",
    "DescriptorField",
    "full_key",
    "generate_id",
]
