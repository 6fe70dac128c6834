"""Value types returned by storage backends."""

from datetime import datetime
from enum import Enum
from typing import Iterable, Optional, Set

from pydantic import BaseModel


class DescriptorField(str, Enum):
    """Fields a caller can request from ``about``."""

    SIZE_BYTES = "size_bytes"
    CHECKSUM = "checksum"
    CHECKSUM_ALGORITHM = "checksum_algorithm"
    MODIFIED = "modified"


ALL_FIELDS = frozenset(DescriptorField)


def resolve_fields(fields: Optional[Iterable]) -> Set[DescriptorField]:
    """Normalize a requested field collection.

    Accepts enum members or their string values; ``None`` means every field.
    Asking for the checksum always brings its algorithm along.
    """
    if fields is None:
        return set(ALL_FIELDS)
    resolved = {DescriptorField(f) for f in fields}
    if DescriptorField.CHECKSUM in resolved:
        resolved.add(DescriptorField.CHECKSUM_ALGORITHM)
    return resolved


class AssetDescriptor(BaseModel):
    """Technical metadata about one stored bitstream.

    Produced by ``put`` (fully populated) and ``about`` (only the requested
    fields populated, the rest ``None``). The storage layer never mutates a
    descriptor after returning it.
    """

    identifier: str
    size_bytes: Optional[int] = None
    checksum: Optional[str] = None
    checksum_algorithm: Optional[str] = None
    modified: Optional[datetime] = None

    class Config:
        frozen = True
