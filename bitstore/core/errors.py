"""
Storage Error Handling

Provides standardized error codes and a single exception type for the
storage layer. Callers branch on ``StorageError.code`` instead of on
exception subclasses, so every backend reports failures the same way.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Standardized error codes for the storage layer."""

    # Setup errors (SETUP_xxx)
    CONFIGURATION_ERROR = "SETUP_001"
    INITIALIZATION_FAILED = "SETUP_002"
    NOT_INITIALIZED = "SETUP_003"

    # Validation errors (VAL_xxx)
    INVALID_IDENTIFIER = "VAL_001"

    # Storage errors (STORAGE_xxx)
    NOT_FOUND = "STORAGE_001"
    PROVIDER_UNAVAILABLE = "STORAGE_002"
    STAGING_FAILED = "STORAGE_003"
    METADATA_MALFORMED = "STORAGE_004"


RETRYABLE_CODES = frozenset({
    ErrorCode.PROVIDER_UNAVAILABLE,
    ErrorCode.STAGING_FAILED,
})


class StorageError(Exception):
    """
    Base class for all storage layer failures.

    Carries a standardized structure that callers can inspect or log:

    {
        "code": "STORAGE_001",
        "message": "Bitstream not found",
        "details": {"identifier": "abc", "key": "sub/abc"}
    }

    The ``code`` tells the caller whether to retry (provider unavailable),
    surface the failure permanently (not found, configuration) or abort
    (initialization).
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        """True when repeating the same call may succeed."""
        return self.code in RETRYABLE_CODES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"StorageError(code={self.code.name}, message={self.message!r})"


# Convenience functions for common errors
def configuration_error(message: str, details: Optional[Dict[str, Any]] = None) -> StorageError:
    """Create an error for missing or invalid settings."""
    return StorageError(ErrorCode.CONFIGURATION_ERROR, message, details)


def initialization_error(message: str, details: Optional[Dict[str, Any]] = None) -> StorageError:
    """Create an error for a namespace that could not be resolved or created."""
    return StorageError(ErrorCode.INITIALIZATION_FAILED, message, details)


def not_initialized_error(message: str, details: Optional[Dict[str, Any]] = None) -> StorageError:
    """Create an error for an operation on a backend that is not ready."""
    return StorageError(ErrorCode.NOT_INITIALIZED, message, details)


def invalid_identifier_error(message: str, details: Optional[Dict[str, Any]] = None) -> StorageError:
    """Create an error for an identifier that cannot be mapped to a key."""
    return StorageError(ErrorCode.INVALID_IDENTIFIER, message, details)


def not_found_error(message: str, details: Optional[Dict[str, Any]] = None) -> StorageError:
    """Create an error for an identifier with no stored object."""
    return StorageError(ErrorCode.NOT_FOUND, message, details)


def provider_error(message: str, details: Optional[Dict[str, Any]] = None) -> StorageError:
    """Create an error for an unreachable or faulting backend (retryable)."""
    return StorageError(ErrorCode.PROVIDER_UNAVAILABLE, message, details)


def staging_error(message: str, details: Optional[Dict[str, Any]] = None) -> StorageError:
    """Create an error for a local I/O failure while staging an upload."""
    return StorageError(ErrorCode.STAGING_FAILED, message, details)


def malformed_metadata_error(message: str, details: Optional[Dict[str, Any]] = None) -> StorageError:
    """Create an error for backend metadata that cannot be interpreted."""
    return StorageError(ErrorCode.METADATA_MALFORMED, message, details)
