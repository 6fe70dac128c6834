"""Key mapping, identifier generation and namespace naming.

Everything here is pure: no I/O, no network, no shared state.
"""

from typing import Optional
from urllib.parse import urlparse
from uuid import uuid4

from bitstore.core.errors import invalid_identifier_error


# S3 object key limit, in UTF-8 bytes
MAX_KEY_BYTES = 1024


def generate_id() -> str:
    """Return a fresh opaque identifier.

    Random (UUID4, 122 bits of entropy), never derived from content, and
    built without a network round trip.
    """
    return uuid4().hex


def normalize_prefix(prefix: Optional[str]) -> str:
    """Strip whitespace and surrounding slashes from a key prefix."""
    if not prefix:
        return ""
    return prefix.strip().strip('/')


def full_key(prefix: Optional[str], identifier: str) -> str:
    """Map an identifier to its backend storage key.

    >>> full_key("sub", "abc")
    'sub/abc'
    >>> full_key("", "abc")
    'abc'
    """
    prefix = normalize_prefix(prefix)
    if prefix:
        return f"{prefix}/{identifier}"
    return identifier


def validate_identifier(identifier: str) -> str:
    """Reject identifiers that cannot be mapped to a safe key.

    Raises:
        StorageError: INVALID_IDENTIFIER if the identifier is empty, starts
            with a slash or contains a path traversal pattern
    """
    if not identifier or not identifier.strip():
        raise invalid_identifier_error("Identifier cannot be empty")
    if identifier != identifier.strip():
        raise invalid_identifier_error(
            "Identifier cannot have surrounding whitespace",
            {"identifier": identifier},
        )
    if identifier.startswith('/'):
        raise invalid_identifier_error(
            "Identifier cannot start with '/'",
            {"identifier": identifier},
        )
    if '..' in identifier:
        raise invalid_identifier_error(
            "Path traversal patterns (..) are not allowed",
            {"identifier": identifier},
        )
    return identifier


def build_key(prefix: Optional[str], identifier: str) -> str:
    """Validate an identifier and return its full key."""
    key = full_key(prefix, validate_identifier(identifier))
    key_bytes = len(key.encode('utf-8'))
    if key_bytes > MAX_KEY_BYTES:
        raise invalid_identifier_error(
            f"Object key too long ({key_bytes} bytes, max {MAX_KEY_BYTES})",
            {"identifier": identifier},
        )
    return key


def hostname_of(url: str) -> Optional[str]:
    """Return the lowercased hostname of a URL without a leading ``www.``."""
    hostname = urlparse(url).hostname
    if not hostname:
        return None
    if hostname.startswith("www."):
        hostname = hostname[4:]
    return hostname


def derive_bucket_name(bucket_prefix: str, public_url: str) -> str:
    """Derive a deployment-specific bucket name.

    Two deployments sharing one provider account get distinct buckets
    because each one's public hostname is part of the name.

    >>> derive_bucket_name("bitstore-asset", "https://repo.example.org/")
    'bitstore-asset-repo.example.org'
    """
    hostname = hostname_of(public_url)
    if not hostname:
        raise ValueError(f"Cannot derive a bucket name: no hostname in '{public_url}'")
    return f"{bucket_prefix}-{hostname}".lower()
