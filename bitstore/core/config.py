"""Application configuration using Pydantic Settings."""

import re
from pydantic import BaseModel, field_validator, model_validator
from pydantic_settings import BaseSettings
from typing import List, Optional
import os


BUCKET_NAME_PATTERN = re.compile(r'^[a-z0-9][a-z0-9.-]*[a-z0-9]$')


def validate_bucket_name(v: str) -> str:
    """Validate a bucket name follows S3 naming conventions.

    Rules:
    - 3-63 characters long
    - Lowercase letters, numbers, hyphens, and dots only
    - Must start and end with a letter or number
    - No consecutive dots
    - Not formatted as an IP address
    """
    if not 3 <= len(v) <= 63:
        raise ValueError(f"S3 bucket name must be 3-63 characters long, got {len(v)}")

    if not BUCKET_NAME_PATTERN.match(v):
        raise ValueError(
            f"S3 bucket name '{v}' must start/end with letter or number, "
            "and contain only lowercase letters, numbers, hyphens, and dots"
        )

    if '..' in v:
        raise ValueError("S3 bucket name cannot contain consecutive dots")

    if re.match(r'^\d+\.\d+\.\d+\.\d+$', v):
        raise ValueError("S3 bucket name cannot be formatted as an IP address")

    return v


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Service Identity
    SERVICE_NAME: str = "bitstore"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, production

    # Logging Configuration
    LOG_LEVEL: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    LOG_JSON: bool = True    # JSON logs (prod) vs pretty console (dev)
    DEBUG: bool = False

    # Public URL of the deployment, used to derive a default bucket name
    PUBLIC_URL: str = "http://localhost"

    # Storage Backend Configuration
    STORAGE_BACKEND: str = "s3"  # Options: "s3" or "local"
    STORAGE_PATH: str = os.path.join(os.getcwd(), "assetstore")

    # Staging directory for uploads (None = OS temp dir)
    STAGING_DIR: Optional[str] = None

    # S3 Storage Configuration
    S3_ACCESS_KEY: Optional[str] = None
    S3_SECRET_KEY: Optional[str] = None
    S3_ENDPOINT_URL: Optional[str] = None  # For MinIO or other S3-compatible services
    S3_REGION: Optional[str] = None
    S3_BUCKET_NAME: Optional[str] = None   # Derived from PUBLIC_URL when unset
    S3_BUCKET_PREFIX: str = "bitstore-asset"
    S3_SUBFOLDER: Optional[str] = None

    @field_validator('S3_BUCKET_NAME')
    @classmethod
    def validate_s3_bucket_name(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        return validate_bucket_name(v)

    @field_validator('S3_ENDPOINT_URL')
    @classmethod
    def validate_endpoint_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate S3 endpoint URL format if provided."""
        if v is None or v == "":
            return None

        if not re.match(r'^https?://.+', v):
            raise ValueError(
                f"S3_ENDPOINT_URL must start with http:// or https://, got '{v}'"
            )

        return v

    @field_validator('S3_REGION', 'S3_SUBFOLDER', 'STAGING_DIR')
    @classmethod
    def empty_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()

    @model_validator(mode='after')
    def validate_backend(self):
        """Ensure a known storage backend is selected."""
        if self.STORAGE_BACKEND not in ("s3", "local"):
            raise ValueError(
                f"STORAGE_BACKEND must be 's3' or 'local', got '{self.STORAGE_BACKEND}'"
            )
        return self

    @property
    def is_debug_mode(self) -> bool:
        """Check if application is in debug mode."""
        return self.DEBUG or self.LOG_LEVEL.upper() == "DEBUG"

    @property
    def use_json_logs(self) -> bool:
        """Determine if JSON logging should be used.

        In production, always use JSON logs.
        In development, allow override via LOG_JSON setting.
        """
        if self.ENVIRONMENT == "production":
            return True
        if self.DEBUG:
            return self.LOG_JSON
        return True

    class Config:
        """Pydantic configuration."""
        env_file = ".env"
        case_sensitive = True


class StorageConfig(BaseModel):
    """Immutable storage configuration handed to a backend at construction.

    Backends never read the global ``settings``; they receive one of these,
    which keeps backend selection deterministic and testable.
    """

    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    endpoint_url: Optional[str] = None
    region: Optional[str] = None
    bucket_name: Optional[str] = None
    bucket_prefix: str = "bitstore-asset"
    public_url: str = "http://localhost"
    subfolder: Optional[str] = None
    staging_dir: Optional[str] = None
    local_path: str = os.path.join(os.getcwd(), "assetstore")

    @field_validator('bucket_name')
    @classmethod
    def validate_bucket(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        return validate_bucket_name(v)

    @classmethod
    def from_settings(cls, settings: Settings) -> "StorageConfig":
        return cls(
            access_key=settings.S3_ACCESS_KEY,
            secret_key=settings.S3_SECRET_KEY,
            endpoint_url=settings.S3_ENDPOINT_URL,
            region=settings.S3_REGION,
            bucket_name=settings.S3_BUCKET_NAME,
            bucket_prefix=settings.S3_BUCKET_PREFIX,
            public_url=settings.PUBLIC_URL,
            subfolder=settings.S3_SUBFOLDER,
            staging_dir=settings.STAGING_DIR,
            local_path=settings.STORAGE_PATH,
        )

    @property
    def missing_credentials(self) -> List[str]:
        """Names of the S3 credential settings that are blank."""
        required = {
            "access_key": self.access_key,
            "secret_key": self.secret_key,
        }
        return [name for name, value in required.items() if not value or not value.strip()]

    class Config:
        frozen = True


# Global settings instance
settings = Settings()
