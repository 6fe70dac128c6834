"""S3-compatible object storage backend."""

import asyncio
import base64
import hashlib
from contextlib import AsyncExitStack
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Set

import aioboto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from botocore.httpchecksum import Crc32Checksum

from bitstore.core.config import StorageConfig
from bitstore.core.errors import (
    ErrorCode,
    StorageError,
    configuration_error,
    initialization_error,
    malformed_metadata_error,
    not_found_error,
    not_initialized_error,
    provider_error,
    staging_error,
)
from bitstore.core.logging_config import get_logger
from bitstore.storage.keys import build_key, derive_bucket_name, generate_id, normalize_prefix
from bitstore.storage.models import AssetDescriptor, DescriptorField, resolve_fields
from bitstore.storage.staging import staged_copy


logger = get_logger(__name__)

NOT_FOUND_CODES = frozenset({"NoSuchKey", "NotFound", "404"})
BUCKET_MISSING_CODES = frozenset({"NoSuchBucket", "NotFound", "404"})


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get('Error', {}).get('Code', 'Unknown'))


def _strip_etag(etag: str) -> str:
    return etag.strip().strip('"')


class S3StorageBackend:
    """S3-compatible storage implementation.

    All bitstreams of a deployment live in one bucket, optionally below a
    subfolder prefix. Works against AWS S3 and third-party providers
    (MinIO, Ceph, Garage, ...) through an explicit endpoint URL, with
    path-style addressing and SigV4 signing forced on so no provider-specific
    negotiation happens.

    One client is opened by ``init`` and shared by every later call until
    ``close``.
    """

    CHECKSUM_ALGORITHM = "MD5"
    DEFAULT_REGION = "us-east-1"
    SIGNATURE_VERSION = "s3v4"

    def __init__(self, config: StorageConfig, session: Optional[aioboto3.Session] = None):
        """Initialize S3 storage backend.

        Args:
            config: Immutable storage configuration
            session: Optional aioboto3 session (a new one is created if omitted)
        """
        self.config = config
        self.session = session or aioboto3.Session()
        self.bucket_name: Optional[str] = config.bucket_name
        self.region: Optional[str] = None
        self.prefix = normalize_prefix(config.subfolder)

        self._client: Any = None
        self._exit_stack: Optional[AsyncExitStack] = None
        self._missing_credentials: list = []
        self._ready = False
        self._init_lock = asyncio.Lock()

    @property
    def ready(self) -> bool:
        return self._ready

    async def __aenter__(self) -> "S3StorageBackend":
        await self.init()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Open the shared client and make sure the bucket exists.

        Missing credentials are logged and do not fail initialization; every
        later operation then raises CONFIGURATION_ERROR instead.

        Raises:
            StorageError: INITIALIZATION_FAILED if the bucket cannot be
                resolved or created
        """
        async with self._init_lock:
            if self._ready:
                return

            self._missing_credentials = self.config.missing_credentials
            if self._missing_credentials:
                logger.warning(
                    "s3_storage_credentials_missing",
                    missing=self._missing_credentials,
                )
            if not self.config.endpoint_url:
                logger.warning(
                    "s3_storage_endpoint_missing",
                    message="No S3 endpoint configured, using the provider default",
                )

            self.region = self._resolve_region(self.config.region)

            if not self.bucket_name:
                try:
                    self.bucket_name = derive_bucket_name(
                        self.config.bucket_prefix, self.config.public_url
                    )
                except ValueError as exc:
                    raise initialization_error(
                        "S3 bucket name is not configured and cannot be derived",
                        {"public_url": self.config.public_url},
                    ) from exc
                logger.warning(
                    "s3_storage_bucket_defaulted",
                    bucket_name=self.bucket_name,
                    public_url=self.config.public_url,
                )

            if self._missing_credentials:
                self._ready = True
                logger.warning(
                    "s3_storage_ready_without_credentials",
                    bucket_name=self.bucket_name,
                )
                return

            exit_stack = AsyncExitStack()
            try:
                client = await exit_stack.enter_async_context(self._create_client())
                await self._ensure_bucket(client)
            except (ClientError, BotoCoreError) as exc:
                await exit_stack.aclose()
                logger.error(
                    "s3_storage_init_failed",
                    bucket_name=self.bucket_name,
                    endpoint_url=self.config.endpoint_url,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    exc_info=True,
                )
                raise initialization_error(
                    f"Could not resolve S3 bucket '{self.bucket_name}'",
                    self._error_details(exc, "init"),
                ) from exc

            self._client = client
            self._exit_stack = exit_stack
            self._ready = True

            logger.info(
                "s3_storage_ready",
                bucket_name=self.bucket_name,
                region=self.region,
                endpoint_url=self.config.endpoint_url,
                subfolder=self.prefix or None,
            )

    async def close(self) -> None:
        """Close the shared client. The backend must be re-initialized before reuse."""
        async with self._init_lock:
            if self._exit_stack is not None:
                await self._exit_stack.aclose()
            self._exit_stack = None
            self._client = None
            self._ready = False
            logger.debug("s3_storage_closed", bucket_name=self.bucket_name)

    def _create_client(self):
        """Create the S3 client context manager.

        Credentials are passed explicitly so the ambient AWS credential chain
        (environment, profiles, instance metadata) is never consulted.
        """
        return self.session.client(
            's3',
            endpoint_url=self.config.endpoint_url,
            region_name=self.region,
            aws_access_key_id=self.config.access_key,
            aws_secret_access_key=self.config.secret_key,
            config=BotoConfig(
                signature_version=self.SIGNATURE_VERSION,
                s3={"addressing_style": "path"},
            ),
        )

    def _known_regions(self) -> Set[str]:
        regions: Set[str] = set()
        for partition in self.session.get_available_partitions():
            regions.update(self.session.get_available_regions('s3', partition_name=partition))
        return regions

    def _resolve_region(self, region: Optional[str]) -> str:
        """Return the configured region, or the default if unset or unknown."""
        if not region:
            return self.DEFAULT_REGION
        if region in self._known_regions():
            logger.info("s3_storage_region_set", region=region)
            return region
        logger.warning(
            "s3_storage_region_invalid",
            region=region,
            fallback=self.DEFAULT_REGION,
        )
        return self.DEFAULT_REGION

    async def _ensure_bucket(self, client: Any) -> None:
        """Create the bucket unless it already exists."""
        try:
            await client.head_bucket(Bucket=self.bucket_name)
            return
        except ClientError as exc:
            if _error_code(exc) not in BUCKET_MISSING_CODES:
                raise

        create_args: Dict[str, Any] = {"Bucket": self.bucket_name}
        if self.region != self.DEFAULT_REGION:
            create_args["CreateBucketConfiguration"] = {"LocationConstraint": self.region}

        try:
            await client.create_bucket(**create_args)
        except ClientError as exc:
            # Another process created it between our HEAD and CREATE
            if _error_code(exc) != "BucketAlreadyOwnedByYou":
                raise
            return

        logger.info("s3_storage_bucket_created", bucket_name=self.bucket_name, region=self.region)

    def _require_client(self) -> Any:
        if not self._ready:
            raise not_initialized_error("S3 storage backend is not initialized")
        if self._missing_credentials:
            raise configuration_error(
                "S3 credentials are not configured",
                {"missing": self._missing_credentials},
            )
        return self._client

    # ------------------------------------------------------------------
    # Error translation
    # ------------------------------------------------------------------

    def _error_details(self, exc: Exception, operation: str, **context: Any) -> Dict[str, Any]:
        details: Dict[str, Any] = {
            "operation": operation,
            "bucket": self.bucket_name,
            **context,
        }
        if isinstance(exc, ClientError):
            details.update({
                "error_code": _error_code(exc),
                "error_message": exc.response.get('Error', {}).get('Message', str(exc)),
                "http_status": exc.response.get('ResponseMetadata', {}).get('HTTPStatusCode'),
            })
        else:
            details["error_type"] = type(exc).__name__
        return details

    def _handle_s3_error(
        self,
        exc: Exception,
        operation: str,
        identifier: str,
        key: str
    ) -> StorageError:
        """Map a provider exception onto a storage error code.

        Args:
            exc: Original exception
            operation: Operation being performed (e.g., 'put', 'get')
            identifier: Storage identifier
            key: Full object key

        Returns:
            StorageError: NOT_FOUND for a missing object, otherwise PROVIDER_UNAVAILABLE
        """
        details = self._error_details(exc, operation, identifier=identifier, key=key)

        if isinstance(exc, ClientError) and _error_code(exc) in NOT_FOUND_CODES:
            return not_found_error(f"Bitstream not found: {identifier}", details)

        return provider_error(f"{operation.capitalize()} failed: {exc}", details)

    def _log_failure(self, event: str, error: StorageError, exc: Exception) -> None:
        logger.error(
            event,
            code=error.code.value,
            error=str(exc),
            **error.details,
        )

    # ------------------------------------------------------------------
    # Contract operations
    # ------------------------------------------------------------------

    def generate_id(self) -> str:
        return generate_id()

    async def get(self, identifier: str) -> Any:
        """Open an object for streaming download.

        Returns:
            The provider's streaming body; read it with ``await body.read()``
            and close it with ``async with`` or ``body.close()``

        Raises:
            StorageError: NOT_FOUND if the object does not exist,
                PROVIDER_UNAVAILABLE if the provider cannot be reached
        """
        client = self._require_client()
        key = build_key(self.prefix, identifier)

        logger.debug("s3_storage_get_started", bucket=self.bucket_name, identifier=identifier, key=key)

        try:
            response = await client.get_object(Bucket=self.bucket_name, Key=key)
        except Exception as exc:
            error = self._handle_s3_error(exc, "get", identifier, key)
            if error.code == ErrorCode.NOT_FOUND:
                logger.info("s3_storage_get_not_found", identifier=identifier, key=key)
            else:
                self._log_failure("s3_storage_get_failed", error, exc)
            raise error from exc

        logger.info(
            "s3_storage_get_success",
            bucket=self.bucket_name,
            identifier=identifier,
            key=key,
            size_bytes=response.get('ContentLength'),
        )
        return response['Body']

    async def put(self, identifier: str, stream: Any) -> AssetDescriptor:
        """Stage a stream locally, then upload it in a single PUT.

        Staging gives a known Content-Length before any byte is sent and
        lets a non-seekable source be uploaded from a file. The Content-MD5
        and CRC32 headers are computed while staging, so the client sends
        the staged file without hashing it again on the event loop and the
        provider rejects a corrupted transfer. The staged copy is deleted
        before this method returns, whatever the outcome.

        Returns:
            AssetDescriptor: staged size and the ETag the provider computed

        Raises:
            StorageError: STAGING_FAILED on local I/O errors,
                PROVIDER_UNAVAILABLE if the upload fails
        """
        client = self._require_client()
        key = build_key(self.prefix, identifier)

        logger.debug("s3_storage_put_started", bucket=self.bucket_name, identifier=identifier, key=key)

        md5 = hashlib.md5(usedforsecurity=False)
        crc32 = Crc32Checksum()

        async with staged_copy(stream, identifier, self.config.staging_dir, (md5, crc32)) as staged:
            try:
                body = open(staged.path, 'rb')
            except OSError as exc:
                raise staging_error(
                    "Could not reopen staged upload",
                    {"identifier": identifier},
                ) from exc

            with body:
                try:
                    response = await client.put_object(
                        Bucket=self.bucket_name,
                        Key=key,
                        Body=body,
                        ContentLength=staged.size_bytes,
                        ContentMD5=base64.b64encode(md5.digest()).decode('ascii'),
                        ChecksumCRC32=crc32.b64digest(),
                    )
                except Exception as exc:
                    error = self._handle_s3_error(exc, "put", identifier, key)
                    self._log_failure("s3_storage_put_failed", error, exc)
                    raise error from exc

        etag = response.get('ETag')
        if not isinstance(etag, str) or not etag.strip():
            raise malformed_metadata_error(
                "Provider did not return an ETag for the upload",
                {"identifier": identifier, "key": key},
            )

        descriptor = AssetDescriptor(
            identifier=identifier,
            size_bytes=staged.size_bytes,
            checksum=_strip_etag(etag),
            checksum_algorithm=self.CHECKSUM_ALGORITHM,
            modified=datetime.now(timezone.utc),
        )

        logger.info(
            "s3_storage_put_success",
            bucket=self.bucket_name,
            identifier=identifier,
            key=key,
            size_bytes=descriptor.size_bytes,
            checksum=descriptor.checksum,
        )
        return descriptor

    async def about(
        self,
        identifier: str,
        fields: Optional[Iterable] = None,
    ) -> Optional[AssetDescriptor]:
        """Describe an object from a HEAD request.

        Returns:
            AssetDescriptor with the requested fields, or None if no object exists

        Raises:
            StorageError: PROVIDER_UNAVAILABLE if the provider cannot be reached,
                METADATA_MALFORMED if the HEAD response cannot be interpreted
        """
        client = self._require_client()
        key = build_key(self.prefix, identifier)
        requested = resolve_fields(fields)

        try:
            response = await client.head_object(Bucket=self.bucket_name, Key=key)
        except Exception as exc:
            error = self._handle_s3_error(exc, "about", identifier, key)
            if error.code == ErrorCode.NOT_FOUND:
                logger.debug("s3_storage_about_absent", identifier=identifier, key=key)
                return None
            self._log_failure("s3_storage_about_failed", error, exc)
            raise error from exc

        try:
            return self._describe(identifier, response, requested)
        except (KeyError, TypeError, ValueError) as exc:
            logger.error(
                "s3_storage_about_malformed",
                identifier=identifier,
                key=key,
                error=str(exc),
            )
            raise malformed_metadata_error(
                f"Unreadable object metadata for {identifier}",
                {"identifier": identifier, "key": key, "error": str(exc)},
            ) from exc

    def _describe(
        self,
        identifier: str,
        response: Dict[str, Any],
        requested: Set[DescriptorField],
    ) -> AssetDescriptor:
        data: Dict[str, Any] = {"identifier": identifier}

        if DescriptorField.SIZE_BYTES in requested:
            data["size_bytes"] = int(response['ContentLength'])

        if DescriptorField.CHECKSUM in requested:
            etag = response['ETag']
            if not isinstance(etag, str) or not etag.strip():
                raise ValueError(f"invalid ETag {etag!r}")
            data["checksum"] = _strip_etag(etag)

        if DescriptorField.CHECKSUM_ALGORITHM in requested:
            data["checksum_algorithm"] = self.CHECKSUM_ALGORITHM

        if DescriptorField.MODIFIED in requested:
            modified = response['LastModified']
            if not isinstance(modified, datetime):
                raise TypeError(f"LastModified is {type(modified).__name__}, not datetime")
            data["modified"] = modified

        return AssetDescriptor(**data)

    async def remove(self, identifier: str) -> None:
        """Delete an object.

        S3 deletes are idempotent; a provider that reports the key as missing
        is treated the same way.

        Raises:
            StorageError: PROVIDER_UNAVAILABLE if the provider cannot be reached
        """
        client = self._require_client()
        key = build_key(self.prefix, identifier)

        try:
            await client.delete_object(Bucket=self.bucket_name, Key=key)
        except Exception as exc:
            error = self._handle_s3_error(exc, "remove", identifier, key)
            if error.code == ErrorCode.NOT_FOUND:
                logger.debug("s3_storage_remove_absent", identifier=identifier, key=key)
                return
            self._log_failure("s3_storage_remove_failed", error, exc)
            raise error from exc

        logger.info("s3_storage_remove_success", bucket=self.bucket_name, identifier=identifier, key=key)
