"""AWS S3 destination adapter (aioboto3)."""

from __future__ import annotations

from typing import Any

import aioboto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

from bucket_migrate.config import DestinationConfig, MigrationConfig
from bucket_migrate.errors import StoreConnectionError
from bucket_migrate.retry import with_retry

logger = structlog.get_logger(__name__)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def is_not_found(exc: ClientError) -> bool:
    code = str(exc.response.get("Error", {}).get("Code", ""))
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return code in _NOT_FOUND_CODES or status == 404


class S3Destination:
    """Writes objects to an S3 bucket.

    Example:
        >>> async with S3Destination(dest_config, migration_config) as dest:
        ...     if not await dest.exists("book.epub"):
        ...         await dest.put("book.epub", data, "application/epub+zip", {})
    """

    name = "s3"

    def __init__(
        self,
        destination_config: DestinationConfig,
        migration_config: MigrationConfig,
        *,
        session: Any | None = None,
    ) -> None:
        if not destination_config.bucket:
            raise StoreConnectionError("S3 destination requires a bucket name")
        self.destination_config = destination_config
        self.migration_config = migration_config
        self.bucket = destination_config.bucket
        self._session = session
        self._client_cm: Any | None = None
        self._s3_client: Any | None = None
        self._logger = logger.bind(store=self.name, bucket=self.bucket)

    async def __aenter__(self) -> S3Destination:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        """Create the S3 client.

        Raises:
            StoreConnectionError: If the client cannot be created.
        """
        if self._s3_client is not None:
            return
        try:
            if self._session is None:
                self._session = aioboto3.Session()
            self._client_cm = self._session.client(
                "s3",
                region_name=self.destination_config.region,
                endpoint_url=self.destination_config.endpoint_url,
                config=BotoConfig(
                    max_pool_connections=self.migration_config.max_concurrent + 5,
                    # Retries are handled by bucket_migrate.retry.
                    retries={"max_attempts": 1, "mode": "standard"},
                ),
            )
            self._s3_client = await self._client_cm.__aenter__()
        except Exception as e:
            self._client_cm = None
            raise StoreConnectionError(f"Failed to create S3 client: {e}") from e
        self._logger.info("Connected to S3")

    async def close(self) -> None:
        if self._client_cm is not None:
            try:
                await self._client_cm.__aexit__(None, None, None)
            except Exception as e:
                self._logger.warning("Error closing S3 client", error=str(e))
            finally:
                self._client_cm = None
                self._s3_client = None

    @property
    def client(self) -> Any:
        if self._s3_client is None:
            raise StoreConnectionError(f"Not connected to S3 bucket {self.bucket}")
        return self._s3_client

    async def _retry(self, operation: str, coro_func):
        return await with_retry(
            operation,
            coro_func,
            retry_attempts=self.migration_config.retry_attempts,
            retry_delay=self.migration_config.retry_delay,
            log=self._logger,
        )

    async def exists(self, key: str) -> bool:
        async def _head() -> bool:
            try:
                await self.client.head_object(Bucket=self.bucket, Key=key)
            except ClientError as e:
                if is_not_found(e):
                    return False
                raise
            return True

        return await self._retry("head_object", _head)

    async def head(self, key: str) -> dict[str, str] | None:
        async def _head() -> dict[str, str] | None:
            try:
                response = await self.client.head_object(Bucket=self.bucket, Key=key)
            except ClientError as e:
                if is_not_found(e):
                    return None
                raise
            return dict(response.get("Metadata") or {})

        return await self._retry("head_object", _head)

    async def put(
        self,
        key: str,
        payload: bytes,
        content_type: str,
        metadata: dict[str, str],
    ) -> None:
        params: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": payload,
            "ContentType": content_type,
            "Metadata": metadata,
        }
        if self.destination_config.server_side_encryption:
            params["ServerSideEncryption"] = self.destination_config.server_side_encryption
        if self.destination_config.storage_class:
            params["StorageClass"] = self.destination_config.storage_class

        async def _put() -> None:
            await self.client.put_object(**params)

        await self._retry("put_object", _put)

    async def health_check(self) -> dict[str, Any]:
        """Verify the bucket is reachable.

        Raises:
            StoreConnectionError: If the bucket cannot be accessed.
        """
        try:
            await self.client.head_bucket(Bucket=self.bucket)
        except ClientError as e:
            raise StoreConnectionError(
                f"Health check failed for S3 bucket {self.bucket}: {e}"
            ) from e
        return {"status": "healthy", "bucket": self.bucket}
