"""Firebase Storage (Google Cloud Storage JSON API) source adapter."""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx
import structlog

from bucket_migrate.config import MigrationConfig, SourceConfig
from bucket_migrate.errors import StoreConnectionError
from bucket_migrate.models import CandidateItem
from bucket_migrate.retry import with_retry
from bucket_migrate.stores.base import Page

logger = structlog.get_logger(__name__)


def _parse_size(raw: Any) -> int | None:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


class FirebaseStorageSource:
    """Lists and downloads objects from a Firebase Storage bucket.

    Provides:
    - Cursor pagination over ``objects.list`` (``pageToken``)
    - Media download of single objects
    - Retry with exponential backoff on transient errors
    - Connection pooling through one ``httpx.AsyncClient``
    """

    name = "firebase"

    def __init__(
        self,
        source_config: SourceConfig,
        migration_config: MigrationConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the source adapter.

        Args:
            source_config: Bucket, prefix, token and API URL.
            migration_config: Page size and retry settings.
            transport: Optional httpx transport (tests use ``httpx.MockTransport``).
        """
        if not source_config.bucket:
            raise StoreConnectionError("Firebase source requires a bucket name")
        self.source_config = source_config
        self.migration_config = migration_config
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None
        self._logger = logger.bind(store=self.name, bucket=source_config.bucket)

    async def __aenter__(self) -> FirebaseStorageSource:
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    @property
    def _objects_url(self) -> str:
        base = self.source_config.url.rstrip("/")
        return f"{base}/storage/v1/b/{quote(str(self.source_config.bucket), safe='')}/o"

    async def connect(self) -> None:
        """Open the HTTP client.

        Raises:
            StoreConnectionError: If the client cannot be created.
        """
        if self._http_client is not None:
            return

        headers: dict[str, str] = {}
        if self.source_config.access_token:
            headers["Authorization"] = f"Bearer {self.source_config.access_token}"

        try:
            self._http_client = httpx.AsyncClient(
                headers=headers,
                timeout=httpx.Timeout(120.0, connect=30.0),
                limits=httpx.Limits(
                    max_connections=self.migration_config.max_concurrent + 5,
                    max_keepalive_connections=self.migration_config.max_concurrent,
                ),
                transport=self._transport,
            )
        except Exception as e:
            raise StoreConnectionError(
                f"Failed to create HTTP client for {self.source_config.bucket}: {e}"
            ) from e
        self._logger.info("Connected to Firebase Storage")

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client is not None:
            try:
                await self._http_client.aclose()
            except Exception as e:
                self._logger.warning("Error closing HTTP client", error=str(e))
            finally:
                self._http_client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            raise StoreConnectionError(f"Not connected to {self.source_config.bucket}")
        return self._http_client

    async def _retry(self, operation: str, coro_func):
        return await with_retry(
            operation,
            coro_func,
            retry_attempts=self.migration_config.retry_attempts,
            retry_delay=self.migration_config.retry_delay,
            log=self._logger,
        )

    async def next_page(self, cursor: str | None) -> Page:
        params: dict[str, Any] = {
            "maxResults": self.migration_config.page_size,
            "fields": "items(name,size,contentType),nextPageToken",
        }
        if self.source_config.prefix:
            params["prefix"] = self.source_config.prefix
        if cursor:
            params["pageToken"] = cursor

        async def _list() -> dict[str, Any]:
            resp = await self.client.get(self._objects_url, params=params)
            resp.raise_for_status()
            return resp.json()

        data = await self._retry("list_objects", _list)

        items: list[CandidateItem] = []
        for obj in data.get("items") or []:
            name = obj.get("name")
            # Skip console-created "folder" placeholders.
            if not isinstance(name, str) or not name or name.endswith("/"):
                continue
            items.append(
                CandidateItem(
                    identifier=name,
                    size_hint=_parse_size(obj.get("size")),
                    content_type=obj.get("contentType"),
                )
            )

        next_token = data.get("nextPageToken")
        return Page(
            items=items,
            next_cursor=next_token if isinstance(next_token, str) and next_token else None,
        )

    async def fetch(self, identifier: str) -> bytes:
        url = f"{self._objects_url}/{quote(identifier, safe='')}"

        async def _download() -> bytes:
            resp = await self.client.get(url, params={"alt": "media"})
            resp.raise_for_status()
            return resp.content

        return await self._retry("download_object", _download)

    async def health_check(self) -> dict[str, Any]:
        """List a single object to verify bucket access.

        Raises:
            StoreConnectionError: If the bucket cannot be listed.
        """
        try:
            resp = await self.client.get(
                self._objects_url, params={"maxResults": 1, "fields": "nextPageToken"}
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise StoreConnectionError(
                f"Health check failed for {self.source_config.bucket}: {e}"
            ) from e
        return {"status": "healthy", "bucket": self.source_config.bucket}
