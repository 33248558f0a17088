"""Unit tests for the S3 destination adapter with a mocked aioboto3 session."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError

from bucket_migrate.config import DestinationConfig, MigrationConfig
from bucket_migrate.errors import StoreConnectionError
from bucket_migrate.stores.s3 import S3Destination, is_not_found


def _client_error(code: str, status: int, operation: str = "HeadObject") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


def _mock_session() -> tuple[MagicMock, AsyncMock, MagicMock]:
    client = AsyncMock()
    client_cm = MagicMock()
    client_cm.__aenter__ = AsyncMock(return_value=client)
    client_cm.__aexit__ = AsyncMock(return_value=None)
    session = MagicMock()
    session.client.return_value = client_cm
    return session, client, client_cm


def _destination(session: MagicMock, **dest_kwargs) -> S3Destination:
    dest_config = DestinationConfig(
        bucket="books-bucket",
        region="eu-west-1",
        endpoint_url="http://localhost:4566",
        **dest_kwargs,
    )
    return S3Destination(
        dest_config,
        MigrationConfig(retry_attempts=2, retry_delay=0.0),
        session=session,
    )


def test_missing_bucket_is_rejected() -> None:
    with pytest.raises(StoreConnectionError):
        S3Destination(DestinationConfig(bucket=None), MigrationConfig())


def test_is_not_found() -> None:
    assert is_not_found(_client_error("404", 404))
    assert is_not_found(_client_error("NoSuchKey", 404))
    assert not is_not_found(_client_error("AccessDenied", 403))


@pytest.mark.asyncio
class TestS3Destination:
    async def test_connect_uses_region_and_endpoint(self):
        session, _, client_cm = _mock_session()

        async with _destination(session):
            pass

        kwargs = session.client.call_args.kwargs
        assert session.client.call_args.args == ("s3",)
        assert kwargs["region_name"] == "eu-west-1"
        assert kwargs["endpoint_url"] == "http://localhost:4566"
        client_cm.__aexit__.assert_awaited_once()

    async def test_exists(self):
        session, client, _ = _mock_session()
        client.head_object.side_effect = [{}, _client_error("404", 404)]

        async with _destination(session) as dest:
            assert await dest.exists("a.epub") is True
            assert await dest.exists("b.epub") is False

        client.head_object.assert_any_await(Bucket="books-bucket", Key="a.epub")

    async def test_exists_propagates_auth_errors(self):
        session, client, _ = _mock_session()
        client.head_object.side_effect = _client_error("AccessDenied", 403)

        async with _destination(session) as dest:
            with pytest.raises(ClientError):
                await dest.exists("a.epub")

        assert client.head_object.await_count == 1

    async def test_head_returns_user_metadata(self):
        session, client, _ = _mock_session()
        client.head_object.side_effect = [
            {"ContentLength": 3, "Metadata": {"original-path": "a/b.epub"}},
            _client_error("404", 404),
        ]

        async with _destination(session) as dest:
            assert await dest.head("b.epub") == {"original-path": "a/b.epub"}
            assert await dest.head("c.epub") is None

    async def test_put_sends_metadata_encryption_and_storage_class(self):
        session, client, _ = _mock_session()

        async with _destination(session) as dest:
            await dest.put(
                "a.epub", b"data", "application/epub+zip", {"original-path": "a.epub"}
            )

        client.put_object.assert_awaited_once_with(
            Bucket="books-bucket",
            Key="a.epub",
            Body=b"data",
            ContentType="application/epub+zip",
            Metadata={"original-path": "a.epub"},
            ServerSideEncryption="AES256",
            StorageClass="STANDARD_IA",
        )

    async def test_put_omits_unset_options(self):
        session, client, _ = _mock_session()

        async with _destination(
            session, storage_class=None, server_side_encryption=None
        ) as dest:
            await dest.put("a.pdf", b"data", "application/pdf", {})

        kwargs = client.put_object.call_args.kwargs
        assert "StorageClass" not in kwargs
        assert "ServerSideEncryption" not in kwargs

    async def test_put_retries_throttling(self):
        session, client, _ = _mock_session()
        client.put_object.side_effect = [
            _client_error("SlowDown", 503, "PutObject"),
            {},
        ]

        async with _destination(session) as dest:
            await dest.put("a.epub", b"data", "application/epub+zip", {})

        assert client.put_object.await_count == 2

    async def test_health_check(self):
        session, client, _ = _mock_session()

        async with _destination(session) as dest:
            health = await dest.health_check()

        assert health == {"status": "healthy", "bucket": "books-bucket"}
        client.head_bucket.assert_awaited_once_with(Bucket="books-bucket")
