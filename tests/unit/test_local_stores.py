"""Unit tests for the filesystem source and destination adapters."""

from __future__ import annotations

from pathlib import Path

import pytest

from bucket_migrate.errors import StoreError
from bucket_migrate.stores.local import (
    METADATA_SUFFIX,
    LocalDirectoryDestination,
    LocalDirectorySource,
)


def _tree(root: Path, files: dict[str, bytes]) -> None:
    for name, data in files.items():
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)


@pytest.mark.asyncio
class TestLocalDirectorySource:
    async def test_pages_through_sorted_keys(self, tmp_path: Path):
        _tree(
            tmp_path,
            {"b.epub": b"bb", "a.epub": b"a", "sub/c.pdf": b"ccc", "d.epub" + METADATA_SUFFIX: b"{}"},
        )
        source = LocalDirectorySource(tmp_path, page_size=2)

        first = await source.next_page(None)
        second = await source.next_page(first.next_cursor)

        assert [i.identifier for i in first.items] == ["a.epub", "b.epub"]
        assert first.items[1].size_hint == 2
        assert first.next_cursor == "b.epub"
        assert [i.identifier for i in second.items] == ["sub/c.pdf"]
        assert second.is_terminal

    async def test_prefix_limits_listing(self, tmp_path: Path):
        _tree(tmp_path, {"books/a.epub": b"a", "other/b.epub": b"b"})
        source = LocalDirectorySource(tmp_path, prefix="books/")

        page = await source.next_page(None)

        assert [i.identifier for i in page.items] == ["books/a.epub"]

    async def test_fetch_reads_bytes(self, tmp_path: Path):
        _tree(tmp_path, {"a.epub": b"payload"})
        assert await LocalDirectorySource(tmp_path).fetch("a.epub") == b"payload"

    async def test_missing_root_raises(self, tmp_path: Path):
        with pytest.raises(StoreError):
            await LocalDirectorySource(tmp_path / "missing").next_page(None)


@pytest.mark.asyncio
class TestLocalDirectoryDestination:
    async def test_put_writes_payload_and_sidecar(self, tmp_path: Path):
        async with LocalDirectoryDestination(tmp_path / "out") as dest:
            assert await dest.exists("books/a.epub") is False
            await dest.put(
                "books/a.epub", b"data", "application/epub+zip", {"original-path": "a.epub"}
            )
            assert await dest.exists("books/a.epub") is True
            meta = dest.read_metadata("books/a.epub")

        assert (tmp_path / "out" / "books" / "a.epub").read_bytes() == b"data"
        assert meta == {
            "content_type": "application/epub+zip",
            "metadata": {"original-path": "a.epub"},
        }

    async def test_head_reads_sidecar_metadata(self, tmp_path: Path):
        async with LocalDirectoryDestination(tmp_path) as dest:
            assert await dest.head("a.epub") is None
            await dest.put("a.epub", b"data", "application/epub+zip", {"original-path": "x"})
            (tmp_path / "foreign.epub").write_bytes(b"other")

            assert await dest.head("a.epub") == {"original-path": "x"}
            assert await dest.head("foreign.epub") == {}

    async def test_keys_cannot_escape_root(self, tmp_path: Path):
        async with LocalDirectoryDestination(tmp_path / "out") as dest:
            with pytest.raises(StoreError):
                await dest.put("../escape.epub", b"x", "application/epub+zip", {})

        assert not (tmp_path / "escape.epub").exists()

    async def test_destination_output_can_be_listed_as_source(self, tmp_path: Path):
        async with LocalDirectoryDestination(tmp_path) as dest:
            await dest.put("a.epub", b"x", "application/epub+zip", {})

        page = await LocalDirectorySource(tmp_path).next_page(None)

        assert [i.identifier for i in page.items] == ["a.epub"]
