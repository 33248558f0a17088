"""Unit tests for paginated, de-duplicating source enumeration."""

from __future__ import annotations

import pytest

from bucket_migrate.enumeration import SourceEnumerator, extension_filter
from bucket_migrate.errors import EnumerationError
from bucket_migrate.models import CandidateItem
from bucket_migrate.stores.base import Page
from tests.stubs import MemorySource, scripted_pages


async def _collect(enumerator: SourceEnumerator):
    return [page async for page in enumerator.pages()]


class _EndlessSource:
    """Always returns the same page with the same cursor."""

    name = "endless"

    def __init__(self) -> None:
        self.calls = 0

    async def next_page(self, cursor):
        self.calls += 1
        return Page(items=[CandidateItem("a.epub")], next_cursor="same")

    async def fetch(self, identifier):
        return b""


@pytest.mark.asyncio
class TestSourceEnumerator:
    async def test_duplicates_across_pages_are_dropped(self):
        source = MemorySource(scripted_pages(["a.epub", "b.epub"], ["a.epub"], []))
        enumerator = SourceEnumerator(source)

        pages = await _collect(enumerator)

        assert [i.identifier for p in pages for i in p.items] == ["a.epub", "b.epub"]
        assert enumerator.stats.duplicates == 1
        assert enumerator.stats.unique_items == 2
        assert enumerator.seen_count == 2
        assert pages[-1].is_last

    async def test_empty_page_with_cursor_is_not_terminal(self):
        source = MemorySource(scripted_pages([], [], ["c.epub"]))
        enumerator = SourceEnumerator(source)

        pages = await _collect(enumerator)

        assert len(pages) == 3
        assert source.page_calls == [None, "1", "2"]
        assert [i.identifier for i in pages[2].items] == ["c.epub"]
        assert enumerator.stats.empty_pages == 2
        assert enumerator.stats.exhausted

    async def test_page_ceiling_halts_endless_listing(self):
        source = _EndlessSource()
        enumerator = SourceEnumerator(source, max_pages=5)

        pages = await _collect(enumerator)

        assert len(pages) == 5
        assert source.calls == 5
        assert enumerator.stats.halted_by_ceiling
        assert not enumerator.stats.exhausted
        assert enumerator.stats.stalled_cursors >= 4
        assert enumerator.stats.unique_items == 1

    async def test_filter_excludes_items_and_counts_them(self):
        source = MemorySource(scripted_pages(["a.epub", "cover.jpg", "B.PDF"]))
        enumerator = SourceEnumerator(source, include=extension_filter([".epub", ".pdf"]))

        pages = await _collect(enumerator)

        assert [i.identifier for i in pages[0].items] == ["a.epub", "B.PDF"]
        assert pages[0].filtered == 1
        assert enumerator.stats.filtered == 1

    async def test_listing_error_is_wrapped(self):
        class _Broken(MemorySource):
            async def next_page(self, cursor):
                if cursor == "1":
                    raise ConnectionError("listing down")
                return await super().next_page(cursor)

        source = _Broken(scripted_pages(["a.epub"], ["b.epub"]))
        enumerator = SourceEnumerator(source)
        seen = []

        with pytest.raises(EnumerationError, match="page 2"):
            async for page in enumerator.pages():
                seen.extend(i.identifier for i in page.items)

        assert seen == ["a.epub"]

    async def test_max_pages_must_be_positive(self):
        with pytest.raises(ValueError):
            SourceEnumerator(MemorySource([]), max_pages=0)


def test_extension_filter_with_prefix():
    include = extension_filter([".epub"], prefix="__books__/")
    assert include(CandidateItem("__books__/a.epub"))
    assert not include(CandidateItem("other/a.epub"))
    assert not include(CandidateItem("__books__/a.pdf"))


def test_extension_filter_empty_includes_everything():
    include = extension_filter([])
    assert include(CandidateItem("anything.bin"))
