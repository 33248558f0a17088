"""Paginated, de-duplicating enumeration of the source store.

Backends are not trusted to paginate cleanly: a cursor can drift and repeat
objects from earlier pages, or fail to advance at all. The enumerator keeps a
run-wide seen-set so every identifier is yielded at most once, and stops after
a configurable number of pages so a backend that never returns a terminal
cursor cannot keep the migration listing forever.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field

import structlog

from bucket_migrate.errors import EnumerationError
from bucket_migrate.models import CandidateItem
from bucket_migrate.stores.base import SourceStore

logger = structlog.get_logger(__name__)

ItemPredicate = Callable[[CandidateItem], bool]


def extension_filter(extensions: Iterable[str], prefix: str = "") -> ItemPredicate:
    """Build an inclusion predicate on key prefix and (case-insensitive) extension.

    An empty extension list includes every extension.
    """
    exts = tuple(e.lower() for e in extensions)

    def _include(item: CandidateItem) -> bool:
        if prefix and not item.identifier.startswith(prefix):
            return False
        if not exts:
            return True
        return item.identifier.lower().endswith(exts)

    return _include


@dataclass(slots=True)
class EnumerationStats:
    pages: int = 0
    raw_items: int = 0
    unique_items: int = 0
    duplicates: int = 0
    filtered: int = 0
    empty_pages: int = 0
    stalled_cursors: int = 0
    halted_by_ceiling: bool = False
    exhausted: bool = False


@dataclass(slots=True)
class EnumeratedPage:
    page_number: int
    items: list[CandidateItem]
    raw_count: int
    duplicates: int
    filtered: int
    is_last: bool = False


@dataclass(slots=True)
class SourceEnumerator:
    """Turns ``SourceStore.next_page`` calls into a finite stream of unique items."""

    source: SourceStore
    max_pages: int = 10_000
    include: ItemPredicate | None = None
    stats: EnumerationStats = field(default_factory=EnumerationStats)
    _seen: set[str] = field(default_factory=set, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_pages < 1:
            raise ValueError(f"max_pages must be positive; got {self.max_pages}")

    @property
    def seen_count(self) -> int:
        return len(self._seen)

    async def pages(self) -> AsyncIterator[EnumeratedPage]:
        """Yield filtered, de-duplicated pages until the terminal cursor.

        Raises:
            EnumerationError: If a page cannot be fetched (after the adapter's
                own retries). Pages already yielded stay yielded.
        """
        log = logger.bind(source=getattr(self.source, "name", "source"))
        cursor: str | None = None
        previous_cursor: str | None = None

        while True:
            if self.stats.pages >= self.max_pages:
                self.stats.halted_by_ceiling = True
                log.warning(
                    "Page ceiling reached, stopping enumeration",
                    max_pages=self.max_pages,
                    unique_items=self.stats.unique_items,
                    duplicates=self.stats.duplicates,
                )
                return

            try:
                page = await self.source.next_page(cursor)
            except Exception as e:
                raise EnumerationError(
                    f"Listing page {self.stats.pages + 1} failed: {type(e).__name__}: {e}"
                ) from e
            self.stats.pages += 1
            page_num = self.stats.pages
            raw_count = len(page.items)
            self.stats.raw_items += raw_count
            if raw_count == 0:
                self.stats.empty_pages += 1

            kept: list[CandidateItem] = []
            duplicates = 0
            filtered = 0
            for item in page.items:
                if self.include is not None and not self.include(item):
                    filtered += 1
                    continue
                if item.identifier in self._seen:
                    duplicates += 1
                    continue
                self._seen.add(item.identifier)
                kept.append(item)

            self.stats.unique_items += len(kept)
            self.stats.duplicates += duplicates
            self.stats.filtered += filtered

            if duplicates:
                log.warning(
                    "Listing returned already-seen objects",
                    page_num=page_num,
                    duplicates=duplicates,
                    page_items=raw_count,
                )

            next_cursor = page.next_cursor
            if next_cursor is not None and next_cursor in (cursor, previous_cursor):
                self.stats.stalled_cursors += 1
                log.warning(
                    "Listing cursor did not advance",
                    page_num=page_num,
                    cursor=next_cursor,
                )

            is_last = next_cursor is None
            if is_last:
                self.stats.exhausted = True

            log.debug(
                "Fetched listing page",
                page_num=page_num,
                page_items=raw_count,
                kept=len(kept),
                duplicates=duplicates,
                filtered=filtered,
                is_last=is_last,
            )

            yield EnumeratedPage(
                page_number=page_num,
                items=kept,
                raw_count=raw_count,
                duplicates=duplicates,
                filtered=filtered,
                is_last=is_last,
            )

            if is_last:
                return
            previous_cursor, cursor = cursor, next_cursor
