"""Adapter contracts between the migration engine and storage backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from bucket_migrate.models import CandidateItem


@dataclass(slots=True, frozen=True)
class Page:
    """One listing page. ``next_cursor is None`` marks the end of the listing."""

    items: list[CandidateItem] = field(default_factory=list)
    next_cursor: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.next_cursor is None


@runtime_checkable
class SourceStore(Protocol):
    """Paginated listing plus full-payload fetch."""

    name: str

    async def next_page(self, cursor: str | None) -> Page:
        """Return the page starting at ``cursor`` (``None`` = first page)."""
        ...

    async def fetch(self, identifier: str) -> bytes:
        """Return the full payload of one object."""
        ...


@runtime_checkable
class DestinationStore(Protocol):
    """Metadata-only existence checks plus object write."""

    name: str

    async def exists(self, key: str) -> bool:
        """Return whether ``key`` exists. Not found is ``False``, not an error."""
        ...

    async def head(self, key: str) -> dict[str, str] | None:
        """Return the user metadata stored with ``key``, or ``None`` if absent."""
        ...

    async def put(
        self,
        key: str,
        payload: bytes,
        content_type: str,
        metadata: dict[str, str],
    ) -> None:
        """Write one object; returns only after the backend confirmed the write."""
        ...
