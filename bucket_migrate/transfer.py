"""Per-item transfer: existence probe and fetch-then-put."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from bucket_migrate.models import (
    KEY_COLLISION,
    SKIP_ALREADY_EXISTS,
    CandidateItem,
    TransferOutcome,
    utc_now_iso,
)
from bucket_migrate.naming import (
    META_MIGRATED_FROM,
    META_MIGRATION_DATE,
    META_ORIGINAL_PATH,
    META_ORIGINAL_SIZE,
    NamingPolicy,
    content_type_for,
    encode_original_identifier,
    original_identifier,
)
from bucket_migrate.stores.base import DestinationStore, SourceStore

logger = structlog.get_logger(__name__)


class ProbeResult(str, Enum):
    ABSENT = "absent"
    PRESENT = "present"
    # The key holds an object migrated from a different identifier.
    TAKEN = "taken"


@dataclass(slots=True)
class ExistenceProber:
    """Cheap metadata-only check for an item at its destination key.

    An object counts as this item's only if its ``original-path`` metadata names
    the item, or it carries no such metadata at all. Not-found is ``ABSENT``;
    transport and auth errors propagate.
    """

    destination: DestinationStore
    naming: NamingPolicy

    async def probe(self, identifier: str, key: str | None = None) -> ProbeResult:
        if key is None:
            key = self.naming.destination_key(identifier)
        metadata = await self.destination.head(key)
        if metadata is None:
            return ProbeResult.ABSENT
        owner = original_identifier(metadata)
        if owner is not None and owner != identifier:
            return ProbeResult.TAKEN
        return ProbeResult.PRESENT

    async def exists(self, identifier: str) -> bool:
        return await self.probe(identifier) is ProbeResult.PRESENT


@dataclass(slots=True)
class TransferWorker:
    """Copies one item from source to destination and reports the outcome.

    ``transfer`` never raises for item-level failures; it returns
    ``TransferOutcome.failed`` so the scheduler can keep the item out of the
    completed set and retry it on a later run.
    """

    source: SourceStore
    destination: DestinationStore
    naming: NamingPolicy = field(default_factory=NamingPolicy)
    _logger: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._logger = logger.bind(component="TransferWorker")

    def build_metadata(
        self, item: CandidateItem, payload_size: int
    ) -> dict[str, str]:
        return {
            META_ORIGINAL_PATH: encode_original_identifier(item.identifier),
            META_MIGRATED_FROM: str(getattr(self.source, "name", "source")),
            META_MIGRATION_DATE: utc_now_iso(),
            META_ORIGINAL_SIZE: str(
                item.size_hint if item.size_hint is not None else payload_size
            ),
        }

    async def transfer(
        self, item: CandidateItem, key: str | None = None
    ) -> TransferOutcome:
        if key is None:
            key = self.naming.destination_key(item.identifier)
        content_type = content_type_for(item.identifier)
        log = self._logger.bind(identifier=item.identifier, key=key)

        try:
            payload = await self.source.fetch(item.identifier)
        except Exception as e:
            log.error("Fetch failed", error=str(e), error_type=type(e).__name__)
            return TransferOutcome.failed(item.identifier, e)

        try:
            await self.destination.put(
                key, payload, content_type, self.build_metadata(item, len(payload))
            )
        except Exception as e:
            log.error("Upload failed", error=str(e), error_type=type(e).__name__)
            return TransferOutcome.failed(item.identifier, e)

        log.debug("Uploaded object", bytes=len(payload), content_type=content_type)
        return TransferOutcome.uploaded(
            item.identifier, len(payload), destination_key=key
        )

    async def check_and_transfer(
        self,
        item: CandidateItem,
        prober: ExistenceProber | None,
        key: str | None = None,
    ) -> TransferOutcome:
        """Probe the destination first (if a prober is given), then transfer.

        When the key holds another item's object, the item moves to its
        disambiguated key and that key is probed instead.
        """
        if key is None:
            key = self.naming.destination_key(item.identifier)
        if prober is None:
            return await self.transfer(item, key)

        try:
            result = await prober.probe(item.identifier, key)
            if result is ProbeResult.TAKEN:
                fallback = self.naming.disambiguated_key(item.identifier)
                self._logger.warning(
                    "Destination key holds another object",
                    identifier=item.identifier,
                    key=key,
                    fallback_key=fallback,
                )
                if fallback == key:
                    return TransferOutcome.failed(item.identifier, KEY_COLLISION)
                key = fallback
                result = await prober.probe(item.identifier, key)
        except Exception as e:
            self._logger.error(
                "Existence check failed",
                identifier=item.identifier,
                error=str(e),
                error_type=type(e).__name__,
            )
            return TransferOutcome.failed(item.identifier, e)

        if result is ProbeResult.TAKEN:
            self._logger.error(
                "Destination key collision", identifier=item.identifier, key=key
            )
            return TransferOutcome.failed(item.identifier, KEY_COLLISION)
        if result is ProbeResult.PRESENT:
            self._logger.debug(
                "Already present at destination", identifier=item.identifier, key=key
            )
            return TransferOutcome.skipped(
                item.identifier, SKIP_ALREADY_EXISTS, destination_key=key
            )
        return await self.transfer(item, key)
