"""Core data model for the migration engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

CHECKPOINT_FORMAT_VERSION = 1


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


@dataclass(slots=True, frozen=True)
class CandidateItem:
    """One object listed by the source store."""

    identifier: str
    size_hint: int | None = None
    content_type: str | None = None


class OutcomeStatus(str, Enum):
    UPLOADED = "uploaded"
    SKIPPED = "skipped"
    FAILED = "failed"


# Skip reasons
SKIP_CHECKPOINT = "checkpoint"
SKIP_ALREADY_EXISTS = "already_exists"

KEY_COLLISION = "destination key collision"


@dataclass(slots=True, frozen=True)
class TransferOutcome:
    """Result of handling one item: Uploaded(bytes), Skipped(reason) or Failed(error)."""

    identifier: str
    status: OutcomeStatus
    bytes_transferred: int = 0
    reason: str | None = None
    error: str | None = None
    destination_key: str | None = None

    @classmethod
    def uploaded(
        cls, identifier: str, nbytes: int, *, destination_key: str | None = None
    ) -> TransferOutcome:
        return cls(
            identifier=identifier,
            status=OutcomeStatus.UPLOADED,
            bytes_transferred=nbytes,
            destination_key=destination_key,
        )

    @classmethod
    def skipped(
        cls, identifier: str, reason: str, *, destination_key: str | None = None
    ) -> TransferOutcome:
        return cls(
            identifier=identifier,
            status=OutcomeStatus.SKIPPED,
            reason=reason,
            destination_key=destination_key,
        )

    @classmethod
    def failed(cls, identifier: str, error: str | BaseException) -> TransferOutcome:
        if isinstance(error, BaseException):
            error = f"{type(error).__name__}: {error}"
        return cls(identifier=identifier, status=OutcomeStatus.FAILED, error=error)

    @property
    def is_failure(self) -> bool:
        return self.status is OutcomeStatus.FAILED


@dataclass(slots=True)
class MigrationState:
    """Progress of a migration; owned and mutated by the batch scheduler only.

    Counters describe the current run. ``completed``, ``started_at`` and
    ``total_items`` carry over between runs.
    """

    total_items: int = 0
    processed_count: int = 0
    uploaded_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    started_at: str | None = None
    last_item: str | None = None
    completed: set[str] = field(default_factory=set)
    # Additive fields (older checkpoints simply lack them).
    uploaded_bytes: int = 0
    duplicate_count: int = 0
    filtered_count: int = 0
    pages_fetched: int = 0
    batches_completed: int = 0
    last_run_at: str | None = None
    last_error: str | None = None
    # Destination key -> identifier that owns it.
    key_owners: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationState:
        completed = data.get("completed") or []
        if not isinstance(completed, list):
            raise TypeError(
                f"completed must be a list, got {type(completed).__name__}"
            )
        key_owners = data.get("key_owners") or {}
        if not isinstance(key_owners, dict):
            raise TypeError(
                f"key_owners must be an object, got {type(key_owners).__name__}"
            )
        return cls(
            total_items=int(data.get("total_items", 0)),
            processed_count=int(data.get("processed_count", 0)),
            uploaded_count=int(data.get("uploaded_count", 0)),
            error_count=int(data.get("error_count", 0)),
            skipped_count=int(data.get("skipped_count", 0)),
            started_at=data.get("started_at"),
            last_item=data.get("last_item"),
            completed={str(i) for i in completed},
            uploaded_bytes=int(data.get("uploaded_bytes", 0)),
            duplicate_count=int(data.get("duplicate_count", 0)),
            filtered_count=int(data.get("filtered_count", 0)),
            pages_fetched=int(data.get("pages_fetched", 0)),
            batches_completed=int(data.get("batches_completed", 0)),
            last_run_at=data.get("last_run_at"),
            last_error=data.get("last_error"),
            key_owners={str(k): str(v) for k, v in key_owners.items()},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "format_version": CHECKPOINT_FORMAT_VERSION,
            "total_items": self.total_items,
            "processed_count": self.processed_count,
            "uploaded_count": self.uploaded_count,
            "error_count": self.error_count,
            "skipped_count": self.skipped_count,
            "started_at": self.started_at,
            "last_item": self.last_item,
            "uploaded_bytes": self.uploaded_bytes,
            "duplicate_count": self.duplicate_count,
            "filtered_count": self.filtered_count,
            "pages_fetched": self.pages_fetched,
            "batches_completed": self.batches_completed,
            "last_run_at": self.last_run_at,
            "last_error": self.last_error,
            "completed": sorted(self.completed),
            "key_owners": dict(sorted(self.key_owners.items())),
        }

    def begin_run(self) -> None:
        """Reset per-run counters, keeping the completed set."""
        self.processed_count = 0
        self.uploaded_count = 0
        self.error_count = 0
        self.skipped_count = 0
        self.uploaded_bytes = 0
        self.duplicate_count = 0
        self.filtered_count = 0
        self.pages_fetched = 0
        self.batches_completed = 0
        self.last_error = None
        if self.started_at is None:
            self.started_at = utc_now_iso()
        self.last_run_at = utc_now_iso()

    def apply_outcome(self, outcome: TransferOutcome) -> None:
        self.processed_count += 1
        if outcome.status is OutcomeStatus.UPLOADED:
            self.uploaded_count += 1
            self.uploaded_bytes += outcome.bytes_transferred
        elif outcome.status is OutcomeStatus.SKIPPED:
            self.skipped_count += 1
        else:
            self.error_count += 1
            self.last_error = outcome.error
            return
        self.completed.add(outcome.identifier)
        self.last_item = outcome.identifier
        if outcome.destination_key is not None:
            self.key_owners[outcome.destination_key] = outcome.identifier

    @property
    def counts_consistent(self) -> bool:
        return self.processed_count == (
            self.uploaded_count + self.skipped_count + self.error_count
        )

    def summary(self) -> dict[str, Any]:
        """Counts for operator-facing reports (no completed list)."""
        return {
            "total_items": self.total_items,
            "processed": self.processed_count,
            "uploaded": self.uploaded_count,
            "skipped": self.skipped_count,
            "errors": self.error_count,
            "uploaded_bytes": self.uploaded_bytes,
            "duplicates": self.duplicate_count,
            "filtered": self.filtered_count,
            "pages_fetched": self.pages_fetched,
            "batches_completed": self.batches_completed,
            "completed_total": len(self.completed),
            "started_at": self.started_at,
            "last_run_at": self.last_run_at,
            "last_item": self.last_item,
            "last_error": self.last_error,
        }
