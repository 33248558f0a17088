"""Storage backend adapters."""

from bucket_migrate.stores.base import DestinationStore, Page, SourceStore

__all__ = ["DestinationStore", "Page", "SourceStore"]
