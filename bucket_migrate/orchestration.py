"""Migration orchestration: adapter wiring, whole-run retries and reporting."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable
from contextlib import AsyncExitStack
from dataclasses import asdict
from pathlib import Path
from typing import Any

import structlog

from bucket_migrate.checkpoint import CheckpointStore
from bucket_migrate.config import Config
from bucket_migrate.enumeration import SourceEnumerator, extension_filter
from bucket_migrate.errors import ConfigurationError
from bucket_migrate.models import utc_now_iso
from bucket_migrate.naming import NamingPolicy
from bucket_migrate.retry import backoff_delay
from bucket_migrate.scheduler import BatchScheduler
from bucket_migrate.shutdown import ShutdownCoordinator
from bucket_migrate.stores.base import DestinationStore, SourceStore
from bucket_migrate.transfer import ExistenceProber, TransferWorker

logger = structlog.get_logger(__name__)

REPORT_SAMPLE_LIMIT = 100
MAX_RUN_RETRY_DELAY = 300.0


def build_source(config: Config) -> SourceStore:
    """Create the source adapter named by ``config.source.kind``."""
    if config.source.kind == "firebase":
        from bucket_migrate.stores.firebase import FirebaseStorageSource

        return FirebaseStorageSource(config.source, config.migration)
    if config.source.kind == "local":
        from bucket_migrate.stores.local import LocalDirectorySource

        if config.source.path is None:
            raise ConfigurationError("Local source requires SOURCE_PATH")
        return LocalDirectorySource(
            config.source.path,
            page_size=config.migration.page_size,
            prefix=config.source.prefix,
        )
    raise ConfigurationError(f"Unknown source kind: {config.source.kind}")


def build_destination(config: Config) -> DestinationStore:
    """Create the destination adapter named by ``config.destination.kind``."""
    if config.destination.kind == "s3":
        from bucket_migrate.stores.s3 import S3Destination

        return S3Destination(config.destination, config.migration)
    if config.destination.kind == "local":
        from bucket_migrate.stores.local import LocalDirectoryDestination

        if config.destination.path is None:
            raise ConfigurationError("Local destination requires DEST_PATH")
        return LocalDirectoryDestination(config.destination.path)
    raise ConfigurationError(f"Unknown destination kind: {config.destination.kind}")


class MigrationOrchestrator:
    """Runs the batch scheduler until the source is drained or retries run out.

    Replaces the old approach of re-spawning the migration script: every
    attempt runs in-process, reloads the checkpoint and picks up what previous
    attempts left behind (failed items are never in the completed set).
    """

    def __init__(
        self,
        config: Config,
        *,
        source: SourceStore | None = None,
        destination: DestinationStore | None = None,
    ) -> None:
        self.config = config
        self._source = source
        self._destination = destination
        self.checkpoint = CheckpointStore(config.checkpoint_path)
        self._logger = logger.bind(component="MigrationOrchestrator")

    def naming_policy(self) -> NamingPolicy:
        mig = self.config.migration
        return NamingPolicy(
            sanitize=mig.sanitize_keys,
            flatten=mig.flatten_keys,
            strip_prefix=mig.strip_prefix,
            key_prefix=self.config.destination.key_prefix,
        )

    def _enumerator(self, source: SourceStore) -> SourceEnumerator:
        mig = self.config.migration
        return SourceEnumerator(
            source,
            max_pages=mig.max_pages,
            include=extension_filter(mig.extensions, self.config.source.prefix),
        )

    async def _open_stores(
        self, stack: AsyncExitStack
    ) -> tuple[SourceStore, DestinationStore]:
        if self._source is None and self._destination is None:
            # Adapters built from config need their settings; injected ones do not.
            self.config.validate_for_run()
        source = self._source if self._source is not None else build_source(self.config)
        destination = (
            self._destination
            if self._destination is not None
            else build_destination(self.config)
        )
        if hasattr(source, "__aenter__"):
            await stack.enter_async_context(source)  # type: ignore[arg-type]
        if hasattr(destination, "__aenter__"):
            await stack.enter_async_context(destination)  # type: ignore[arg-type]
        return source, destination

    async def run(
        self,
        *,
        shutdown: ShutdownCoordinator | None = None,
        progress_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> dict[str, Any]:
        """Migrate with whole-run retries and return the results summary.

        A run that ends with failed items is repeated up to ``run_retries``
        times. A run that raises is repeated too, until ``run_retries`` or
        ``max_consecutive_failures`` is exhausted, then the error propagates.

        Raises:
            ConfigurationError: Before any work if required settings are missing.
        """
        mig = self.config.migration
        self.config.ensure_state_dir()
        started = time.perf_counter()
        attempts = 0
        consecutive_failures = 0
        scheduler: BatchScheduler | None = None
        run_errors: list[str] = []

        async with AsyncExitStack() as stack:
            source, destination = await self._open_stores(stack)
            naming = self.naming_policy()
            worker = TransferWorker(source, destination, naming)
            prober = ExistenceProber(destination, naming) if mig.check_destination else None

            while True:
                attempts += 1
                scheduler = BatchScheduler(
                    self._enumerator(source),
                    self.checkpoint,
                    worker,
                    prober=prober,
                    max_concurrent=mig.max_concurrent,
                    batch_size=mig.batch_size,
                    batch_delay=mig.batch_delay,
                    shutdown=shutdown,
                    progress_hook=progress_hook,
                )
                try:
                    state = await scheduler.run()
                except Exception as e:
                    consecutive_failures += 1
                    run_errors.append(f"attempt {attempts}: {type(e).__name__}: {e}")
                    self._logger.error(
                        "Migration run failed",
                        attempt=attempts,
                        consecutive_failures=consecutive_failures,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    if (
                        consecutive_failures >= mig.max_consecutive_failures
                        or attempts > mig.run_retries
                        or (shutdown is not None and shutdown.requested)
                    ):
                        raise
                    errors_last_run = None
                else:
                    consecutive_failures = 0
                    if shutdown is not None and shutdown.requested:
                        break
                    if state.error_count == 0 or attempts > mig.run_retries:
                        break
                    errors_last_run = state.error_count

                delay = backoff_delay(attempts, mig.run_retry_delay, MAX_RUN_RETRY_DELAY)
                self._logger.warning(
                    "Retrying migration run",
                    next_attempt=attempts + 1,
                    max_attempts=mig.run_retries + 1,
                    errors_last_run=errors_last_run,
                    sleep_seconds=round(delay, 1),
                )
                if shutdown is not None:
                    if await shutdown.sleep(delay):
                        break
                else:
                    await asyncio.sleep(delay)

        assert scheduler is not None
        results = self._build_results(
            scheduler,
            attempts=attempts,
            elapsed=time.perf_counter() - started,
            run_errors=run_errors,
            interrupted=scheduler.interrupted
            or (shutdown is not None and shutdown.requested),
        )
        results["report_path"] = str(self.write_report(results))
        return results

    def _build_results(
        self,
        scheduler: BatchScheduler,
        *,
        attempts: int,
        elapsed: float,
        run_errors: list[str],
        interrupted: bool,
    ) -> dict[str, Any]:
        state = scheduler.state if scheduler.state is not None else self.checkpoint.load()
        return {
            "success": state.error_count == 0 and not interrupted,
            "interrupted": interrupted,
            "attempts": attempts,
            "elapsed_seconds": round(elapsed, 2),
            "finished_at": utc_now_iso(),
            "summary": state.summary(),
            "enumeration": asdict(scheduler.enumerator.stats),
            "failed_items": [
                {"identifier": o.identifier, "error": o.error}
                for o in scheduler.failed_items[:REPORT_SAMPLE_LIMIT]
            ],
            "run_errors": run_errors,
            "checkpoint_path": str(self.checkpoint.path),
        }

    def write_report(self, results: dict[str, Any]) -> Path:
        path = self.config.report_path
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(results, f, indent=2, default=str)
        self._logger.info("Wrote migration report", report_path=str(path))
        return path

    async def plan(self) -> dict[str, Any]:
        """Dry run: list what a run would transfer without fetching or writing."""
        mig = self.config.migration
        state = self.checkpoint.load()
        pending: list[dict[str, Any]] = []
        pending_count = 0
        pending_bytes = 0
        already_completed = 0
        already_present = 0

        async with AsyncExitStack() as stack:
            source, destination = await self._open_stores(stack)
            naming = self.naming_policy()
            prober = ExistenceProber(destination, naming) if mig.check_destination else None
            enumerator = self._enumerator(source)

            async for page in enumerator.pages():
                for item in page.items:
                    if item.identifier in state.completed:
                        already_completed += 1
                        continue
                    if prober is not None and await prober.exists(item.identifier):
                        already_present += 1
                        continue
                    pending_count += 1
                    pending_bytes += item.size_hint or 0
                    if len(pending) < REPORT_SAMPLE_LIMIT:
                        pending.append(
                            {
                                "identifier": item.identifier,
                                "destination_key": naming.destination_key(item.identifier),
                                "size": item.size_hint,
                            }
                        )

        return {
            "total_items": enumerator.stats.unique_items,
            "already_completed": already_completed,
            "already_present": already_present,
            "pending": pending_count,
            "pending_bytes": pending_bytes,
            "pending_sample": pending,
            "enumeration": asdict(enumerator.stats),
        }

    async def validate(self) -> dict[str, Any]:
        """Open both stores, list one page and probe one key."""
        async with AsyncExitStack() as stack:
            source, destination = await self._open_stores(stack)
            page = await source.next_page(None)
            probe_key = self.naming_policy().destination_key(
                page.items[0].identifier if page.items else "bucket-migrate-probe"
            )
            present = await destination.exists(probe_key)
        return {
            "source": getattr(source, "name", "source"),
            "destination": getattr(destination, "name", "destination"),
            "first_page_items": len(page.items),
            "probe_key": probe_key,
            "probe_key_exists": present,
        }
