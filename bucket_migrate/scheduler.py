"""Batch scheduler: the loop that drives a migration run.

Each listing page is split into batches. A batch is a barrier: every dispatched
transfer finishes (or fails) before its outcomes are folded into the state and
the checkpoint is written, so a persisted checkpoint never reflects a
half-processed item. Workers return outcomes; only this module mutates
``MigrationState``.

Destination keys are claimed before dispatch against the persisted
key -> identifier map and the claims of the current batch, so two identifiers
that name the same key never write to it.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

import structlog

from bucket_migrate.checkpoint import CheckpointStore
from bucket_migrate.enumeration import SourceEnumerator
from bucket_migrate.models import (
    KEY_COLLISION,
    SKIP_CHECKPOINT,
    CandidateItem,
    MigrationState,
    OutcomeStatus,
    TransferOutcome,
)
from bucket_migrate.shutdown import ShutdownCoordinator
from bucket_migrate.transfer import ExistenceProber, TransferWorker

logger = structlog.get_logger(__name__)

CANCELLED_BY_SHUTDOWN = "cancelled by shutdown"


def _chunks(items: list[CandidateItem], size: int) -> list[list[CandidateItem]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def _dispatched_any(outcomes: list[TransferOutcome]) -> bool:
    return any(o.reason != SKIP_CHECKPOINT for o in outcomes)


class BatchScheduler:
    """Runs one pass over the source listing with bounded concurrency."""

    def __init__(
        self,
        enumerator: SourceEnumerator,
        checkpoint: CheckpointStore,
        worker: TransferWorker,
        *,
        prober: ExistenceProber | None = None,
        max_concurrent: int = 10,
        batch_size: int = 100,
        batch_delay: float = 2.0,
        shutdown: ShutdownCoordinator | None = None,
        progress_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be positive; got {max_concurrent}")
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive; got {batch_size}")
        self.enumerator = enumerator
        self.checkpoint = checkpoint
        self.worker = worker
        self.prober = prober
        self.max_concurrent = max_concurrent
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.shutdown = shutdown
        self._progress_hook = progress_hook
        self.state: MigrationState | None = None
        self.interrupted = False
        self.failed_items: list[TransferOutcome] = []
        self._logger = logger.bind(component="BatchScheduler")

    @property
    def _stop_requested(self) -> bool:
        return self.shutdown is not None and self.shutdown.requested

    async def run(self) -> MigrationState:
        """Migrate everything the enumerator yields and return the final state.

        Listing errors propagate after the checkpoint has been saved.
        """
        state = self.checkpoint.load()
        state.begin_run()
        self.state = state
        self.interrupted = False
        self.failed_items = []
        prior_total = state.total_items
        started = time.perf_counter()

        self._logger.info(
            "Starting migration run",
            already_completed=len(state.completed),
            max_concurrent=self.max_concurrent,
            batch_size=self.batch_size,
            check_destination=self.prober is not None,
        )

        pages = self.enumerator.pages()
        try:
            async for page in pages:
                self._sync_enumeration_stats(state, prior_total)
                batches = _chunks(page.items, self.batch_size)
                for index, batch in enumerate(batches):
                    outcomes = await self._run_batch(batch, state)
                    self._commit(state, outcomes, prior_total)
                    self._report(state, page.page_number, outcomes)

                    if len(outcomes) < len(batch):
                        self.interrupted = True
                        break
                    finished = page.is_last and index == len(batches) - 1
                    if finished:
                        break
                    if self._stop_requested or (
                        _dispatched_any(outcomes) and await self._pause()
                    ):
                        self.interrupted = True
                        break

                if not self.interrupted and self._stop_requested and not page.is_last:
                    self.interrupted = True
                if self.interrupted:
                    self._logger.warning(
                        "Stopping after current batch",
                        reason=self.shutdown.reason if self.shutdown else None,
                        page_num=page.page_number,
                    )
                    break
        finally:
            await pages.aclose()
            self._sync_enumeration_stats(state, prior_total)
            self.checkpoint.save(state)

        self._logger.info(
            "Migration run finished",
            interrupted=self.interrupted,
            halted_by_ceiling=self.enumerator.stats.halted_by_ceiling,
            elapsed_seconds=round(time.perf_counter() - started, 2),
            **state.summary(),
        )
        return state

    async def _pause(self) -> bool:
        """Inter-batch backpressure delay; ``True`` if shutdown interrupted it."""
        if self.batch_delay <= 0:
            return self._stop_requested
        if self.shutdown is not None:
            return await self.shutdown.sleep(self.batch_delay)
        await asyncio.sleep(self.batch_delay)
        return False

    async def _run_batch(
        self, batch: list[CandidateItem], state: MigrationState
    ) -> list[TransferOutcome]:
        """Dispatch one batch and wait for every dispatched item."""
        outcomes: list[TransferOutcome | None] = [None] * len(batch)
        to_dispatch: list[tuple[int, CandidateItem, str]] = []
        claims: dict[str, str] = {}
        for i, item in enumerate(batch):
            if item.identifier in state.completed:
                outcomes[i] = TransferOutcome.skipped(item.identifier, SKIP_CHECKPOINT)
                continue
            key = self._claim_key(item.identifier, state, claims)
            if key is None:
                outcomes[i] = TransferOutcome.failed(item.identifier, KEY_COLLISION)
            else:
                to_dispatch.append((i, item, key))

        if to_dispatch:
            results = await self._dispatch(
                [(item, key) for _, item, key in to_dispatch]
            )
            for (i, _, _), result in zip(to_dispatch, results, strict=True):
                outcomes[i] = result

        # Items never started because of shutdown stay unprocessed for the next run.
        return [o for o in outcomes if o is not None]

    def _claim_key(
        self, identifier: str, state: MigrationState, claims: dict[str, str]
    ) -> str | None:
        """Pick the first free key for ``identifier``: natural, then disambiguated."""
        naming = self.worker.naming
        natural = naming.destination_key(identifier)
        for key in (natural, naming.disambiguated_key(identifier)):
            owner = claims.get(key, state.key_owners.get(key))
            if owner is None or owner == identifier:
                claims[key] = identifier
                if key != natural:
                    self._logger.warning(
                        "Destination key already claimed, using fallback",
                        identifier=identifier,
                        key=natural,
                        owner=claims.get(natural, state.key_owners.get(natural)),
                        fallback_key=key,
                    )
                return key
        self._logger.error(
            "Destination key collision", identifier=identifier, key=natural
        )
        return None

    async def _dispatch(
        self, items: list[tuple[CandidateItem, str]]
    ) -> list[TransferOutcome | None]:
        semaphore = asyncio.Semaphore(self.max_concurrent)
        started: set[int] = set()

        async def _one(
            index: int, item: CandidateItem, key: str
        ) -> TransferOutcome | None:
            async with semaphore:
                if self._stop_requested:
                    return None
                started.add(index)
                return await self.worker.check_and_transfer(item, self.prober, key)

        tasks = [
            asyncio.create_task(_one(i, item, key))
            for i, (item, key) in enumerate(items)
        ]
        try:
            await self._wait_for_batch(tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        results: list[TransferOutcome | None] = []
        for i, ((item, _), task) in enumerate(zip(items, tasks, strict=True)):
            if task.cancelled():
                # Still waiting for a slot when cancelled: leave it for the next run.
                results.append(
                    TransferOutcome.failed(item.identifier, CANCELLED_BY_SHUTDOWN)
                    if i in started
                    else None
                )
            elif (exc := task.exception()) is not None:
                results.append(TransferOutcome.failed(item.identifier, exc))
            else:
                results.append(task.result())
        return results

    async def _wait_for_batch(self, tasks: list[asyncio.Task]) -> None:
        pending: set[asyncio.Task] = set(tasks)
        if self.shutdown is None:
            await asyncio.wait(pending)
            return

        shutdown_wait = asyncio.create_task(self.shutdown.wait())
        try:
            while pending and not self.shutdown.requested:
                done, _ = await asyncio.wait(
                    pending | {shutdown_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                pending -= done
        finally:
            shutdown_wait.cancel()

        if pending:
            in_flight = len(pending)
            self._logger.warning(
                "Waiting for in-flight transfers",
                in_flight=in_flight,
                drain_timeout=self.shutdown.drain_timeout,
            )
            _, still_pending = await asyncio.wait(
                pending, timeout=self.shutdown.drain_timeout
            )
            if still_pending:
                self._logger.error(
                    "Drain timeout exceeded, cancelling transfers",
                    cancelled=len(still_pending),
                )

    def _commit(
        self,
        state: MigrationState,
        outcomes: list[TransferOutcome],
        prior_total: int,
    ) -> None:
        for outcome in outcomes:
            state.apply_outcome(outcome)
            if outcome.status is OutcomeStatus.FAILED:
                self.failed_items.append(outcome)
        state.batches_completed += 1
        self._sync_enumeration_stats(state, prior_total)
        self.checkpoint.save(state)

    def _sync_enumeration_stats(self, state: MigrationState, prior_total: int) -> None:
        stats = self.enumerator.stats
        state.total_items = max(prior_total, stats.unique_items)
        state.pages_fetched = stats.pages
        state.duplicate_count = stats.duplicates
        state.filtered_count = stats.filtered

    def _report(
        self, state: MigrationState, page_num: int, outcomes: list[TransferOutcome]
    ) -> None:
        batch_failed = sum(1 for o in outcomes if o.is_failure)
        self._logger.info(
            "Batch committed",
            page_num=page_num,
            batch=state.batches_completed,
            batch_items=len(outcomes),
            batch_failed=batch_failed,
            processed=state.processed_count,
            uploaded=state.uploaded_count,
            skipped=state.skipped_count,
            errors=state.error_count,
        )
        if self._progress_hook is not None:
            self._progress_hook(
                {
                    "page_num": page_num,
                    "batch_items": len(outcomes),
                    "batch_failed": batch_failed,
                    **state.summary(),
                }
            )
