"""Unit tests for the migration orchestrator (whole-run retries, dry run, report)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from bucket_migrate.config import Config, DestinationConfig, MigrationConfig, SourceConfig
from bucket_migrate.errors import ConfigurationError, EnumerationError
from bucket_migrate.orchestration import (
    MigrationOrchestrator,
    build_destination,
    build_source,
)
from bucket_migrate.shutdown import ShutdownCoordinator
from bucket_migrate.stores.local import LocalDirectoryDestination, LocalDirectorySource
from tests.stubs import MemoryDestination, MemorySource, scripted_pages


def _config(tmp_path: Path, **migration) -> Config:
    migration.setdefault("batch_delay", 0.0)
    migration.setdefault("run_retry_delay", 0.0)
    migration.setdefault("retry_attempts", 0)
    migration.setdefault("flatten_keys", False)
    return Config(
        source=SourceConfig(kind="local", path=tmp_path / "src"),
        destination=DestinationConfig(kind="local", path=tmp_path / "dst"),
        migration=MigrationConfig(**migration),
        state_dir=tmp_path / "state",
    )


class _FlakySource(MemorySource):
    """Fails the fetch of listed identifiers for the first ``failures`` attempts."""

    def __init__(self, pages, *, flaky: set[str], failures: int) -> None:
        super().__init__(pages)
        self.flaky = flaky
        self.remaining = {name: failures for name in flaky}

    async def fetch(self, identifier: str) -> bytes:
        if self.remaining.get(identifier, 0) > 0:
            self.remaining[identifier] -= 1
            raise ConnectionError(f"flaky: {identifier}")
        return await super().fetch(identifier)


class _BrokenListing(MemorySource):
    async def next_page(self, cursor):
        self.page_calls.append(cursor)
        raise ConnectionError("listing down")


def test_build_adapters_from_config(tmp_path: Path) -> None:
    config = _config(tmp_path)
    assert isinstance(build_source(config), LocalDirectorySource)
    assert isinstance(build_destination(config), LocalDirectoryDestination)


@pytest.mark.asyncio
class TestMigrationOrchestrator:
    async def test_end_to_end_local_directories(self, tmp_path: Path):
        src = tmp_path / "src"
        (src / "__books__").mkdir(parents=True)
        (src / "__books__" / "Canción (1).epub").write_bytes(b"one")
        (src / "__books__" / "two.pdf").write_bytes(b"two")
        (src / "__books__" / "cover.jpg").write_bytes(b"img")
        config = _config(tmp_path, flatten_keys=True)

        results = await MigrationOrchestrator(config).run()

        assert results["success"] is True
        assert results["summary"]["uploaded"] == 2
        assert results["summary"]["filtered"] == 1
        assert (tmp_path / "dst" / "Cancion_1.epub").read_bytes() == b"one"
        assert (tmp_path / "dst" / "two.pdf").read_bytes() == b"two"
        assert not (tmp_path / "dst" / "cover.jpg").exists()

        report = json.loads(config.report_path.read_text())
        assert report["summary"]["uploaded"] == 2
        assert results["report_path"] == str(config.report_path)

        again = await MigrationOrchestrator(config).run()
        assert again["summary"]["uploaded"] == 0
        assert again["summary"]["skipped"] == 2

    async def test_missing_settings_fail_before_any_work(self, tmp_path: Path):
        config = Config(state_dir=tmp_path / "state")

        with pytest.raises(ConfigurationError, match="FIREBASE_STORAGE_BUCKET"):
            await MigrationOrchestrator(config).run()

        assert not config.checkpoint_path.exists()

    async def test_failed_items_are_retried_in_later_attempts(self, tmp_path: Path):
        source = _FlakySource(
            scripted_pages(["a.epub", "b.epub"]), flaky={"b.epub"}, failures=2
        )
        dest = MemoryDestination()
        config = _config(tmp_path, run_retries=3)

        results = await MigrationOrchestrator(config, source=source, destination=dest).run()

        assert results["attempts"] == 3
        assert results["success"] is True
        assert sorted(dest.put_calls) == ["a.epub", "b.epub"]
        assert results["summary"]["completed_total"] == 2

    async def test_retries_are_bounded(self, tmp_path: Path):
        source = _FlakySource(scripted_pages(["a.epub"]), flaky={"a.epub"}, failures=99)
        config = _config(tmp_path, run_retries=2)

        results = await MigrationOrchestrator(
            config, source=source, destination=MemoryDestination()
        ).run()

        assert results["attempts"] == 3
        assert results["success"] is False
        assert results["summary"]["errors"] == 1
        assert results["failed_items"][0]["identifier"] == "a.epub"

    async def test_no_retry_by_default(self, tmp_path: Path):
        source = _FlakySource(scripted_pages(["a.epub"]), flaky={"a.epub"}, failures=1)
        config = _config(tmp_path)

        results = await MigrationOrchestrator(
            config, source=source, destination=MemoryDestination()
        ).run()

        assert results["attempts"] == 1
        assert results["summary"]["errors"] == 1

    async def test_consecutive_run_failures_raise(self, tmp_path: Path):
        source = _BrokenListing([])
        config = _config(tmp_path, run_retries=10, max_consecutive_failures=3)

        with pytest.raises(EnumerationError):
            await MigrationOrchestrator(
                config, source=source, destination=MemoryDestination()
            ).run()

        assert len(source.page_calls) == 3

    async def test_shutdown_stops_retrying(self, tmp_path: Path):
        source = _FlakySource(scripted_pages(["a.epub"]), flaky={"a.epub"}, failures=99)
        config = _config(tmp_path, run_retries=5)
        shutdown = ShutdownCoordinator()

        def _stop(update):
            shutdown.request("test")

        results = await MigrationOrchestrator(
            config, source=source, destination=MemoryDestination()
        ).run(shutdown=shutdown, progress_hook=_stop)

        assert results["attempts"] == 1
        assert results["interrupted"] is True

    async def test_plan_lists_pending_without_writing(self, tmp_path: Path):
        source = MemorySource(scripted_pages(["a.epub", "b.epub", "c.epub", "x.txt"]))
        dest = MemoryDestination({"b.epub": b"b"})
        config = _config(tmp_path)
        orchestrator = MigrationOrchestrator(config, source=source, destination=dest)
        state = orchestrator.checkpoint.load()
        state.completed.add("a.epub")
        orchestrator.checkpoint.save(state)

        plan = await orchestrator.plan()

        assert plan["already_completed"] == 1
        assert plan["already_present"] == 1
        assert plan["pending"] == 1
        assert plan["pending_sample"][0]["destination_key"] == "c.epub"
        assert plan["enumeration"]["filtered"] == 1
        assert source.fetch_calls == []
        assert dest.put_calls == []

    async def test_validate_lists_and_probes(self, tmp_path: Path):
        source = MemorySource(scripted_pages(["A B.epub"]))
        dest = MemoryDestination()
        config = _config(tmp_path)

        result = await MigrationOrchestrator(
            config, source=source, destination=dest
        ).validate()

        assert result["first_page_items"] == 1
        assert result["probe_key"] == "A_B.epub"
        assert result["probe_key_exists"] is False
        assert dest.put_calls == []
