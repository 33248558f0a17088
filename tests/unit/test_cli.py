"""Unit tests for the command-line interface."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from bucket_migrate.checkpoint import CheckpointStore
from bucket_migrate.cli import EXIT_CONFIG_ERROR, app
from bucket_migrate.models import MigrationState

runner = CliRunner()


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "SOURCE_KIND",
        "DEST_KIND",
        "FIREBASE_STORAGE_BUCKET",
        "PUBLIC_FIREBASE_STORAGE_BUCKET",
        "FIREBASE_ACCESS_TOKEN",
        "S3_BUCKET_NAME",
        "MIGRATION_STATE_DIR",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def local_config(tmp_path: Path) -> Path:
    src = tmp_path / "src"
    src.mkdir()
    (src / "a.epub").write_bytes(b"aaa")
    (src / "b.pdf").write_bytes(b"bb")
    (src / "notes.txt").write_bytes(b"skip me")
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "source": {"kind": "local", "path": str(src)},
                "destination": {"kind": "local", "path": str(tmp_path / "dst")},
                "migration": {"batch_delay": 0},
                "state_dir": str(tmp_path / "state"),
            }
        )
    )
    return path


def test_status_without_checkpoint(tmp_path: Path, clean_env) -> None:
    result = runner.invoke(app, ["status", "--state-dir", str(tmp_path)])
    assert result.exit_code == 0
    assert "No checkpoint found" in result.output


def test_status_json(tmp_path: Path, clean_env) -> None:
    CheckpointStore(tmp_path / "migration_state.json").save(
        MigrationState(processed_count=3, uploaded_count=3, completed={"a", "b", "c"})
    )

    result = runner.invoke(app, ["status", "--state-dir", str(tmp_path), "--json"])

    assert result.exit_code == 0
    summary = json.loads(result.output)
    assert summary["uploaded"] == 3
    assert summary["completed_total"] == 3


def test_reset_requires_confirmation(tmp_path: Path, clean_env) -> None:
    store = CheckpointStore(tmp_path / "migration_state.json")
    store.save(MigrationState(completed={"a"}))

    declined = runner.invoke(app, ["reset", "--state-dir", str(tmp_path)], input="n\n")
    assert declined.exit_code == 0
    assert store.exists()

    confirmed = runner.invoke(app, ["reset", "--state-dir", str(tmp_path), "--yes"])
    assert confirmed.exit_code == 0
    assert not store.exists()


def test_migrate_with_missing_settings_exits_2(tmp_path: Path, clean_env) -> None:
    result = runner.invoke(app, ["migrate", "--state-dir", str(tmp_path)])
    assert result.exit_code == EXIT_CONFIG_ERROR
    assert "Configuration error" in result.output


@pytest.mark.parametrize("option", ["--max-pages", "--max-concurrent", "--batch-size"])
def test_migrate_with_invalid_override_exits_2(
    tmp_path: Path, local_config: Path, clean_env, option: str
) -> None:
    result = runner.invoke(app, ["migrate", "--config", str(local_config), option, "0"])

    assert result.exit_code == EXIT_CONFIG_ERROR
    assert "Configuration error" in result.output
    assert not (tmp_path / "dst").exists()


def test_migrate_local_directories(tmp_path: Path, local_config: Path, clean_env) -> None:
    result = runner.invoke(app, ["migrate", "--config", str(local_config)])

    assert result.exit_code == 0, result.output
    assert (tmp_path / "dst" / "a.epub").read_bytes() == b"aaa"
    assert (tmp_path / "dst" / "b.pdf").read_bytes() == b"bb"
    assert not (tmp_path / "dst" / "notes.txt").exists()
    assert "Migration Summary" in result.output

    report = json.loads((tmp_path / "state" / "migration_report.json").read_text())
    assert report["summary"]["uploaded"] == 2


def test_migrate_dry_run_writes_nothing(tmp_path: Path, local_config: Path, clean_env) -> None:
    result = runner.invoke(
        app, ["migrate", "--config", str(local_config), "--dry-run", "--extensions", "epub"]
    )

    assert result.exit_code == 0, result.output
    assert "DRY RUN" in result.output
    assert not (tmp_path / "dst" / "a.epub").exists()
    assert not (tmp_path / "state" / "migration_state.json").exists()


def test_version() -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "bucket-migrate version" in result.output
