"""Shared pytest fixtures for the migration tool tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from bucket_migrate.checkpoint import CheckpointStore
from bucket_migrate.config import MigrationConfig


@pytest.fixture
def migration_config() -> MigrationConfig:
    """Create a test migration configuration."""
    return MigrationConfig(
        page_size=100,
        batch_size=50,
        batch_delay=0.0,
        retry_attempts=0,
        retry_delay=0.0,
        max_concurrent=10,
    )


@pytest.fixture
def temp_checkpoint_dir(tmp_path: Path) -> Path:
    """Create a temporary checkpoint directory for testing."""
    checkpoint_dir = tmp_path / "checkpoints"
    checkpoint_dir.mkdir(parents=True, exist_ok=True)
    return checkpoint_dir


@pytest.fixture
def checkpoint(temp_checkpoint_dir: Path) -> CheckpointStore:
    return CheckpointStore(temp_checkpoint_dir / "migration_state.json")
