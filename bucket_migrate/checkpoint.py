"""Checkpoint persistence for resumable migrations.

The checkpoint is a single JSON file. Writes go to a temporary file in the same
directory which then replaces the checkpoint, so a crash mid-write leaves the
previous checkpoint intact. The format is additive-only: unknown fields are
ignored on load and missing fields take their defaults.
"""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from pathlib import Path

import structlog

from bucket_migrate.models import MigrationState

logger = structlog.get_logger(__name__)


class CheckpointStore:
    """Loads and saves ``MigrationState``; never changes its counts."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._logger = logger.bind(checkpoint=str(self.path))

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> MigrationState:
        """Return the persisted state, or a fresh one if missing or corrupt."""
        if not self.path.exists():
            self._logger.info("No checkpoint found, starting fresh")
            return MigrationState()

        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise TypeError(f"expected a JSON object, got {type(data).__name__}")
            state = MigrationState.from_dict(data)
        except (OSError, ValueError, TypeError) as e:
            self._logger.warning(
                "Checkpoint is unreadable, starting fresh",
                error=str(e),
                error_type=type(e).__name__,
            )
            return MigrationState()

        self._logger.info(
            "Loaded checkpoint",
            completed=len(state.completed),
            total_items=state.total_items,
            started_at=state.started_at,
        )
        return state

    def save(self, state: MigrationState) -> bool:
        """Persist ``state``. Returns ``False`` (after logging) if the write failed."""
        tmp_path: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
            tmp_path = None
        except OSError as e:
            self._logger.error(
                "Failed to save checkpoint", error=str(e), completed=len(state.completed)
            )
            return False
        finally:
            if tmp_path is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_path)

        self._logger.debug("Saved checkpoint", completed=len(state.completed))
        return True

    def reset(self) -> bool:
        """Delete the checkpoint file. Returns whether one existed."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        self._logger.info("Checkpoint deleted")
        return True
