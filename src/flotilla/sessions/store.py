"""Atomic persistence of the scheduler snapshot."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from pydantic import ValidationError

from .models import PersistedState

logger = logging.getLogger(__name__)


class StateStoreError(RuntimeError):
    """Raised when the snapshot cannot be written."""


class StateStore:
    """Read and write :class:`PersistedState` as JSON on disk."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def save(self, state: PersistedState) -> None:
        """Write the snapshot via a temporary file, fsync and rename."""

        path = self._path
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as handle:
                handle.write(state.model_dump_json(indent=2))
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise StateStoreError(f"Failed to write state to {path}: {exc}") from exc

    def load(self) -> PersistedState | None:
        """Return the stored snapshot, or ``None`` if absent or unusable."""

        if not self._path.exists():
            return None
        try:
            return PersistedState.model_validate_json(self._path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            logger.warning(
                "Ignoring unreadable scheduler state",
                extra={"state_path": str(self._path), "error": str(exc)},
            )
            return None


__all__ = ["StateStore", "StateStoreError"]
