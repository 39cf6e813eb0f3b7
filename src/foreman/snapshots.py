from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from types import MappingProxyType

from foreman.workspace import FileRepository

logger = logging.getLogger(__name__)


class SnapshotManager:
    """Keeps the pre-run copy of the file tree for the most recent run."""

    def __init__(self, repository: FileRepository) -> None:
        self.repository = repository
        self._snapshot: Mapping[str, str] | None = None

    @property
    def has_snapshot(self) -> bool:
        return self._snapshot is not None

    @property
    def snapshot(self) -> Mapping[str, str] | None:
        return self._snapshot

    def capture(self) -> Mapping[str, str]:
        captured = MappingProxyType(dict(self.repository.capture()))
        self._snapshot = captured
        logger.info("Captured snapshot of %d files", len(captured))
        return captured

    def revert(self) -> bool:
        if self._snapshot is None:
            logger.warning("Revert requested but no snapshot is available")
            return False
        self.repository.restore(dict(self._snapshot))
        self._snapshot = None
        return True

    def changed_paths(self, paths: Iterable[str]) -> list[str]:
        """Paths whose current content differs from the snapshot (created and deleted count)."""
        if self._snapshot is None:
            return list(paths)
        current = self.repository.capture()
        changed: list[str] = []
        for path in paths:
            if path in changed:
                continue
            if self._snapshot.get(path) != current.get(path):
                changed.append(path)
        return changed
