from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping
from pathlib import Path

from foreman.errors import RepositoryError
from foreman.workspace.paths import normalize_path
from foreman.workspace.repository import FileEntry, FileNode, FileRepository

logger = logging.getLogger(__name__)

ALWAYS_IGNORED = {".git", ".foreman", "__pycache__"}
MAX_FILE_BYTES = 1_000_000


class DiskRepository(FileRepository):
    """A project directory on disk. Node ids are root-relative paths.

    Binary and oversized files are invisible to the engine: they are neither
    listed nor captured, so a restore never touches them.
    """

    def __init__(self, root: Path, *, ignored_dirs: Iterable[str] = ()) -> None:
        self.root = root.resolve()
        self.ignored_dirs = ALWAYS_IGNORED | set(ignored_dirs)

    def _absolute(self, relative: str) -> Path:
        normalized = normalize_path(relative)
        if not normalized:
            raise RepositoryError(f"Invalid path: {relative!r}")
        return self.root / normalized

    def _read_text(self, path: Path) -> str | None:
        try:
            if path.stat().st_size > MAX_FILE_BYTES:
                return None
            return path.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            return None

    def list_all(self) -> list[FileEntry]:
        entries: list[FileEntry] = []
        for current, directories, files in os.walk(self.root):
            directories[:] = sorted(d for d in directories if d not in self.ignored_dirs)
            for file_name in sorted(files):
                absolute = Path(current) / file_name
                content = self._read_text(absolute)
                if content is None:
                    continue
                relative = absolute.relative_to(self.root).as_posix()
                entries.append(
                    FileEntry(
                        path=relative,
                        node=FileNode(id=relative, name=file_name, content=content),
                    )
                )
        return entries

    def lookup_id(self, node_id: str) -> FileNode | None:
        normalized = normalize_path(node_id)
        if not normalized:
            return None
        absolute = self.root / normalized
        if not absolute.is_file():
            return None
        content = self._read_text(absolute)
        if content is None:
            return None
        return FileNode(id=normalized, name=absolute.name, content=content)

    def create(self, path: str, content: str) -> FileNode:
        absolute = self._absolute(path)
        if absolute.is_dir():
            raise RepositoryError(f"A directory already exists at {path}")
        absolute.parent.mkdir(parents=True, exist_ok=True)
        absolute.write_text(content, encoding="utf-8")
        relative = absolute.relative_to(self.root).as_posix()
        return FileNode(id=relative, name=absolute.name, content=content)

    def update(self, node_id: str, content: str) -> None:
        absolute = self._absolute(node_id)
        if not absolute.is_file():
            raise RepositoryError(f"File not found: {node_id}")
        absolute.write_text(content, encoding="utf-8")

    def delete(self, node_id: str) -> None:
        absolute = self._absolute(node_id)
        if not absolute.is_file():
            raise RepositoryError(f"File not found: {node_id}")
        absolute.unlink()

    def restore(self, files: Mapping[str, str]) -> None:
        for entry in self.list_all():
            if entry.path not in files:
                (self.root / entry.path).unlink()
        for path, content in files.items():
            absolute = self._absolute(path)
            absolute.parent.mkdir(parents=True, exist_ok=True)
            absolute.write_text(content, encoding="utf-8")
        logger.info("Restored %d files under %s", len(files), self.root)
