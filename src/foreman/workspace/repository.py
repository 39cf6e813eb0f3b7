from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field

from foreman.errors import RepositoryError
from foreman.workspace.paths import normalize_path


@dataclass(slots=True)
class FileNode:
    id: str
    name: str
    is_directory: bool = False
    content: str = ""
    children: list[FileNode] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class FileEntry:
    path: str
    node: FileNode

    @property
    def name(self) -> str:
        return self.node.name

    @property
    def content(self) -> str:
        return self.node.content


class FileRepository(ABC):
    """Data access over a project file tree. No retries, no policy."""

    @abstractmethod
    def list_all(self) -> list[FileEntry]:
        """Return every file (directories excluded) with its root-relative path."""

    @abstractmethod
    def lookup_id(self, node_id: str) -> FileNode | None: ...

    @abstractmethod
    def create(self, path: str, content: str) -> FileNode: ...

    @abstractmethod
    def update(self, node_id: str, content: str) -> None: ...

    @abstractmethod
    def delete(self, node_id: str) -> None: ...

    @abstractmethod
    def restore(self, files: Mapping[str, str]) -> None:
        """Replace the whole tree with `files` (path -> content)."""

    def lookup_path(self, path: str) -> FileNode | None:
        normalized = normalize_path(path)
        if not normalized:
            return None
        entries = self.list_all()
        for entry in entries:
            if entry.path == normalized:
                return entry.node
        suffix = f"/{normalized}"
        for entry in entries:
            if entry.path.endswith(suffix):
                return entry.node
        return None

    def lookup_name(self, name: str) -> FileNode | None:
        for entry in self.list_all():
            if entry.node.name == name:
                return entry.node
        return None

    def path_of(self, node_id: str) -> str | None:
        for entry in self.list_all():
            if entry.node.id == node_id:
                return entry.path
        return None

    def read(self, node_id: str) -> str:
        node = self.lookup_id(node_id)
        if node is None or node.is_directory:
            raise RepositoryError(f"File not found: {node_id}")
        return node.content

    def capture(self) -> dict[str, str]:
        return {entry.path: entry.node.content for entry in self.list_all()}
