from __future__ import annotations

import itertools
from collections.abc import Mapping

from foreman.errors import RepositoryError
from foreman.workspace.paths import normalize_path
from foreman.workspace.repository import FileEntry, FileNode, FileRepository


class InMemoryRepository(FileRepository):
    """A nested node tree held in memory. Node ids are never reused."""

    def __init__(self) -> None:
        self.roots: list[FileNode] = []
        self._ids = itertools.count(1)

    @classmethod
    def from_files(cls, files: Mapping[str, str]) -> InMemoryRepository:
        repository = cls()
        for path, content in files.items():
            repository.create(path, content)
        return repository

    def _next_id(self) -> str:
        return f"node-{next(self._ids)}"

    def _walk(self, nodes: list[FileNode], parent: str = "") -> list[FileEntry]:
        entries: list[FileEntry] = []
        for node in nodes:
            path = f"{parent}/{node.name}" if parent else node.name
            if node.is_directory:
                entries.extend(self._walk(node.children, path))
            else:
                entries.append(FileEntry(path=path, node=node))
        return entries

    def _find(
        self, nodes: list[FileNode], node_id: str
    ) -> tuple[list[FileNode], FileNode] | None:
        for node in nodes:
            if node.id == node_id:
                return nodes, node
            if node.is_directory:
                found = self._find(node.children, node_id)
                if found is not None:
                    return found
        return None

    def list_all(self) -> list[FileEntry]:
        return self._walk(self.roots)

    def lookup_id(self, node_id: str) -> FileNode | None:
        found = self._find(self.roots, node_id)
        return found[1] if found else None

    def create(self, path: str, content: str) -> FileNode:
        normalized = normalize_path(path)
        if not normalized:
            raise RepositoryError(f"Invalid path: {path!r}")
        *directories, file_name = normalized.split("/")
        siblings = self.roots
        for directory in directories:
            existing = next(
                (node for node in siblings if node.name == directory and node.is_directory),
                None,
            )
            if existing is None:
                existing = FileNode(id=self._next_id(), name=directory, is_directory=True)
                siblings.append(existing)
            siblings = existing.children
        current = next((node for node in siblings if node.name == file_name), None)
        if current is not None:
            if current.is_directory:
                raise RepositoryError(f"A directory already exists at {normalized}")
            current.content = content
            return current
        node = FileNode(id=self._next_id(), name=file_name, content=content)
        siblings.append(node)
        return node

    def update(self, node_id: str, content: str) -> None:
        node = self.lookup_id(node_id)
        if node is None or node.is_directory:
            raise RepositoryError(f"File not found: {node_id}")
        node.content = content

    def delete(self, node_id: str) -> None:
        found = self._find(self.roots, node_id)
        if found is None:
            raise RepositoryError(f"File not found: {node_id}")
        siblings, node = found
        siblings.remove(node)

    def restore(self, files: Mapping[str, str]) -> None:
        known = {entry.path: entry.node.id for entry in self.list_all()}
        self.roots = []
        for path, content in files.items():
            node = self.create(path, content)
            if path in known:
                node.id = known[path]
