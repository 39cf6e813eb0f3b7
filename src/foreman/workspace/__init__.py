from foreman.workspace.disk import DiskRepository
from foreman.workspace.memory import InMemoryRepository
from foreman.workspace.paths import base_name, normalize_path
from foreman.workspace.repository import FileEntry, FileNode, FileRepository

__all__ = [
    "DiskRepository",
    "FileEntry",
    "FileNode",
    "FileRepository",
    "InMemoryRepository",
    "base_name",
    "normalize_path",
]
