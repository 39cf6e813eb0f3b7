from __future__ import annotations

import posixpath
import re
from collections.abc import Iterable, Sequence

from foreman.workspace import FileEntry

JS_IMPORT_PATTERNS = (
    re.compile(r"""\bfrom\s+['"]([^'"]+)['"]"""),
    re.compile(r"""\bimport\s+['"]([^'"]+)['"]"""),
    re.compile(r"""\brequire\(\s*['"]([^'"]+)['"]\s*\)"""),
    re.compile(r"""\bimport\(\s*['"]([^'"]+)['"]\s*\)"""),
)
PY_FROM_PATTERN = re.compile(r"^\s*from\s+(\.*[\w.]*)\s+import\s+([\w \t,()*]+)", re.MULTILINE)
PY_IMPORT_PATTERN = re.compile(r"^\s*import\s+([\w.]+(?:\s*,\s*[\w.]+)*)", re.MULTILINE)
JS_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".json")
MANIFEST_NAMES = ("package.json", "pyproject.toml", "requirements.txt", "Podfile", "build.gradle")


def is_source_file(path: str, extensions: Iterable[str], vendored_dirs: Iterable[str]) -> bool:
    segments = path.split("/")
    if set(segments[:-1]) & set(vendored_dirs):
        return False
    name = segments[-1]
    if "." not in name:
        return False
    extension = name.rsplit(".", maxsplit=1)[-1].lower()
    return extension in {item.lower().lstrip(".") for item in extensions}


def _js_candidates(importer: str, spec: str) -> list[str]:
    if not spec.startswith("."):
        return []
    base = posixpath.normpath(posixpath.join(posixpath.dirname(importer), spec))
    candidates = [base]
    candidates.extend(f"{base}{extension}" for extension in JS_EXTENSIONS)
    candidates.extend(f"{base}/index{extension}" for extension in JS_EXTENSIONS)
    return candidates


def _py_module_candidates(directory: str, dotted: str) -> list[str]:
    relative = dotted.replace(".", "/")
    base = posixpath.normpath(posixpath.join(directory, relative)) if directory else relative
    return [f"{base}.py", f"{base}/__init__.py"]


def _py_candidates(importer: str, module: str, names: str) -> list[str]:
    directory = posixpath.dirname(importer)
    if module.startswith("."):
        dots = len(module) - len(module.lstrip("."))
        for _ in range(dots - 1):
            directory = posixpath.dirname(directory)
        rest = module.lstrip(".")
        if rest:
            return _py_module_candidates(directory, rest)
        candidates: list[str] = []
        for name in re.split(r"[\s,()]+", names):
            if name and name != "*":
                candidates.extend(_py_module_candidates(directory, name))
        return candidates
    return [
        *_py_module_candidates("", module),
        *_py_module_candidates("src", module),
    ]


def resolve_imports(importer: str, content: str, known_paths: Iterable[str]) -> list[str]:
    """Project files imported by `importer`; third-party imports resolve to nothing."""
    known = set(known_paths)
    candidates: list[str] = []
    if importer.endswith(".py"):
        for match in PY_FROM_PATTERN.finditer(content):
            candidates.extend(_py_candidates(importer, match.group(1), match.group(2)))
        for match in PY_IMPORT_PATTERN.finditer(content):
            for module in match.group(1).split(","):
                candidates.extend(_py_candidates(importer, module.strip(), ""))
    else:
        for pattern in JS_IMPORT_PATTERNS:
            for match in pattern.finditer(content):
                candidates.extend(_js_candidates(importer, match.group(1)))

    resolved: list[str] = []
    for candidate in candidates:
        if candidate in known and candidate != importer and candidate not in resolved:
            resolved.append(candidate)
    return resolved


def related_file_content(
    target_path: str,
    content: str,
    entries: Sequence[FileEntry],
    *,
    per_file_chars: int,
    total_chars: int,
) -> str:
    by_path = {entry.path: entry for entry in entries}
    blocks: list[str] = []
    used = 0
    for path in resolve_imports(target_path, content, by_path):
        body = by_path[path].content[:per_file_chars]
        block = f"[Context from {path}]\n{body}"
        if used + len(block) > total_chars:
            remaining = total_chars - used
            if remaining > 0:
                blocks.append(block[:remaining])
            break
        blocks.append(block)
        used += len(block)
    return "\n\n".join(blocks)


def context_sources(related: str) -> list[str]:
    return re.findall(r"^\[Context from (.+?)\]$", related, re.MULTILINE)


def find_dependents(target_path: str, entries: Sequence[FileEntry]) -> list[FileEntry]:
    known = [entry.path for entry in entries]
    return [
        entry
        for entry in entries
        if entry.path != target_path
        and target_path in resolve_imports(entry.path, entry.content, known)
    ]


def dependency_manifest(entries: Sequence[FileEntry]) -> FileEntry | None:
    for name in MANIFEST_NAMES:
        for entry in entries:
            if entry.name == name:
                return entry
    return None
