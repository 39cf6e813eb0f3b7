from __future__ import annotations

import posixpath


def normalize_path(path: str) -> str:
    """Collapse `./`, `../` and repeated separators into a root-relative path.

    Returns an empty string when nothing usable remains or the path climbs
    above the repository root.
    """
    candidate = path.strip().replace("\\", "/").lstrip("/")
    if not candidate:
        return ""
    collapsed = posixpath.normpath(candidate)
    if collapsed in {".", ".."} or collapsed.startswith("../"):
        return ""
    return collapsed


def base_name(path: str) -> str:
    return path.replace("\\", "/").rstrip("/").rsplit("/", maxsplit=1)[-1]


def stem(name: str) -> str:
    return base_name(name).split(".", maxsplit=1)[0]
