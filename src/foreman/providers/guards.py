from __future__ import annotations

import re
from collections.abc import Iterable

DEFAULT_PLACEHOLDER_MARKERS = ("// ...", "// existing code", "# ...", "# existing code")
REMOVAL_PATTERN = re.compile(r"delete|remove", re.IGNORECASE)

FULL_FILE_FEEDBACK = (
    "REJECTED: You returned incomplete code with placeholders (// ...). "
    "You MUST return the FULL file content. Do NOT elide unchanged sections."
)


def has_placeholders(content: str, markers: Iterable[str] = DEFAULT_PLACEHOLDER_MARKERS) -> bool:
    return any(marker and marker in content for marker in markers)


def is_suspicious_shrink(new_content: str, old_content: str, ratio: float) -> bool:
    return len(new_content) < len(old_content) * ratio


def is_removal_instruction(instruction: str) -> bool:
    """Instructions that legitimately shrink files (matches substrings, as in "removed")."""
    return bool(REMOVAL_PATTERN.search(instruction))


def rejection_reason(
    new_content: str,
    old_content: str,
    *,
    instruction: str,
    is_new_file: bool,
    ratio: float,
    markers: Iterable[str] = DEFAULT_PLACEHOLDER_MARKERS,
) -> str | None:
    """Why a built file must not be accepted, or None when it passes both guards."""
    if has_placeholders(new_content, markers):
        return "placeholder markers"
    if (
        not is_new_file
        and not is_removal_instruction(instruction)
        and is_suspicious_shrink(new_content, old_content, ratio)
    ):
        return (
            f"suspicious shrink ({len(new_content)} of {len(old_content)} characters)"
        )
    return None
