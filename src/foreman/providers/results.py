from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class PlanResult:
    target_paths: list[str] = field(default_factory=list)
    strategy: str = ""


@dataclass(frozen=True, slots=True)
class NormalEdit:
    content: str


@dataclass(frozen=True, slots=True)
class DeletionRequest:
    """The builder asked for the file to be removed."""


BuildResult = NormalEdit | DeletionRequest


@dataclass(frozen=True, slots=True)
class Approved:
    feedback: str = ""


@dataclass(frozen=True, slots=True)
class AutoFixed:
    content: str
    feedback: str = ""


@dataclass(frozen=True, slots=True)
class CommandSuggested:
    command: str
    feedback: str = ""
    issues: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class Rejected:
    feedback: str = ""
    issues: list[str] = field(default_factory=list)


ReviewResult = Approved | AutoFixed | CommandSuggested | Rejected


@dataclass(frozen=True, slots=True)
class Assignment:
    agent_name: str
    task: str
    target_file: str | None = None
