from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from foreman.agents import Agent, Roster
from foreman.errors import ForemanError


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def new_task_id() -> str:
    return f"task-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


class TaskKind(StrEnum):
    CUSTOM = "custom"
    REFACTOR = "refactor"
    TESTS = "tests"
    DOCS = "docs"


class TaskStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TargetStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


_TARGET_TRANSITIONS = {
    TargetStatus.PENDING: {TargetStatus.PROCESSING, TargetStatus.ERROR},
    TargetStatus.PROCESSING: {TargetStatus.DONE, TargetStatus.ERROR},
    TargetStatus.DONE: set(),
    TargetStatus.ERROR: set(),
}


@dataclass(slots=True)
class Target:
    name: str
    path: str | None = None
    status: TargetStatus = TargetStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        return self.status in {TargetStatus.DONE, TargetStatus.ERROR}

    def advance(self, status: TargetStatus) -> None:
        if status not in _TARGET_TRANSITIONS[self.status]:
            raise ForemanError(
                f"Illegal target transition for {self.name}: {self.status} -> {status}"
            )
        self.status = status

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "path": self.path, "status": str(self.status)}


@dataclass(slots=True)
class Task:
    id: str
    kind: TaskKind
    instruction: str
    roster: Roster
    agent: Agent | None = None
    status: TaskStatus = TaskStatus.RUNNING
    targets: list[Target] = field(default_factory=list)
    log: list[str] = field(default_factory=list)
    current_file: str | None = None
    changelog: str | None = None
    created_at: str = field(default_factory=_utcnow_iso)
    ended_at: str | None = None

    @property
    def processed_count(self) -> int:
        return sum(1 for target in self.targets if target.status is TargetStatus.DONE)

    @property
    def total_count(self) -> int:
        return len(self.targets)

    @property
    def is_terminal(self) -> bool:
        return self.status is not TaskStatus.RUNNING

    def append_log(self, line: str) -> None:
        self.log.append(line)

    def finish(self, status: TaskStatus) -> None:
        if self.is_terminal:
            raise ForemanError(f"Task {self.id} already ended as {self.status}.")
        if status is TaskStatus.RUNNING:
            raise ForemanError("A task cannot finish as running.")
        self.status = status
        self.current_file = None
        self.ended_at = _utcnow_iso()

    def has_target(self, name: str, path: str | None = None) -> bool:
        """Path-bearing targets match on path; path-less ones fall back to the name."""
        if path:
            return any(target.path == path for target in self.targets)
        return any(not target.path and target.name == name for target in self.targets)

    def snapshot(self) -> Task:
        return replace(
            self,
            targets=[replace(target) for target in self.targets],
            log=list(self.log),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": str(self.kind),
            "instruction": self.instruction,
            "status": str(self.status),
            "agent": self.agent.name if self.agent else None,
            "processed_count": self.processed_count,
            "total_count": self.total_count,
            "targets": [target.to_dict() for target in self.targets],
            "log": list(self.log),
            "changelog": self.changelog,
            "created_at": self.created_at,
            "ended_at": self.ended_at,
        }
