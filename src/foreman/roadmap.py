from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from foreman.errors import RoadmapError
from foreman.events import EventBus, EventKind

if TYPE_CHECKING:
    from foreman.providers.base import ContentProvider

logger = logging.getLogger(__name__)


class PhaseStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"


@dataclass(slots=True)
class RoadmapTask:
    id: str
    text: str
    done: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "text": self.text, "done": self.done}


@dataclass(slots=True)
class RoadmapPhase:
    id: str
    title: str
    status: PhaseStatus = PhaseStatus.PENDING
    goals: list[str] = field(default_factory=list)
    tasks: list[RoadmapTask] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, index: int = 0) -> RoadmapPhase:
        if not isinstance(data, dict):
            raise RoadmapError(f"Roadmap phase {index + 1} is not an object.")
        phase_id = str(data.get("id") or f"phase-{index + 1}")
        raw_status = str(data.get("status") or PhaseStatus.PENDING).lower()
        try:
            status = PhaseStatus(raw_status)
        except ValueError as exc:
            raise RoadmapError(f"Unknown phase status {raw_status!r} in {phase_id}.") from exc

        tasks: list[RoadmapTask] = []
        for task_index, raw_task in enumerate(data.get("tasks") or []):
            if isinstance(raw_task, str):
                raw_task = {"text": raw_task}
            if not isinstance(raw_task, dict):
                continue
            text = str(raw_task.get("text", "")).strip()
            if not text:
                continue
            tasks.append(
                RoadmapTask(
                    id=str(raw_task.get("id") or f"{phase_id}-task-{task_index + 1}"),
                    text=text,
                    done=bool(raw_task.get("done", False)),
                )
            )
        return cls(
            id=phase_id,
            title=str(data.get("title") or phase_id),
            status=status,
            goals=[str(goal) for goal in data.get("goals") or []],
            tasks=tasks,
        )

    def first_undone(self) -> RoadmapTask | None:
        return next((task for task in self.tasks if not task.done), None)

    def copy(self) -> RoadmapPhase:
        return replace(self, goals=list(self.goals), tasks=[replace(t) for t in self.tasks])

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": str(self.status),
            "goals": list(self.goals),
            "tasks": [task.to_dict() for task in self.tasks],
        }


def phases_from_payload(payload: Any) -> list[RoadmapPhase]:
    if isinstance(payload, dict):
        payload = payload.get("phases", [])
    if not isinstance(payload, list):
        raise RoadmapError("Roadmap must be a list of phases or an object with 'phases'.")
    return [RoadmapPhase.from_dict(item, index=index) for index, item in enumerate(payload)]


def load_roadmap(path: Path) -> list[RoadmapPhase]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise RoadmapError(f"Roadmap file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise RoadmapError(f"Roadmap file is not valid JSON: {path}") from exc
    return phases_from_payload(payload)


def save_roadmap(path: Path, phases: Iterable[RoadmapPhase]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {"phases": [phase.to_dict() for phase in phases]}
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")


RoadmapListener = Callable[[list[RoadmapPhase]], None]


class RoadmapStore:
    """Holds the current roadmap and reports phases reaching completion.

    Milestones are detected by diffing the previous and current snapshots on
    every update, regardless of who made the change.
    """

    def __init__(
        self,
        phases: Iterable[RoadmapPhase] = (),
        *,
        events: EventBus | None = None,
        on_change: RoadmapListener | None = None,
    ) -> None:
        self._phases = [phase.copy() for phase in phases]
        self.events = events
        self.on_change = on_change

    @property
    def phases(self) -> list[RoadmapPhase]:
        return [phase.copy() for phase in self._phases]

    def get(self, phase_id: str) -> RoadmapPhase | None:
        for phase in self._phases:
            if phase.id == phase_id:
                return phase.copy()
        return None

    def replace(self, phases: Iterable[RoadmapPhase]) -> list[RoadmapPhase]:
        previous = {phase.id: phase.status for phase in self._phases}
        self._phases = [phase.copy() for phase in phases]
        reached = [
            phase
            for phase in self._phases
            if phase.status is PhaseStatus.COMPLETED
            and previous.get(phase.id) is not PhaseStatus.COMPLETED
        ]
        for phase in reached:
            logger.info("Milestone reached: %s", phase.title)
            if self.events is not None:
                self.events.publish(
                    EventKind.MILESTONE_REACHED, phase_id=phase.id, title=phase.title
                )
        if self.on_change is not None:
            self.on_change(self.phases)
        return [phase.copy() for phase in reached]

    def update(self, mutator: Callable[[list[RoadmapPhase]], None]) -> list[RoadmapPhase]:
        working = self.phases
        mutator(working)
        return self.replace(working)

    def set_phase_status(self, phase_id: str, status: PhaseStatus) -> None:
        def _mutate(phases: list[RoadmapPhase]) -> None:
            for phase in phases:
                if phase.id == phase_id:
                    phase.status = status
                    return
            raise RoadmapError(f"Unknown roadmap phase: {phase_id}")

        self.update(_mutate)

    def mark_task_done(self, phase_id: str, task_id: str) -> None:
        def _mutate(phases: list[RoadmapPhase]) -> None:
            for phase in phases:
                if phase.id != phase_id:
                    continue
                for task in phase.tasks:
                    if task.id == task_id:
                        task.done = True
                        return
            raise RoadmapError(f"Unknown roadmap task: {phase_id}/{task_id}")

        self.update(_mutate)


async def generate_roadmap(
    provider: ContentProvider,
    description: str,
    project_type: str,
) -> list[RoadmapPhase]:
    phases = await provider.plan_roadmap(description, project_type)
    if not phases:
        raise RoadmapError("The provider returned an empty roadmap.")
    return phases
