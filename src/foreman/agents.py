from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class Agent:
    """A named role. Configuration data, shared read-only across runs."""

    name: str
    role: str
    directive: str
    model: str = "claude-sonnet-4-5"
    is_manager: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Agent:
        return cls(
            name=str(data.get("name", "")).strip() or "Agent",
            role=str(data.get("role", "")).strip(),
            directive=str(data.get("directive", "")).strip(),
            model=str(data.get("model") or "claude-sonnet-4-5"),
            is_manager=bool(data.get("is_manager", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "role": self.role,
            "directive": self.directive,
            "model": self.model,
            "is_manager": self.is_manager,
        }


DEFAULT_AGENTS: tuple[Agent, ...] = (
    Agent(
        name="Manager",
        role="Engineering Manager",
        directive=(
            "You are the engineering manager of a small software team. "
            "Break requests down into concrete file-level work and pick the files to touch. "
            "You plan, you do not write code."
        ),
        is_manager=True,
    ),
    Agent(
        name="Frontend Builder",
        role="Frontend Engineer",
        directive=(
            "You are a senior frontend engineer. Implement exactly what was asked, "
            "match the conventions already present in the file and return complete files."
        ),
    ),
    Agent(
        name="Backend Builder",
        role="Backend Engineer",
        directive=(
            "You are a senior backend engineer. Implement exactly what was asked, "
            "keep interfaces stable and return complete files."
        ),
    ),
    Agent(
        name="Critic",
        role="QA Critic",
        directive=(
            "You are the code reviewer. Look for syntax errors, logic bugs, missed "
            "requirements and unsafe changes. Approve only complete, working files."
        ),
    ),
)


@dataclass(frozen=True, slots=True)
class Roster:
    """Agent roster frozen at run start."""

    agents: tuple[Agent, ...]

    @classmethod
    def from_agents(cls, agents: Iterable[Agent] | None) -> Roster:
        collected = tuple(agents or ())
        return cls(agents=collected or DEFAULT_AGENTS)

    def by_name(self, name: str) -> Agent | None:
        wanted = name.strip().lower()
        for agent in self.agents:
            if agent.name.lower() == wanted:
                return agent
        return None

    @property
    def manager(self) -> Agent:
        for agent in self.agents:
            if agent.is_manager:
                return agent
        return DEFAULT_AGENTS[0]

    @property
    def critic(self) -> Agent:
        for agent in self.agents:
            if "qa" in agent.role.lower() or "critic" in agent.name.lower():
                return agent
        return DEFAULT_AGENTS[3]

    def builder(self, override: Agent | None = None) -> Agent:
        if override is not None:
            return override
        for agent in self.agents:
            if "frontend" in agent.role.lower():
                return agent
        for agent in self.agents:
            if not agent.is_manager and agent is not self.critic:
                return agent
        return DEFAULT_AGENTS[1]
