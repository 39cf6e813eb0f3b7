from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from foreman.agents import Agent
from foreman.errors import ProviderError
from foreman.providers.results import Assignment, BuildResult, PlanResult, ReviewResult

if TYPE_CHECKING:
    from foreman.roadmap import RoadmapPhase


class ContentProvider(ABC):
    """Generative calls used by the engine. Every call may be slow or raise ProviderError."""

    @abstractmethod
    async def plan(
        self,
        agent: Agent,
        instruction: str,
        file_listing: Sequence[str],
    ) -> PlanResult: ...

    @abstractmethod
    async def analyze(
        self,
        agent: Agent,
        file_name: str,
        content: str,
        instruction: str,
        recent_logs: Sequence[str],
    ) -> str: ...

    @abstractmethod
    async def build(
        self,
        agent: Agent,
        file_name: str,
        content: str,
        instruction: str,
        *,
        feedback: str = "",
        is_new_file: bool = False,
        related_context: str = "",
    ) -> BuildResult: ...

    @abstractmethod
    async def review(
        self,
        agent: Agent,
        file_name: str,
        old_content: str,
        new_content: str,
        instruction: str,
        context: dict[str, Any],
    ) -> ReviewResult: ...

    @abstractmethod
    async def changelog(self, file_names: Sequence[str], instruction: str) -> str: ...

    @abstractmethod
    async def update_readme(self, current: str, changelog: str) -> str: ...

    async def generate(
        self,
        agent: Agent,
        file_name: str,
        content: str,
        instruction: str,
        context: dict[str, Any],
    ) -> BuildResult:
        """Single-shot file task used by test and documentation runs."""
        return await self.build(
            agent,
            file_name,
            content,
            instruction,
            feedback=str(context.get("feedback", "")),
            related_context=str(context.get("related_code", "")),
        )

    async def plan_roadmap(self, description: str, project_type: str) -> list[RoadmapPhase]:
        raise ProviderError("Roadmap planning is not supported by this provider.", call="roadmap")

    async def delegate(self, phase: RoadmapPhase, agents: Sequence[Agent]) -> list[Assignment]:
        return []
