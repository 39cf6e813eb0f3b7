from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from typing import Any

from foreman.agents import Agent
from foreman.backends import AgentBackend, BackendExecutionError
from foreman.errors import ProviderError, RoadmapError
from foreman.providers.base import ContentProvider
from foreman.providers.results import (
    Approved,
    Assignment,
    AutoFixed,
    BuildResult,
    CommandSuggested,
    DeletionRequest,
    NormalEdit,
    PlanResult,
    Rejected,
    ReviewResult,
)
from foreman.roadmap import RoadmapPhase, phases_from_payload

logger = logging.getLogger(__name__)

DELETE_FILE = "DELETE_FILE"
FENCE_OPEN_PATTERN = re.compile(r"^```[\w.+-]*[ \t]*\n")
FENCE_CLOSE_PATTERN = re.compile(r"\n?```\s*$")
ANALYSIS_CONTENT_CHARS = 5000
REVIEW_ORIGINAL_CHARS = 500


def strip_code_fences(text: str) -> str:
    stripped = text.strip()
    if not stripped.startswith("```"):
        return text
    stripped = FENCE_OPEN_PATTERN.sub("", stripped, count=1)
    return FENCE_CLOSE_PATTERN.sub("", stripped, count=1) + "\n"


def extract_json(text: str) -> Any:
    """Parse the first JSON object or array in a model response."""
    cleaned = text.strip()
    cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"```\s*$", "", cleaned)
    start = re.search(r"[{\[]", cleaned)
    if start is None:
        raise ValueError("no JSON object found")
    cleaned = cleaned[start.start():]
    end = max(cleaned.rfind("}"), cleaned.rfind("]"))
    if end != -1:
        cleaned = cleaned[: end + 1]
    return json.loads(cleaned)


def parse_build_output(text: str) -> BuildResult:
    if text.strip() == DELETE_FILE:
        return DeletionRequest()
    return NormalEdit(content=strip_code_fences(text))


def _issues(payload: dict[str, Any]) -> list[str]:
    raw = payload.get("issues") or []
    if isinstance(raw, str):
        return [raw]
    return [str(issue) for issue in raw if str(issue).strip()]


def parse_review(payload: Any) -> ReviewResult:
    if not isinstance(payload, dict):
        return Rejected(feedback="Review response was not a JSON object.", issues=["JSON Error"])
    feedback = str(payload.get("feedback") or "")
    if payload.get("approved") is True:
        return Approved(feedback=feedback)
    fix_code = payload.get("fixCode") or payload.get("fix_code")
    if isinstance(fix_code, str) and fix_code.strip():
        return AutoFixed(content=strip_code_fences(fix_code), feedback=feedback)
    command = payload.get("suggestedCommand") or payload.get("suggested_command")
    if isinstance(command, str) and command.strip():
        return CommandSuggested(command=command.strip(), feedback=feedback, issues=_issues(payload))
    return Rejected(feedback=feedback or "Validation failed", issues=_issues(payload))


class BackendContentProvider(ContentProvider):
    """Content provider backed by a streaming agent backend."""

    def __init__(self, backend: AgentBackend, *, project_type: str = "react-web") -> None:
        self.backend = backend
        self.project_type = project_type

    async def _complete(
        self,
        call: str,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str | None = None,
    ) -> str:
        context: dict[str, Any] = {"call": call, "project_type": self.project_type}
        if model:
            context["model"] = model
        try:
            return await self.backend.complete(system_prompt, user_prompt, context)
        except BackendExecutionError as exc:
            raise ProviderError(f"{call} call failed: {exc}", call=call) from exc

    async def _complete_json(
        self,
        call: str,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str | None = None,
    ) -> Any:
        raw = await self._complete(call, system_prompt, user_prompt, model=model)
        try:
            return extract_json(raw)
        except ValueError as exc:
            raise ProviderError(f"{call} returned malformed JSON: {exc}", call=call) from exc

    @staticmethod
    def _persona(agent: Agent) -> str:
        return f"You are {agent.name}, a {agent.role}.\n{agent.directive}".strip()

    async def plan(
        self,
        agent: Agent,
        instruction: str,
        file_listing: Sequence[str],
    ) -> PlanResult:
        prompt = "\n".join(
            [
                f"Project Type: {self.project_type}",
                f"Task: {instruction}",
                "File Structure:",
                *file_listing,
                "",
                "Decide which files need to be created or modified and give a brief strategy.",
                'Return JSON: {"filesToEdit": ["path/to/file"], "strategy": "step-by-step plan"}',
            ]
        )
        payload = await self._complete_json("plan", self._persona(agent), prompt, model=agent.model)
        if not isinstance(payload, dict):
            raise ProviderError("plan response was not a JSON object", call="plan")
        files = payload.get("filesToEdit") or payload.get("files") or []
        return PlanResult(
            target_paths=[str(path) for path in files if isinstance(path, str)],
            strategy=str(payload.get("strategy") or ""),
        )

    async def analyze(
        self,
        agent: Agent,
        file_name: str,
        content: str,
        instruction: str,
        recent_logs: Sequence[str],
    ) -> str:
        prompt = "\n".join(
            [
                f'Analyze {file_name} in the context of these instructions: "{instruction}".',
                "Identify key areas that need changes. Be concise.",
                "",
                "Recent activity:",
                *recent_logs,
                "",
                "File Content:",
                content[:ANALYSIS_CONTENT_CHARS],
            ]
        )
        findings = await self._complete(
            "analyze", self._persona(agent), prompt, model=agent.model
        )
        return findings or "No analysis generated."

    def _build_system_prompt(self, agent: Agent, file_name: str) -> str:
        return "\n".join(
            [
                self._persona(agent),
                f"You are an expert {self.project_type} developer.",
                f'Output the FULL content of the file "{file_name}". Do not use markdown '
                'blocks or placeholders like "// ... rest of code".',
                f"If the file should be deleted, output exactly: {DELETE_FILE}",
            ]
        )

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
    ) -> BuildResult:
        sections = [f"Task: {instruction}"]
        if is_new_file:
            sections.append(f"Create new file: {file_name}")
        else:
            sections.append(f"Current Content of {file_name}:\n{content}")
        if feedback:
            sections.append(f"Previous attempt feedback (FIX THESE ISSUES): {feedback}")
        if related_context:
            sections.append(f"Related Context:\n{related_context}")
        raw = await self._complete(
            "build",
            self._build_system_prompt(agent, file_name),
            "\n\n".join(sections),
            model=agent.model,
        )
        return parse_build_output(raw)

    async def generate(
        self,
        agent: Agent,
        file_name: str,
        content: str,
        instruction: str,
        context: dict[str, Any],
    ) -> BuildResult:
        sections = [f"Task: Update {file_name}. {instruction}".strip()]
        if context.get("roadmap"):
            sections.append(f"Roadmap context: {json.dumps(context['roadmap'])}")
        if context.get("feedback"):
            sections.append(f"Previous attempt feedback: {context['feedback']}")
        sections.append(f"File Content:\n{content}")
        raw = await self._complete(
            "generate",
            self._build_system_prompt(agent, file_name),
            "\n\n".join(sections),
            model=agent.model,
        )
        return parse_build_output(raw or content)

    async def review(
        self,
        agent: Agent,
        file_name: str,
        old_content: str,
        new_content: str,
        instruction: str,
        context: dict[str, Any],
    ) -> ReviewResult:
        prompt = "\n".join(
            [
                f"Review the changes in {file_name}.",
                f"Requirements: {instruction}",
                "Original Code (Snippet):",
                old_content[:REVIEW_ORIGINAL_CHARS],
                "New Code:",
                new_content,
                "",
                "Check for syntax errors, logic bugs, requirement fulfillment and best "
                f"practices for {self.project_type}.",
                'If critical issues are easy to fix, provide the full fixed code in "fixCode".',
                'If it is a dependency issue, suggest a terminal command in "suggestedCommand".',
                'Return JSON: {"approved": bool, "feedback": str, "issues": [str], '
                '"fixCode": str?, "suggestedCommand": str?}',
            ]
        )
        if context.get("dependency_config"):
            prompt += f"\n\nDependency Config:\n{context['dependency_config']}"
        payload = await self._complete_json(
            "review", self._persona(agent), prompt, model=agent.model
        )
        return parse_review(payload)

    async def changelog(self, file_names: Sequence[str], instruction: str) -> str:
        prompt = (
            f'Generate a concise markdown changelog for task "{instruction}". '
            f"Modified files: {', '.join(file_names)}."
        )
        text = await self._complete("changelog", "You write release notes.", prompt)
        return text or "Updated files."

    async def update_readme(self, current: str, changelog: str) -> str:
        prompt = (
            'Append this changelog to the "Recent Updates" section of the README '
            "(create it if missing). Keep existing content. Output only the README.\n\n"
            f"README:\n{current}\n\nChangelog:\n{changelog}"
        )
        text = await self._complete("readme", "You maintain project documentation.", prompt)
        return strip_code_fences(text) if text else current

    async def plan_roadmap(self, description: str, project_type: str) -> list[RoadmapPhase]:
        prompt = (
            f'Create a phased development roadmap for a {project_type} project: "{description}". '
            'Return a JSON array of phases: [{"id": str, "title": str, "status": "pending", '
            '"goals": [str], "tasks": [{"id": str, "text": str, "done": false}]}]'
        )
        payload = await self._complete_json(
            "roadmap", "You are a technical project planner.", prompt
        )
        try:
            return phases_from_payload(payload)
        except RoadmapError as exc:
            raise ProviderError(f"roadmap response was unusable: {exc}", call="roadmap") from exc

    async def delegate(self, phase: RoadmapPhase, agents: Sequence[Agent]) -> list[Assignment]:
        prompt = (
            f'Delegate tasks from phase "{phase.title}" to agents: '
            f"{', '.join(agent.name for agent in agents)}.\n"
            f"Goals: {'; '.join(phase.goals)}\n"
            f"Tasks: {'; '.join(task.text for task in phase.tasks if not task.done)}\n"
            'Return JSON {"assignments": [{"agentName": str, "taskDescription": str, '
            '"targetFile": str?}]}'
        )
        payload = await self._complete_json("delegate", "You are an engineering manager.", prompt)
        raw = payload.get("assignments", []) if isinstance(payload, dict) else []
        assignments: list[Assignment] = []
        for item in raw if isinstance(raw, list) else []:
            if not isinstance(item, dict):
                continue
            task = str(item.get("taskDescription") or "").strip()
            if not task:
                continue
            target = item.get("targetFile")
            assignments.append(
                Assignment(
                    agent_name=str(item.get("agentName") or ""),
                    task=task,
                    target_file=str(target) if target else None,
                )
            )
        return assignments
