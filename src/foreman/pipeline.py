from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from foreman.agents import Agent
from foreman.analysis import context_sources, find_dependents, related_file_content
from foreman.config import PipelineConfig
from foreman.errors import RepositoryError
from foreman.providers import (
    Approved,
    AutoFixed,
    BuildResult,
    CommandSuggested,
    ContentProvider,
    DeletionRequest,
)
from foreman.providers.guards import FULL_FILE_FEEDBACK, rejection_reason
from foreman.runners import CommandExecutor, TestRunner, find_matching_test
from foreman.tasks import Target, TargetStatus, Task, TaskKind
from foreman.workspace import FileNode, FileRepository, normalize_path

logger = logging.getLogger(__name__)

StatusHook = Callable[[Task, Target], None]
CancelCheck = Callable[[], bool]


@dataclass(slots=True)
class TargetOutcome:
    succeeded: bool = False
    build_calls: int = 0
    review_calls: int = 0
    deleted: bool = False
    edited: bool = False
    cancelled: bool = False


@dataclass(slots=True)
class _Resolved:
    node: FileNode
    path: str
    is_new_file: bool


def _never_cancelled() -> bool:
    return False


class RetryPipeline:
    """Analyze, build, review and test one target under a bounded attempt budget."""

    def __init__(
        self,
        repository: FileRepository,
        provider: ContentProvider,
        *,
        config: PipelineConfig | None = None,
        test_runner: TestRunner | None = None,
        command_executor: CommandExecutor | None = None,
        recent_log_lines: int = 20,
        on_status: StatusHook | None = None,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self.config = config or PipelineConfig()
        self.test_runner = test_runner
        self.command_executor = command_executor
        self.recent_log_lines = recent_log_lines
        self.on_status = on_status

    def _advance(self, task: Task, target: Target, status: TargetStatus) -> None:
        target.advance(status)
        if self.on_status is not None:
            self.on_status(task, target)

    def _resolve(self, task: Task, target: Target) -> _Resolved | None:
        is_new_file = False
        if target.path:
            path = normalize_path(target.path)
            if not path:
                task.append_log(f"[System] Unusable path for {target.name}: {target.path!r}")
                return None
            node = self.repository.lookup_path(path)
            if node is None:
                task.append_log(f"[System] Creating new file: {path}")
                try:
                    self.repository.create(path, "")
                except RepositoryError as exc:
                    task.append_log(f"[System] Could not create {path}: {exc}")
                    return None
                is_new_file = True
                node = self.repository.lookup_path(path)
        else:
            node = self.repository.lookup_name(target.name)
            path = ""
        if node is None or node.is_directory:
            return None
        return _Resolved(
            node=node,
            path=self.repository.path_of(node.id) or path,
            is_new_file=is_new_file,
        )

    async def _build(
        self,
        task: Task,
        builder: Agent,
        resolved: _Resolved,
        content: str,
        feedback: str,
        related: str,
        context: dict[str, Any],
    ) -> BuildResult:
        if task.kind in {TaskKind.TESTS, TaskKind.DOCS}:
            return await self.provider.generate(
                builder,
                resolved.node.name,
                content,
                task.instruction,
                {**context, "feedback": feedback, "related_code": related},
            )
        return await self.provider.build(
            builder,
            resolved.node.name,
            content,
            task.instruction,
            feedback=feedback,
            is_new_file=resolved.is_new_file,
            related_context=related,
        )

    async def _verify(self, task: Task, resolved: _Resolved) -> str | None:
        """Run the matching test file. Returns failure feedback, or None when clear."""
        if task.kind is TaskKind.DOCS or self.test_runner is None:
            return None
        matching = find_matching_test(resolved.node.name, self.repository.list_all())
        if matching is None:
            return None
        task.append_log(f"[System] Running tests for {resolved.node.name}...")
        try:
            results = await self.test_runner.run([matching.path])
        except Exception as exc:
            task.append_log(f"[System] Test run failed: {exc}")
            return f"Tests could not be run: {exc}"
        result = results.get(matching.path)
        if result is None or result.passed:
            task.append_log("[System] Tests passed.")
            return None
        task.append_log("[System] Tests failed. Retry needed.")
        errors = "; ".join(result.failing_messages) or "no assertion output"
        return f"Code approved by Critic but FAILED TESTS. Errors: {errors}"

    def _sync_dependents(self, task: Task, resolved: _Resolved) -> None:
        dependents = find_dependents(resolved.path, self.repository.list_all())
        added = 0
        for entry in dependents:
            if task.has_target(entry.name, entry.path):
                continue
            task.targets.append(Target(name=entry.name, path=entry.path))
            added += 1
        if added:
            task.append_log(f"[Manager] Sync: queued {added} dependent files.")

    def _commit(self, task: Task, resolved: _Resolved, content: str) -> str | None:
        try:
            self.repository.update(resolved.node.id, content)
        except RepositoryError as exc:
            task.append_log(f"[System] Could not write {resolved.node.name}: {exc}")
            return f"Writing the file failed: {exc}"
        return None

    async def process_target(
        self,
        task: Task,
        index: int,
        *,
        context: dict[str, Any] | None = None,
        is_cancelled: CancelCheck = _never_cancelled,
    ) -> TargetOutcome:
        target = task.targets[index]
        outcome = TargetOutcome()
        if target.is_terminal:
            outcome.succeeded = target.status is TargetStatus.DONE
            return outcome
        if is_cancelled():
            outcome.cancelled = True
            return outcome

        resolved = self._resolve(task, target)
        if resolved is None:
            task.append_log(f"[System] Skipping {target.name} (not found).")
            self._advance(task, target, TargetStatus.ERROR)
            return outcome
        target.path = resolved.path

        run_context = dict(context or {})
        roster = task.roster
        builder = roster.builder(task.agent)
        critic = roster.critic
        name = resolved.node.name
        self._advance(task, target, TargetStatus.PROCESSING)
        task.current_file = name
        task.append_log(f"Processing {name}...")
        task.append_log(f"[{roster.manager.name}] Assigned {name} to {builder.name}")

        feedback = ""
        related = ""
        max_attempts = self.config.max_attempts
        for attempt in range(1, max_attempts + 1):
            if attempt > 1 and self.config.attempt_delay_seconds > 0:
                await asyncio.sleep(self.config.attempt_delay_seconds)
            if is_cancelled():
                outcome.cancelled = True
                break
            try:
                current = self.repository.read(resolved.node.id)
            except RepositoryError as exc:
                task.append_log(f"[System] {name} disappeared: {exc}")
                break

            if attempt == 1:
                task.append_log(f"[{builder.name}] Scanning {name} for issues...")
                try:
                    analysis = await self.provider.analyze(
                        builder,
                        name,
                        current,
                        task.instruction,
                        task.log[-self.recent_log_lines:],
                    )
                except Exception as exc:
                    analysis = f"Analysis failed: {exc}"
                if is_cancelled():
                    outcome.cancelled = True
                    break
                findings = "; ".join(analysis.splitlines())
                task.append_log(f"[{builder.name}] Findings: {findings}")
                feedback = f"Analysis findings: {analysis}"
                related = related_file_content(
                    resolved.path,
                    current,
                    self.repository.list_all(),
                    per_file_chars=self.config.related_context_chars,
                    total_chars=self.config.related_context_total_chars,
                )
                sources = context_sources(related)
                if sources:
                    task.append_log(f"[System] Found context in: {', '.join(sources)}")
                if self.config.analysis_delay_seconds > 0:
                    await asyncio.sleep(self.config.analysis_delay_seconds)

            if attempt == 1:
                task.append_log(f"[{builder.name}] Generating changes...")
            else:
                task.append_log(f"[{builder.name}] Applying fixes (attempt {attempt})...")
            outcome.build_calls += 1
            try:
                result = await self._build(
                    task, builder, resolved, current, feedback, related, run_context
                )
            except Exception as exc:
                if is_cancelled():
                    outcome.cancelled = True
                    break
                task.append_log(f"[System] Build failed: {exc}")
                feedback = f"The previous build attempt failed: {exc}"
                continue
            if is_cancelled():
                outcome.cancelled = True
                break

            if isinstance(result, DeletionRequest):
                try:
                    self.repository.delete(resolved.node.id)
                except RepositoryError as exc:
                    task.append_log(f"[System] Could not delete {name}: {exc}")
                    break
                task.append_log(f"[System] {builder.name} deleted {name} as requested.")
                self._advance(task, target, TargetStatus.DONE)
                outcome.succeeded = True
                outcome.deleted = True
                return outcome

            content = result.content
            reason = rejection_reason(
                content,
                current,
                instruction=task.instruction,
                is_new_file=resolved.is_new_file,
                ratio=self.config.shrink_ratio,
                markers=self.config.placeholder_markers,
            )
            if reason is not None:
                task.append_log(f"[System] Incomplete output detected ({reason}). Rejecting...")
                feedback = FULL_FILE_FEEDBACK
                continue

            if attempt == 1 and not resolved.is_new_file and content == current:
                task.append_log(f"[System] No changes required for {name}.")
                self._advance(task, target, TargetStatus.DONE)
                outcome.succeeded = True
                return outcome

            task.append_log(f"[{critic.name}] Verifying changes...")
            outcome.review_calls += 1
            try:
                review = await self.provider.review(
                    critic, name, current, content, task.instruction, run_context
                )
            except Exception as exc:
                if is_cancelled():
                    outcome.cancelled = True
                    break
                task.append_log(f"[System] Review failed: {exc}")
                feedback = f"Review could not be completed: {exc}"
                continue
            if is_cancelled():
                outcome.cancelled = True
                break

            if isinstance(review, Approved | AutoFixed):
                auto_fixed = isinstance(review, AutoFixed)
                committed = review.content if isinstance(review, AutoFixed) else content
                failure = self._commit(task, resolved, committed)
                if failure is not None:
                    feedback = failure
                    continue
                outcome.edited = True
                if auto_fixed:
                    task.append_log(f"[{critic.name}] Auto-applied fix.")
                if not auto_fixed or self.config.verify_auto_fix:
                    failure = await self._verify(task, resolved)
                    if failure is not None:
                        feedback = failure
                        continue
                task.append_log(f"[System] {name} updated successfully.")
                self._advance(task, target, TargetStatus.DONE)
                outcome.succeeded = True
                if not auto_fixed and not resolved.is_new_file and self.config.sync_dependents:
                    self._sync_dependents(task, resolved)
                return outcome

            if isinstance(review, CommandSuggested) and self.command_executor is not None:
                task.append_log(f"[{critic.name}] Running: {review.command}")
                try:
                    await self.command_executor.execute(review.command)
                except Exception as exc:
                    task.append_log(f"[System] Command failed: {exc}")
                    feedback = f"Running {review.command} failed: {exc}"
                    continue
                if self.config.command_settle_seconds > 0:
                    await asyncio.sleep(self.config.command_settle_seconds)
                feedback = (
                    f"Ran command: {review.command}. "
                    "Please re-check if dependencies are now resolved."
                )
                continue

            feedback = review.feedback or "Validation failed"
            issues = ", ".join(review.issues[:2]) or "Validation failed"
            task.append_log(f"[{critic.name}] Rejected: {issues}. Retrying...")

        if outcome.cancelled:
            task.append_log(f"[System] Cancelled while processing {name}.")
        else:
            task.append_log(
                f"[{critic.name}] Stopped updates to {name} after {max_attempts} failed attempts."
            )
        self._advance(task, target, TargetStatus.ERROR)
        return outcome
