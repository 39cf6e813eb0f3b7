from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any

from foreman.agents import Agent, Roster
from foreman.analysis import dependency_manifest, is_source_file
from foreman.config import ForemanConfig
from foreman.errors import EngineBusyError, ForemanError, ProviderError, RepositoryError
from foreman.events import EventBus, EventKind
from foreman.pipeline import RetryPipeline
from foreman.providers import ContentProvider
from foreman.roadmap import RoadmapPhase, RoadmapStore
from foreman.runners import CommandExecutor, TestRunner
from foreman.snapshots import SnapshotManager
from foreman.tasks import Target, TargetStatus, Task, TaskKind, TaskStatus, new_task_id
from foreman.workspace import FileEntry, FileRepository, base_name, normalize_path

logger = logging.getLogger(__name__)


class WorkflowDriver:
    """Runs one task at a time: snapshot, plan, process targets in order, summarize.

    The active task is owned here and handed explicitly to the retry pipeline.
    Observers receive events on the bus or follow a task through `watch`.
    """

    def __init__(
        self,
        repository: FileRepository,
        provider: ContentProvider,
        *,
        config: ForemanConfig | None = None,
        events: EventBus | None = None,
        test_runner: TestRunner | None = None,
        command_executor: CommandExecutor | None = None,
        roadmap: RoadmapStore | None = None,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self.config = config or ForemanConfig.default()
        self.events = events or EventBus()
        self.roadmap = roadmap
        self.snapshots = SnapshotManager(repository)
        self.pipeline = RetryPipeline(
            repository,
            provider,
            config=self.config.pipeline,
            test_runner=test_runner,
            command_executor=command_executor,
            recent_log_lines=self.config.workflow.recent_log_lines,
            on_status=self._on_target_status,
        )
        self._active: Task | None = None
        self._runner: asyncio.Task[None] | None = None
        self._cancel_requested: set[str] = set()
        self._history: list[Task] = []
        self._watchers: dict[str, list[asyncio.Queue[Task]]] = {}

    @property
    def is_busy(self) -> bool:
        return self._active is not None

    @property
    def active_task(self) -> Task | None:
        return self._active.snapshot() if self._active is not None else None

    @property
    def history(self) -> list[Task]:
        return [task.snapshot() for task in self._history]

    def _notify(
        self, task: Task, kind: EventKind = EventKind.TASK_UPDATED, /, **payload: Any
    ) -> None:
        self.events.publish(kind, task.id, **payload)
        for queue in self._watchers.get(task.id, []):
            queue.put_nowait(task.snapshot())

    def _on_target_status(self, task: Task, target: Target) -> None:
        self._notify(
            task,
            EventKind.TARGET_STATUS,
            name=target.name,
            path=target.path,
            status=str(target.status),
        )

    def _resolve_agent(self, roster: Roster, agent: Agent | str | None) -> Agent | None:
        if agent is None or isinstance(agent, Agent):
            return agent
        resolved = roster.by_name(agent)
        if resolved is None:
            raise ForemanError(f"Unknown agent: {agent}")
        return resolved

    def start(
        self,
        instruction: str,
        kind: TaskKind | str = TaskKind.CUSTOM,
        agent: Agent | str | None = None,
        targets: Sequence[str] | None = None,
    ) -> str:
        if self.is_busy:
            raise EngineBusyError("A task is already running.")
        instruction = instruction.strip()
        if not instruction:
            raise ForemanError("Instruction must not be empty.")

        try:
            task_kind = TaskKind(kind)
        except ValueError as exc:
            raise ForemanError(f"Unknown task kind: {kind}") from exc
        roster = Roster.from_agents(self.config.agents)
        task = Task(
            id=new_task_id(),
            kind=task_kind,
            instruction=instruction,
            roster=roster,
            agent=self._resolve_agent(roster, agent),
        )
        self._add_targets(task, targets or [])
        loop = asyncio.get_running_loop()
        self.snapshots.capture()
        self._active = task
        try:
            self._runner = loop.create_task(self._execute(task))
        except BaseException:
            self._active = None
            raise
        logger.info("Started task %s (%s): %s", task.id, task.kind, instruction)
        self._notify(
            task, EventKind.RUN_STARTED, instruction=instruction, task_kind=str(task.kind)
        )
        return task.id

    async def run(
        self,
        instruction: str,
        kind: TaskKind | str = TaskKind.CUSTOM,
        agent: Agent | str | None = None,
        targets: Sequence[str] | None = None,
    ) -> Task:
        task_id = self.start(instruction, kind=kind, agent=agent, targets=targets)
        return await self.wait(task_id)

    def cancel(self, task_id: str) -> bool:
        if self._active is None or self._active.id != task_id:
            return False
        if task_id not in self._cancel_requested:
            self._cancel_requested.add(task_id)
            self._active.append_log("[System] Cancellation requested.")
            self._notify(self._active)
        return True

    async def wait(self, task_id: str) -> Task:
        if self._active is not None and self._active.id == task_id and self._runner is not None:
            await asyncio.shield(self._runner)
        for task in self._history:
            if task.id == task_id:
                return task.snapshot()
        raise ForemanError(f"Unknown task: {task_id}")

    async def watch(self, task_id: str) -> AsyncIterator[Task]:
        """Yield task snapshots after every change, ending with the terminal one."""
        for task in self._history:
            if task.id == task_id:
                yield task.snapshot()
                return
        if self._active is None or self._active.id != task_id:
            raise ForemanError(f"Unknown task: {task_id}")

        queue: asyncio.Queue[Task] = asyncio.Queue()
        self._watchers.setdefault(task_id, []).append(queue)
        try:
            yield self._active.snapshot()
            while True:
                snapshot = await queue.get()
                yield snapshot
                if snapshot.is_terminal:
                    return
        finally:
            queues = self._watchers.get(task_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self._watchers.pop(task_id, None)

    def revert(self) -> bool:
        if self.is_busy:
            raise EngineBusyError("Cannot revert while a task is running.")
        reverted = self.snapshots.revert()
        if reverted:
            logger.info("Reverted the file tree to the last pre-run snapshot")
        return reverted

    async def execute_phase(self, phase: RoadmapPhase) -> str:
        if self.is_busy:
            raise EngineBusyError("A task is already running.")
        roster = Roster.from_agents(self.config.agents)
        try:
            assignments = await self.provider.delegate(phase, roster.agents)
        except ProviderError as exc:
            logger.warning("Delegation for phase %s failed: %s", phase.title, exc)
            assignments = []
        if not assignments:
            return self.start(f"Execute Phase: {phase.title}")

        for assignment in assignments:
            logger.info("Phase %s: %s -> %s", phase.title, assignment.agent_name, assignment.task)
        first = assignments[0]
        agent = roster.by_name(first.agent_name) or roster.builder()
        targets = [first.target_file] if first.target_file else None
        return self.start(first.task, agent=agent, targets=targets)

    def _add_targets(self, task: Task, paths: Sequence[str]) -> int:
        added = 0
        for raw in paths:
            path = normalize_path(raw)
            if not path:
                task.append_log(f"[System] Ignoring unusable path {raw!r}.")
                continue
            name = base_name(path)
            if task.has_target(name, path):
                continue
            task.targets.append(Target(name=name, path=path))
            added += 1
        return added

    def _source_files(self, entries: Sequence[FileEntry]) -> list[FileEntry]:
        workflow = self.config.workflow
        return [
            entry
            for entry in entries
            if is_source_file(entry.path, workflow.source_extensions, workflow.vendored_dirs)
        ]

    async def _plan(self, task: Task, entries: Sequence[FileEntry]) -> None:
        vendored = set(self.config.workflow.vendored_dirs)
        listing = [
            entry.path for entry in entries if not vendored & set(entry.path.split("/")[:-1])
        ]
        manager = task.roster.manager
        paths: list[str] = []
        try:
            plan = await self.provider.plan(manager, task.instruction, listing)
        except ProviderError as exc:
            logger.warning("Planning failed for %s: %s", task.id, exc)
            task.append_log(f"[{manager.name}] Planning failed ({exc}); using default targets.")
        else:
            paths = plan.target_paths
            if plan.strategy:
                task.append_log(f"[{manager.name}] Strategy: {plan.strategy}")

        if self._add_targets(task, paths):
            return
        limit = self.config.workflow.fallback_target_limit
        fallback = [entry.path for entry in self._source_files(entries)][:limit]
        if fallback:
            task.append_log(f"[System] Plan yielded no files; using {', '.join(fallback)}")
            self._add_targets(task, fallback)

    def _run_context(self, entries: Sequence[FileEntry]) -> dict[str, Any]:
        context: dict[str, Any] = {"project_type": self.config.project.project_type}
        manifest = dependency_manifest(entries)
        if manifest is not None and manifest.content.strip():
            context["dependency_config"] = manifest.content
        if self.roadmap is not None:
            context["roadmap"] = [phase.to_dict() for phase in self.roadmap.phases]
        return context

    def _find_readme(self) -> FileEntry | None:
        names = {name.lower() for name in self.config.workflow.readme_names}
        candidates = [entry for entry in self.repository.list_all() if entry.name.lower() in names]
        if not candidates:
            return None
        return min(candidates, key=lambda entry: entry.path.count("/"))

    async def _summarize(self, task: Task) -> None:
        done_paths = [
            target.path
            for target in task.targets
            if target.status is TargetStatus.DONE and target.path
        ]
        mutated = self.snapshots.changed_paths(done_paths)
        if not mutated:
            return
        names = [base_name(path) for path in mutated]
        try:
            changelog = await self.provider.changelog(names, task.instruction)
        except ProviderError as exc:
            logger.warning("Changelog generation failed for %s: %s", task.id, exc)
            task.append_log(f"[System] Changelog unavailable: {exc}")
            return
        task.changelog = changelog
        task.append_log(f"[System] Changelog: {changelog}")

        if not self.config.workflow.update_readme:
            return
        readme = self._find_readme()
        if readme is None:
            return
        try:
            updated = await self.provider.update_readme(readme.content, changelog)
            if updated.strip() and updated != readme.content:
                self.repository.update(readme.node.id, updated)
                task.append_log(f"[System] Updated {readme.path}.")
        except (ProviderError, RepositoryError) as exc:
            logger.warning("README update failed for %s: %s", task.id, exc)
            task.append_log(f"[System] README update skipped: {exc}")

    def _cancelled(self, task: Task) -> bool:
        return task.id in self._cancel_requested

    async def _process(self, task: Task) -> None:
        entries = self.repository.list_all()
        context = self._run_context(entries)
        if not task.targets:
            await self._plan(task, entries)
            self._notify(task)
        if not task.targets:
            task.append_log("[System] No target files found. Nothing to do.")
            return

        index = 0
        while index < len(task.targets):
            if self._cancelled(task):
                return
            outcome = await self.pipeline.process_target(
                task,
                index,
                context=context,
                is_cancelled=lambda: self._cancelled(task),
            )
            task.current_file = None
            self._notify(task)
            if outcome.cancelled:
                return
            index += 1

    async def _execute(self, task: Task) -> None:
        try:
            await self._process(task)
            await self._summarize(task)
        except asyncio.CancelledError:
            self._cancel_requested.add(task.id)
            raise
        except Exception:
            logger.exception("Task %s stopped on an unexpected error", task.id)
            task.append_log("[System] Run stopped on an unexpected error.")
        finally:
            self._finalize(task)

    def _finalize(self, task: Task) -> None:
        cancelled = self._cancelled(task)
        for target in task.targets:
            if target.status is TargetStatus.PROCESSING:
                target.advance(TargetStatus.ERROR)
                self._on_target_status(task, target)
        task.finish(TaskStatus.CANCELLED if cancelled else TaskStatus.COMPLETED)
        task.append_log(f"Done. Processed {task.processed_count} of {task.total_count} files.")
        self._cancel_requested.discard(task.id)
        self._history.insert(0, task)
        self._active = None
        self._runner = None
        logger.info("Task %s ended as %s", task.id, task.status)
        kind = EventKind.RUN_CANCELLED if cancelled else EventKind.RUN_COMPLETED
        self._notify(task, kind, processed=task.processed_count, total=task.total_count)
