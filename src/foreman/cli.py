from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from foreman.autopilot import AutopilotLoop
from foreman.backends import AgentBackend, CliBackend, ResilientBackend, RetryPolicy
from foreman.config import BackendName, ForemanConfig, load_config, save_config
from foreman.driver import WorkflowDriver
from foreman.errors import ForemanError
from foreman.events import Event, EventBus, EventKind
from foreman.providers import BackendContentProvider
from foreman.roadmap import RoadmapStore, generate_roadmap, load_roadmap, save_roadmap
from foreman.runners import CommandTestRunner, SubprocessCommandExecutor
from foreman.state import StateStore
from foreman.tasks import Task, TaskKind
from foreman.workspace import DiskRepository

DEFAULT_CONFIG = "foreman.toml"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ForemanConfig
    state: StateStore
    events: EventBus
    driver: WorkflowDriver


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _state_dir(repo_root: Path, config: ForemanConfig) -> Path:
    state_dir = Path(config.state.directory)
    if not state_dir.is_absolute():
        state_dir = repo_root / state_dir
    return state_dir


def _record_backend_event(state: StateStore, event: dict[str, Any]) -> None:
    state.record_backend_event(event)
    if event.get("event") == "backend_retry":
        state.increment_metric("backend_retry_count")
    if event.get("event") == "backend_fallback_success":
        state.increment_metric("backend_fallback_count")


def _build_backend(config: ForemanConfig, repo_root: Path, state: StateStore) -> AgentBackend:
    primary_name: BackendName = config.backend.primary
    fallback_name: BackendName = config.backend.fallback
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=CliBackend(primary_name, working_directory=repo_root),
        fallback_name=fallback_name,
        fallback_backend=CliBackend(fallback_name, working_directory=repo_root),
        retry_policy=policy,
        event_hook=lambda event: _record_backend_event(state, event),
    )


def _load_runtime(
    repo_root: Path,
    config_path: Path,
    *,
    roadmap: RoadmapStore | None = None,
) -> Runtime:
    config = load_config(config_path)
    state = StateStore(_state_dir(repo_root, config))
    events = roadmap.events if roadmap is not None and roadmap.events else EventBus()
    provider = BackendContentProvider(
        _build_backend(config, repo_root, state),
        project_type=config.project.project_type,
    )
    driver = WorkflowDriver(
        DiskRepository(repo_root, ignored_dirs=config.workflow.vendored_dirs),
        provider,
        config=config,
        events=events,
        test_runner=CommandTestRunner(repo_root, config.project.test_command),
        command_executor=SubprocessCommandExecutor(repo_root),
        roadmap=roadmap,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        state=state,
        events=events,
        driver=driver,
    )


def _history_recorder(runtime: Runtime) -> Callable[[Event], None]:
    def _record(event: Event) -> None:
        if event.kind not in {EventKind.RUN_COMPLETED, EventKind.RUN_CANCELLED}:
            return
        for task in runtime.driver.history:
            if task.id == event.task_id:
                runtime.state.add_run(task.to_dict())
                return

    return _record


def _echo_task(task: Task, *, verbose: bool) -> None:
    click.echo(f"Task: {task.id} ({task.kind})")
    click.echo(f"Status: {task.status}")
    click.echo(f"Processed: {task.processed_count}/{task.total_count}")
    for target in task.targets:
        click.echo(f"  {target.status:<10} {target.path or target.name}")
    if task.changelog:
        click.echo("Changelog:")
        click.echo(task.changelog)
    if verbose:
        click.echo("Log:")
        for line in task.log:
            click.echo(f"  {line}")


@click.group()
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Foreman CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude"]), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)
    state = StateStore(_state_dir(repo_root, config))

    click.echo(f"Initialized Foreman in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")
    click.echo(f"State: {state.state_dir}")


@cli.command("run")
@click.argument("instruction")
@click.option(
    "--kind",
    type=click.Choice([kind.value for kind in TaskKind]),
    default=TaskKind.CUSTOM.value,
    show_default=True,
)
@click.option("--agent", "agent_name", default=None, help="Builder agent to attribute edits to.")
@click.option("--target", "targets", multiple=True, help="Target file; skips planning.")
@click.option("--show-log", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def run_command(
    instruction: str,
    kind: str,
    agent_name: str | None,
    targets: tuple[str, ...],
    show_log: bool,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    runtime.events.subscribe(_history_recorder(runtime))
    try:
        task = asyncio.run(
            runtime.driver.run(instruction, kind=kind, agent=agent_name, targets=list(targets))
        )
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_task(task, verbose=show_log)


@cli.command("phase")
@click.argument("roadmap_path", type=click.Path(path_type=Path))
@click.argument("phase_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def phase_command(roadmap_path: Path, phase_id: str, config_value: str) -> None:
    """Delegate one roadmap phase and run its first assignment."""
    repo_root = Path.cwd().resolve()
    try:
        store = RoadmapStore(load_roadmap(roadmap_path), events=EventBus())
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    phase = store.get(phase_id)
    if phase is None:
        raise click.ClickException(f"Phase not found: {phase_id}")
    runtime = _load_runtime(
        repo_root, _resolve_config_path(repo_root, config_value), roadmap=store
    )
    runtime.events.subscribe(_history_recorder(runtime))

    async def _execute() -> Task:
        task_id = await runtime.driver.execute_phase(phase)
        return await runtime.driver.wait(task_id)

    try:
        task = asyncio.run(_execute())
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_task(task, verbose=False)


@cli.command("autopilot")
@click.argument("roadmap_path", type=click.Path(path_type=Path))
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def autopilot_command(roadmap_path: Path, config_value: str) -> None:
    """Work through every pending roadmap task, rewriting the roadmap as it goes."""
    repo_root = Path.cwd().resolve()
    events = EventBus()
    try:
        store = RoadmapStore(
            load_roadmap(roadmap_path),
            events=events,
            on_change=lambda phases: save_roadmap(roadmap_path, phases),
        )
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    runtime = _load_runtime(
        repo_root, _resolve_config_path(repo_root, config_value), roadmap=store
    )
    runtime.events.subscribe(_history_recorder(runtime))

    def _report(event: Event) -> None:
        if event.kind is EventKind.RUN_STARTED:
            click.echo(f"Started: {event.payload.get('instruction')}")
        elif event.kind in {EventKind.RUN_COMPLETED, EventKind.RUN_CANCELLED}:
            processed = event.payload.get("processed")
            total = event.payload.get("total")
            click.echo(f"Finished {event.task_id}: {processed}/{total} ({event.kind})")
        elif event.kind is EventKind.MILESTONE_REACHED:
            click.echo(f"Milestone reached: {event.payload.get('title')}")
        elif event.kind is EventKind.AUTOPILOT_FINISHED:
            click.echo("Roadmap complete.")

    runtime.events.subscribe(_report)
    loop = AutopilotLoop(runtime.driver, store, events=runtime.events)
    try:
        runs = asyncio.run(loop.run())
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Autopilot runs: {runs}")


@cli.command("roadmap")
@click.argument("description")
@click.option("--out", "out_path", type=click.Path(path_type=Path), default=Path("roadmap.json"))
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def roadmap_command(description: str, out_path: Path, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        phases = asyncio.run(
            generate_roadmap(
                runtime.driver.provider, description, runtime.config.project.project_type
            )
        )
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    save_roadmap(out_path, phases)
    click.echo(f"Wrote {len(phases)} phases to {out_path}")
    for phase in phases:
        click.echo(f"  {phase.id} {phase.title} ({len(phase.tasks)} tasks)")


@cli.command("history")
@click.option("--limit", default=10, show_default=True, type=int)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def history_command(limit: int, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    runs = StateStore(_state_dir(repo_root, config)).get_history()
    if not runs:
        click.echo("No runs recorded.")
        return
    for run in runs[: max(0, limit)]:
        click.echo(
            f"{run.get('id')} {run.get('status', ''):<9} "
            f"{run.get('processed_count', 0)}/{run.get('total_count', 0)} "
            f"{run.get('instruction', '')}"
        )


@cli.command("agents")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def agents_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    for agent in config.agents:
        marker = " [manager]" if agent.is_manager else ""
        click.echo(f"{agent.name}{marker}: {agent.role} ({agent.model})")


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(["codex", "claude"]))
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def backend_command(backend_name: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    config.backend.primary = backend_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Primary backend set to {backend_name}")
