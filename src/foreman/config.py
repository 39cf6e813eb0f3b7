from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from foreman.agents import DEFAULT_AGENTS, Agent

BackendName = Literal["codex", "claude"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    project_type: str = "react-web"
    test_command: str = "npx vitest run {files}"


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


@dataclass(slots=True)
class PipelineConfig:
    max_attempts: int = 3
    shrink_ratio: float = 0.4
    attempt_delay_seconds: float = 1.0
    command_settle_seconds: float = 2.0
    analysis_delay_seconds: float = 0.0
    related_context_chars: int = 2000
    related_context_total_chars: int = 8000
    placeholder_markers: list[str] = field(
        default_factory=lambda: ["// ...", "// existing code", "# ...", "# existing code"]
    )
    verify_auto_fix: bool = False
    sync_dependents: bool = True


@dataclass(slots=True)
class WorkflowConfig:
    fallback_target_limit: int = 3
    source_extensions: list[str] = field(
        default_factory=lambda: ["tsx", "ts", "js", "jsx", "swift", "kt", "json", "py"]
    )
    vendored_dirs: list[str] = field(
        default_factory=lambda: ["node_modules", ".venv", "venv", "vendor"]
    )
    readme_names: list[str] = field(default_factory=lambda: ["readme.md"])
    update_readme: bool = True
    recent_log_lines: int = 20


@dataclass(slots=True)
class AutopilotConfig:
    settle_seconds: float = 1.5
    poll_seconds: float = 1.0


@dataclass(slots=True)
class StateConfig:
    directory: str = ".foreman/state"


@dataclass(slots=True)
class ForemanConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    autopilot: AutopilotConfig = field(default_factory=AutopilotConfig)
    state: StateConfig = field(default_factory=StateConfig)
    agents: list[Agent] = field(default_factory=lambda: list(DEFAULT_AGENTS))

    @classmethod
    def default(cls) -> ForemanConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ForemanConfig:
        raw_agents = data.get("agents")
        agents = (
            [Agent.from_dict(item) for item in raw_agents if isinstance(item, dict)]
            if isinstance(raw_agents, list)
            else list(DEFAULT_AGENTS)
        )
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            pipeline=PipelineConfig(**data.get("pipeline", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            autopilot=AutopilotConfig(**data.get("autopilot", {})),
            state=StateConfig(**data.get("state", {})),
            agents=agents or list(DEFAULT_AGENTS),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": {
                "name": self.project.name,
                "project_type": self.project.project_type,
                "test_command": self.project.test_command,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "pipeline": {
                "max_attempts": self.pipeline.max_attempts,
                "shrink_ratio": self.pipeline.shrink_ratio,
                "attempt_delay_seconds": self.pipeline.attempt_delay_seconds,
                "command_settle_seconds": self.pipeline.command_settle_seconds,
                "analysis_delay_seconds": self.pipeline.analysis_delay_seconds,
                "related_context_chars": self.pipeline.related_context_chars,
                "related_context_total_chars": self.pipeline.related_context_total_chars,
                "placeholder_markers": list(self.pipeline.placeholder_markers),
                "verify_auto_fix": self.pipeline.verify_auto_fix,
                "sync_dependents": self.pipeline.sync_dependents,
            },
            "workflow": {
                "fallback_target_limit": self.workflow.fallback_target_limit,
                "source_extensions": list(self.workflow.source_extensions),
                "vendored_dirs": list(self.workflow.vendored_dirs),
                "readme_names": list(self.workflow.readme_names),
                "update_readme": self.workflow.update_readme,
                "recent_log_lines": self.workflow.recent_log_lines,
            },
            "autopilot": {
                "settle_seconds": self.autopilot.settle_seconds,
                "poll_seconds": self.autopilot.poll_seconds,
            },
            "state": {
                "directory": self.state.directory,
            },
            "agents": [agent.to_dict() for agent in self.agents],
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ForemanConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "backend", "pipeline", "workflow", "autopilot", "state"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for agent in data["agents"]:
        lines.append("[[agents]]")
        for key, value in agent.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ForemanConfig:
    if not path.exists():
        return ForemanConfig.default()
    return ForemanConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ForemanConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
