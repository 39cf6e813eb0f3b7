import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from foreman.backends.base import AgentBackend
from foreman.cli import cli
from foreman.config import load_config, save_config

EDITED = "export const a = 1;\nconsole.log(a);"
ROADMAP = {
    "phases": [
        {
            "id": "p1",
            "title": "Core",
            "status": "pending",
            "goals": ["Observability"],
            "tasks": [
                {"id": "t1", "text": "Add logging", "done": False},
                {"id": "t2", "text": "Add metrics", "done": False},
            ],
        }
    ]
}


class FakeBackend(AgentBackend):
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt
        call = context.get("call", "")
        self.calls.append(call)
        if call == "plan":
            yield '{"filesToEdit": ["src/a.ts"], "strategy": "edit a"}'
        elif call == "analyze":
            yield "Needs logging"
        elif call in {"build", "generate"}:
            yield EDITED
        elif call == "review":
            yield '{"approved": true, "feedback": "ok", "issues": []}'
        elif call == "changelog":
            yield "- Added logging to a.ts"
        elif call == "readme":
            yield "# Demo\n\n## Recent Updates\n- Added logging to a.ts\n"
        elif call == "roadmap":
            yield json.dumps(ROADMAP["phases"])
        elif call == "delegate":
            yield '{"assignments": []}'


def _prepare_repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    repo = tmp_path / "repo"
    (repo / "src").mkdir(parents=True)
    (repo / "src" / "a.ts").write_text("export const a = 1;\n", encoding="utf-8")
    (repo / "README.md").write_text("# Demo\n", encoding="utf-8")
    monkeypatch.chdir(repo)
    monkeypatch.setattr(
        "foreman.cli._build_backend", lambda config, repo_root, state: FakeBackend()
    )
    return repo


def _set_fast_pipeline(config_path: Path) -> None:
    config = load_config(config_path)
    config.project.test_command = "true {files}"
    config.pipeline.attempt_delay_seconds = 0.0
    config.pipeline.command_settle_seconds = 0.0
    config.autopilot.settle_seconds = 0.0
    config.autopilot.poll_seconds = 0.0
    save_config(config_path, config)


def test_cli_run_and_history(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    repo = _prepare_repo(tmp_path, monkeypatch)
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init", "--backend", "codex"])
    assert init_result.exit_code == 0
    assert "Backend: codex" in init_result.output
    _set_fast_pipeline(repo / "foreman.toml")

    empty_history = runner.invoke(cli, ["history"])
    assert empty_history.exit_code == 0
    assert "No runs recorded." in empty_history.output

    run_result = runner.invoke(cli, ["run", "Add logging", "--show-log"])
    assert run_result.exit_code == 0
    assert "Status: completed" in run_result.output
    assert "Processed: 1/1" in run_result.output
    assert "- Added logging to a.ts" in run_result.output
    assert "Strategy: edit a" in run_result.output
    assert (repo / "src" / "a.ts").read_text(encoding="utf-8") == EDITED
    assert "## Recent Updates" in (repo / "README.md").read_text(encoding="utf-8")

    history_result = runner.invoke(cli, ["history"])
    assert history_result.exit_code == 0
    assert "completed" in history_result.output
    assert "1/1 Add logging" in history_result.output


def test_cli_run_rejects_unknown_agent(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _prepare_repo(tmp_path, monkeypatch)

    result = CliRunner().invoke(cli, ["run", "Add logging", "--agent", "Nobody"])

    assert result.exit_code != 0
    assert "Unknown agent: Nobody" in result.output


def test_cli_autopilot_completes_roadmap(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    repo = _prepare_repo(tmp_path, monkeypatch)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _set_fast_pipeline(repo / "foreman.toml")
    roadmap_path = tmp_path / "roadmap.json"
    roadmap_path.write_text(json.dumps(ROADMAP), encoding="utf-8")

    result = runner.invoke(cli, ["autopilot", str(roadmap_path)])

    assert result.exit_code == 0
    assert "Started: Add logging" in result.output
    assert "Started: Add metrics" in result.output
    assert result.output.count("Milestone reached: Core") == 1
    assert result.output.count("Roadmap complete.") == 1
    assert "Autopilot runs: 2" in result.output
    saved = json.loads(roadmap_path.read_text(encoding="utf-8"))
    assert saved["phases"][0]["status"] == "completed"
    assert all(task["done"] for task in saved["phases"][0]["tasks"])


def test_cli_phase_runs_delegated_work(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    repo = _prepare_repo(tmp_path, monkeypatch)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _set_fast_pipeline(repo / "foreman.toml")
    roadmap_path = tmp_path / "roadmap.json"
    roadmap_path.write_text(json.dumps(ROADMAP), encoding="utf-8")

    result = runner.invoke(cli, ["phase", str(roadmap_path), "p1"])
    missing = runner.invoke(cli, ["phase", str(roadmap_path), "p9"])

    assert result.exit_code == 0
    assert "Status: completed" in result.output
    assert missing.exit_code != 0
    assert "Phase not found: p9" in missing.output


def test_cli_roadmap_agents_and_backend(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    repo = _prepare_repo(tmp_path, monkeypatch)
    runner = CliRunner()

    roadmap_result = runner.invoke(cli, ["roadmap", "Todo app", "--out", "plan.json"])
    assert roadmap_result.exit_code == 0
    assert "Wrote 1 phases to plan.json" in roadmap_result.output
    assert json.loads((repo / "plan.json").read_text(encoding="utf-8"))["phases"][0]["id"] == "p1"

    agents_result = runner.invoke(cli, ["agents"])
    assert agents_result.exit_code == 0
    assert "Manager [manager]: Engineering Manager" in agents_result.output

    backend_result = runner.invoke(cli, ["backend", "codex"])
    assert backend_result.exit_code == 0
    assert load_config(repo / "foreman.toml").backend.primary == "codex"
