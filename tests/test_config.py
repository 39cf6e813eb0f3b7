import tomllib
from pathlib import Path

from foreman import __version__
from foreman.agents import Agent
from foreman.config import ForemanConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "foreman.toml"
    config = ForemanConfig.default()
    config.project.name = "foreman-test"
    config.project.project_type = "python-cli"
    config.project.test_command = "pytest -q {files}"
    config.backend.primary = "codex"
    config.backend.max_retries = 3
    config.pipeline.max_attempts = 5
    config.pipeline.verify_auto_fix = True
    config.pipeline.shrink_ratio = 0.25
    config.workflow.fallback_target_limit = 7
    config.workflow.vendored_dirs = ["node_modules", "dist"]
    config.autopilot.settle_seconds = 0.0
    config.state.directory = ".cache/foreman"
    config.agents = [
        Agent(name="Lead", role="Engineering Manager", directive="Plan.", is_manager=True),
        Agent(name="Dev", role="Python Engineer", directive="Write code.", model="gpt-5-codex"),
    ]

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "foreman-test"
    assert loaded.project.project_type == "python-cli"
    assert loaded.project.test_command == "pytest -q {files}"
    assert loaded.backend.primary == "codex"
    assert loaded.backend.max_retries == 3
    assert loaded.pipeline.max_attempts == 5
    assert loaded.pipeline.verify_auto_fix is True
    assert loaded.pipeline.shrink_ratio == 0.25
    assert loaded.workflow.fallback_target_limit == 7
    assert loaded.workflow.vendored_dirs == ["node_modules", "dist"]
    assert loaded.autopilot.settle_seconds == 0.0
    assert loaded.state.directory == ".cache/foreman"
    assert [agent.name for agent in loaded.agents] == ["Lead", "Dev"]
    assert loaded.agents[0].is_manager is True
    assert loaded.agents[1].model == "gpt-5-codex"


def test_missing_config_file_uses_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.pipeline.max_attempts == 3
    assert config.pipeline.shrink_ratio == 0.4
    assert config.pipeline.verify_auto_fix is False
    assert config.workflow.fallback_target_limit == 3
    assert any(agent.is_manager for agent in config.agents)


def test_toml_dump_contains_pipeline_and_agent_sections() -> None:
    rendered = dumps_toml(ForemanConfig.default())

    assert "[pipeline]" in rendered
    assert "max_attempts = 3" in rendered
    assert "verify_auto_fix = false" in rendered
    assert "placeholder_markers" in rendered
    assert "[autopilot]" in rendered
    assert "[state]" in rendered
    assert rendered.count("[[agents]]") == 4
    assert tomllib.loads(rendered)["backend"]["timeout_seconds"] == 90.0


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
