import tomllib
from pathlib import Path

from loopgate import __version__
from loopgate.config import LoopgateConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "loopgate.toml"
    config = LoopgateConfig.default()
    config.budget.premium_request_budget = 250
    config.budget.warning_threshold = 0.75
    config.workflow.failure_threshold = 5
    config.tool_discipline.max_file_reads = 4
    config.oracle.enabled = False
    config.oracle.model = "haiku"
    config.oracle.require_evidence = True
    config.state.directory = "var/loopgate"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.budget.premium_request_budget == 250
    assert loaded.budget.warning_threshold == 0.75
    assert loaded.budget.confirmation_threshold == 0.9
    assert loaded.workflow.failure_threshold == 5
    assert loaded.workflow.max_iterations == 100
    assert loaded.tool_discipline.max_file_reads == 4
    assert loaded.oracle.enabled is False
    assert loaded.oracle.model == "haiku"
    assert loaded.oracle.require_evidence is True
    assert loaded.oracle.timeout_seconds == 90.0
    assert loaded.state.directory == "var/loopgate"


def test_missing_config_uses_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config == LoopgateConfig.default()
    assert config.budget.premium_request_budget == 100
    assert config.tool_discipline.tool_call_threshold == 50


def test_partial_config_fills_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "loopgate.toml"
    config_path.write_text("[budget]\npremium_request_budget = 10\n", encoding="utf-8")

    config = load_config(config_path)

    assert config.budget.premium_request_budget == 10
    assert config.workflow.failure_threshold == 3


def test_toml_dump_is_valid_toml() -> None:
    rendered = dumps_toml(LoopgateConfig.default())
    parsed = tomllib.loads(rendered)

    assert "[tool_discipline]" in rendered
    assert "timeout_seconds = 90.0" in rendered
    assert parsed["oracle"]["binary"] == "claude"
    assert parsed["budget"]["warning_threshold"] == 0.8


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
