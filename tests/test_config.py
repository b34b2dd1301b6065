import tomllib
from pathlib import Path

from foreman import __version__
from foreman.config import ForemanConfig, StageConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "foreman.toml"
    config = ForemanConfig.default()
    config.dispatch.launcher = "tools/spawn.sh"
    config.dispatch.timeout_ms = 60_000
    config.dispatch.retries = 5
    config.dispatch.debug = True
    config.gates.advisory_checks = ["lint_clean", "no_errors"]
    config.gates.failure_threshold = 2
    config.gates.weights = {"lint_clean": 2}
    config.gates.allow_waivers = False
    config.recovery.max_attempts = 4
    config.notifier.enabled = False
    config.state.state_dir = "var/state"
    config.stages = [
        StageConfig(name="build", worker="dev", task="develop", params="--fast", critical=True),
        StageConfig(name="review", worker="qa", task="review", required_checks=["no_blockers"]),
    ]

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.dispatch.launcher == "tools/spawn.sh"
    assert loaded.dispatch.timeout_ms == 60_000
    assert loaded.dispatch.retries == 5
    assert loaded.dispatch.debug is True
    assert loaded.gates.advisory_checks == ["lint_clean", "no_errors"]
    assert loaded.gates.failure_threshold == 2
    assert loaded.gates.weights == {"lint_clean": 2}
    assert loaded.gates.allow_waivers is False
    assert loaded.recovery.max_attempts == 4
    assert loaded.notifier.enabled is False
    assert loaded.state.state_dir == "var/state"
    assert [stage.name for stage in loaded.stages] == ["build", "review"]
    assert loaded.stages[0].params == "--fast"
    assert loaded.stages[0].critical is True
    assert loaded.stages[1].required_checks == ["no_blockers"]


def test_missing_config_file_uses_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.dispatch.timeout_ms == 300_000
    assert loaded.dispatch.retries == 3
    assert loaded.dispatch.retry_delay_ms == 1_000
    assert loaded.dispatch.poll_interval_ms == 500
    assert loaded.dispatch.cleanup_max_age_ms == 3_600_000
    assert loaded.gates.required_checks == ["has_output"]
    assert [stage.name for stage in loaded.stages] == ["spec", "develop", "qa", "docs"]


def test_output_dir_falls_back_to_temp_dir(tmp_path: Path) -> None:
    config = ForemanConfig.default()
    assert config.dispatch.resolved_output_dir().is_absolute()

    config.dispatch.output_dir = str(tmp_path)
    assert config.dispatch.resolved_output_dir() == tmp_path


def test_toml_dump_contains_sections() -> None:
    rendered = dumps_toml(ForemanConfig.default())

    assert "[dispatch]" in rendered
    assert "[gates]" in rendered
    assert "[recovery]" in rendered
    assert "[notifier]" in rendered
    assert "[state]" in rendered
    assert rendered.count("[[stages]]") == 4
    assert "poll_interval_ms" in rendered
    assert "failure_threshold" in rendered
    tomllib.loads(rendered)


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
