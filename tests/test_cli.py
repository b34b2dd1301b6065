import json
import os
import sys
import time
from pathlib import Path

import pytest
from click.testing import CliRunner

from foreman.cli import cli
from foreman.config import ForemanConfig, load_config, save_config
from foreman.orchestrator import OrchestratorStatus, WorkflowState
from foreman.state import WorkflowStore

LAUNCHER = """#!/usr/bin/env bash
set -euo pipefail
(
  sleep 0.05
  if [[ "$2" == "review" ]]; then
    echo "BLOCKER: missing tests for error path" > "$FOREMAN_OUTPUT_FILE"
  else
    echo "ok" > "$FOREMAN_OUTPUT_FILE"
  fi
  rm -f "$FOREMAN_LOCK_FILE"
) > /dev/null 2>&1 &
echo "$FOREMAN_OUTPUT_FILE"
"""


def _write_config(project: Path, **dispatch: object) -> Path:
    config = ForemanConfig.default()
    config.dispatch.launcher = "launch.sh"
    config.dispatch.output_dir = str(project / "out")
    config.dispatch.retries = 1
    config.dispatch.retry_delay_ms = 0
    config.dispatch.poll_interval_ms = 20
    config.dispatch.timeout_ms = 10_000
    for key, value in dispatch.items():
        setattr(config.dispatch, key, value)
    config_path = project / "foreman.toml"
    save_config(config_path, config)
    return config_path


def test_init_writes_config(tmp_path: Path) -> None:
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path) as workdir:
        result = runner.invoke(cli, ["init"])

        assert result.exit_code == 0, result.output
        assert "Initialized Foreman" in result.output
        assert "spec, develop, qa, docs" in result.output
        assert load_config(Path(workdir) / "foreman.toml").dispatch.retries == 3
        assert (Path(workdir) / ".foreman" / "state").is_dir()


def test_platform_command() -> None:
    result = CliRunner().invoke(cli, ["platform"])

    assert result.exit_code == 0
    assert "Platform:" in result.output
    assert "Dispatch available:" in result.output


def test_cleanup_command_removes_stale_artifacts(tmp_path: Path) -> None:
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path) as workdir:
        project = Path(workdir)
        _write_config(project)
        out = project / "out"
        out.mkdir()
        stale = out / "foreman-output-1.md"
        stale.write_text("old", encoding="utf-8")
        old = time.time() - 10
        os.utime(stale, (old, old))

        result = runner.invoke(cli, ["cleanup", "--max-age-ms", "1000"])

        assert result.exit_code == 0, result.output
        assert "Removed 1 stale artifact(s)" in result.output
        assert not stale.exists()


def test_status_without_workflows(tmp_path: Path) -> None:
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        result = runner.invoke(cli, ["status"])

        assert result.exit_code == 0
        assert "No workflows found." in result.output


def test_status_of_unknown_workflow_fails(tmp_path: Path) -> None:
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        result = runner.invoke(cli, ["status", "wf-missing"])

        assert result.exit_code != 0
        assert "Unknown workflow: wf-missing" in result.output


def test_run_without_launcher_aborts(tmp_path: Path) -> None:
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path) as workdir:
        _write_config(Path(workdir))

        result = runner.invoke(cli, ["run", "story.md", "--workflow-id", "wf-nolaunch"])

        assert result.exit_code == 1
        assert "Status: aborted" in result.output
        assert "Failing stage: spec" in result.output


@pytest.mark.skipif(sys.platform == "win32", reason="requires bash")
def test_run_escalate_and_resume_end_to_end(tmp_path: Path) -> None:
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path) as workdir:
        project = Path(workdir)
        _write_config(project)
        (project / "launch.sh").write_text(LAUNCHER, encoding="utf-8")
        (project / "story.md").write_text("Fix the login bug.", encoding="utf-8")

        result = runner.invoke(
            cli, ["run", "story.md", "--workflow-id", "wf-e2e", "--file", "src/login.py"]
        )

        assert result.exit_code == 0, result.output
        assert "Status: awaiting_input" in result.output
        assert "Failing stage: qa" in result.output
        assert "foreman resume wf-e2e" in result.output

        status = runner.invoke(cli, ["status", "wf-e2e"])
        payload = json.loads(status.stdout)
        assert payload["status"] == "awaiting_input"
        assert payload["files"] == ["src/login.py"]

        resumed = runner.invoke(
            cli, ["resume", "wf-e2e", "--decision", "waive", "--reason", "covered elsewhere"]
        )

        assert resumed.exit_code == 0, resumed.output
        assert "Status: completed" in resumed.output
        assert "qa: WAIVED" in resumed.output

        events = (project / ".foreman" / "events.jsonl").read_text(encoding="utf-8")
        assert '"workflow_completed"' in events
        snapshot = json.loads((project / ".foreman" / "status.json").read_text(encoding="utf-8"))
        assert snapshot["workflows"]["wf-e2e"]["status"] == "completed"


def test_resume_rejects_unknown_decision(tmp_path: Path) -> None:
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        result = runner.invoke(cli, ["resume", "wf-1", "--decision", "ignore"])

        assert result.exit_code == 2


def test_stop_command_aborts_parked_workflow(tmp_path: Path) -> None:
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path) as workdir:
        project = Path(workdir)
        _write_config(project)
        parked = WorkflowState(
            workflow_id="wf-parked",
            story_ref="story.md",
            status=OrchestratorStatus.AWAITING_INPUT,
            stage_index=2,
        )
        WorkflowStore(project / ".foreman" / "state").save("wf-parked", parked.to_dict())

        result = runner.invoke(cli, ["stop", "wf-parked", "--reason", "story withdrawn"])

        assert result.exit_code == 0, result.output
        assert "Status: aborted" in result.output
        assert "Failing stage: qa" in result.output
        assert "stopped: story withdrawn" in result.output

        again = runner.invoke(cli, ["stop", "wf-parked"])

        assert again.exit_code != 0
        assert "already aborted" in again.output
