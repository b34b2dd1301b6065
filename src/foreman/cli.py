from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path

import click

from foreman.config import ForemanConfig, load_config, save_config
from foreman.dispatch import (
    InvocationController,
    TerminalDispatcher,
    is_dispatch_available,
    platform_name,
)
from foreman.notifier import JsonlEventSink, NotificationSink, Notifier, StatusFileSink
from foreman.orchestrator import (
    MasterOrchestrator,
    OrchestratorError,
    Resolution,
    WorkflowReport,
)
from foreman.state import ArtifactStore, WorkflowStateError, WorkflowStore

DEFAULT_CONFIG = "foreman.toml"


@dataclass(slots=True)
class Runtime:
    project_root: Path
    config_path: Path
    config: ForemanConfig
    artifacts: ArtifactStore
    store: WorkflowStore
    orchestrator: MasterOrchestrator


def _resolve_path(project_root: Path, value: str) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = project_root / path
    return path.resolve()


def _build_notifier(config: ForemanConfig, project_root: Path) -> Notifier:
    sinks: list[NotificationSink] = []
    if config.notifier.enabled:
        sinks.append(JsonlEventSink(_resolve_path(project_root, config.notifier.events_file)))
        sinks.append(StatusFileSink(_resolve_path(project_root, config.notifier.status_file)))
    return Notifier(sinks, queue_size=config.notifier.queue_size)


def _load_runtime(project_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    artifacts = ArtifactStore(config.dispatch.resolved_output_dir())
    store = WorkflowStore(_resolve_path(project_root, config.state.state_dir))
    dispatcher = TerminalDispatcher(config.dispatch, project_root=project_root, artifacts=artifacts)
    invoker = InvocationController(dispatcher, config.dispatch, artifacts=artifacts)
    orchestrator = MasterOrchestrator(
        invoker,
        config,
        store=store,
        notifier=_build_notifier(config, project_root),
        project_root=project_root,
    )
    return Runtime(
        project_root=project_root,
        config_path=config_path,
        config=config,
        artifacts=artifacts,
        store=store,
        orchestrator=orchestrator,
    )


def _echo_report(report: WorkflowReport) -> None:
    click.echo(f"Workflow: {report.workflow_id}")
    click.echo(f"Status: {report.status.value}")
    for stage, verdict in report.stage_verdicts.items():
        click.echo(f"  {stage}: {verdict}")
    if report.failing_stage:
        click.echo(f"Failing stage: {report.failing_stage}")
    for reason in report.last_reasons:
        click.echo(f"  - {reason}")
    if report.awaiting_input:
        click.echo(
            f"Resume with: foreman resume {report.workflow_id} "
            "--decision [retry|skip|abort|waive]"
        )


@click.group()
@click.option("--debug", is_flag=True, default=False, help="Enable debug logging.")
def cli(debug: bool) -> None:
    """Foreman CLI."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(config_value: str) -> None:
    project_root = Path.cwd().resolve()
    config_path = _resolve_path(project_root, config_value)
    config = load_config(config_path)
    save_config(config_path, config)
    _resolve_path(project_root, config.state.state_dir).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Foreman in {project_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Stages: {', '.join(stage.name for stage in config.stages)}")


@cli.command("run")
@click.argument("story_ref")
@click.option("--workflow-id", default=None)
@click.option("--file", "files", multiple=True, help="Related file passed to every worker.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def run_command(
    story_ref: str, workflow_id: str | None, files: tuple[str, ...], config_value: str
) -> None:
    project_root = Path.cwd().resolve()
    runtime = _load_runtime(project_root, _resolve_path(project_root, config_value))
    try:
        report = asyncio.run(
            runtime.orchestrator.run(story_ref, workflow_id=workflow_id, files=list(files))
        )
    except (OrchestratorError, WorkflowStateError) as exc:
        raise click.ClickException(str(exc)) from exc

    _echo_report(report)
    if report.aborted:
        raise SystemExit(1)


@cli.command("status")
@click.argument("workflow_id", required=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def status_command(workflow_id: str | None, config_value: str) -> None:
    project_root = Path.cwd().resolve()
    runtime = _load_runtime(project_root, _resolve_path(project_root, config_value))
    if workflow_id is None:
        workflow_ids = runtime.store.list_ids()
        if not workflow_ids:
            click.echo("No workflows found.")
            return
        for item in workflow_ids:
            state = runtime.orchestrator.status(item)
            click.echo(f"{item} {state.status.value}")
        return

    try:
        state = runtime.orchestrator.status(workflow_id)
    except WorkflowStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(state.to_dict(), ensure_ascii=False, indent=2))


@cli.command("resume")
@click.argument("workflow_id")
@click.option(
    "--decision",
    type=click.Choice([item.value for item in Resolution]),
    required=True,
)
@click.option("--reason", default="")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def resume_command(workflow_id: str, decision: str, reason: str, config_value: str) -> None:
    project_root = Path.cwd().resolve()
    runtime = _load_runtime(project_root, _resolve_path(project_root, config_value))
    try:
        report = asyncio.run(
            runtime.orchestrator.resume(workflow_id, Resolution(decision), reason=reason)
        )
    except (OrchestratorError, WorkflowStateError) as exc:
        raise click.ClickException(str(exc)) from exc

    _echo_report(report)
    if report.aborted:
        raise SystemExit(1)


@cli.command("stop")
@click.argument("workflow_id")
@click.option("--reason", default="")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def stop_command(workflow_id: str, reason: str, config_value: str) -> None:
    project_root = Path.cwd().resolve()
    runtime = _load_runtime(project_root, _resolve_path(project_root, config_value))
    try:
        report = asyncio.run(runtime.orchestrator.stop(workflow_id, reason=reason))
    except (OrchestratorError, WorkflowStateError) as exc:
        raise click.ClickException(str(exc)) from exc

    _echo_report(report)


@cli.command("cleanup")
@click.option(
    "--max-age-ms", type=int, default=None, help="Defaults to dispatch.cleanup_max_age_ms."
)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def cleanup_command(max_age_ms: int | None, config_value: str) -> None:
    project_root = Path.cwd().resolve()
    config = load_config(_resolve_path(project_root, config_value))
    artifacts = ArtifactStore(config.dispatch.resolved_output_dir())
    age = max_age_ms if max_age_ms is not None else config.dispatch.cleanup_max_age_ms
    cleaned = artifacts.sweep(age)
    click.echo(f"Removed {cleaned} stale artifact(s) from {artifacts.output_dir}")


@cli.command("platform")
def platform_command() -> None:
    available = "yes" if is_dispatch_available() else "no"
    click.echo(f"Platform: {platform_name()}")
    click.echo(f"Dispatch available: {available}")
