"""CLI commands for running and inspecting change-set pipeline runs."""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml
from pydantic import ValidationError

from .events import EventKind, PipelineEvent
from .memory.schema import Modification, RunResult, Task
from .memory.store import TrajectoryStore
from .orchestrator import Orchestrator, OrchestratorSettings
from .policy.autonomy import AutonomyDecision, AutonomyGate, AutonomyLevel, AutonomyPolicy, SafetyContext
from .protocols import StaticChangeProducer, coerce_modifications
from .tools.modifier import FileModifier

APP_HELP = "Change-set pipeline CLI entry point."
DEFAULT_CONFIG_NAME = "config.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "repo_root": ".",
    },
    "autonomy": {
        "level": "assist",
        "max_auto_steps": 20,
        "rollback_timeout": 300,
        "safety_boundaries": True,
    },
    "resilience": {
        "max_retries": 3,
        "initial_delay": 1.0,
        "max_delay": 30.0,
        "backoff_factor": 2.0,
        "step_timeout": None,
        "circuit_threshold": 5,
        "circuit_reset_timeout": 30.0,
    },
    "verification": {
        "command": "",
        "timeout": 600,
    },
    "finalize": {
        "enabled": False,
        "commit_template": "fix: {title} ({task_id})",
    },
    "models": {
        "default": "unspecified",
    },
    "paths": {
        "backups": ".swe-backup",
        "trajectories": "data/trajectories",
    },
}


def _copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def _write_config(config_path: Path, config_data: Dict[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config_data, handle, sort_keys=False)


app = typer.Typer(help=APP_HELP)


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"verbose": verbose}


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    if not config_path.exists():
        raise typer.BadParameter(f"Config file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        typer.echo(f"Failed to parse config: {error}")
        raise typer.Exit(code=1) from error

    if not isinstance(data, dict):
        typer.echo("Configuration must be a mapping at the top level.")
        raise typer.Exit(code=1)

    return data


def _load_optional_config(config: Optional[str]) -> tuple[Dict[str, Any], Path]:
    if config is None:
        default_path = Path(DEFAULT_CONFIG_NAME)
        if not default_path.exists():
            return {}, Path.cwd()
        config = DEFAULT_CONFIG_NAME
    config_path = Path(config)
    return load_config(config_path), config_path.resolve().parent


def _resolve_repo_root(config: Dict[str, Any], base_dir: Path, override: Optional[Path]) -> Path:
    """Resolve the repository root from the flag or configuration."""
    if override is not None:
        return override.resolve()
    project_cfg = config.get("project") or {}
    repo_root_path = Path(project_cfg.get("repo_root", "."))
    if not repo_root_path.is_absolute():
        repo_root_path = (base_dir / repo_root_path).resolve()
    return repo_root_path


def load_modifications(path: Path) -> List[Modification]:
    """Read a YAML or JSON change set (a list, or a mapping with ``modifications``)."""
    if not path.exists():
        raise typer.BadParameter(f"Change set not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or []
    except yaml.YAMLError as error:
        typer.echo(f"Failed to parse change set: {error}")
        raise typer.Exit(code=1) from error

    if isinstance(data, dict):
        data = data.get("modifications") or []
    if not isinstance(data, list):
        typer.echo("Change set must be a list of modifications.")
        raise typer.Exit(code=1)

    try:
        return coerce_modifications(data)
    except ValidationError as error:
        typer.echo(f"Invalid change set: {error}")
        raise typer.Exit(code=1) from error


def _echo_event(event: PipelineEvent) -> None:
    label = event.step_kind.value if event.step_kind is not None else "run"
    line = f"[{event.kind.value}] {label}"
    if event.error:
        line += f": {event.error}"
    typer.echo(line)


def _render_result(result: RunResult) -> None:
    status = "succeeded" if result.success else "failed"
    typer.echo(f"Run {result.trajectory_id} {status}: {result.summary}")
    if result.verification is not None:
        typer.echo(f"Verification: {result.verification.summary()}")
    if result.finalize_handle:
        typer.echo(f"Finalized: {result.finalize_handle}")
    if not result.success:
        if result.failed_step is not None:
            typer.echo(f"Failed step: {result.failed_step.value}")
        if result.error_kind is not None:
            typer.echo(f"Error ({result.error_kind.value}): {result.error}")
        if result.rollback is not None:
            rollback_status = "succeeded" if result.rollback.succeeded else "failed"
            typer.echo(f"Rollback {rollback_status}")
        if result.requires_confirmation and result.pending_action:
            typer.echo(f"Confirmation required for: {result.pending_action}")
    for warning in result.warnings:
        typer.echo(f"Warning: {warning}")


def _render_decision(action: str, step: int, decision: AutonomyDecision) -> None:
    verdict = "allowed" if decision.allowed else "refused"
    typer.echo(f"{action} at step {step}: {verdict}")
    typer.echo(f"requires confirmation: {'yes' if decision.requires_confirmation else 'no'}")
    typer.echo(f"can roll back: {'yes' if decision.can_rollback else 'no'}")
    if decision.reason:
        typer.echo(f"reason: {decision.reason}")
    for warning in decision.warnings:
        typer.echo(f"warning: {warning}")


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write the default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Config already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)
    _write_config(config_path, _copy_config_template())
    typer.echo(f"Wrote configuration to {config_path}")


@app.command()
def run(
    ctx: typer.Context,
    statement: str = typer.Argument(..., help="Problem statement for the task."),
    changes: Path = typer.Option(..., "--changes", help="YAML/JSON file holding the change set."),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r", help="Repository to modify."),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the pipeline configuration file."),
    task_id: Optional[str] = typer.Option(None, "--task-id", help="Identifier recorded for the task."),
    level: Optional[str] = typer.Option(None, "--level", help="Override the autonomy level."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Confirm every action that requires confirmation."),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON."),
) -> None:
    """Execute a task against a repository with a precomputed change set."""
    config_data, base_dir = _load_optional_config(config)
    repo_root = _resolve_repo_root(config_data, base_dir, repo)
    modifications = load_modifications(changes)

    autonomy_section = dict(config_data.get("autonomy") or {})
    if level is not None:
        autonomy_section["level"] = level
    try:
        gate = AutonomyGate(AutonomyPolicy.from_config(autonomy_section))
    except ValidationError as error:
        typer.echo(f"Invalid autonomy settings: {error}")
        raise typer.Exit(code=1) from error

    orchestrator = Orchestrator(
        producer=StaticChangeProducer(modifications),
        gate=gate,
        settings=OrchestratorSettings.from_config(config_data, base_dir=base_dir),
        confirm=(lambda action, decision: True) if yes else None,
    )
    if (ctx.obj or {}).get("verbose"):
        for kind in (EventKind.STEP_STARTED, EventKind.STEP_ENDED, EventKind.STEP_FAILED):
            orchestrator.on(kind, _echo_event)

    task = Task(id=task_id, statement=statement, repository=repo_root.as_posix()) if task_id else Task.from_text(
        statement, repository=repo_root.as_posix()
    )
    result = orchestrator.run(task, repo_root)

    if as_json:
        typer.echo(json.dumps(result.model_dump(mode="json"), indent=2, sort_keys=True))
    else:
        _render_result(result)
        if orchestrator.last_artifact_path is not None:
            typer.echo(f"Trajectory saved to {orchestrator.last_artifact_path}")

    if not result.success:
        raise typer.Exit(code=1)


@app.command()
def preview(
    changes: Path = typer.Option(..., "--changes", help="YAML/JSON file holding the change set."),
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Repository the change set targets."),
) -> None:
    """Render a change set without touching the repository."""
    modifications = load_modifications(changes)
    typer.echo(FileModifier(repo).preview(modifications))


@app.command()
def decide(
    action: str = typer.Argument(..., help="Action kind, e.g. apply-change-set."),
    step: int = typer.Option(0, "--step", help="Current step index."),
    level: Optional[str] = typer.Option(None, "--level", help="Autonomy level (name or 0-3)."),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the pipeline configuration file."),
    has_backup: bool = typer.Option(True, "--backup/--no-backup", help="Whether a backup exists."),
    tests_passing: bool = typer.Option(True, "--tests-passing/--tests-failing", help="Verification status."),
) -> None:
    """Evaluate the autonomy gate for one action."""
    config_data, _ = _load_optional_config(config)
    autonomy_section = dict(config_data.get("autonomy") or {})
    if level is not None:
        autonomy_section["level"] = level
    try:
        gate = AutonomyGate(AutonomyPolicy.from_config(autonomy_section))
    except ValidationError as error:
        typer.echo(f"Invalid autonomy settings: {error}")
        raise typer.Exit(code=1) from error

    decision = gate.can_execute(action, step, SafetyContext(has_backup=has_backup, test_passing=tests_passing))
    _render_decision(action, step, decision)


@app.command()
def levels() -> None:
    """Describe the available autonomy levels."""
    for level in AutonomyLevel:
        typer.echo(f"{int(level)} {AutonomyGate.level_name(level)}: {AutonomyGate.describe_level(level)}")


@app.command()
def history(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the pipeline configuration file."),
    directory: Optional[Path] = typer.Option(None, "--dir", help="Trajectory directory (overrides config)."),
) -> None:
    """List stored run trajectories."""
    if directory is None:
        config_data, base_dir = _load_optional_config(config)
        settings = OrchestratorSettings.from_config(config_data, base_dir=base_dir)
        directory = settings.trajectories_dir
    if directory is None:
        typer.echo("No trajectory directory configured.")
        raise typer.Exit(code=1)

    store = TrajectoryStore(directory)
    paths = store.list()
    if not paths:
        typer.echo("No trajectories recorded.")
        return
    for path in paths:
        trajectory = store.load(path)
        status = "ok" if trajectory.result.success else "failed"
        typer.echo(
            f"{trajectory.created_at.isoformat()} {trajectory.task.id} [{status}] "
            f"{len(trajectory.steps)} step(s) - {trajectory.result.summary}"
        )


if __name__ == "__main__":
    app()
