"""Command line interface for flowkeeper definitions, runs and SLA sweeps."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, NoReturn, Optional

import typer
import yaml
from pydantic import ValidationError

from flowkeeper import DefinitionService, RunEngine, SlaScheduler, get_notifier, get_repository
from flowkeeper.config import load_config
from flowkeeper.contracts import ValidationMode, ValidationResult, WorkflowDefinition
from flowkeeper.errors import DefinitionNotValid, FlowkeeperError
from flowkeeper.models import KickoffData
from flowkeeper.persistence import RunStatus
from flowkeeper.validator import validate_document

app = typer.Typer(help="CLI for flowkeeper workflows")

# Command groups
definition_app = typer.Typer(help="Commands for managing definitions")
run_app = typer.Typer(help="Commands for managing runs")
sla_app = typer.Typer(help="Commands for SLA tracking")

app.add_typer(definition_app, name="definition")
app.add_typer(run_app, name="run")
app.add_typer(sla_app, name="sla")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Override the configured log level"),
) -> None:
    """flowkeeper CLI entry point."""
    config = load_config()
    logging.basicConfig(level=(log_level or config.log_level).upper())


def _fail(exc: FlowkeeperError) -> NoReturn:
    typer.secho(f"Error [{exc.code}]: {exc.message}", fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _read_document(path: Path) -> dict[str, Any]:
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        typer.secho("Definition file must contain a mapping", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


def _parse_json(text: Optional[str], option: str) -> dict[str, Any]:
    if not text:
        return {}
    try:
        value = json.loads(text)
    except json.JSONDecodeError as exc:
        typer.secho(f"{option} is not valid JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(value, dict):
        typer.secho(f"{option} must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return value


def _print_issues(result: ValidationResult) -> None:
    for issue in result.errors + result.warnings:
        typer.echo(f"{issue.severity}\t{issue.path}\t{issue.rule}: {issue.message}")


# ----------------------------------------------------------------------
# Definitions
@definition_app.command("validate")
def definition_validate(
    path: Path,
    lenient: bool = typer.Option(False, help="Report errors as warnings"),
) -> None:
    """
    Validate a definition file (YAML or JSON) against the configured constraints.

    Prints one line per issue: severity, path, rule and message. Exits with
    code 1 when the definition has errors.

    Example:
        flowkeeper definition validate onboarding.yaml
    """
    config = load_config()
    mode = ValidationMode.LENIENT if lenient else config.engine.validation_mode
    _, result = validate_document(_read_document(path), config.constraints, mode)
    _print_issues(result)
    if not result.valid:
        typer.echo(f"Definition is invalid ({len(result.errors)} errors)")
        raise typer.Exit(code=1)
    typer.echo("Definition is valid")


@definition_app.command("publish")
def definition_publish(path: Path) -> None:
    """Save a definition file as a new version and publish it."""
    config = load_config()
    try:
        definition = WorkflowDefinition.model_validate(_read_document(path))
    except ValidationError as exc:
        typer.secho(f"Definition could not be parsed: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    service = DefinitionService(get_repository(), constraints=config.constraints)
    try:
        record = asyncio.run(service.save_and_publish(definition))
    except DefinitionNotValid as exc:
        if exc.validation is not None:
            _print_issues(exc.validation)
        _fail(exc)
    except FlowkeeperError as exc:
        _fail(exc)
    typer.echo(f"Published {record.definition_id} v{record.version}")


@definition_app.command("list")
def definition_list() -> None:
    """List the latest version of every stored definition."""
    service = DefinitionService(get_repository())
    records = asyncio.run(service.list_definitions())
    if not records:
        typer.echo("No definitions found")
        return
    for record in records:
        typer.echo(f"{record.definition_id}\tv{record.version}\t{record.status.value}")


# ----------------------------------------------------------------------
# Runs
def _engine() -> RunEngine:
    return RunEngine(get_repository(), config=load_config())


@run_app.command("start")
def run_start(
    definition_id: str,
    started_by: str = typer.Option(..., help="User starting the run"),
    data: Optional[str] = typer.Option(None, help="Kickoff form data as JSON"),
    variables: Optional[str] = typer.Option(None, help="Flow variables as JSON"),
) -> None:
    """
    Start a run of the latest published version of a definition.

    Example:
        flowkeeper run start onboarding --started-by alice --data '{"tier": "gold"}'
    """
    kickoff = KickoffData(
        started_by=started_by,
        form=_parse_json(data, "--data"),
        variables=_parse_json(variables, "--variables"),
    )
    try:
        run = asyncio.run(_engine().start_run(definition_id, kickoff))
    except FlowkeeperError as exc:
        _fail(exc)
    typer.echo(f"{run.run_id}\t{run.status.value}")


@run_app.command("complete")
def run_complete(
    run_id: str,
    step_id: str,
    data: Optional[str] = typer.Option(None, help="Result data as JSON"),
    by: Optional[str] = typer.Option(None, help="Assignee completing their part"),
) -> None:
    """Complete the active execution of a step."""
    try:
        run = asyncio.run(
            _engine().complete_step(run_id, step_id, _parse_json(data, "--data"), completed_by=by)
        )
    except FlowkeeperError as exc:
        _fail(exc)
    typer.echo(f"{run.run_id}\t{run.status.value}")


@run_app.command("cancel")
def run_cancel(run_id: str) -> None:
    """Cancel a run; its step history is kept."""
    try:
        run = asyncio.run(_engine().cancel_run(run_id))
    except FlowkeeperError as exc:
        _fail(exc)
    typer.echo(f"{run.run_id}\t{run.status.value}")


@run_app.command("list")
def run_list(
    status: Optional[RunStatus] = typer.Option(None, help="Only runs with this status"),
) -> None:
    """List runs with their current status."""
    repo = get_repository()
    runs = asyncio.run(repo.list_runs(status=status))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.run_id}\t{run.definition_id}\t{run.status.value}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """
    Show a run and the history of its step executions.

    Example:
        flowkeeper run show 3f1c...
        # Output: Run 3f1c...: IN_PROGRESS (onboarding v1)
        #         - [0] collect: COMPLETED attempt 1
        #         - [1] review: IN_PROGRESS attempt 1 -> contact:rev@example.com
    """
    repo = get_repository()
    run = asyncio.run(repo.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.run_id}: {run.status.value} ({run.definition_id} v{run.definition_version})")
    typer.echo(f"Started by {run.started_by} at {run.started_at.isoformat()}")
    for execution in run.steps:
        line = (
            f"- [{execution.step_index}] {execution.step_id}: "
            f"{execution.status.value} attempt {execution.attempt}"
        )
        if execution.assigned_to is not None:
            line += f" -> {execution.assigned_to}"
        if execution.due_at is not None:
            line += f" due {execution.due_at.isoformat()}"
        if execution.sla_breached_at is not None:
            line += " BREACHED"
        if execution.held:
            line += f" HELD: {execution.activation_error}"
        typer.echo(line)


# ----------------------------------------------------------------------
# SLA
@sla_app.command("sweep")
def sla_sweep(
    loop: bool = typer.Option(False, help="Keep sweeping at the configured interval"),
) -> None:
    """Run one SLA sweep, or sweep continuously with --loop."""
    config = load_config()
    scheduler = SlaScheduler(get_repository(), get_notifier(config=config), config.sla)
    if loop:
        typer.echo(f"Sweeping every {config.sla.sweep_interval_seconds}s")
        asyncio.run(scheduler.run_forever())
        return
    report = asyncio.run(scheduler.sweep())
    typer.echo(
        f"breaches={report.breaches} reminders={report.reminders} "
        f"escalations={report.escalations} failed={report.failed}"
    )
