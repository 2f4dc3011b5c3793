import asyncio
import json

from typer.testing import CliRunner

import flowkeeper.persistence as persistence
from flowkeeper.cli import app
from flowkeeper.persistence import InMemoryWorkflowRepository, RunStatus
from tests.fixtures.definitions import build, decision_definition, linear_definition, publish, task


def _setup_repo(monkeypatch, tmp_path, definition=None) -> InMemoryWorkflowRepository:
    monkeypatch.setenv("FLOWKEEPER_CONFIG", str(tmp_path / "absent.yaml"))
    repo = InMemoryWorkflowRepository()
    asyncio.run(publish(definition or linear_definition(), repo))
    monkeypatch.setattr(persistence, "_repository_instance", repo)
    return repo


def _run_id(output: str) -> str:
    line = next(line for line in output.splitlines() if "\t" in line)
    return line.split("\t")[0]


def test_start_complete_and_show(tmp_path, monkeypatch):
    repo = _setup_repo(monkeypatch, tmp_path)
    runner = CliRunner()

    started = runner.invoke(
        app, ["run", "start", "onboarding", "--started-by", "alice", "--data", '{"tier": "gold"}']
    )
    assert started.exit_code == 0, f"Output: {started.stdout}"
    assert "IN_PROGRESS" in started.stdout
    run_id = _run_id(started.stdout)

    completed = runner.invoke(
        app, ["run", "complete", run_id, "collect", "--data", json.dumps({"notes": "done"})]
    )
    assert completed.exit_code == 0, f"Output: {completed.stdout}"

    shown = runner.invoke(app, ["run", "show", run_id])
    assert shown.exit_code == 0
    assert f"Run {run_id}: IN_PROGRESS (onboarding v1)" in shown.stdout
    assert "- [0] collect: COMPLETED attempt 1" in shown.stdout
    assert "- [1] review: IN_PROGRESS attempt 1 -> contact:reviewer@example.com" in shown.stdout

    run = asyncio.run(repo.get_run(run_id))
    assert run.kickoff_data == {"tier": "gold"}
    assert run.latest_execution("collect").result_data == {"notes": "done"}


def test_complete_twice_reports_step_not_active(tmp_path, monkeypatch):
    _setup_repo(monkeypatch, tmp_path)
    runner = CliRunner()
    run_id = _run_id(
        runner.invoke(app, ["run", "start", "onboarding", "--started-by", "alice"]).stdout
    )

    runner.invoke(app, ["run", "complete", run_id, "collect"])
    again = runner.invoke(app, ["run", "complete", run_id, "collect"])
    assert again.exit_code == 1
    assert "Error [STEP_NOT_ACTIVE]" in again.stdout


def test_invalid_decision_outcome_from_cli(tmp_path, monkeypatch):
    _setup_repo(monkeypatch, tmp_path, decision_definition())
    runner = CliRunner()
    run_id = _run_id(
        runner.invoke(app, ["run", "start", "onboarding", "--started-by", "alice"]).stdout
    )
    runner.invoke(app, ["run", "complete", run_id, "intake"])

    result = runner.invoke(app, ["run", "complete", run_id, "route", "--data", '{"outcome": "C"}'])
    assert result.exit_code == 1
    assert "INVALID_DECISION_OUTCOME" in result.stdout


def test_cancel_and_list(tmp_path, monkeypatch):
    _setup_repo(monkeypatch, tmp_path)
    runner = CliRunner()
    first = _run_id(runner.invoke(app, ["run", "start", "onboarding", "--started-by", "alice"]).stdout)
    second = _run_id(runner.invoke(app, ["run", "start", "onboarding", "--started-by", "bob"]).stdout)

    cancelled = runner.invoke(app, ["run", "cancel", first])
    assert cancelled.exit_code == 0
    assert "CANCELLED" in cancelled.stdout

    listed = runner.invoke(app, ["run", "list", "--status", RunStatus.CANCELLED.value])
    assert listed.exit_code == 0
    assert first in listed.stdout
    assert second not in listed.stdout

    again = runner.invoke(app, ["run", "cancel", first])
    assert again.exit_code == 1
    assert "RUN_ALREADY_TERMINAL" in again.stdout


def test_start_errors(tmp_path, monkeypatch):
    _setup_repo(monkeypatch, tmp_path)
    runner = CliRunner()

    missing = runner.invoke(app, ["run", "start", "nope", "--started-by", "alice"])
    assert missing.exit_code == 1
    assert "DEFINITION_NOT_FOUND" in missing.stdout

    bad_json = runner.invoke(
        app, ["run", "start", "onboarding", "--started-by", "alice", "--data", "{oops"]
    )
    assert bad_json.exit_code == 1
    assert "--data is not valid JSON" in bad_json.stdout


def test_show_missing_run(tmp_path, monkeypatch):
    _setup_repo(monkeypatch, tmp_path)
    result = CliRunner().invoke(app, ["run", "show", "missing-id"])
    assert result.exit_code == 1
    assert "Run not found" in result.stdout


def test_sla_sweep_once(tmp_path, monkeypatch):
    definition = build([task("collect", due={"value": 1, "unit": "HOURS"})])
    _setup_repo(monkeypatch, tmp_path, definition)
    runner = CliRunner()
    runner.invoke(app, ["run", "start", "onboarding", "--started-by", "alice"])

    result = runner.invoke(app, ["sla", "sweep"])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert "breaches=0 reminders=1 escalations=0 failed=0" in result.stdout
