import asyncio

import pytest

from flowkeeper.config import FlowkeeperConfig
from flowkeeper.definitions import DefinitionService
from flowkeeper.errors import (
    DefinitionNotFound,
    InvalidDecisionOutcome,
    InvalidKickoffData,
    RunAlreadyTerminal,
    RunNotFound,
    RunNotTerminal,
    StepNotActive,
    VariablesFrozen,
)
from flowkeeper.execute import RunEngine
from flowkeeper.models import Identity, KickoffData
from flowkeeper.persistence import InMemoryWorkflowRepository, RunStatus, StepStatus
from flowkeeper.utils.clock import ManualClock
from tests.fixtures.definitions import (
    ROLES,
    START,
    build,
    decision_definition,
    engine_for,
    linear_definition,
    publish,
    task,
)


def _statuses(run):
    return {execution.step_id: execution.status for execution in run.steps}


@pytest.mark.asyncio
async def test_start_run_activates_first_step():
    engine = await engine_for(linear_definition())
    run = await engine.start_run("onboarding", {"started_by": "alice"})

    assert run.status is RunStatus.IN_PROGRESS
    assert run.definition_version == 1
    assert run.current_step_index == 0
    first = run.latest_execution("collect")
    assert first.status is StepStatus.IN_PROGRESS
    assert first.assigned_to == Identity.user("alice")
    assert _statuses(run)["review"] is StepStatus.PENDING

    stored = await engine.get_run(run.run_id)
    assert stored.latest_execution("collect").status is StepStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_linear_run_completes_in_order():
    engine = await engine_for(linear_definition())
    run = await engine.start_run("onboarding", {"started_by": "alice"})

    run = await engine.complete_step(run.run_id, "collect", {"notes": "ok"})
    review = run.latest_execution("review")
    assert review.status is StepStatus.IN_PROGRESS
    assert review.assigned_to == Identity.contact("reviewer@example.com")
    assert run.current_step_index == 1

    run = await engine.complete_step(run.run_id, "review")
    run = await engine.complete_step(run.run_id, "sign_off")

    assert run.status is RunStatus.COMPLETED
    assert run.completed_at is not None
    assert all(e.status is StepStatus.COMPLETED for e in run.steps)
    assert run.latest_execution("collect").result_data == {"notes": "ok"}


@pytest.mark.asyncio
async def test_completing_completed_step_is_rejected():
    engine = await engine_for(linear_definition())
    run = await engine.start_run("onboarding", {"started_by": "alice"})
    await engine.complete_step(run.run_id, "collect")

    with pytest.raises(StepNotActive) as exc:
        await engine.complete_step(run.run_id, "collect")
    assert exc.value.code == "STEP_NOT_ACTIVE"


@pytest.mark.asyncio
async def test_completing_pending_or_unknown_step_is_rejected():
    engine = await engine_for(linear_definition())
    run = await engine.start_run("onboarding", {"started_by": "alice"})

    with pytest.raises(StepNotActive):
        await engine.complete_step(run.run_id, "sign_off")
    with pytest.raises(StepNotActive):
        await engine.complete_step(run.run_id, "does_not_exist")
    with pytest.raises(RunNotFound):
        await engine.complete_step("missing", "collect")


@pytest.mark.asyncio
async def test_decision_outcome_selects_path():
    engine = await engine_for(decision_definition())
    run = await engine.start_run("onboarding", {"started_by": "alice"})
    run = await engine.complete_step(run.run_id, "intake")

    run = await engine.complete_step(run.run_id, "route", {"outcome": "A"})

    assert run.latest_execution("a_task").status is StepStatus.IN_PROGRESS
    assert run.latest_execution("b_task").status is StepStatus.SKIPPED
    assert run.latest_execution("close").status is StepStatus.PENDING

    run = await engine.complete_step(run.run_id, "a_task")
    assert run.latest_execution("close").status is StepStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_invalid_decision_outcome_leaves_run_unchanged():
    engine = await engine_for(decision_definition())
    run = await engine.start_run("onboarding", {"started_by": "alice"})
    run = await engine.complete_step(run.run_id, "intake")

    with pytest.raises(InvalidDecisionOutcome) as exc:
        await engine.complete_step(run.run_id, "route", {"outcome": "C"})
    assert exc.value.code == "INVALID_DECISION_OUTCOME"

    stored = await engine.get_run(run.run_id)
    assert stored.version == run.version
    assert stored.latest_execution("route").status is StepStatus.IN_PROGRESS
    assert stored.latest_execution("a_task").status is StepStatus.PENDING


@pytest.mark.asyncio
async def test_cancel_keeps_history():
    engine = await engine_for(linear_definition())
    run = await engine.start_run("onboarding", {"started_by": "alice"})
    run = await engine.complete_step(run.run_id, "collect")

    run = await engine.cancel_run(run.run_id)

    assert run.status is RunStatus.CANCELLED
    assert run.cancelled_at is not None
    assert _statuses(run) == {
        "collect": StepStatus.COMPLETED,
        "review": StepStatus.IN_PROGRESS,
        "sign_off": StepStatus.PENDING,
    }
    with pytest.raises(RunAlreadyTerminal):
        await engine.cancel_run(run.run_id)
    with pytest.raises(StepNotActive):
        await engine.complete_step(run.run_id, "review")


@pytest.mark.asyncio
async def test_paused_run_rejects_completion_until_resumed():
    engine = await engine_for(linear_definition())
    run = await engine.start_run("onboarding", {"started_by": "alice"})

    started = run.latest_execution("collect")

    run = await engine.pause_run(run.run_id)
    assert run.status is RunStatus.PAUSED
    assert run.active_executions() == []
    collect = run.latest_execution("collect")
    assert collect.status is StepStatus.PENDING
    assert collect.suspended
    assert collect.started_at == started.started_at
    assert collect.assigned_to == started.assigned_to
    assert run.held_steps() == []
    with pytest.raises(StepNotActive):
        await engine.complete_step(run.run_id, "collect")

    run = await engine.resume_run(run.run_id)
    assert run.status is RunStatus.IN_PROGRESS
    collect = run.latest_execution("collect")
    assert collect.status is StepStatus.IN_PROGRESS
    assert not collect.suspended
    run = await engine.complete_step(run.run_id, "collect")
    assert run.latest_execution("review").status is StepStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_archive_run_requires_terminal_status():
    engine = await engine_for(linear_definition())
    run = await engine.start_run("onboarding", {"started_by": "alice"})

    with pytest.raises(RunNotTerminal):
        await engine.archive_run(run.run_id)

    await engine.cancel_run(run.run_id)
    run = await engine.archive_run(run.run_id)
    assert run.archived_at is not None


@pytest.mark.asyncio
async def test_start_unknown_definition():
    engine = await engine_for(linear_definition())
    with pytest.raises(DefinitionNotFound):
        await engine.start_run("nope", {"started_by": "alice"})


@pytest.mark.asyncio
async def test_kickoff_variables_are_bound_and_checked():
    definition = build(
        [task("collect")],
        variables=[
            {"key": "region", "type": "TEXT", "required": True},
            {"key": "budget", "type": "NUMBER", "default": 10},
        ],
        constraints={"variable_types_allowed": ["TEXT", "NUMBER"]},
    )
    engine = await engine_for(definition)

    with pytest.raises(InvalidKickoffData):
        await engine.start_run("onboarding", {"started_by": "alice"})
    with pytest.raises(InvalidKickoffData):
        await engine.start_run(
            "onboarding", {"started_by": "alice", "variables": {"region": "eu", "extra": 1}}
        )
    with pytest.raises(InvalidKickoffData):
        await engine.start_run(
            "onboarding", {"started_by": "alice", "variables": {"region": "eu", "budget": "lots"}}
        )

    run = await engine.start_run(
        "onboarding", KickoffData(started_by="alice", variables={"region": "eu"})
    )
    assert run.variable_bindings == {"region": "eu", "budget": 10}


@pytest.mark.asyncio
async def test_variables_frozen_after_start():
    definition = build([task("collect")], variables=[{"key": "region"}])
    engine = await engine_for(definition)
    run = await engine.start_run("onboarding", {"started_by": "alice"})

    with pytest.raises(VariablesFrozen):
        await engine.set_variable(run.run_id, "region", "us")


@pytest.mark.asyncio
async def test_organisation_freeze_overrides_definition_constraints():
    definition = build(
        [task("collect")],
        variables=[{"key": "tier"}],
        constraints={"variables_set_only_at_initiation": False},
    )
    engine = await engine_for(definition)
    assert engine.config.constraints.variables_set_only_at_initiation
    run = await engine.start_run("onboarding", {"started_by": "alice", "variables": {"tier": "gold"}})

    with pytest.raises(VariablesFrozen):
        await engine.set_variable(run.run_id, "tier", "silver")
    stored = await engine.get_run(run.run_id)
    assert stored.variable_bindings == {"tier": "gold"}


@pytest.mark.asyncio
async def test_variables_settable_when_allowed():
    definition = build(
        [task("collect")],
        variables=[{"key": "region"}],
        constraints={"variables_set_only_at_initiation": False},
    )
    repository = await publish(definition)
    config = FlowkeeperConfig(constraints={"variables_set_only_at_initiation": False})
    engine = RunEngine(repository, config=config, clock=ManualClock(START))
    run = await engine.start_run("onboarding", {"started_by": "alice"})

    run = await engine.set_variable(run.run_id, "region", "us")
    assert run.variable_bindings["region"] == "us"
    with pytest.raises(InvalidKickoffData):
        await engine.set_variable(run.run_id, "unknown", "x")


@pytest.mark.asyncio
async def test_kickoff_role_assignment_overrides_resolution():
    engine = await engine_for(linear_definition())
    run = await engine.start_run(
        "onboarding",
        {"started_by": "alice", "role_assignments": {"owner": "Coordinator@Example.com"}},
    )
    assert run.latest_execution("collect").assigned_to == Identity.contact(
        "coordinator@example.com"
    )

    with pytest.raises(InvalidKickoffData):
        await engine.start_run(
            "onboarding", {"started_by": "alice", "role_assignments": {"ghost": "x@example.com"}}
        )


@pytest.mark.asyncio
async def test_contact_tbd_holds_step_until_assigned():
    roles = ROLES + [{"role_id": "client", "name": "Client", "resolution": {"type": "CONTACT_TBD"}}]
    engine = await engine_for(build([task("upload", "client"), task("check")], roles=roles))
    run = await engine.start_run("onboarding", {"started_by": "alice"})

    held = run.held_steps()
    assert [e.step_id for e in held] == ["upload"]
    assert held[0].status is StepStatus.PENDING
    assert run.status is RunStatus.IN_PROGRESS

    run = await engine.assign_step(run.run_id, "upload", {"client": "client@example.com"})
    upload = run.latest_execution("upload")
    assert upload.status is StepStatus.IN_PROGRESS
    assert upload.assigned_to == Identity.contact("client@example.com")
    assert upload.activation_error is None
    assert run.held_steps() == []


@pytest.mark.asyncio
async def test_group_step_majority_completion():
    definition = build(
        [task("approve", ["legal", "finance", "reviewer"], completion="MAJORITY"), task("next")]
    )
    engine = await engine_for(definition)
    run = await engine.start_run("onboarding", {"started_by": "alice"})
    assert len(run.latest_execution("approve").assignees) == 3

    run = await engine.complete_step(
        run.run_id, "approve", {"ok": True}, completed_by="legal@example.com"
    )
    assert run.latest_execution("approve").status is StepStatus.IN_PROGRESS

    with pytest.raises(StepNotActive):
        await engine.complete_step(run.run_id, "approve", completed_by="legal@example.com")

    run = await engine.complete_step(run.run_id, "approve", {"ok": True}, completed_by="finance")
    approve = run.latest_execution("approve")
    assert approve.status is StepStatus.COMPLETED
    assert len(approve.result_data["submissions"]) == 2
    assert run.latest_execution("next").status is StepStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_anonymous_events_count_one_assignee_each_for_all():
    engine = await engine_for(build([task("sign", ["legal", "finance"], completion="ALL")]))
    run = await engine.start_run("onboarding", {"started_by": "alice"})

    run = await engine.complete_step(run.run_id, "sign", {"signed": True})
    sign = run.latest_execution("sign")
    assert sign.status is StepStatus.IN_PROGRESS
    assert [slot.done for slot in sign.assignees] == [True, False]

    run = await engine.complete_step(run.run_id, "sign", {"signed": True})
    sign = run.latest_execution("sign")
    assert sign.status is StepStatus.COMPLETED
    assert [s["role_id"] for s in sign.result_data["submissions"]] == ["legal", "finance"]
    assert run.status is RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_anonymous_events_respect_majority():
    definition = build(
        [task("approve", ["legal", "finance", "reviewer"], completion="MAJORITY"), task("next")]
    )
    engine = await engine_for(definition)
    run = await engine.start_run("onboarding", {"started_by": "alice"})

    run = await engine.complete_step(run.run_id, "approve")
    assert run.latest_execution("approve").status is StepStatus.IN_PROGRESS
    assert run.latest_execution("next").status is StepStatus.PENDING

    run = await engine.complete_step(run.run_id, "approve", completed_by="reviewer")
    approve = run.latest_execution("approve")
    assert approve.status is StepStatus.COMPLETED
    assert [slot.done for slot in approve.assignees] == [True, False, True]
    assert run.latest_execution("next").status is StepStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_concurrent_completions_apply_once():
    engine = await engine_for(linear_definition())
    run = await engine.start_run("onboarding", {"started_by": "alice"})

    results = await asyncio.gather(
        engine.complete_step(run.run_id, "collect"),
        engine.complete_step(run.run_id, "collect"),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], StepNotActive)
    stored = await engine.get_run(run.run_id)
    assert len(stored.executions("collect")) == 1
    assert stored.latest_execution("review").status is StepStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_run_keeps_its_definition_version():
    engine = await engine_for(linear_definition())
    run = await engine.start_run("onboarding", {"started_by": "alice"})

    await DefinitionService(engine.repository).save_and_publish(build([task("only_step")]))
    newer = await engine.start_run("onboarding", {"started_by": "bob"})
    assert newer.definition_version == 2
    assert newer.latest_execution("only_step") is not None

    run = await engine.complete_step(run.run_id, "collect")
    assert run.definition_version == 1
    assert run.latest_execution("review").status is StepStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_list_runs_filters_by_status():
    engine = await engine_for(linear_definition())
    first = await engine.start_run("onboarding", {"started_by": "alice"})
    await engine.start_run("onboarding", {"started_by": "bob"})
    await engine.cancel_run(first.run_id)

    cancelled = await engine.list_runs(status=RunStatus.CANCELLED)
    assert [r.run_id for r in cancelled] == [first.run_id]
    assert len(await engine.list_runs()) == 2


def test_engine_uses_given_config():
    config = FlowkeeperConfig(engine={"max_auto_transitions": 7})
    engine = RunEngine(InMemoryWorkflowRepository(), config=config)
    assert engine.config.engine.max_auto_transitions == 7
