"""Example walking a client onboarding run from start to finish."""

import asyncio
from pathlib import Path

import yaml

from flowkeeper import DefinitionService, RunEngine, WorkflowDefinition, get_repository


async def main():
    """Publish the onboarding definition and drive one run through it."""
    repository = get_repository()
    with open(Path(__file__).parent / "onboarding.yaml") as f:
        definition = WorkflowDefinition.model_validate(yaml.safe_load(f))

    record = await DefinitionService(repository).save_and_publish(definition)
    print(f"Published {record.definition_id} v{record.version}")

    engine = RunEngine(repository)
    run = await engine.start_run(
        "client-onboarding",
        {"started_by": "alice", "form": {"tier": "silver", "client_email": "buyer@client.com"}},
    )
    print(f"Started run {run.run_id}")

    for step_id, data in [
        ("kickoff_form", {"company": "Client Ltd"}),
        ("sign_contract", {}),
        ("upload_documents", {"files": ["passport.pdf"]}),
        ("review", {"outcome": "approved"}),
        ("welcome_call", {}),
    ]:
        run = await engine.complete_step(run.run_id, step_id, data)
        active = [f"{e.step_id} -> {e.assigned_to}" for e in run.active_executions()]
        print(f"Completed {step_id}; now active: {', '.join(active) or 'nothing'}")

    print(f"Run finished as {run.status.value}")


if __name__ == "__main__":
    asyncio.run(main())
