import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from flowkeeper.config import SlaConfig
from flowkeeper.contracts import BeforeFlowDue, FixedDue, RelativeDue
from flowkeeper.models import Identity
from flowkeeper.notifications import (
    InMemoryNotificationSender,
    NotificationKind,
    NotificationSender,
)
from flowkeeper.sla import SlaScheduler, compute_due_at
from flowkeeper.utils.clock import ManualClock
from tests.fixtures.definitions import START, build, engine_for, task

DUE_IN_TWO_DAYS = {"value": 2, "unit": "DAYS"}


async def _started(clock):
    definition = build([task("collect", "reviewer", due=DUE_IN_TWO_DAYS), task("next")])
    engine = await engine_for(definition, clock=clock)
    run = await engine.start_run("onboarding", {"started_by": "alice"})
    return engine, run


class BlockingSender(NotificationSender):
    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.sent = []

    async def send(self, notification):
        self.entered.set()
        await self.release.wait()
        self.sent.append(notification)


def test_compute_due_at():
    assert compute_due_at(None, START) is None
    assert compute_due_at(RelativeDue(value=3, unit="HOURS"), START) == START + timedelta(hours=3)
    assert compute_due_at(RelativeDue(value=2, unit="DAYS"), START) == START + timedelta(days=2)
    assert compute_due_at(RelativeDue(value=1, unit="WEEKS"), START) == START + timedelta(weeks=1)


def test_compute_due_at_fixed_and_before_flow_due():
    deadline = datetime(2026, 2, 1, 17, 0, tzinfo=timezone.utc)
    assert compute_due_at(FixedDue(date=deadline), START) == deadline

    before = BeforeFlowDue(value=2, unit="DAYS")
    assert compute_due_at(before, START, START + timedelta(weeks=2)) == START + timedelta(days=12)
    assert compute_due_at(before, START) is None


def test_due_modes_parse_from_definitions():
    definition = build(
        [
            task("a", due={"value": 3, "unit": "HOURS"}),
            task("b", due={"type": "FIXED", "date": "2026-02-01T17:00:00Z"}),
            task("c", due={"type": "BEFORE_FLOW_DUE", "value": 1, "unit": "DAYS"}),
        ],
        due={"type": "RELATIVE", "value": 1, "unit": "WEEKS"},
    )
    a, b, c = definition.steps
    assert isinstance(a.due, RelativeDue)
    assert isinstance(b.due, FixedDue)
    assert isinstance(c.due, BeforeFlowDue)
    assert isinstance(definition.due, RelativeDue)
    assert definition.model_dump(mode="json")["steps"][1]["due"]["type"] == "FIXED"


@pytest.mark.asyncio
async def test_step_due_before_run_due_date():
    clock = ManualClock(START)
    definition = build(
        [
            task("collect", due={"type": "BEFORE_FLOW_DUE", "value": 2, "unit": "DAYS"}),
            task("sign", due={"type": "FIXED", "date": "2026-01-20T12:00:00+00:00"}),
        ],
        due={"value": 1, "unit": "WEEKS"},
    )
    engine = await engine_for(definition, clock=clock)
    run = await engine.start_run("onboarding", {"started_by": "alice"})
    assert run.due_at == START + timedelta(weeks=1)
    assert run.latest_execution("collect").due_at == START + timedelta(days=5)

    run = await engine.complete_step(run.run_id, "collect")
    assert run.latest_execution("sign").due_at == datetime(2026, 1, 20, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_due_date_set_on_activation():
    clock = ManualClock(START)
    _, run = await _started(clock)
    collect = run.latest_execution("collect")
    assert collect.due_at == START + timedelta(days=2)
    assert run.latest_execution("next").due_at is None


@pytest.mark.asyncio
async def test_breach_is_recorded_once():
    clock = ManualClock(START)
    engine, run = await _started(clock)
    notifier = InMemoryNotificationSender()
    scheduler = SlaScheduler(engine.repository, notifier, SlaConfig(), clock=clock)

    clock.set(START + timedelta(days=1))
    report = await scheduler.sweep()
    assert report.breaches == 0

    day_three = START + timedelta(days=3)
    clock.set(day_three)
    report = await scheduler.sweep()
    assert report.breaches == 1
    stored = await engine.get_run(run.run_id)
    assert stored.latest_execution("collect").sla_breached_at == day_three

    clock.set(START + timedelta(days=4))
    report = await scheduler.sweep()
    assert report.breaches == 0
    stored = await engine.get_run(run.run_id)
    assert stored.latest_execution("collect").sla_breached_at == day_three


@pytest.mark.asyncio
async def test_reminders_and_escalation():
    clock = ManualClock(START)
    engine, run = await _started(clock)
    notifier = InMemoryNotificationSender()
    scheduler = SlaScheduler(engine.repository, notifier, SlaConfig(), clock=clock)

    # inside the reminder lead time, before the due date
    clock.set(START + timedelta(days=1, hours=1))
    report = await scheduler.sweep()
    assert report.reminders == 1
    assert report.breaches == 0
    sent = notifier.drain()
    assert [(n.kind, n.recipient) for n in sent] == [
        (NotificationKind.REMINDER, Identity.contact("reviewer@example.com"))
    ]

    clock.set(START + timedelta(days=1, hours=2))
    assert (await scheduler.sweep()).reminders == 0

    clock.set(START + timedelta(days=4, hours=1))
    report = await scheduler.sweep()
    assert report.escalations == 1
    assert report.reminders == 1
    kinds = {n.kind: n for n in notifier.drain()}
    assert kinds[NotificationKind.ESCALATION].recipient == Identity.user("alice")

    stored = await engine.get_run(run.run_id)
    collect = stored.latest_execution("collect")
    assert collect.reminder_count == 2
    assert collect.escalated_at == START + timedelta(days=4, hours=1)


@pytest.mark.asyncio
async def test_reminders_stop_at_maximum():
    clock = ManualClock(START)
    engine, _ = await _started(clock)
    settings = SlaConfig(max_reminders=2, reminder_interval_hours=1)
    scheduler = SlaScheduler(engine.repository, InMemoryNotificationSender(), settings, clock=clock)

    counts = []
    for hours in (30, 32, 34, 36):
        clock.set(START + timedelta(hours=hours))
        counts.append((await scheduler.sweep()).reminders)
    assert counts == [1, 1, 0, 0]


@pytest.mark.asyncio
async def test_completed_and_paused_runs_are_not_swept():
    clock = ManualClock(START)
    engine, run = await _started(clock)
    scheduler = SlaScheduler(engine.repository, InMemoryNotificationSender(), clock=clock)

    paused = await engine.pause_run(run.run_id)
    assert paused.active_executions() == []
    assert paused.latest_execution("collect").due_at == START + timedelta(days=2)
    clock.set(START + timedelta(days=3))
    assert (await scheduler.sweep()).breaches == 0

    resumed = await engine.resume_run(run.run_id)
    assert [e.step_id for e in resumed.active_executions()] == ["collect"]
    assert resumed.latest_execution("collect").due_at == START + timedelta(days=2)
    await engine.complete_step(run.run_id, "collect")
    assert (await scheduler.sweep()).breaches == 0


@pytest.mark.asyncio
async def test_failed_notifications_are_retried_without_undoing_flags():
    clock = ManualClock(START)
    engine, run = await _started(clock)
    notifier = InMemoryNotificationSender()
    notifier.fail_next = 1
    scheduler = SlaScheduler(engine.repository, notifier, clock=clock)

    clock.set(START + timedelta(days=3))
    report = await scheduler.sweep()
    assert report.failed == 1
    assert report.sent == 0
    assert scheduler.pending_retries == 1
    stored = await engine.get_run(run.run_id)
    assert stored.latest_execution("collect").sla_breached_at is not None
    assert stored.latest_execution("collect").reminder_count == 1

    report = await scheduler.sweep()
    assert report.retried == 1
    assert report.sent == 1
    assert report.reminders == 0
    assert scheduler.pending_retries == 0
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_overlapping_sweep_is_skipped():
    clock = ManualClock(START)
    engine, _ = await _started(clock)
    sender = BlockingSender()
    scheduler = SlaScheduler(engine.repository, sender, clock=clock)
    clock.set(START + timedelta(days=3))

    first = asyncio.create_task(scheduler.sweep())
    await asyncio.wait_for(sender.entered.wait(), timeout=1)

    second = await scheduler.sweep()
    assert second.skipped

    sender.release.set()
    report = await first
    assert not report.skipped
    assert report.reminders == 1
    assert len(sender.sent) == 1


@pytest.mark.asyncio
async def test_run_forever_stops_on_event():
    clock = ManualClock(START)
    engine, _ = await _started(clock)
    notifier = InMemoryNotificationSender()
    scheduler = SlaScheduler(
        engine.repository, notifier, SlaConfig(sweep_interval_seconds=0.01), clock=clock
    )
    clock.set(START + timedelta(days=3))

    stop = asyncio.Event()
    loop_task = asyncio.create_task(scheduler.run_forever(stop))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(loop_task, timeout=1)

    assert len(notifier.sent) >= 1
