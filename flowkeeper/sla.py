"""Due dates, SLA breach detection, reminders and escalations."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Deque, Optional, assert_never

from pydantic import BaseModel

from .config import SlaConfig
from .contracts import BeforeFlowDue, DueUnit, FixedDue, RelativeDue
from .errors import RunNotFound
from .models import Identity
from .notifications import Notification, NotificationKind, NotificationSender
from .persistence import Run, RunStatus, StepExecution, WorkflowRepository
from .utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

_UNIT_HOURS = {DueUnit.HOURS: 1, DueUnit.DAYS: 24, DueUnit.WEEKS: 24 * 7}


def _offset(value: int, unit: DueUnit) -> timedelta:
    return timedelta(hours=value * _UNIT_HOURS[unit])


def compute_due_at(
    due: Optional[RelativeDue | FixedDue | BeforeFlowDue],
    anchor: datetime,
    flow_due_at: Optional[datetime] = None,
) -> Optional[datetime]:
    """Return the due date for ``due`` activated at ``anchor``.

    ``BEFORE_FLOW_DUE`` counts back from ``flow_due_at`` and gives ``None``
    when the run has no due date.
    """
    if due is None:
        return None
    if isinstance(due, RelativeDue):
        return anchor + _offset(due.value, due.unit)
    if isinstance(due, FixedDue):
        return due.date
    if isinstance(due, BeforeFlowDue):
        if flow_due_at is None:
            return None
        return flow_due_at - _offset(due.value, due.unit)
    assert_never(due)


class SweepReport(BaseModel):
    breaches: int = 0
    reminders: int = 0
    escalations: int = 0
    sent: int = 0
    failed: int = 0
    retried: int = 0
    skipped: bool = False


class SlaScheduler:
    """Periodic sweep over open step executions.

    Each sweep stamps breach, reminder and escalation flags inside the run's
    edit scope and only then hands notifications to the sender. A failed send
    is logged and queued for the next sweep; it never undoes the flags.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        notifier: NotificationSender,
        settings: Optional[SlaConfig] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._repository = repository
        self._notifier = notifier
        self._settings = settings or SlaConfig()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._retry: Deque[Notification] = deque()

    @property
    def pending_retries(self) -> int:
        return len(self._retry)

    async def sweep(self) -> SweepReport:
        if self._lock.locked():
            logger.warning("Previous SLA sweep still running; skipping this tick")
            return SweepReport(skipped=True)
        async with self._lock:
            now = self._clock()
            report = SweepReport()
            await self._flush_retries(report)
            for candidate in await self._repository.list_runs(status=RunStatus.IN_PROGRESS):
                outgoing = await self._sweep_run(candidate.run_id, now, report)
                for notification in outgoing:
                    await self._emit(notification, report)
            if report.breaches or report.reminders or report.escalations:
                logger.info(
                    f"SLA sweep: {report.breaches} breaches, {report.reminders} reminders, "
                    f"{report.escalations} escalations"
                )
            return report

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        """Sweep every ``sweep_interval_seconds`` until ``stop`` is set."""
        stop = stop or asyncio.Event()
        task: Optional[asyncio.Task] = None
        while not stop.is_set():
            if task is None or task.done():
                task = asyncio.create_task(self.sweep())
                task.add_done_callback(self._log_failure)
            else:
                logger.warning("Previous SLA sweep still running; skipping this tick")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._settings.sweep_interval_seconds)
            except asyncio.TimeoutError:
                pass
        if task is not None and not task.done():
            await task

    @staticmethod
    def _log_failure(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("SLA sweep failed", exc_info=task.exception())

    # ------------------------------------------------------------------
    async def _sweep_run(
        self, run_id: str, now: datetime, report: SweepReport
    ) -> list[Notification]:
        outgoing: list[Notification] = []
        try:
            async with self._repository.edit_run(run_id) as run:
                if run.status is not RunStatus.IN_PROGRESS:
                    return outgoing
                for execution in run.active_executions():
                    outgoing.extend(self._inspect(run, execution, now, report))
        except RunNotFound:
            logger.warning(f"Run {run_id} disappeared during SLA sweep")
        return outgoing

    def _inspect(
        self, run: Run, execution: StepExecution, now: datetime, report: SweepReport
    ) -> list[Notification]:
        if execution.due_at is None:
            return []
        settings = self._settings
        notifications: list[Notification] = []

        if now >= execution.due_at and execution.sla_breached_at is None:
            execution.sla_breached_at = now
            report.breaches += 1
            logger.info(f"Step {execution.step_id} of run {run.run_id} breached its SLA")

        escalate_at = execution.due_at + timedelta(hours=settings.escalation_after_hours)
        if now >= escalate_at and execution.escalated_at is None:
            execution.escalated_at = now
            report.escalations += 1
            coordinator = Identity.user(run.started_by)
            notifications.append(
                self._notification(NotificationKind.ESCALATION, run, execution, coordinator, now)
            )

        if self._reminder_due(execution, now):
            execution.reminder_count += 1
            execution.last_reminder_at = now
            report.reminders += 1
            recipients = [slot.identity for slot in execution.open_slots()]
            if not recipients and execution.assigned_to is not None:
                recipients = [execution.assigned_to]
            for recipient in recipients:
                notifications.append(
                    self._notification(NotificationKind.REMINDER, run, execution, recipient, now)
                )
        return notifications

    def _reminder_due(self, execution: StepExecution, now: datetime) -> bool:
        settings = self._settings
        if execution.reminder_count >= settings.max_reminders:
            return False
        if now < execution.due_at - timedelta(hours=settings.reminder_lead_hours):
            return False
        if execution.last_reminder_at is None:
            return True
        spacing = max(
            timedelta(hours=settings.reminder_interval_hours),
            timedelta(seconds=settings.sweep_interval_seconds),
        )
        return now - execution.last_reminder_at >= spacing

    @staticmethod
    def _notification(
        kind: NotificationKind,
        run: Run,
        execution: StepExecution,
        recipient: Identity,
        now: datetime,
    ) -> Notification:
        return Notification(
            kind=kind,
            run_id=run.run_id,
            step_id=execution.step_id,
            execution_id=execution.execution_id,
            recipient=recipient,
            due_at=execution.due_at,
            created_at=now,
        )

    async def _flush_retries(self, report: SweepReport) -> None:
        pending = list(self._retry)
        self._retry.clear()
        for notification in pending:
            report.retried += 1
            await self._emit(notification, report)

    async def _emit(self, notification: Notification, report: SweepReport) -> None:
        try:
            await asyncio.wait_for(
                self._notifier.send(notification),
                timeout=self._settings.notify_timeout_seconds,
            )
        except Exception as exc:
            report.failed += 1
            self._retry.append(notification)
            logger.warning(
                f"Failed to send {notification.kind.value} for step {notification.step_id} "
                f"of run {notification.run_id}: {exc!r}; will retry"
            )
        else:
            report.sent += 1
