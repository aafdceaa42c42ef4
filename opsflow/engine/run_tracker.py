"""Run lifecycle tracking.

Every attempt to execute a workflow is a ``Run``. The tracker creates runs,
enforces the lifecycle below and answers the queries the control surface
needs (filtered listings, the dead-letter queue, statistics).

Lifecycle::

    queued -> running | cancelled
    running -> completed | failed | awaiting_approval | cancelled
    awaiting_approval -> completed | failed | cancelled

``completed``, ``failed`` and ``cancelled`` are terminal. A failed run is
only ever touched again to mark it dead-lettered.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog

from opsflow.engine.context import WorkflowResult
from opsflow.engine.state_manager import StateManager
from opsflow.enums import RunStatus, TriggeredBy
from opsflow.exceptions import InvalidTransitionError, RecordNotFoundError
from opsflow.models.domain import DLQ_PREFIX, Run, WorkflowDefinition
from opsflow.utils.clock import Clock, duration_ms, utcnow

log = structlog.get_logger(__name__)

RUNS = "runs"

# Error kinds the circuit breaker never counts, live or rebuilt from history.
BREAKER_EXEMPT_ERROR_KINDS = frozenset({"configuration", "interrupted"})

_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.QUEUED: {RunStatus.RUNNING, RunStatus.CANCELLED},
    RunStatus.RUNNING: {
        RunStatus.COMPLETED,
        RunStatus.FAILED,
        RunStatus.AWAITING_APPROVAL,
        RunStatus.CANCELLED,
    },
    RunStatus.AWAITING_APPROVAL: {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.COMPLETED: set(),
    RunStatus.FAILED: set(),
    RunStatus.CANCELLED: set(),
}


def make_run_number(workflow: WorkflowDefinition, run_id: int) -> str:
    """Human readable run number, e.g. ``WF-PROC-000042``."""
    prefix = str(workflow.workflow_type).replace("_", "")[:4].upper()
    return f"WF-{prefix}-{run_id:06d}"


class RunTracker:
    """Create runs and move them through their lifecycle."""

    def __init__(self, state: StateManager, clock: Clock = utcnow) -> None:
        self.state = state
        self.clock = clock

    async def create_run(
        self,
        workflow: WorkflowDefinition,
        triggered_by: TriggeredBy,
        status: RunStatus = RunStatus.RUNNING,
        attempt_number: int = 1,
        retry_of: int | None = None,
        scheduled_for: datetime | None = None,
        input_data: dict[str, Any] | None = None,
    ) -> Run:
        """Persist a new run.

        Args:
            workflow: Definition the run belongs to
            triggered_by: What caused the run
            status: ``running`` for immediate dispatch, ``queued`` for retries
            attempt_number: Position in the retry chain, starting at 1
            retry_of: Run this one retries
            scheduled_for: When a queued run becomes due
            input_data: Per-run input passed to the body

        Returns:
            The stored run.
        """
        now = self.clock()

        def build(record_id: int) -> Run:
            return Run(
                id=record_id,
                run_number=make_run_number(workflow, record_id),
                workflow_id=workflow.id,
                status=status,
                triggered_by=triggered_by,
                attempt_number=attempt_number,
                retry_of=retry_of,
                scheduled_for=scheduled_for,
                input_data=input_data or {},
                started_at=now if status == RunStatus.RUNNING else None,
                created_at=now,
            )

        run = await self.state.insert(RUNS, build)
        log.info(
            "run_created",
            run_id=run.id,
            run_number=run.run_number,
            workflow_id=workflow.id,
            status=str(run.status),
            attempt=attempt_number,
            triggered_by=str(triggered_by),
        )
        return run

    async def get(self, run_id: int) -> Run:
        run = await self.state.get(RUNS, run_id, Run)
        if run is None:
            raise RecordNotFoundError(RUNS, run_id)
        return run

    async def mark_running(self, run_id: int) -> Run:
        """Move a queued run to running when it is dispatched."""
        now = self.clock()

        def apply(run: Run) -> None:
            self._check(run, RunStatus.RUNNING)
            run.status = RunStatus.RUNNING
            run.started_at = now

        return await self.state.update(RUNS, run_id, Run, apply)

    async def complete(self, run_id: int, result: WorkflowResult) -> Run:
        now = self.clock()

        def apply(run: Run) -> None:
            self._check(run, RunStatus.COMPLETED)
            self._apply_result(run, result)
            run.status = RunStatus.COMPLETED
            run.completed_at = now
            run.duration_ms = duration_ms(run.started_at, now)

        run = await self.state.update(RUNS, run_id, Run, apply)
        log.info("run_completed", run_id=run_id, duration_ms=run.duration_ms, items=run.items_succeeded)
        return run

    async def await_approval(self, run_id: int, level: int, result: WorkflowResult) -> Run:
        """Park a run until a human decides its approval request."""

        def apply(run: Run) -> None:
            self._check(run, RunStatus.AWAITING_APPROVAL)
            self._apply_result(run, result)
            run.status = RunStatus.AWAITING_APPROVAL
            run.approval_level = level

        run = await self.state.update(RUNS, run_id, Run, apply)
        log.info("run_awaiting_approval", run_id=run_id, level=level, amount=str(run.total_value))
        return run

    async def set_approval_level(self, run_id: int, level: int) -> Run:
        def apply(run: Run) -> None:
            run.approval_level = level

        return await self.state.update(RUNS, run_id, Run, apply)

    async def fail(self, run_id: int, error_kind: str, error_message: str) -> Run:
        now = self.clock()

        def apply(run: Run) -> None:
            self._check(run, RunStatus.FAILED)
            run.status = RunStatus.FAILED
            run.error_kind = error_kind
            run.error_message = error_message
            run.completed_at = now
            run.duration_ms = duration_ms(run.started_at, now)

        run = await self.state.update(RUNS, run_id, Run, apply)
        log.warning("run_failed", run_id=run_id, error_kind=error_kind, error=error_message)
        return run

    async def cancel(self, run_id: int, error_kind: str, error_message: str) -> Run:
        now = self.clock()

        def apply(run: Run) -> None:
            self._check(run, RunStatus.CANCELLED)
            run.status = RunStatus.CANCELLED
            run.error_kind = error_kind
            run.error_message = error_message
            run.completed_at = now
            run.duration_ms = duration_ms(run.started_at, now)

        run = await self.state.update(RUNS, run_id, Run, apply)
        log.info("run_cancelled", run_id=run_id, error_kind=error_kind)
        return run

    async def dead_letter(self, run_id: int) -> Run:
        """Tag a failed run as dead-lettered."""

        def apply(run: Run) -> None:
            if run.status != RunStatus.FAILED:
                raise InvalidTransitionError("run", run.id, str(run.status), "dead_letter")
            if not run.is_dead_lettered:
                run.error_message = f"{DLQ_PREFIX}{run.error_message or 'failed'}"

        run = await self.state.update(RUNS, run_id, Run, apply)
        log.error("run_dead_lettered", run_id=run_id, workflow_id=run.workflow_id, attempt=run.attempt_number)
        return run

    async def list_runs(
        self,
        workflow_id: int | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Run]:
        """Runs matching the filter, newest first."""
        runs = [
            run
            for run in await self.all_runs()
            if (workflow_id is None or run.workflow_id == workflow_id) and (status is None or run.status == status)
        ]
        runs.sort(key=lambda r: r.id, reverse=True)
        return runs[offset : offset + limit]

    async def all_runs(self) -> list[Run]:
        return await self.state.list_records(RUNS, Run)

    async def due_retries(self, now: datetime | None = None) -> list[Run]:
        """Queued runs whose scheduled time has passed, oldest first."""
        now = now or self.clock()
        return [
            run
            for run in await self.all_runs()
            if run.status == RunStatus.QUEUED and (run.scheduled_for is None or run.scheduled_for <= now)
        ]

    async def dead_letter_queue(self, limit: int = 50) -> list[Run]:
        """Dead-lettered runs not yet re-dispatched, newest first."""
        runs = self._dead_lettered(await self.all_runs())
        runs.sort(key=lambda r: r.id, reverse=True)
        return runs[:limit]

    async def in_dead_letter_queue(self, run_id: int) -> bool:
        return any(run.id == run_id for run in self._dead_lettered(await self.all_runs()))

    @staticmethod
    def _dead_lettered(runs: list[Run]) -> list[Run]:
        redispatched = {run.retry_of for run in runs if run.retry_of is not None}
        return [run for run in runs if run.is_dead_lettered and run.id not in redispatched]

    async def runs_in_status(self, status: RunStatus) -> list[Run]:
        return [run for run in await self.all_runs() if run.status == status]

    async def recent_failure_times(self, since: datetime) -> list[datetime]:
        """Completion times of breaker-counted failures since ``since``."""
        return [
            run.completed_at
            for run in await self.all_runs()
            if run.status == RunStatus.FAILED
            and run.error_kind not in BREAKER_EXEMPT_ERROR_KINDS
            and run.completed_at is not None
            and run.completed_at >= since
        ]

    async def stats(self, workflow_id: int | None = None, since: datetime | None = None) -> dict[str, Any]:
        """Aggregate counts for the run statistics endpoint."""
        runs = [
            run
            for run in await self.all_runs()
            if (workflow_id is None or run.workflow_id == workflow_id) and (since is None or run.created_at >= since)
        ]
        durations = [run.duration_ms for run in runs if run.status == RunStatus.COMPLETED and run.duration_ms]
        total_value = sum((run.total_value for run in runs if run.total_value is not None), Decimal("0"))
        return {
            "total": len(runs),
            "completed": sum(1 for r in runs if r.status == RunStatus.COMPLETED),
            "failed": sum(1 for r in runs if r.status == RunStatus.FAILED),
            "pending": sum(
                1
                for r in runs
                if r.status in (RunStatus.QUEUED, RunStatus.RUNNING, RunStatus.AWAITING_APPROVAL)
            ),
            "cancelled": sum(1 for r in runs if r.status == RunStatus.CANCELLED),
            "dead_lettered": sum(1 for r in runs if r.is_dead_lettered),
            "avg_duration_ms": int(sum(durations) / len(durations)) if durations else 0,
            "total_value": total_value,
        }

    @staticmethod
    def _check(run: Run, target: RunStatus) -> None:
        if target not in _TRANSITIONS[run.status]:
            raise InvalidTransitionError("run", run.id, str(run.status), str(target))

    @staticmethod
    def _apply_result(run: Run, result: WorkflowResult) -> None:
        run.items_succeeded = result.items_succeeded
        run.items_failed = result.items_failed
        if result.financial_amount is not None:
            run.total_value = result.financial_amount
        if result.output_data:
            run.output_data = result.output_data
