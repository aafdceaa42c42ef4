"""Tests for engine/run_tracker.py."""

from datetime import timedelta
from decimal import Decimal

import pytest

from opsflow.engine.context import WorkflowResult
from opsflow.engine.run_tracker import RunTracker, make_run_number
from opsflow.engine.state_manager import StateManager
from opsflow.enums import RunStatus, TriggeredBy, TriggerType, WorkflowType
from opsflow.exceptions import InvalidTransitionError, RecordNotFoundError
from opsflow.models.domain import DLQ_PREFIX, WorkflowDefinition
from opsflow.utils.clock import ManualClock


@pytest.fixture
def tracker(state_manager: StateManager, clock: ManualClock) -> RunTracker:
    return RunTracker(state_manager, clock)


@pytest.fixture
def workflow() -> WorkflowDefinition:
    return WorkflowDefinition(
        id=3,
        name="Procurement",
        workflow_type=WorkflowType.PROCUREMENT,
        trigger_type=TriggerType.MANUAL,
    )


def test_make_run_number(workflow: WorkflowDefinition):
    assert make_run_number(workflow, 42) == "WF-PROC-000042"

    invoice = workflow.model_copy(update={"workflow_type": WorkflowType.INVOICE_MATCHING})
    assert make_run_number(invoice, 7) == "WF-INVO-000007"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_create_running_run(self, tracker: RunTracker, workflow: WorkflowDefinition, clock: ManualClock):
        run = await tracker.create_run(workflow, TriggeredBy.MANUAL, input_data={"sku": "A-1"})

        assert run.id == 1
        assert run.status == RunStatus.RUNNING
        assert run.started_at == clock()
        assert run.input_data == {"sku": "A-1"}
        assert run.run_number == "WF-PROC-000001"

    @pytest.mark.asyncio
    async def test_complete_records_result(self, tracker: RunTracker, workflow: WorkflowDefinition, clock: ManualClock):
        run = await tracker.create_run(workflow, TriggeredBy.MANUAL)
        clock.advance(seconds=2)

        completed = await tracker.complete(
            run.id,
            WorkflowResult(items_succeeded=4, items_failed=1, financial_amount=Decimal("120.50"), output_data={"po": 9}),
        )

        assert completed.status == RunStatus.COMPLETED
        assert completed.duration_ms == 2000
        assert completed.items_succeeded == 4
        assert completed.items_failed == 1
        assert completed.total_value == Decimal("120.50")
        assert completed.output_data == {"po": 9}

    @pytest.mark.asyncio
    async def test_terminal_runs_cannot_move(self, tracker: RunTracker, workflow: WorkflowDefinition):
        run = await tracker.create_run(workflow, TriggeredBy.MANUAL)
        await tracker.complete(run.id, WorkflowResult())

        with pytest.raises(InvalidTransitionError):
            await tracker.fail(run.id, "execution", "late failure")

    @pytest.mark.asyncio
    async def test_queued_run_becomes_running(self, tracker: RunTracker, workflow: WorkflowDefinition):
        run = await tracker.create_run(workflow, TriggeredBy.RETRY, status=RunStatus.QUEUED)
        assert run.started_at is None

        started = await tracker.mark_running(run.id)

        assert started.status == RunStatus.RUNNING
        assert started.started_at is not None

    @pytest.mark.asyncio
    async def test_await_approval_then_complete(self, tracker: RunTracker, workflow: WorkflowDefinition):
        run = await tracker.create_run(workflow, TriggeredBy.MANUAL)

        paused = await tracker.await_approval(run.id, 2, WorkflowResult(financial_amount=Decimal("50000")))
        completed = await tracker.complete(run.id, WorkflowResult(financial_amount=Decimal("50000")))

        assert paused.status == RunStatus.AWAITING_APPROVAL
        assert paused.approval_level == 2
        assert completed.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel(self, tracker: RunTracker, workflow: WorkflowDefinition):
        run = await tracker.create_run(workflow, TriggeredBy.MANUAL)

        cancelled = await tracker.cancel(run.id, "approval_rejected", "Approval 1 rejected")

        assert cancelled.status == RunStatus.CANCELLED
        assert cancelled.error_kind == "approval_rejected"

    @pytest.mark.asyncio
    async def test_get_missing(self, tracker: RunTracker):
        with pytest.raises(RecordNotFoundError):
            await tracker.get(5)


class TestDeadLetter:
    @pytest.mark.asyncio
    async def test_dead_letter_prefixes_message(self, tracker: RunTracker, workflow: WorkflowDefinition):
        run = await tracker.create_run(workflow, TriggeredBy.MANUAL)
        await tracker.fail(run.id, "execution", "supplier API down")

        dead = await tracker.dead_letter(run.id)

        assert dead.error_message == f"{DLQ_PREFIX}supplier API down"
        assert dead.is_dead_lettered
        assert dead.status == RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_dead_letter_is_idempotent(self, tracker: RunTracker, workflow: WorkflowDefinition):
        run = await tracker.create_run(workflow, TriggeredBy.MANUAL)
        await tracker.fail(run.id, "execution", "boom")

        await tracker.dead_letter(run.id)
        again = await tracker.dead_letter(run.id)

        assert again.error_message == f"{DLQ_PREFIX}boom"

    @pytest.mark.asyncio
    async def test_only_failed_runs(self, tracker: RunTracker, workflow: WorkflowDefinition):
        run = await tracker.create_run(workflow, TriggeredBy.MANUAL)

        with pytest.raises(InvalidTransitionError):
            await tracker.dead_letter(run.id)

    @pytest.mark.asyncio
    async def test_queue_hides_redispatched_runs(self, tracker: RunTracker, workflow: WorkflowDefinition):
        first = await tracker.create_run(workflow, TriggeredBy.MANUAL)
        await tracker.fail(first.id, "execution", "boom")
        await tracker.dead_letter(first.id)
        second = await tracker.create_run(workflow, TriggeredBy.MANUAL)
        await tracker.fail(second.id, "execution", "boom")
        await tracker.dead_letter(second.id)

        assert [r.id for r in await tracker.dead_letter_queue()] == [second.id, first.id]

        await tracker.create_run(workflow, TriggeredBy.RETRY, retry_of=first.id)

        assert [r.id for r in await tracker.dead_letter_queue()] == [second.id]
        assert not await tracker.in_dead_letter_queue(first.id)
        assert await tracker.in_dead_letter_queue(second.id)


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_runs_filters_and_paginates(self, tracker: RunTracker, workflow: WorkflowDefinition):
        other = workflow.model_copy(update={"id": 4})
        for _ in range(3):
            await tracker.create_run(workflow, TriggeredBy.MANUAL)
        await tracker.create_run(other, TriggeredBy.MANUAL)

        mine = await tracker.list_runs(workflow_id=workflow.id)
        page = await tracker.list_runs(limit=2, offset=1)

        assert [r.id for r in mine] == [3, 2, 1]
        assert [r.id for r in page] == [3, 2]
        assert await tracker.list_runs(status=RunStatus.COMPLETED) == []

    @pytest.mark.asyncio
    async def test_due_retries(self, tracker: RunTracker, workflow: WorkflowDefinition, clock: ManualClock):
        soon = await tracker.create_run(
            workflow, TriggeredBy.RETRY, status=RunStatus.QUEUED, scheduled_for=clock() + timedelta(seconds=30)
        )
        later = await tracker.create_run(
            workflow, TriggeredBy.RETRY, status=RunStatus.QUEUED, scheduled_for=clock() + timedelta(hours=1)
        )

        assert await tracker.due_retries(clock()) == []
        due = await tracker.due_retries(clock() + timedelta(minutes=1))

        assert [r.id for r in due] == [soon.id]
        assert later.id not in [r.id for r in due]

    @pytest.mark.asyncio
    async def test_recent_failure_times(self, tracker: RunTracker, workflow: WorkflowDefinition, clock: ManualClock):
        old = await tracker.create_run(workflow, TriggeredBy.MANUAL)
        await tracker.fail(old.id, "execution", "boom")
        clock.advance(minutes=10)
        recent = await tracker.create_run(workflow, TriggeredBy.MANUAL)
        await tracker.fail(recent.id, "execution", "boom")

        times = await tracker.recent_failure_times(clock() - timedelta(minutes=5))

        assert times == [clock()]

    @pytest.mark.asyncio
    async def test_recent_failure_times_skip_exempt_kinds(
        self, tracker: RunTracker, workflow: WorkflowDefinition, clock: ManualClock
    ):
        for kind in ("configuration", "interrupted", "timeout"):
            run = await tracker.create_run(workflow, TriggeredBy.MANUAL)
            await tracker.fail(run.id, kind, "boom")

        times = await tracker.recent_failure_times(clock() - timedelta(minutes=5))

        assert times == [clock()]

    @pytest.mark.asyncio
    async def test_stats(self, tracker: RunTracker, workflow: WorkflowDefinition, clock: ManualClock):
        ok = await tracker.create_run(workflow, TriggeredBy.MANUAL)
        clock.advance(seconds=1)
        await tracker.complete(ok.id, WorkflowResult(financial_amount=Decimal("10")))
        bad = await tracker.create_run(workflow, TriggeredBy.MANUAL)
        await tracker.fail(bad.id, "execution", "boom")
        await tracker.dead_letter(bad.id)
        await tracker.create_run(workflow, TriggeredBy.RETRY, status=RunStatus.QUEUED)

        stats = await tracker.stats(workflow.id)

        assert stats["total"] == 3
        assert stats["completed"] == 1
        assert stats["failed"] == 1
        assert stats["pending"] == 1
        assert stats["dead_lettered"] == 1
        assert stats["avg_duration_ms"] == 1000
        assert stats["total_value"] == Decimal("10")
