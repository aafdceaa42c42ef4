"""Tests for the retry and dead-letter policy."""

import random
from datetime import timedelta

import pytest

from opsflow.config.settings import RetryConfig
from opsflow.engine.retry_policy import RetryPolicy
from opsflow.engine.run_tracker import RunTracker
from opsflow.engine.state_manager import StateManager
from opsflow.enums import RetryAction, RunStatus, TriggeredBy, TriggerType, WorkflowType
from opsflow.models.domain import WorkflowDefinition
from opsflow.utils.clock import ManualClock


@pytest.fixture
def tracker(state_manager: StateManager, clock: ManualClock) -> RunTracker:
    return RunTracker(state_manager, clock)


@pytest.fixture
def policy(tracker: RunTracker, clock: ManualClock) -> RetryPolicy:
    return RetryPolicy(tracker, RetryConfig(max_attempts=3, base_delay_seconds=30, jitter_ratio=0), clock)


@pytest.fixture
def workflow() -> WorkflowDefinition:
    return WorkflowDefinition(
        id=1,
        name="Shipment Tracking",
        workflow_type=WorkflowType.SHIPMENT_TRACKING,
        trigger_type=TriggerType.MANUAL,
    )


async def _failed_run(tracker: RunTracker, workflow: WorkflowDefinition, attempt: int = 1):
    run = await tracker.create_run(workflow, TriggeredBy.MANUAL, attempt_number=attempt, input_data={"carrier": "x"})
    return await tracker.fail(run.id, "execution", "carrier API timeout")


class TestComputeDelay:
    def test_exponential_without_jitter(self, policy: RetryPolicy):
        assert [policy.compute_delay(n) for n in (1, 2, 3, 4)] == [30, 60, 120, 240]

    def test_capped_at_max(self, tracker: RunTracker):
        policy = RetryPolicy(tracker, RetryConfig(base_delay_seconds=30, max_delay_seconds=100, jitter_ratio=0))

        assert policy.compute_delay(10) == 100

    def test_per_workflow_base(self, policy: RetryPolicy):
        assert policy.compute_delay(2, base_delay=5) == 10

    def test_jitter_bounded(self, tracker: RunTracker):
        policy = RetryPolicy(tracker, RetryConfig(base_delay_seconds=100, jitter_ratio=0.1), rng=random.Random(7))

        delays = [policy.compute_delay(1) for _ in range(50)]

        assert all(100 <= d <= 110 for d in delays)
        assert len(set(delays)) > 1


class TestOnFailure:
    @pytest.mark.asyncio
    async def test_schedules_retry(
        self, policy: RetryPolicy, tracker: RunTracker, workflow: WorkflowDefinition, clock: ManualClock
    ):
        run = await _failed_run(tracker, workflow)

        decision = await policy.on_failure(run, workflow)

        assert decision.action == RetryAction.RETRY
        assert decision.next_attempt_at == clock() + timedelta(seconds=30)
        retry = await tracker.get(decision.retry_run_id)
        assert retry.status == RunStatus.QUEUED
        assert retry.attempt_number == 2
        assert retry.retry_of == run.id
        assert retry.triggered_by == TriggeredBy.RETRY
        assert retry.input_data == {"carrier": "x"}

    @pytest.mark.asyncio
    async def test_second_retry_doubles_delay(
        self, policy: RetryPolicy, tracker: RunTracker, workflow: WorkflowDefinition, clock: ManualClock
    ):
        run = await _failed_run(tracker, workflow, attempt=2)

        decision = await policy.on_failure(run, workflow)

        assert decision.next_attempt_at == clock() + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_exhausted_attempts_dead_letter(
        self, policy: RetryPolicy, tracker: RunTracker, workflow: WorkflowDefinition
    ):
        run = await _failed_run(tracker, workflow, attempt=3)

        decision = await policy.on_failure(run, workflow)

        assert decision.action == RetryAction.DEAD_LETTER
        assert (await tracker.get(run.id)).is_dead_lettered
        assert len(await tracker.all_runs()) == 1

    @pytest.mark.asyncio
    async def test_not_retryable_dead_letters_immediately(
        self, policy: RetryPolicy, tracker: RunTracker, workflow: WorkflowDefinition
    ):
        run = await _failed_run(tracker, workflow)

        decision = await policy.on_failure(run, workflow, retryable=False)

        assert decision.action == RetryAction.DEAD_LETTER
        assert [r.id for r in await tracker.dead_letter_queue()] == [run.id]

    @pytest.mark.asyncio
    async def test_workflow_max_attempts_override(
        self, policy: RetryPolicy, tracker: RunTracker, workflow: WorkflowDefinition
    ):
        single_shot = workflow.model_copy(update={"max_attempts": 1})
        run = await _failed_run(tracker, single_shot)

        decision = await policy.on_failure(run, single_shot)

        assert decision.action == RetryAction.DEAD_LETTER

    @pytest.mark.asyncio
    async def test_ignores_runs_that_are_not_failed(
        self, policy: RetryPolicy, tracker: RunTracker, workflow: WorkflowDefinition
    ):
        run = await tracker.create_run(workflow, TriggeredBy.MANUAL)

        decision = await policy.on_failure(run, workflow)

        assert decision.action == RetryAction.DEAD_LETTER
        assert (await tracker.get(run.id)).status == RunStatus.RUNNING
        assert len(await tracker.all_runs()) == 1
