"""
Retry and dead-letter policy for failed runs.

A failed run is either retried, by creating a new queued run with the next
attempt number, or dead-lettered once its workflow's attempts are used up.
Dead-lettered runs keep status ``failed`` and carry a ``[DLQ] `` prefix on
their error message; only an explicit ``retry_dlq`` brings them back.

Backoff Formula:
    delay = min(base_delay * 2 ** (attempt_number - 1), max_delay)
    delay += uniform(0, jitter_ratio * delay)

    With base_delay=30s: 30s, 60s, 120s, ... plus up to 10% jitter.
"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from opsflow.config.settings import RetryConfig
from opsflow.engine.run_tracker import RunTracker
from opsflow.enums import RetryAction, RunStatus, TriggeredBy
from opsflow.models.domain import Run, WorkflowDefinition
from opsflow.utils.clock import Clock, utcnow

log = structlog.get_logger(__name__)


@dataclass
class RetryDecision:
    """What happened to a failed run.

    Attributes:
        action: ``retry`` or ``dead_letter``
        next_attempt_at: When the retry becomes due (retry only)
        retry_run_id: The queued retry run (retry only)
    """

    action: RetryAction
    next_attempt_at: datetime | None = None
    retry_run_id: int | None = None


class RetryPolicy:
    """Decide and apply retries for failed runs."""

    def __init__(
        self,
        runs: RunTracker,
        config: RetryConfig | None = None,
        clock: Clock = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self.runs = runs
        self.config = config or RetryConfig()
        self.clock = clock
        self._rng = rng or random.Random()

    def max_attempts(self, workflow: WorkflowDefinition) -> int:
        return workflow.max_attempts or self.config.max_attempts

    def compute_delay(self, attempt_number: int, base_delay: float | None = None) -> float:
        """Seconds to wait before retrying after ``attempt_number`` failed."""
        base = self.config.base_delay_seconds if base_delay is None else base_delay
        delay = min(base * (2 ** (attempt_number - 1)), self.config.max_delay_seconds)
        if self.config.jitter_ratio:
            delay += self._rng.uniform(0, self.config.jitter_ratio * delay)
        return delay

    async def on_failure(self, run: Run, workflow: WorkflowDefinition, retryable: bool = True) -> RetryDecision:
        """Retry or dead-letter a failed run.

        Args:
            run: The run that just failed
            workflow: Its definition, for per-workflow retry settings
            retryable: False for errors that must not be retried

        Returns:
            The decision that was applied.
        """
        if run.status != RunStatus.FAILED or run.is_dead_lettered:
            log.warning("retry_skipped_run_not_retryable", run_id=run.id, status=str(run.status))
            return RetryDecision(action=RetryAction.DEAD_LETTER)

        max_attempts = self.max_attempts(workflow)
        if not retryable or run.attempt_number >= max_attempts:
            await self.runs.dead_letter(run.id)
            log.error(
                "retries_exhausted",
                run_id=run.id,
                workflow_id=workflow.id,
                attempts=run.attempt_number,
                max_attempts=max_attempts,
                retryable=retryable,
            )
            return RetryDecision(action=RetryAction.DEAD_LETTER)

        delay = self.compute_delay(run.attempt_number, workflow.retry_base_delay_seconds)
        next_attempt_at = self.clock() + timedelta(seconds=delay)
        retry_run = await self.runs.create_run(
            workflow,
            triggered_by=TriggeredBy.RETRY,
            status=RunStatus.QUEUED,
            attempt_number=run.attempt_number + 1,
            retry_of=run.id,
            scheduled_for=next_attempt_at,
            input_data=run.input_data,
        )
        log.warning(
            "retry_scheduled",
            run_id=run.id,
            retry_run_id=retry_run.id,
            attempt=retry_run.attempt_number,
            max_attempts=max_attempts,
            delay_seconds=round(delay, 2),
        )
        return RetryDecision(
            action=RetryAction.RETRY,
            next_attempt_at=next_attempt_at,
            retry_run_id=retry_run.id,
        )
