"""
Orchestrator: the scheduling loop and dispatch boundary of opsflow.

This module ties the engine components together. The orchestrator owns the
scheduler loop, decides when workflows are dispatched, runs their bodies
under a deadline and converts every outcome into run state transitions.

Architecture:
    Each scheduler tick performs, in order:

    1. Dispatch queued retries that are due
    2. Evaluate triggers for every active workflow (cron, events,
       thresholds, continuous)
    3. Escalate approval requests whose deadline passed

    A dispatch is allowed only when the circuit breaker lets the workflow
    through, the workflow has no running run and the concurrent run limit
    is not reached. Otherwise the dispatch is skipped for this tick.

Failure Handling:
    Body failures never escape ``_run_body``: they become failed runs,
    feed the circuit breaker and go through the retry policy. Failures of
    the orchestrator's own bookkeeping (``PersistenceError``) trip the
    circuit breaker and are logged by the loop.

Example:
    >>> orchestrator = Orchestrator(OrchestratorSettings())
    >>> orchestrator.bodies.register(WorkflowType.PROCUREMENT, ProcurementBody())
    >>> await orchestrator.initialize_defaults()
    >>> await orchestrator.start()
    >>> ...
    >>> await orchestrator.stop()
"""

import asyncio
import contextlib
import random
from collections.abc import Coroutine
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog

from opsflow.config.defaults import (
    DEFAULT_EXCEPTION_RULES,
    DEFAULT_PIPELINES,
    DEFAULT_THRESHOLDS,
    DEFAULT_WORKFLOWS,
)
from opsflow.config.settings import OrchestratorSettings
from opsflow.engine.approval_gate import ApprovalGate
from opsflow.engine.circuit_breaker import CircuitBreaker
from opsflow.engine.context import ExecutionContext, WorkflowResult
from opsflow.engine.exception_manager import ExceptionManager
from opsflow.engine.pipeline import PipelineEngine
from opsflow.engine.registry import BodyRegistry, WorkflowRegistry
from opsflow.engine.retry_policy import RetryPolicy
from opsflow.engine.run_tracker import BREAKER_EXEMPT_ERROR_KINDS, RunTracker
from opsflow.engine.state_manager import StateManager
from opsflow.engine.triggers import CronSchedule, EventQueue, ThresholdMonitor, count_at_least, validate_cron
from opsflow.enums import (
    ApprovalStatus,
    ExceptionStatus,
    RetryAction,
    RunStatus,
    Severity,
    TriggeredBy,
    TriggerType,
    WorkflowType,
)
from opsflow.exceptions import (
    ApprovalRejected,
    CapacityExceededError,
    CircuitOpenError,
    ConfigurationError,
    ExecutionError,
    NotDeadLetteredError,
    OpsflowError,
    PersistenceError,
    WorkflowBusyError,
    WorkflowDisabledError,
    WorkflowTimeoutError,
)
from opsflow.models.domain import (
    ApprovalRequest,
    ApprovalThreshold,
    BusinessException,
    ExceptionRule,
    PipelineDefinition,
    PipelineExecution,
    Run,
    SupplyChainEvent,
    WorkflowDefinition,
)
from opsflow.monitoring.metrics import MetricsCollector, metrics_overview
from opsflow.utils.clock import Clock, utcnow

log = structlog.get_logger(__name__)

_REFUSALS = (CircuitOpenError, WorkflowBusyError, CapacityExceededError)


@dataclass
class OrchestratorState:
    """Runtime state of one orchestrator instance.

    Attributes:
        is_running: True while the scheduler loop is enabled
        started_at: When the loop was last started
        tick_count: Completed scheduler ticks
        last_tick_at: Reference time of the latest tick
        active: Workflow id to its running run id (0 while the run is being created)
        contexts: Run id to the execution context of in-flight runs
        tasks: Background dispatch tasks spawned by the loop
    """

    is_running: bool = False
    started_at: datetime | None = None
    tick_count: int = 0
    last_tick_at: datetime | None = None
    active: dict[int, int] = field(default_factory=dict)
    contexts: dict[int, ExecutionContext] = field(default_factory=dict)
    tasks: set[asyncio.Task[Any]] = field(default_factory=set)


class Orchestrator:
    """Schedule, dispatch and supervise workflow runs.

    The orchestrator is also the control API: every operator action
    (triggering, toggling, resolving, approving, ...) is a method here and
    the CLI is a thin shell around them.

    Attributes:
        settings: Orchestrator configuration
        store: Persistent state store
        bodies: Workflow bodies by workflow type
        runtime: Mutable loop state
        workflows: Workflow registry
        runs: Run tracker
        breaker: Fleet-wide circuit breaker
        retry_policy: Retry and dead-letter policy
        approvals: Approval gate
        exceptions: Business exception manager
        events: Event queue for event-triggered workflows
        thresholds: Threshold checks for threshold-triggered workflows
        pipelines: Pipeline engine
    """

    def __init__(
        self,
        settings: OrchestratorSettings,
        store: StateManager | None = None,
        bodies: BodyRegistry | None = None,
        runtime: OrchestratorState | None = None,
        clock: Clock = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        """Build an orchestrator and its components.

        Args:
            settings: Orchestrator configuration
            store: State store; defaults to one under ``settings.state_dir``
            bodies: Body registry; defaults to an empty one
            runtime: Loop state; defaults to a fresh ``OrchestratorState``
            clock: Time source shared by every component
            rng: Random source for retry jitter
        """
        self.settings = settings
        self.clock = clock
        self.store = store or StateManager(settings.state_dir)
        self.bodies = bodies or BodyRegistry()
        self.runtime = runtime or OrchestratorState()

        self.workflows = WorkflowRegistry(self.store, clock)
        self.runs = RunTracker(self.store, clock)
        self.breaker = CircuitBreaker(
            failure_threshold=settings.circuit_breaker.failure_threshold,
            window_seconds=settings.circuit_breaker.window_seconds,
            cooldown_seconds=settings.circuit_breaker.cooldown_seconds,
            clock=clock,
        )
        self.retry_policy = RetryPolicy(self.runs, settings.retry, clock, rng)
        self.approvals = ApprovalGate(self.store, settings.approval, clock)
        self.exceptions = ExceptionManager(self.store, clock)
        self.events = EventQueue(self.store, clock)
        self.thresholds = ThresholdMonitor(clock)
        self.pipelines = PipelineEngine(
            self.store, self, settings.pipeline.max_workers, clock, exceptions=self.exceptions
        )

        self.thresholds.register("pending_approvals", count_at_least(self.approvals.pending_count))
        self.thresholds.register("exception_count", count_at_least(self.exceptions.open_count))

        self._active_lock = asyncio.Lock()
        self._loop_task: asyncio.Task[None] | None = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Recover persisted state and start the scheduler loop."""
        if self.runtime.is_running:
            log.warning("orchestrator_already_running")
            return

        await self.recover()
        self.runtime.is_running = True
        self.runtime.started_at = self.clock()
        self._loop_task = asyncio.create_task(self._run_loop())
        MetricsCollector.set_system_info(
            tick_interval_seconds=self.settings.scheduler.tick_interval_seconds,
            max_concurrent_runs=self.settings.scheduler.max_concurrent_runs,
        )
        log.info("orchestrator_started", tick_interval=self.settings.scheduler.tick_interval_seconds)

    async def stop(self) -> None:
        """Stop the loop and wind down in-flight runs.

        In-flight bodies are signalled through their cancellation event and
        given ``shutdown_grace_seconds`` to finish. Whatever is still
        running afterwards is cancelled and its run ends ``cancelled``.
        """
        was_running = self.runtime.is_running
        self.runtime.is_running = False

        if self._loop_task is not None:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None

        for context in self.runtime.contexts.values():
            context.cancel_event.set()

        pending = set(self.runtime.tasks)
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=self.settings.scheduler.shutdown_grace_seconds)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
                log.warning("runs_cancelled_on_shutdown", count=len(still_running))

        if was_running:
            log.info("orchestrator_stopped", ticks=self.runtime.tick_count)

    async def recover(self) -> None:
        """Rebuild runtime state from persisted run history.

        The breaker window is restored from recent failures first. Runs left
        ``running`` by a previous process are then failed as interrupted and
        handed to the retry policy without feeding the breaker.
        """
        await self.recover_breaker()

        orphaned = [
            run
            for run in await self.runs.runs_in_status(RunStatus.RUNNING)
            if run.id not in self.runtime.active.values()
        ]
        for run in orphaned:
            workflow = await self.workflows.get(run.workflow_id)
            failed = await self.runs.fail(run.id, "interrupted", "Run interrupted by orchestrator restart")
            await self.workflows.record_outcome(workflow.id, success=False)
            await self.retry_policy.on_failure(failed, workflow)

        if orphaned:
            log.warning("interrupted_runs_recovered", count=len(orphaned))

    async def recover_breaker(self) -> None:
        """Restore the breaker's failure window from recent failed runs."""
        window = timedelta(seconds=self.settings.circuit_breaker.window_seconds)
        self.breaker.rebuild(await self.runs.recent_failure_times(self.clock() - window))

    async def _run_loop(self) -> None:
        interval = self.settings.scheduler.tick_interval_seconds
        while self.runtime.is_running:
            try:
                await self.tick()
            except PersistenceError as e:
                await self.breaker.trip(f"bookkeeping failure: {e.message}")
                log.error("scheduler_tick_persistence_failed", error=e.message, exc_info=True)
            except OpsflowError as e:
                log.error("scheduler_tick_failed", error=e.message, exc_info=True)
            await asyncio.sleep(interval)

    async def tick(self, now: datetime | None = None) -> None:
        """Run one scheduler iteration.

        Dispatches are spawned as background tasks; use ``drain()`` to wait
        for them.
        """
        now = now or self.clock()
        self.runtime.tick_count += 1
        self.runtime.last_tick_at = now

        await self._dispatch_due_retries(now)
        await self._evaluate_triggers(now)
        await self._check_approval_escalations(now)

        MetricsCollector.update_breaker_state(str(self.breaker.state))
        log.debug("scheduler_tick", tick=self.runtime.tick_count, active=len(self.runtime.active))

    async def drain(self) -> None:
        """Wait until every background dispatch has finished."""
        while self.runtime.tasks:
            await asyncio.gather(*list(self.runtime.tasks), return_exceptions=True)

    async def status(self) -> dict[str, Any]:
        return {
            "is_running": self.runtime.is_running,
            "started_at": self.runtime.started_at.isoformat() if self.runtime.started_at else None,
            "tick_count": self.runtime.tick_count,
            "active_workflows": len(self.runtime.active),
            "active_runs": dict(self.runtime.active),
            "pending_approvals": await self.approvals.pending_count(),
            "open_exceptions": await self.exceptions.open_count(),
            "circuit_breaker": self.breaker.snapshot(),
        }

    # =========================================================================
    # Scheduler tick
    # =========================================================================

    async def _dispatch_due_retries(self, now: datetime) -> None:
        for run in await self.runs.due_retries(now):
            workflow = await self.workflows.get(run.workflow_id)
            if not workflow.is_dispatchable:
                await self.runs.cancel(run.id, "workflow_disabled", f"Workflow {workflow.id} was disabled")
                continue
            if await self._try_acquire(workflow):
                self._spawn(self._execute(workflow, TriggeredBy.RETRY, queued_run=run))

    async def _evaluate_triggers(self, now: datetime) -> None:
        workflows = await self.workflows.list_dispatchable()
        waiting_retry = {run.workflow_id for run in await self.runs.runs_in_status(RunStatus.QUEUED)}
        events = await self.events.pending()

        for workflow in workflows:
            if workflow.id in waiting_retry:
                continue
            try:
                trigger = await self._due_trigger(workflow, now, events)
            except ConfigurationError as e:
                log.warning("trigger_evaluation_failed", workflow_id=workflow.id, error=e.message)
                continue
            if trigger is None:
                continue

            triggered_by, input_data = trigger
            if await self._try_acquire(workflow):
                self._spawn(self._execute(workflow, triggered_by, input_data=input_data))

        for event in events:
            await self.events.mark_processed(event.id)

    async def _due_trigger(
        self,
        workflow: WorkflowDefinition,
        now: datetime,
        events: list[SupplyChainEvent],
    ) -> tuple[TriggeredBy, dict[str, Any]] | None:
        if workflow.trigger_type == TriggerType.SCHEDULED:
            schedule = CronSchedule(workflow.cron_schedule or "")
            if workflow.next_run_at is None:
                await self.workflows.set_next_run(workflow.id, schedule.next_after(now))
                return None
            if workflow.next_run_at > now:
                return None
            # Advance even if the dispatch is refused: missed slots are skipped, not queued.
            await self.workflows.set_next_run(workflow.id, schedule.next_after(now))
            return TriggeredBy.SCHEDULED, {"scheduled_for": workflow.next_run_at.isoformat()}

        if workflow.trigger_type == TriggerType.EVENT:
            matched = [e for e in events if e.event_type in workflow.trigger_events]
            if not matched:
                return None
            return TriggeredBy.EVENT, {
                "events": [{"id": e.id, "event_type": e.event_type, "payload": e.payload} for e in matched]
            }

        if workflow.trigger_type == TriggerType.THRESHOLD:
            reading = await self.thresholds.evaluate(workflow)
            if reading is None:
                return None
            return TriggeredBy.THRESHOLD, {"threshold": reading}

        if workflow.trigger_type == TriggerType.CONTINUOUS:
            return TriggeredBy.SCHEDULED, {}

        return None

    async def _check_approval_escalations(self, now: datetime) -> None:
        for request in await self.approvals.check_escalations(now):
            await self.runs.set_approval_level(request.run_id, request.level)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def _acquire(self, workflow: WorkflowDefinition) -> None:
        """Reserve the workflow's run slot or raise the refusal reason.

        The check-and-set happens under one lock before any run is created.
        The breaker is asked last so a half-open probe slot is only taken
        when the dispatch will happen.
        """
        async with self._active_lock:
            if workflow.id in self.runtime.active:
                MetricsCollector.record_refusal("busy")
                raise WorkflowBusyError(workflow.id)
            limit = self.settings.scheduler.max_concurrent_runs
            if len(self.runtime.active) >= limit:
                MetricsCollector.record_refusal("capacity")
                raise CapacityExceededError(limit)
            if not await self.breaker.allow(workflow.id):
                MetricsCollector.record_refusal("circuit_open")
                raise CircuitOpenError(f"Circuit breaker is {self.breaker.state}; workflow {workflow.id} refused")
            self.runtime.active[workflow.id] = 0
            MetricsCollector.update_active_runs(len(self.runtime.active))

    async def _try_acquire(self, workflow: WorkflowDefinition) -> bool:
        try:
            await self._acquire(workflow)
        except _REFUSALS as e:
            log.debug("dispatch_skipped", workflow_id=workflow.id, reason=e.message)
            return False
        return True

    async def _release(self, workflow_id: int) -> None:
        async with self._active_lock:
            self.runtime.active.pop(workflow_id, None)
            MetricsCollector.update_active_runs(len(self.runtime.active))

    def _spawn(self, coro: Coroutine[Any, Any, Run]) -> None:
        task = asyncio.create_task(self._guarded(coro))
        self.runtime.tasks.add(task)
        task.add_done_callback(self.runtime.tasks.discard)

    async def _guarded(self, coro: Coroutine[Any, Any, Run]) -> None:
        try:
            await coro
        except OpsflowError as e:
            log.error("background_dispatch_failed", error=e.message, exc_info=True)

    async def _execute(
        self,
        workflow: WorkflowDefinition,
        triggered_by: TriggeredBy,
        input_data: dict[str, Any] | None = None,
        queued_run: Run | None = None,
        attempt_number: int = 1,
        retry_of: int | None = None,
    ) -> Run:
        """Create or start the run for a reserved slot and execute it.

        The caller must already hold the workflow's slot from ``_acquire``.
        A ``PersistenceError`` trips the circuit breaker before propagating.
        """
        try:
            return await self._execute_reserved(workflow, triggered_by, input_data, queued_run, attempt_number, retry_of)
        except PersistenceError as e:
            await self.breaker.trip(f"bookkeeping failure: {e.message}")
            raise

    async def _execute_reserved(
        self,
        workflow: WorkflowDefinition,
        triggered_by: TriggeredBy,
        input_data: dict[str, Any] | None,
        queued_run: Run | None,
        attempt_number: int,
        retry_of: int | None,
    ) -> Run:
        try:
            if queued_run is not None:
                run = await self.runs.mark_running(queued_run.id)
            else:
                run = await self.runs.create_run(
                    workflow,
                    triggered_by,
                    attempt_number=attempt_number,
                    retry_of=retry_of,
                    input_data=input_data,
                )
        except OpsflowError:
            await self.breaker.release(workflow.id)
            await self._release(workflow.id)
            raise

        self.runtime.active[workflow.id] = run.id
        context = ExecutionContext(
            workflow_id=workflow.id,
            workflow_type=workflow.workflow_type,
            run_id=run.id,
            attempt_number=run.attempt_number,
            parameters=dict(workflow.parameters),
            input_data=dict(run.input_data),
        )
        self.runtime.contexts[run.id] = context
        structlog.contextvars.bind_contextvars(run_id=run.id, workflow_id=workflow.id)
        try:
            return await self._run_body(workflow, run, context)
        finally:
            structlog.contextvars.unbind_contextvars("run_id", "workflow_id")
            self.runtime.contexts.pop(run.id, None)
            await self._release(workflow.id)

    async def _run_body(self, workflow: WorkflowDefinition, run: Run, context: ExecutionContext) -> Run:
        timeout = workflow.timeout_seconds or self.settings.scheduler.default_timeout_seconds
        started = self.clock()

        try:
            body = self.bodies.get(workflow.workflow_type)
            log.info("workflow_body_started", workflow_type=str(workflow.workflow_type), attempt=run.attempt_number)
            result = WorkflowResult.coerce(await asyncio.wait_for(body.execute(context), timeout=timeout))
        except asyncio.CancelledError:
            await self.breaker.release(workflow.id)
            await self.runs.cancel(run.id, "cancelled", "Run cancelled during shutdown")
            MetricsCollector.record_run(str(workflow.workflow_type), "cancelled")
            raise
        except ConfigurationError as e:
            await self.breaker.release(workflow.id)
            log.error("workflow_configuration_error", error=e.message)
            return await self._handle_failure(
                workflow, run, "configuration", e.message, retryable=False
            )
        except TimeoutError:
            error = WorkflowTimeoutError(
                f"Workflow body exceeded {timeout:g}s deadline",
                timeout_seconds=timeout,
                run_id=run.id,
                workflow_id=workflow.id,
            )
            return await self._handle_failure(workflow, run, "timeout", error.message)
        except Exception as e:
            if context.cancelled:
                await self.breaker.release(workflow.id)
                MetricsCollector.record_run(str(workflow.workflow_type), "cancelled")
                return await self.runs.cancel(run.id, "cancelled", f"Run stopped during shutdown: {e}")
            error = e if isinstance(e, ExecutionError) else ExecutionError(str(e) or type(e).__name__, run.id, workflow.id)
            log.warning("workflow_body_failed", error=error.message, exc_info=True)
            return await self._handle_failure(workflow, run, "execution", error.message)

        return await self._handle_success(workflow, run, result, (self.clock() - started).total_seconds())

    async def _handle_success(
        self,
        workflow: WorkflowDefinition,
        run: Run,
        result: WorkflowResult,
        elapsed_seconds: float,
    ) -> Run:
        if workflow.requires_approval and result.financial_amount is not None:
            decision = await self.approvals.submit(
                run,
                result.financial_amount,
                result.entity_type or workflow.approval_entity_type,
                workflow,
            )
            if decision.request is not None:
                run = await self.runs.await_approval(run.id, decision.request.level, result)
                MetricsCollector.record_approval_request(decision.request.level)
            else:
                run = await self.runs.complete(run.id, result)
        else:
            run = await self.runs.complete(run.id, result)

        await self.breaker.record_success(workflow.id)
        await self._forward_exceptions(result, run.id)
        if run.status == RunStatus.COMPLETED:
            await self.workflows.record_outcome(workflow.id, success=True)
            await self.events.emit(f"{workflow.workflow_type}_completed", {"run_id": run.id, "workflow_id": workflow.id})
        else:
            # Paused runs are counted once their approval is decided
            await self.workflows.touch_last_run(workflow.id)

        MetricsCollector.record_run(str(workflow.workflow_type), str(run.status), elapsed_seconds)
        return run

    async def _handle_failure(
        self,
        workflow: WorkflowDefinition,
        run: Run,
        error_kind: str,
        message: str,
        retryable: bool = True,
    ) -> Run:
        failed = await self.runs.fail(run.id, error_kind, message)
        await self.workflows.record_outcome(workflow.id, success=False)
        if error_kind not in BREAKER_EXEMPT_ERROR_KINDS:
            await self.breaker.record_failure(workflow.id)

        decision = await self.retry_policy.on_failure(failed, workflow, retryable=retryable)
        MetricsCollector.record_run(str(workflow.workflow_type), "failed")
        if decision.action == RetryAction.RETRY:
            MetricsCollector.record_retry(str(workflow.workflow_type))
            return failed

        MetricsCollector.record_dead_letter(str(workflow.workflow_type))
        await self.events.emit("workflow_dead_lettered", {"run_id": run.id, "workflow_id": workflow.id})
        return await self.runs.get(run.id)

    async def _forward_exceptions(self, result: WorkflowResult, run_id: int) -> None:
        for raised in result.raised_exceptions:
            await self.exceptions.raise_exception(
                raised.exception_type,
                raised.severity,
                raised.description,
                run_id=run_id,
                financial_impact=raised.financial_impact,
                title=raised.title,
            )
            MetricsCollector.record_exception(str(raised.severity))

    # =========================================================================
    # Control API: workflows and runs
    # =========================================================================

    async def trigger_workflow(
        self,
        workflow_id: int,
        input_data: dict[str, Any] | None = None,
        triggered_by: TriggeredBy = TriggeredBy.MANUAL,
    ) -> Run:
        """Run a workflow now, regardless of its trigger type.

        Returns:
            The run in its resting state (completed, failed, awaiting_approval
            or cancelled).

        Raises:
            WorkflowNotFoundError: Unknown workflow.
            WorkflowDisabledError: Workflow inactive or archived.
            CircuitOpenError: Breaker refused the dispatch.
            WorkflowBusyError: Workflow already has a running run.
            CapacityExceededError: Concurrent run limit reached.
        """
        workflow = await self.workflows.get(workflow_id)
        if not workflow.is_dispatchable:
            raise WorkflowDisabledError(workflow.id, workflow.name)
        await self._acquire(workflow)
        return await self._execute(workflow, triggered_by, input_data=input_data)

    async def dispatch_stage(
        self,
        workflow_type: WorkflowType,
        pipeline_id: str,
        stage_index: int,
        upstream: dict[int, dict[str, Any]],
    ) -> Run:
        """Run the active workflow of ``workflow_type`` as a pipeline stage."""
        workflow = await self.workflows.find_by_type(workflow_type)
        if workflow is None:
            raise ConfigurationError(f"No active workflow of type '{workflow_type}'")
        await self._acquire(workflow)
        return await self._execute(
            workflow,
            TriggeredBy.PIPELINE,
            input_data={
                "pipeline_id": pipeline_id,
                "stage_index": stage_index,
                "upstream": {str(index): output for index, output in upstream.items()},
            },
        )

    async def list_workflows(self, include_archived: bool = False) -> list[WorkflowDefinition]:
        return await self.workflows.list_workflows(include_archived)

    async def create_workflow(self, **fields: Any) -> WorkflowDefinition:
        """Register a workflow definition, validating its cron schedule."""
        if fields.get("cron_schedule"):
            validate_cron(fields["cron_schedule"])
        return await self.workflows.create(**fields)

    async def toggle_workflow(self, workflow_id: int, is_active: bool) -> WorkflowDefinition:
        return await self.workflows.toggle(workflow_id, is_active)

    async def archive_workflow(self, workflow_id: int) -> WorkflowDefinition:
        return await self.workflows.archive(workflow_id)

    async def list_runs(
        self,
        workflow_id: int | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Run]:
        return await self.runs.list_runs(workflow_id, status, limit, offset)

    async def get_run(self, run_id: int) -> Run:
        return await self.runs.get(run_id)

    async def run_stats(self, workflow_id: int | None = None, days: int | None = None) -> dict[str, Any]:
        since = self.clock() - timedelta(days=days) if days else None
        return await self.runs.stats(workflow_id, since)

    async def list_dead_letter_queue(self, limit: int = 50) -> list[Run]:
        return await self.runs.dead_letter_queue(limit)

    async def retry_dlq(self, run_id: int) -> Run:
        """Re-dispatch a dead-lettered run as a fresh attempt 1.

        Raises:
            NotDeadLetteredError: If the run is not in the dead-letter queue.
            CircuitOpenError: If the breaker refuses the dispatch.
        """
        run = await self.runs.get(run_id)
        if not await self.runs.in_dead_letter_queue(run_id):
            raise NotDeadLetteredError(run_id)

        workflow = await self.workflows.get(run.workflow_id)
        if not workflow.is_dispatchable:
            raise WorkflowDisabledError(workflow.id, workflow.name)
        await self._acquire(workflow)
        log.info("dlq_retry_dispatched", run_id=run_id, workflow_id=workflow.id)
        return await self._execute(
            workflow,
            TriggeredBy.RETRY,
            input_data=run.input_data,
            attempt_number=1,
            retry_of=run.id,
        )

    # =========================================================================
    # Control API: pipelines
    # =========================================================================

    async def list_pipelines(self) -> list[PipelineDefinition]:
        return await self.pipelines.list_pipelines()

    async def get_execution_plan(self, pipeline_id: str) -> dict[str, Any]:
        return await self.pipelines.get_execution_plan(pipeline_id)

    async def execute_pipeline(self, pipeline_id: str) -> PipelineExecution:
        execution = await self.pipelines.execute_pipeline(pipeline_id)
        MetricsCollector.record_pipeline_execution(pipeline_id, execution.succeeded)
        return execution

    # =========================================================================
    # Control API: approvals
    # =========================================================================

    async def list_approvals(self, status: ApprovalStatus | None = None) -> list[ApprovalRequest]:
        return await self.approvals.list_requests(status)

    async def decide_approval(
        self,
        approval_id: int,
        approved: bool,
        decided_by: str,
        notes: str | None = None,
    ) -> Run:
        """Apply a human decision to an approval request and its run.

        Approval resumes the run: the body's ``resume`` is called when it
        has one, then the run completes. Rejection cancels the run; it is
        never retried.
        """
        request = await self.approvals.decide(approval_id, approved, decided_by, notes)
        run = await self.runs.get(request.run_id)
        workflow = await self.workflows.get(run.workflow_id)

        if not approved:
            rejection = ApprovalRejected(request.id, notes)
            log.info("run_rejected", run_id=run.id, approval_id=request.id)
            return await self.runs.cancel(run.id, "approval_rejected", rejection.message)

        resume = None
        if workflow.workflow_type in self.bodies:
            resume = getattr(self.bodies.get(workflow.workflow_type), "resume", None)

        if resume is None:
            result = WorkflowResult(
                items_succeeded=run.items_succeeded,
                items_failed=run.items_failed,
                financial_amount=run.total_value,
                output_data=run.output_data,
            )
        else:
            context = ExecutionContext(
                workflow_id=workflow.id,
                workflow_type=workflow.workflow_type,
                run_id=run.id,
                attempt_number=run.attempt_number,
                parameters=dict(workflow.parameters),
                input_data=dict(run.input_data),
                approval=request,
            )
            timeout = workflow.timeout_seconds or self.settings.scheduler.default_timeout_seconds
            try:
                result = WorkflowResult.coerce(await asyncio.wait_for(resume(context), timeout=timeout))
            except Exception as e:
                message = f"Resume after approval failed: {str(e) or type(e).__name__}"
                log.warning("workflow_resume_failed", run_id=run.id, error=message, exc_info=True)
                return await self._handle_failure(workflow, run, "resume", message, retryable=False)

        run = await self.runs.complete(run.id, result)
        await self.workflows.record_outcome(workflow.id, success=True)
        await self._forward_exceptions(result, run.id)
        await self.events.emit(
            "approval_completed",
            {"approval_id": request.id, "run_id": run.id, "workflow_id": workflow.id, "amount": str(request.amount)},
        )
        return run

    async def get_thresholds(self) -> list[ApprovalThreshold]:
        return await self.approvals.list_thresholds()

    async def update_threshold(self, entity_type: str, **fields: Any) -> ApprovalThreshold:
        return await self.approvals.set_threshold(entity_type, **fields)

    # =========================================================================
    # Control API: exceptions and events
    # =========================================================================

    async def list_exceptions(
        self,
        status: ExceptionStatus | None = None,
        severity: Severity | None = None,
        limit: int = 50,
    ) -> list[BusinessException]:
        return await self.exceptions.list_exceptions(status, severity, limit)

    async def resolve_exception(self, exception_id: int, action: str, notes: str | None = None) -> BusinessException:
        return await self.exceptions.resolve(exception_id, action, notes)

    async def escalate_exception(self, exception_id: int) -> BusinessException:
        return await self.exceptions.escalate(exception_id)

    async def ignore_exception(self, exception_id: int, notes: str | None = None) -> BusinessException:
        return await self.exceptions.ignore(exception_id, notes)

    async def get_exception_rules(self) -> list[ExceptionRule]:
        return await self.exceptions.list_rules()

    async def create_exception_rule(self, **fields: Any) -> ExceptionRule:
        return await self.exceptions.create_rule(**fields)

    async def emit_event(self, event_type: str, payload: dict[str, Any] | None = None) -> SupplyChainEvent:
        return await self.events.emit(event_type, payload)

    async def list_events(self, event_type: str | None = None, limit: int = 50) -> list[SupplyChainEvent]:
        return await self.events.list_events(event_type, limit)

    async def metrics_overview(self, days: int = 7) -> dict[str, Any]:
        overview = metrics_overview(await self.runs.all_runs(), self.clock(), days)
        overview["workflows"] = await self.workflows.health()
        return overview

    # =========================================================================
    # Defaults
    # =========================================================================

    async def initialize_defaults(self) -> dict[str, int]:
        """Seed built-in workflows, thresholds, rules and pipelines.

        Only missing records are created, so calling this twice is safe.

        Returns:
            How many records of each kind were created.
        """
        created = {"workflows": 0, "thresholds": 0, "exception_rules": 0, "pipelines": 0}

        existing_types = {w.workflow_type for w in await self.workflows.list_workflows(include_archived=True)}
        for definition in DEFAULT_WORKFLOWS:
            if definition["workflow_type"] not in existing_types:
                await self.workflows.create(**definition)
                created["workflows"] += 1

        existing_entities = {t.entity_type for t in await self.approvals.list_thresholds()}
        for threshold in DEFAULT_THRESHOLDS:
            if threshold["entity_type"] not in existing_entities:
                fields = {k: v for k, v in threshold.items() if k != "entity_type"}
                await self.approvals.set_threshold(threshold["entity_type"], **fields)
                created["thresholds"] += 1

        if not await self.exceptions.list_rules():
            for rule in DEFAULT_EXCEPTION_RULES:
                await self.exceptions.create_rule(**rule)
                created["exception_rules"] += 1

        existing_pipelines = {p.id for p in await self.pipelines.list_pipelines()}
        for pipeline in DEFAULT_PIPELINES:
            if pipeline.id not in existing_pipelines:
                await self.pipelines.register_pipeline(pipeline)
                created["pipelines"] += 1

        log.info("defaults_initialized", **created)
        return created
