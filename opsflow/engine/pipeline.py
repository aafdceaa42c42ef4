"""
Pipeline engine: dependency-ordered chains of workflow runs.

A pipeline is an ordered list of stages. Each stage names a workflow type
and the indices of the stages it depends on. Execution proceeds in waves:

1. The stage graph is validated; a cycle rejects the pipeline before any
   stage runs
2. Every pending stage whose dependencies all completed forms the next wave
3. The wave is dispatched through the orchestrator concurrently, bounded by
   ``max_workers``, and joined before the next wave is computed
4. Stages downstream of a failed or skipped stage are skipped
5. A stage paused for approval holds back its own dependents only

Execution ends when no wave can make progress. Only stages whose run
completed count towards ``stages_completed``.
"""

import asyncio
from typing import Any, Protocol

import structlog

from opsflow.engine.dependency_tracker import DependencyTracker
from opsflow.engine.exception_manager import ExceptionManager
from opsflow.engine.state_manager import StateManager
from opsflow.enums import RunStatus, Severity, StageStatus, WorkflowType
from opsflow.exceptions import ConfigurationError, DependencyBlockedError, OpsflowError, PipelineNotFoundError
from opsflow.models.domain import PipelineDefinition, PipelineExecution, Run
from opsflow.utils.clock import Clock, duration_ms, utcnow

log = structlog.get_logger(__name__)

PIPELINES = "pipelines"
EXECUTIONS = "pipeline_executions"

_RUN_TO_STAGE = {
    RunStatus.COMPLETED: StageStatus.COMPLETED,
    RunStatus.AWAITING_APPROVAL: StageStatus.AWAITING_APPROVAL,
}


class StageDispatcher(Protocol):
    """Runs one pipeline stage to its first resting state."""

    async def dispatch_stage(
        self,
        workflow_type: WorkflowType,
        pipeline_id: str,
        stage_index: int,
        upstream: dict[int, dict[str, Any]],
    ) -> Run: ...


class PipelineEngine:
    """Register, plan and execute pipelines.

    A stage that cannot be dispatched because of a configuration problem
    (e.g. no active workflow of its type) creates no run, so it is reported
    to ``exceptions`` as a ``pipeline_stage_misconfigured`` business
    exception when a manager is given.
    """

    def __init__(
        self,
        state: StateManager,
        dispatcher: StageDispatcher,
        max_workers: int = 3,
        clock: Clock = utcnow,
        exceptions: ExceptionManager | None = None,
    ) -> None:
        self.state = state
        self.dispatcher = dispatcher
        self.max_workers = max_workers
        self.clock = clock
        self.exceptions = exceptions

    async def register_pipeline(self, pipeline: PipelineDefinition) -> PipelineDefinition:
        """Validate and store a pipeline definition.

        Raises:
            PipelineCycleError: If the stage graph is not a DAG.
        """
        DependencyTracker(pipeline).validate_dependencies()
        await self.state.save(PIPELINES, pipeline.id, pipeline)
        log.info("pipeline_registered", pipeline_id=pipeline.id, stages=pipeline.stage_count)
        return pipeline

    async def list_pipelines(self) -> list[PipelineDefinition]:
        return await self.state.list_records(PIPELINES, PipelineDefinition)

    async def get_pipeline(self, pipeline_id: str) -> PipelineDefinition:
        pipeline = await self.state.get(PIPELINES, pipeline_id, PipelineDefinition)
        if pipeline is None:
            raise PipelineNotFoundError(pipeline_id)
        return pipeline

    async def get_execution_plan(self, pipeline_id: str) -> dict[str, Any]:
        """Wave layout of a pipeline, without running anything."""
        pipeline = await self.get_pipeline(pipeline_id)
        waves = DependencyTracker(pipeline).get_execution_order()
        return {
            "pipeline_id": pipeline.id,
            "name": pipeline.name,
            "stages_total": pipeline.stage_count,
            "waves": [
                [
                    {
                        "index": index,
                        "workflow_type": str(pipeline.stages[index].workflow_type),
                        "depends_on": sorted(pipeline.stages[index].depends_on),
                    }
                    for index in wave
                ]
                for wave in waves
            ],
        }

    async def execute_pipeline(self, pipeline_id: str) -> PipelineExecution:
        """Run every reachable stage of a pipeline.

        Args:
            pipeline_id: Pipeline to execute

        Returns:
            The finished execution record.

        Raises:
            PipelineNotFoundError: If the pipeline does not exist.
            PipelineCycleError: If the stage graph has a cycle.
        """
        pipeline = await self.get_pipeline(pipeline_id)
        tracker = DependencyTracker(pipeline)
        tracker.validate_dependencies()

        started_at = self.clock()
        run_ids: dict[int, int] = {}
        outputs: dict[int, dict[str, Any]] = {}
        errors: dict[int, str] = {}
        semaphore = asyncio.Semaphore(self.max_workers)

        log.info("pipeline_started", pipeline_id=pipeline.id, stages=pipeline.stage_count)

        wave_number = 0
        while True:
            self._skip_blocked(tracker, errors)
            ready = tracker.get_ready_stages()
            if not ready:
                break

            wave_number += 1
            log.info("pipeline_wave_started", pipeline_id=pipeline.id, wave=wave_number, stages=ready)
            for index in ready:
                tracker.mark(index, StageStatus.RUNNING)

            outcomes = await asyncio.gather(
                *(self._run_stage(pipeline, index, semaphore, outputs) for index in ready)
            )
            for index, (status, run, error) in zip(ready, outcomes):
                tracker.mark(index, status)
                if run is not None:
                    run_ids[index] = run.id
                    outputs[index] = run.output_data
                if error:
                    errors[index] = error

        finished_at = self.clock()
        statuses = dict(tracker.status)
        execution = await self.state.insert(
            EXECUTIONS,
            lambda record_id: PipelineExecution(
                id=record_id,
                pipeline_id=pipeline.id,
                stages_total=pipeline.stage_count,
                stages_completed=sum(1 for s in statuses.values() if s == StageStatus.COMPLETED),
                duration_ms=duration_ms(started_at, finished_at),
                stage_statuses=statuses,
                stage_run_ids=run_ids,
                stage_errors=errors,
                awaiting_approval=sorted(i for i, s in statuses.items() if s == StageStatus.AWAITING_APPROVAL),
                failed_stages=sorted(i for i, s in statuses.items() if s == StageStatus.FAILED),
                skipped_stages=sorted(i for i, s in statuses.items() if s == StageStatus.SKIPPED),
                started_at=started_at,
                completed_at=finished_at,
            ),
        )

        log.info(
            "pipeline_finished",
            pipeline_id=pipeline.id,
            execution_id=execution.id,
            stages_completed=execution.stages_completed,
            stages_total=execution.stages_total,
            awaiting_approval=execution.awaiting_approval,
            failed=execution.failed_stages,
            skipped=execution.skipped_stages,
        )
        return execution

    async def list_executions(self, pipeline_id: str | None = None, limit: int = 20) -> list[PipelineExecution]:
        executions = [
            e
            for e in await self.state.list_records(EXECUTIONS, PipelineExecution)
            if pipeline_id is None or e.pipeline_id == pipeline_id
        ]
        executions.sort(key=lambda e: e.id, reverse=True)
        return executions[:limit]

    async def _run_stage(
        self,
        pipeline: PipelineDefinition,
        index: int,
        semaphore: asyncio.Semaphore,
        outputs: dict[int, dict[str, Any]],
    ) -> tuple[StageStatus, Run | None, str | None]:
        stage = pipeline.stages[index]
        upstream = {dep: outputs.get(dep, {}) for dep in sorted(stage.depends_on)}
        async with semaphore:
            try:
                run = await self.dispatcher.dispatch_stage(stage.workflow_type, pipeline.id, index, upstream)
            except ConfigurationError as e:
                log.error(
                    "pipeline_stage_misconfigured",
                    pipeline_id=pipeline.id,
                    stage=index,
                    workflow_type=str(stage.workflow_type),
                    error=e.message,
                )
                if self.exceptions is not None:
                    await self.exceptions.raise_exception(
                        "pipeline_stage_misconfigured",
                        Severity.HIGH,
                        f"Pipeline '{pipeline.id}' stage {index} ({stage.workflow_type}): {e.message}",
                        title=f"Pipeline {pipeline.name} cannot dispatch stage {index}",
                    )
                return StageStatus.FAILED, None, e.message
            except OpsflowError as e:
                log.warning(
                    "pipeline_stage_refused",
                    pipeline_id=pipeline.id,
                    stage=index,
                    workflow_type=str(stage.workflow_type),
                    error=e.message,
                )
                return StageStatus.FAILED, None, e.message

        status = _RUN_TO_STAGE.get(run.status, StageStatus.FAILED)
        log.info("pipeline_stage_finished", pipeline_id=pipeline.id, stage=index, run_id=run.id, status=str(status))
        return status, run, run.error_message if status == StageStatus.FAILED else None

    @staticmethod
    def _skip_blocked(tracker: DependencyTracker, errors: dict[int, str]) -> None:
        # Skips propagate one level per pass, repeat until stable.
        while blocked := tracker.get_blocked_stages():
            for index, upstream in blocked.items():
                tracker.mark(index, StageStatus.SKIPPED)
                errors[index] = DependencyBlockedError(index, upstream).message
                log.info("pipeline_stage_skipped", pipeline_id=tracker.pipeline_id, stage=index, blocked_by=upstream)
