"""Workflow registry: definitions, health counters and workflow bodies.

Definitions live in the ``workflows`` collection of the state store.
Bodies are process-local and registered per workflow type at startup.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Any

import structlog

from opsflow.engine.context import WorkflowBody
from opsflow.engine.state_manager import StateManager
from opsflow.enums import WorkflowType
from opsflow.exceptions import ConfigurationError, RecordNotFoundError, WorkflowNotFoundError
from opsflow.models.domain import WorkflowDefinition
from opsflow.utils.clock import Clock, utcnow

log = structlog.get_logger(__name__)

WORKFLOWS = "workflows"


class BodyRegistry:
    """Maps workflow types to the objects that execute them."""

    def __init__(self) -> None:
        self._bodies: dict[WorkflowType, WorkflowBody] = {}

    def register(self, workflow_type: WorkflowType, body: WorkflowBody) -> None:
        """Register or replace the body for a workflow type.

        Raises:
            ConfigurationError: If ``body`` does not provide ``execute``.
        """
        if not isinstance(body, WorkflowBody):
            raise ConfigurationError(f"Body for {workflow_type} must provide an async execute(context) method")
        if workflow_type in self._bodies:
            log.warning("workflow_body_replaced", workflow_type=str(workflow_type))
        self._bodies[workflow_type] = body

    def get(self, workflow_type: WorkflowType) -> WorkflowBody:
        """Return the body for ``workflow_type``.

        Raises:
            ConfigurationError: If no body is registered.
        """
        try:
            return self._bodies[workflow_type]
        except KeyError:
            raise ConfigurationError(f"No workflow body registered for type '{workflow_type}'") from None

    def __contains__(self, workflow_type: object) -> bool:
        return workflow_type in self._bodies

    def registered_types(self) -> list[WorkflowType]:
        return sorted(self._bodies, key=str)


class WorkflowRegistry:
    """Persistent workflow definitions plus their health counters."""

    def __init__(self, state: StateManager, clock: Clock = utcnow) -> None:
        self.state = state
        self.clock = clock

    async def create(self, **fields: Any) -> WorkflowDefinition:
        """Store a new definition.

        Args:
            **fields: WorkflowDefinition fields except ``id``.

        Raises:
            ConfigurationError: If the fields do not form a valid definition.
        """
        try:
            workflow = await self.state.insert(WORKFLOWS, lambda record_id: WorkflowDefinition(id=record_id, **fields))
        except ValueError as e:
            raise ConfigurationError(f"Invalid workflow definition: {e}") from e

        log.info(
            "workflow_registered",
            workflow_id=workflow.id,
            name=workflow.name,
            workflow_type=str(workflow.workflow_type),
            trigger_type=str(workflow.trigger_type),
        )
        return workflow

    async def get(self, workflow_id: int) -> WorkflowDefinition:
        """Return the definition or raise ``WorkflowNotFoundError``."""
        workflow = await self.state.get(WORKFLOWS, workflow_id, WorkflowDefinition)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    async def list_workflows(self, include_archived: bool = False) -> list[WorkflowDefinition]:
        workflows = await self.state.list_records(WORKFLOWS, WorkflowDefinition)
        if include_archived:
            return workflows
        return [w for w in workflows if not w.is_archived]

    async def list_dispatchable(self) -> list[WorkflowDefinition]:
        return [w for w in await self.list_workflows() if w.is_dispatchable]

    async def find_by_type(self, workflow_type: WorkflowType) -> WorkflowDefinition | None:
        """First dispatchable workflow of the given type, lowest id first."""
        for workflow in await self.list_dispatchable():
            if workflow.workflow_type == workflow_type:
                return workflow
        return None

    async def count(self) -> int:
        return await self.state.count(WORKFLOWS)

    async def toggle(self, workflow_id: int, is_active: bool) -> WorkflowDefinition:
        """Activate or deactivate a workflow.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist.
            ConfigurationError: If activating an archived workflow.
        """

        def apply(workflow: WorkflowDefinition) -> None:
            if is_active and workflow.is_archived:
                raise ConfigurationError(f"Workflow {workflow_id} is archived and cannot be activated")
            workflow.is_active = is_active

        workflow = await self._update(workflow_id, apply)
        log.info("workflow_toggled", workflow_id=workflow_id, is_active=is_active)
        return workflow

    async def archive(self, workflow_id: int) -> WorkflowDefinition:
        """Deactivate and hide a workflow. Its runs stay queryable."""

        def apply(workflow: WorkflowDefinition) -> None:
            workflow.is_active = False
            workflow.is_archived = True

        workflow = await self._update(workflow_id, apply)
        log.info("workflow_archived", workflow_id=workflow_id)
        return workflow

    async def record_outcome(self, workflow_id: int, success: bool, at: datetime | None = None) -> WorkflowDefinition:
        """Bump the success or failure counter and stamp ``last_run_at``."""
        timestamp = at or self.clock()

        def apply(workflow: WorkflowDefinition) -> None:
            if success:
                workflow.success_count += 1
            else:
                workflow.failure_count += 1
            workflow.last_run_at = timestamp

        return await self._update(workflow_id, apply)

    async def touch_last_run(self, workflow_id: int, at: datetime | None = None) -> WorkflowDefinition:
        """Stamp ``last_run_at`` without counting an outcome."""
        timestamp = at or self.clock()

        def apply(workflow: WorkflowDefinition) -> None:
            workflow.last_run_at = timestamp

        return await self._update(workflow_id, apply)

    async def set_next_run(self, workflow_id: int, next_run_at: datetime | None) -> None:
        def apply(workflow: WorkflowDefinition) -> None:
            workflow.next_run_at = next_run_at

        await self._update(workflow_id, apply)

    async def health(self, workflow_ids: Iterable[int] | None = None) -> list[dict[str, Any]]:
        """Per-workflow success/failure counts for the metrics surface."""
        wanted = set(workflow_ids) if workflow_ids is not None else None
        return [
            {
                "workflow_id": w.id,
                "name": w.name,
                "success_count": w.success_count,
                "failure_count": w.failure_count,
                "last_run_at": w.last_run_at.isoformat() if w.last_run_at else None,
            }
            for w in await self.list_workflows(include_archived=True)
            if wanted is None or w.id in wanted
        ]

    async def _update(self, workflow_id: int, apply: Any) -> WorkflowDefinition:
        try:
            return await self.state.update(WORKFLOWS, workflow_id, WorkflowDefinition, apply)
        except RecordNotFoundError:
            raise WorkflowNotFoundError(workflow_id) from None
