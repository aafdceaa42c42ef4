"""Custom exception hierarchy for the opsflow orchestration engine.

Failures inside a workflow body never escape the dispatch boundary: they
are converted into run state transitions. The classes below let callers
tell those conversions apart and let the control surface report precise
reasons when it refuses to act.

Exception Hierarchy:
    OpsflowError (base)
    ├── ConfigurationError
    │   ├── WorkflowNotFoundError
    │   ├── WorkflowDisabledError
    │   ├── PipelineNotFoundError
    │   └── PipelineCycleError
    ├── ExecutionError
    │   └── WorkflowTimeoutError
    ├── DependencyBlockedError
    ├── ApprovalRejected
    ├── ApprovalStateError
    ├── CircuitOpenError
    ├── WorkflowBusyError
    ├── CapacityExceededError
    ├── NotDeadLetteredError
    ├── InvalidTransitionError
    ├── RecordNotFoundError
    └── PersistenceError

Example Usage:
    >>> from opsflow.exceptions import CircuitOpenError
    >>> try:
    ...     await orchestrator.trigger_workflow(3)
    ... except CircuitOpenError as e:
    ...     print(e.message)
"""


class OpsflowError(Exception):
    """Base exception for all opsflow errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


# =============================================================================
# Configuration errors
# =============================================================================


class ConfigurationError(OpsflowError):
    """Invalid workflow, pipeline or settings configuration.

    Fatal to the dispatch that hit it. A run that fails with this error is
    dead-lettered straight away instead of being retried.
    """

    pass


class WorkflowNotFoundError(ConfigurationError):
    """No workflow definition exists for the requested id."""

    def __init__(self, workflow_id: int) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} not found")


class WorkflowDisabledError(ConfigurationError):
    """The workflow exists but is inactive or archived."""

    def __init__(self, workflow_id: int, name: str | None = None) -> None:
        self.workflow_id = workflow_id
        label = f"'{name}' ({workflow_id})" if name else str(workflow_id)
        super().__init__(f"Workflow {label} is disabled")


class PipelineNotFoundError(ConfigurationError):
    """No pipeline definition exists for the requested id."""

    def __init__(self, pipeline_id: str) -> None:
        self.pipeline_id = pipeline_id
        super().__init__(f"Pipeline '{pipeline_id}' not found")


class PipelineCycleError(ConfigurationError):
    """Pipeline stage graph has a cycle or references a missing stage."""

    pass


# =============================================================================
# Execution errors
# =============================================================================


class ExecutionError(OpsflowError):
    """A workflow body raised or returned a failure.

    Retried according to the retry policy.

    Attributes:
        message: Human-readable error description
        run_id: Run that failed, if known
        workflow_id: Workflow that failed, if known
    """

    def __init__(
        self,
        message: str,
        run_id: int | None = None,
        workflow_id: int | None = None,
    ) -> None:
        self.run_id = run_id
        self.workflow_id = workflow_id
        super().__init__(message)


class WorkflowTimeoutError(ExecutionError):
    """The workflow body exceeded its deadline.

    Attributes:
        timeout_seconds: The deadline that was exceeded
    """

    def __init__(
        self,
        message: str,
        timeout_seconds: float,
        run_id: int | None = None,
        workflow_id: int | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(message, run_id=run_id, workflow_id=workflow_id)


class DependencyBlockedError(OpsflowError):
    """A pipeline stage was skipped because an upstream stage failed.

    Attributes:
        stage_index: The skipped stage
        blocked_by: The failed upstream stage
    """

    def __init__(self, stage_index: int, blocked_by: int) -> None:
        self.stage_index = stage_index
        self.blocked_by = blocked_by
        super().__init__(f"Stage {stage_index} skipped: upstream stage {blocked_by} did not complete")


# =============================================================================
# Approval errors
# =============================================================================


class ApprovalRejected(OpsflowError):
    """A human rejected the approval request. Terminal, never retried."""

    def __init__(self, approval_id: int, reason: str | None = None) -> None:
        self.approval_id = approval_id
        self.reason = reason
        message = f"Approval {approval_id} rejected"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ApprovalStateError(OpsflowError):
    """An approval request cannot accept the requested decision."""

    pass


# =============================================================================
# Dispatch refusals
# =============================================================================


class CircuitOpenError(OpsflowError):
    """Dispatch refused because the circuit breaker is open."""

    pass


class WorkflowBusyError(OpsflowError):
    """Dispatch refused because the workflow already has a running run."""

    def __init__(self, workflow_id: int) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} already has a running run")


class CapacityExceededError(OpsflowError):
    """Dispatch refused because the concurrent run limit is reached."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Concurrent run limit of {limit} reached")


# =============================================================================
# Record and state errors
# =============================================================================


class NotDeadLetteredError(OpsflowError):
    """A DLQ retry was requested for a run that is not dead-lettered."""

    def __init__(self, run_id: int) -> None:
        self.run_id = run_id
        super().__init__(f"Run {run_id} is not in the dead-letter queue")


class InvalidTransitionError(OpsflowError):
    """A record was asked to move to a status its lifecycle forbids."""

    def __init__(self, entity: str, entity_id: int, current: str, target: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {entity} {entity_id} from '{current}' to '{target}'")


class RecordNotFoundError(OpsflowError):
    """A persisted record does not exist."""

    def __init__(self, collection: str, record_id: int | str) -> None:
        self.collection = collection
        self.record_id = record_id
        super().__init__(f"No record {record_id} in '{collection}'")


class PersistenceError(OpsflowError):
    """The state store could not be read or written.

    Raised for the orchestrator's own bookkeeping. Trips the circuit breaker.
    """

    pass
