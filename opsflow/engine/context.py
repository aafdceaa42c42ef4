"""Execution contract between the orchestrator and workflow bodies.

A workflow body is any object with an async ``execute(context)`` method.
Bodies that gate on approval may also provide ``resume(context)``, which is
called once a human approves the paused run. The orchestrator never looks
inside a body; it only reads the returned ``WorkflowResult``.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

from opsflow.enums import Severity, WorkflowType
from opsflow.exceptions import ExecutionError
from opsflow.models.domain import ApprovalRequest


@dataclass
class ExecutionContext:
    """Context handed to a workflow body for one run.

    Attributes:
        workflow_id: Definition being executed
        workflow_type: Type used to select the body
        run_id: Run record for this attempt
        attempt_number: 1 for the first attempt, higher for retries
        parameters: Static parameters from the workflow definition
        input_data: Per-run input (event payload, threshold reading, ...)
        cancel_event: Set when the orchestrator is shutting down
        approval: The approval request being resumed, if any
    """

    workflow_id: int
    workflow_type: WorkflowType
    run_id: int
    attempt_number: int = 1
    parameters: dict[str, Any] = field(default_factory=dict)
    input_data: dict[str, Any] = field(default_factory=dict)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    approval: ApprovalRequest | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def with_updates(self, **kwargs: Any) -> "ExecutionContext":
        """Create a new context with updated fields."""
        return replace(self, **kwargs)


@dataclass
class RaisedException:
    """A business anomaly a body wants reviewed by a human."""

    exception_type: str
    severity: Severity
    description: str
    title: str = ""
    financial_impact: Decimal | None = None


@dataclass
class WorkflowResult:
    """What a body reports back after ``execute`` or ``resume``.

    Attributes:
        items_succeeded: Items the body processed successfully
        items_failed: Items the body could not process
        financial_amount: Money the run commits to, checked by the approval gate
        entity_type: Threshold table to use for the approval check
        output_data: Free-form output stored on the run
        raised_exceptions: Anomalies forwarded to the exception manager
    """

    items_succeeded: int = 0
    items_failed: int = 0
    financial_amount: Decimal | None = None
    entity_type: str | None = None
    output_data: dict[str, Any] = field(default_factory=dict)
    raised_exceptions: list[RaisedException] = field(default_factory=list)

    @classmethod
    def coerce(cls, value: Any) -> "WorkflowResult":
        """Accept a WorkflowResult, a plain dict with the same keys, or None.

        Raises:
            ExecutionError: If the body returned something else.
        """
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        if not isinstance(value, dict):
            raise ExecutionError(f"Workflow body returned unsupported result type {type(value).__name__}")

        raised = [
            item
            if isinstance(item, RaisedException)
            else RaisedException(
                exception_type=item["exception_type"],
                severity=Severity(item.get("severity", Severity.MEDIUM)),
                description=item.get("description", ""),
                title=item.get("title", ""),
                financial_impact=_to_decimal(item.get("financial_impact")),
            )
            for item in value.get("raised_exceptions", [])
        ]
        return cls(
            items_succeeded=int(value.get("items_succeeded", 0)),
            items_failed=int(value.get("items_failed", 0)),
            financial_amount=_to_decimal(value.get("financial_amount")),
            entity_type=value.get("entity_type"),
            output_data=dict(value.get("output_data", {})),
            raised_exceptions=raised,
        )


def _to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


@runtime_checkable
class WorkflowBody(Protocol):
    """Uniform execution contract for workflow bodies."""

    async def execute(self, context: ExecutionContext) -> Any: ...


class CallableBody:
    """Adapt plain coroutine functions to the body contract.

    Example:
        >>> async def reorder(context):
        ...     return {"items_succeeded": 12}
        >>> registry.register(WorkflowType.INVENTORY_REORDER, CallableBody(reorder))
    """

    def __init__(
        self,
        execute: Callable[[ExecutionContext], Awaitable[Any]],
        resume: Callable[[ExecutionContext], Awaitable[Any]] | None = None,
    ) -> None:
        self._execute = execute
        if resume is not None:
            self.resume = resume

    async def execute(self, context: ExecutionContext) -> Any:
        return await self._execute(context)
