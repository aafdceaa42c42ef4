"""Domain models persisted by the orchestration engine.

Every record the engine stores is a Pydantic model. Records are written to
the state store with ``model_dump(mode="json")`` and read back with
``model_validate``, so money stays ``Decimal`` and timestamps stay aware
UTC datetimes across restarts.

Example:
    Creating a scheduled workflow definition::

        workflow = WorkflowDefinition(
            id=1,
            name="Daily Demand Forecast",
            workflow_type=WorkflowType.DEMAND_FORECASTING,
            trigger_type=TriggerType.SCHEDULED,
            cron_schedule="0 6 * * *",
        )
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from opsflow.enums import (
    ApprovalStatus,
    ExceptionStatus,
    ResolutionStrategy,
    RunStatus,
    Severity,
    StageStatus,
    TriggeredBy,
    TriggerType,
    WorkflowType,
)
from opsflow.utils.clock import utcnow

DLQ_PREFIX = "[DLQ] "


class WorkflowDefinition(BaseModel):
    """A named, typed unit of automated work.

    Mutated by the orchestrator after each run (health counters and
    scheduling bookkeeping) and by operators (activation, archiving).
    Definitions are never deleted.
    """

    id: int
    name: str
    description: str = ""
    workflow_type: WorkflowType
    trigger_type: TriggerType
    cron_schedule: str | None = Field(default=None, description="5-field cron expression for scheduled workflows")
    trigger_events: list[str] = Field(default_factory=list, description="Event types that trigger this workflow")
    threshold_config: dict[str, Any] | None = Field(
        default=None, description="Threshold evaluator name under 'type' plus its parameters"
    )
    requires_approval: bool = False
    approval_entity_type: str | None = Field(default=None, description="Threshold table consulted by the gate")
    auto_approve_threshold: Decimal | None = None
    is_active: bool = True
    is_archived: bool = False
    max_attempts: int | None = Field(default=None, ge=1)
    retry_base_delay_seconds: float | None = Field(default=None, ge=0)
    timeout_seconds: float | None = Field(default=None, gt=0)
    parameters: dict[str, Any] = Field(default_factory=dict, description="Passed to the body on every run")
    success_count: int = 0
    failure_count: int = 0
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def validate_trigger(self) -> WorkflowDefinition:
        if self.trigger_type == TriggerType.SCHEDULED and not self.cron_schedule:
            raise ValueError("scheduled workflows need a cron_schedule")
        if self.trigger_type == TriggerType.EVENT and not self.trigger_events:
            raise ValueError("event workflows need at least one trigger event")
        if self.trigger_type == TriggerType.THRESHOLD and not (self.threshold_config or {}).get("type"):
            raise ValueError("threshold workflows need threshold_config.type")
        return self

    @property
    def is_dispatchable(self) -> bool:
        return self.is_active and not self.is_archived


class Run(BaseModel):
    """One attempt to execute a workflow.

    Retries never reuse a run: each attempt is its own record linked to the
    previous one through ``retry_of``.
    """

    id: int
    run_number: str
    workflow_id: int
    status: RunStatus
    triggered_by: TriggeredBy
    attempt_number: int = Field(default=1, ge=1)
    retry_of: int | None = None
    scheduled_for: datetime | None = None
    input_data: dict[str, Any] = Field(default_factory=dict)
    output_data: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    items_succeeded: int = 0
    items_failed: int = 0
    total_value: Decimal | None = None
    approval_level: int | None = None
    error_kind: str | None = Field(default=None, description="Short failure classification, e.g. 'timeout'")
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_dead_lettered(self) -> bool:
        return self.status == RunStatus.FAILED and (self.error_message or "").startswith(DLQ_PREFIX)


class PipelineStage(BaseModel):
    """One stage of a pipeline, addressed by its index."""

    workflow_type: WorkflowType
    depends_on: set[int] = Field(default_factory=set)


class PipelineDefinition(BaseModel):
    """An ordered list of stages with index-based dependencies."""

    id: str
    name: str
    description: str = ""
    stages: list[PipelineStage]

    @property
    def stage_count(self) -> int:
        return len(self.stages)


class PipelineExecution(BaseModel):
    """Outcome of one pipeline execution.

    Only stages whose run reached ``completed`` count towards
    ``stages_completed``.
    """

    id: int
    pipeline_id: str
    stages_total: int
    stages_completed: int = 0
    duration_ms: int | None = None
    stage_statuses: dict[int, StageStatus] = Field(default_factory=dict)
    stage_run_ids: dict[int, int] = Field(default_factory=dict)
    stage_errors: dict[int, str] = Field(default_factory=dict)
    awaiting_approval: list[int] = Field(default_factory=list)
    failed_stages: list[int] = Field(default_factory=list)
    skipped_stages: list[int] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    @model_validator(mode="after")
    def validate_counts(self) -> PipelineExecution:
        if self.stages_completed > self.stages_total:
            raise ValueError("stages_completed cannot exceed stages_total")
        return self

    @property
    def succeeded(self) -> bool:
        """True when every stage completed or was explicitly skipped."""
        return all(
            status in (StageStatus.COMPLETED, StageStatus.SKIPPED) for status in self.stage_statuses.values()
        ) and not self.failed_stages


class ApprovalThreshold(BaseModel):
    """Monetary boundaries for one entity type.

    Levels that are set must be strictly increasing.
    """

    id: int
    name: str = ""
    entity_type: str
    auto_approve_max_amount: Decimal | None = None
    level1_max_amount: Decimal | None = None
    level2_max_amount: Decimal | None = None
    level3_max_amount: Decimal | None = None
    escalation_timeout_minutes: int = Field(default=60, ge=1)
    is_active: bool = True

    @model_validator(mode="after")
    def validate_increasing(self) -> ApprovalThreshold:
        present = [
            amount
            for amount in (
                self.auto_approve_max_amount,
                self.level1_max_amount,
                self.level2_max_amount,
                self.level3_max_amount,
            )
            if amount is not None
        ]
        for lower, upper in zip(present, present[1:]):
            if upper <= lower:
                raise ValueError(f"threshold amounts must be strictly increasing ({lower} >= {upper})")
        return self

    def level_limits(self) -> list[tuple[int, Decimal]]:
        """Configured (level, max amount) pairs in ascending order."""
        limits = [
            (1, self.level1_max_amount),
            (2, self.level2_max_amount),
            (3, self.level3_max_amount),
        ]
        return [(level, amount) for level, amount in limits if amount is not None]


class ApprovalRequest(BaseModel):
    """A run waiting for a human decision at a given level."""

    id: int
    run_id: int
    workflow_id: int
    entity_type: str | None = None
    amount: Decimal
    level: int = Field(ge=1, le=4)
    status: ApprovalStatus = ApprovalStatus.PENDING
    escalation_count: int = 0
    requested_at: datetime = Field(default_factory=utcnow)
    escalate_at: datetime | None = None
    decided_at: datetime | None = None
    decided_by: str | None = None
    notes: str | None = None


class BusinessException(BaseModel):
    """An anomaly reported by a workflow body for human review.

    Never deleted; resolution only changes its status.
    """

    id: int
    run_id: int | None = None
    exception_type: str
    severity: Severity
    title: str = ""
    description: str
    status: ExceptionStatus = ExceptionStatus.OPEN
    rule_id: int | None = None
    detected_at: datetime = Field(default_factory=utcnow)
    escalated_at: datetime | None = None
    resolved_at: datetime | None = None
    resolution_action: str | None = None
    resolution_notes: str | None = None
    financial_impact: Decimal | None = None


class ExceptionRule(BaseModel):
    """Policy choosing the initial status of matching exceptions."""

    id: int
    name: str
    description: str = ""
    exception_type: str
    resolution_strategy: ResolutionStrategy = ResolutionStrategy.ROUTE_TO_HUMAN
    auto_resolution_action: str | None = None
    notify_roles: list[str] = Field(default_factory=list)
    priority: int = Field(default=100, description="Lower values win when several rules match")
    is_active: bool = True


class SupplyChainEvent(BaseModel):
    """An external signal that can trigger event-driven workflows."""

    id: int
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    processed: bool = False
    processed_at: datetime | None = None

    @field_validator("event_type")
    @classmethod
    def validate_event_type(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("event_type cannot be empty")
        return value
