"""Enumerations for opsflow workflows, runs and review queues."""

from enum import Enum


class WorkflowType(str, Enum):
    """Business operations the engine knows how to schedule.

    The engine never interprets these. They select the registered body and
    let pipelines refer to stages without hard-coding workflow ids.
    """

    DEMAND_FORECASTING = "demand_forecasting"
    PRODUCTION_PLANNING = "production_planning"
    MATERIAL_REQUIREMENTS = "material_requirements"
    PROCUREMENT = "procurement"
    INVENTORY_REORDER = "inventory_reorder"
    INVENTORY_TRANSFER = "inventory_transfer"
    INVENTORY_OPTIMIZATION = "inventory_optimization"
    WORK_ORDER_GENERATION = "work_order_generation"
    PRODUCTION_SCHEDULING = "production_scheduling"
    FREIGHT_PROCUREMENT = "freight_procurement"
    SHIPMENT_TRACKING = "shipment_tracking"
    ORDER_FULFILLMENT = "order_fulfillment"
    SUPPLIER_MANAGEMENT = "supplier_management"
    QUALITY_INSPECTION = "quality_inspection"
    INVOICE_MATCHING = "invoice_matching"
    PAYMENT_PROCESSING = "payment_processing"
    EXCEPTION_HANDLING = "exception_handling"
    VENDOR_QUOTE_PROCUREMENT = "vendor_quote_procurement"
    VENDOR_QUOTE_ANALYSIS = "vendor_quote_analysis"

    def __str__(self) -> str:
        return self.value


class TriggerType(str, Enum):
    """How a workflow becomes eligible for dispatch."""

    SCHEDULED = "scheduled"
    EVENT = "event"
    THRESHOLD = "threshold"
    MANUAL = "manual"
    CONTINUOUS = "continuous"

    def __str__(self) -> str:
        return self.value


class RunStatus(str, Enum):
    """Lifecycle states of a single workflow run."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    AWAITING_APPROVAL = "awaiting_approval"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class TriggeredBy(str, Enum):
    """What caused a run to be created."""

    SCHEDULED = "scheduled"
    EVENT = "event"
    THRESHOLD = "threshold"
    MANUAL = "manual"
    RETRY = "retry"
    PIPELINE = "pipeline"

    def __str__(self) -> str:
        return self.value


class Severity(str, Enum):
    """Business exception severity, supplied by the reporter."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    def __str__(self) -> str:
        return self.value

    @property
    def rank(self) -> int:
        """Sort key, higher is more urgent."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class ExceptionStatus(str, Enum):
    """Review states of a business exception."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    IGNORED = "ignored"

    def __str__(self) -> str:
        return self.value


class ResolutionStrategy(str, Enum):
    """What an exception rule does with a freshly raised exception."""

    ROUTE_TO_HUMAN = "route_to_human"
    AUTO_RESOLVE = "auto_resolve"
    ESCALATE = "escalate"
    NOTIFY_AND_CONTINUE = "notify_and_continue"

    def __str__(self) -> str:
        return self.value


class CircuitState(str, Enum):
    """Fleet-wide circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __str__(self) -> str:
        return self.value


class ApprovalStatus(str, Enum):
    """States of a persisted approval request."""

    PENDING = "pending"
    SENIOR_REQUIRED = "senior_required"
    APPROVED = "approved"
    REJECTED = "rejected"

    def __str__(self) -> str:
        return self.value

    @property
    def is_open(self) -> bool:
        return self in (ApprovalStatus.PENDING, ApprovalStatus.SENIOR_REQUIRED)


class ApprovalOutcome(str, Enum):
    """Result of evaluating an amount against approval thresholds."""

    AUTO_APPROVED = "auto_approved"
    PENDING = "pending"
    ESCALATED = "escalated"

    def __str__(self) -> str:
        return self.value


class StageStatus(str, Enum):
    """Per-stage state inside a pipeline execution."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    AWAITING_APPROVAL = "awaiting_approval"
    SKIPPED = "skipped"

    def __str__(self) -> str:
        return self.value


class RetryAction(str, Enum):
    """Decision taken by the retry policy for a failed run."""

    RETRY = "retry"
    DEAD_LETTER = "dead_letter"

    def __str__(self) -> str:
        return self.value
