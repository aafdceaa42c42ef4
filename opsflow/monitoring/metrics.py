"""
Metrics collection for monitoring orchestrator health.
Integrates with Prometheus for metrics export and derives the run overview
reported by the control surface.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

import structlog
from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest

from opsflow.enums import RunStatus
from opsflow.models.domain import Run

log = structlog.get_logger(__name__)

# Run metrics
workflow_runs = Counter(
    "opsflow_workflow_runs_total",
    "Workflow runs by final outcome",
    ["workflow_type", "status"],
)

run_duration = Histogram(
    "opsflow_run_duration_seconds",
    "Workflow body execution time",
    ["workflow_type"],
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1800, 3600),
)

active_runs = Gauge("opsflow_active_runs", "Runs currently executing")

# Failure handling
retries_scheduled = Counter("opsflow_retries_scheduled_total", "Retries scheduled", ["workflow_type"])

dead_lettered = Counter("opsflow_dead_lettered_total", "Runs moved to the dead-letter queue", ["workflow_type"])

dispatch_refusals = Counter("opsflow_dispatch_refusals_total", "Dispatches refused", ["reason"])

breaker_state = Gauge(
    "opsflow_circuit_breaker_open",
    "1 when the circuit breaker is open or half open",
)

# Review queues
approvals_requested = Counter("opsflow_approvals_requested_total", "Approval requests created", ["level"])

exceptions_raised = Counter("opsflow_exceptions_raised_total", "Business exceptions raised", ["severity"])

pipeline_executions = Counter(
    "opsflow_pipeline_executions_total",
    "Pipeline executions",
    ["pipeline_id", "outcome"],
)

system_info = Info("opsflow_system", "Orchestrator information")


class MetricsCollector:
    """Collect and export metrics."""

    @staticmethod
    def record_run(workflow_type: str, status: str, duration_seconds: float | None = None) -> None:
        """Record a run reaching a resting state."""
        workflow_runs.labels(workflow_type=workflow_type, status=status).inc()
        if duration_seconds is not None:
            run_duration.labels(workflow_type=workflow_type).observe(duration_seconds)
        log.debug("metric_recorded", metric="workflow_run", workflow_type=workflow_type, status=status)

    @staticmethod
    def record_retry(workflow_type: str) -> None:
        retries_scheduled.labels(workflow_type=workflow_type).inc()

    @staticmethod
    def record_dead_letter(workflow_type: str) -> None:
        dead_lettered.labels(workflow_type=workflow_type).inc()

    @staticmethod
    def record_refusal(reason: str) -> None:
        dispatch_refusals.labels(reason=reason).inc()

    @staticmethod
    def update_active_runs(count: int) -> None:
        active_runs.set(count)

    @staticmethod
    def update_breaker_state(state: str) -> None:
        breaker_state.set(0 if state == "closed" else 1)

    @staticmethod
    def record_approval_request(level: int) -> None:
        approvals_requested.labels(level=str(level)).inc()

    @staticmethod
    def record_exception(severity: str) -> None:
        exceptions_raised.labels(severity=severity).inc()

    @staticmethod
    def record_pipeline_execution(pipeline_id: str, succeeded: bool) -> None:
        pipeline_executions.labels(pipeline_id=pipeline_id, outcome="success" if succeeded else "partial").inc()

    @staticmethod
    def set_system_info(**kwargs: Any) -> None:
        system_info.info({key: str(value) for key, value in kwargs.items()})

    @staticmethod
    def get_metrics() -> bytes:
        """Get metrics in Prometheus format."""
        return generate_latest()


def metrics_overview(runs: list[Run], now: datetime, days: int = 7) -> dict[str, Any]:
    """Summarise runs created in the last ``days`` days.

    Args:
        runs: Candidate runs, any age
        now: Reference time
        days: Size of the look-back window

    Returns:
        Totals for runs, outcomes, processed items and processed value.
    """
    since = now - timedelta(days=days)
    recent = [run for run in runs if run.created_at >= since]
    completed = [run for run in recent if run.status == RunStatus.COMPLETED]
    return {
        "period_days": days,
        "total_runs": len(recent),
        "successful_runs": len(completed),
        "failed_runs": sum(1 for run in recent if run.status == RunStatus.FAILED),
        "items_processed": sum(run.items_succeeded for run in recent),
        "value_processed": sum((run.total_value for run in completed if run.total_value is not None), Decimal("0")),
    }
