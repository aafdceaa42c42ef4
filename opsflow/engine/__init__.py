"""Workflow orchestration and execution engine.

This package provides the scheduler loop and the components it composes:
dispatch guarding, run bookkeeping, retries, approvals, business exceptions
and dependency-ordered pipelines.

Key Components:
    - Orchestrator: Scheduler loop, dispatch boundary and control API
    - StateManager: Persistent collections with atomic writes
    - WorkflowRegistry: Workflow definitions and health counters
    - BodyRegistry: Workflow bodies by workflow type
    - RunTracker: Run lifecycle and queries
    - RetryPolicy: Exponential backoff and the dead-letter queue
    - CircuitBreaker: Fleet-wide dispatch guard
    - ApprovalGate: Amount thresholds, approval requests and escalation
    - ExceptionManager: Business exceptions and routing rules
    - PipelineEngine: Wave-based execution of stage graphs

Execution Contract:
    - ExecutionContext: What a body receives for one run
    - WorkflowResult: What a body reports back
    - CallableBody: Adapter for plain coroutine functions

Example:
    >>> from opsflow.engine import CallableBody, Orchestrator
    >>> orchestrator = Orchestrator(settings)
    >>> orchestrator.bodies.register(WorkflowType.INVENTORY_REORDER, CallableBody(reorder))
    >>> run = await orchestrator.trigger_workflow(5)
"""

from opsflow.engine.approval_gate import ApprovalGate
from opsflow.engine.circuit_breaker import CircuitBreaker
from opsflow.engine.context import CallableBody, ExecutionContext, RaisedException, WorkflowBody, WorkflowResult
from opsflow.engine.exception_manager import ExceptionManager
from opsflow.engine.orchestrator import Orchestrator, OrchestratorState
from opsflow.engine.pipeline import PipelineEngine
from opsflow.engine.registry import BodyRegistry, WorkflowRegistry
from opsflow.engine.retry_policy import RetryPolicy
from opsflow.engine.run_tracker import RunTracker
from opsflow.engine.state_manager import StateManager

__all__ = [
    "ApprovalGate",
    "BodyRegistry",
    "CallableBody",
    "CircuitBreaker",
    "ExceptionManager",
    "ExecutionContext",
    "Orchestrator",
    "OrchestratorState",
    "PipelineEngine",
    "RaisedException",
    "RetryPolicy",
    "RunTracker",
    "StateManager",
    "WorkflowBody",
    "WorkflowRegistry",
    "WorkflowResult",
]
