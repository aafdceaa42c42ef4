"""
Approval gate for runs that commit money.

When a body reports a financial amount for a workflow that requires
approval, the gate compares it with the threshold configured for the
entity type:

- ``amount <= auto_approve_max_amount``: auto-approved, run completes
- lowest level n with ``levelN_max_amount >= amount``: pending at level n
- above every configured level: escalated, senior approval required

Without a threshold for the entity type the workflow's own
``auto_approve_threshold`` (or the configured default) decides between
auto-approval and a level 1 request.

Pending requests are persisted and polled by the scheduler loop. A request
left unanswered past its deadline moves to the next level; past the
deadline at level 3 it becomes ``senior_required`` and stops escalating.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

import structlog

from opsflow.config.settings import ApprovalConfig
from opsflow.engine.state_manager import StateManager
from opsflow.enums import ApprovalOutcome, ApprovalStatus
from opsflow.exceptions import ApprovalStateError, ConfigurationError, RecordNotFoundError
from opsflow.models.domain import ApprovalRequest, ApprovalThreshold, Run, WorkflowDefinition
from opsflow.utils.clock import Clock, utcnow

log = structlog.get_logger(__name__)

THRESHOLDS = "approval_thresholds"
APPROVALS = "approvals"

SENIOR_LEVEL = 4
MAX_HUMAN_LEVEL = 3


@dataclass
class ApprovalDecision:
    """Result of evaluating a run against the thresholds."""

    outcome: ApprovalOutcome
    level: int | None = None
    escalation_minutes: int | None = None
    threshold_id: int | None = None
    request: ApprovalRequest | None = None

    @property
    def needs_human(self) -> bool:
        return self.outcome != ApprovalOutcome.AUTO_APPROVED


class ApprovalGate:
    """Evaluate amounts, persist approval requests and escalate them."""

    def __init__(self, state: StateManager, config: ApprovalConfig | None = None, clock: Clock = utcnow) -> None:
        self.state = state
        self.config = config or ApprovalConfig()
        self.clock = clock

    # ------------------------------------------------------------------
    # Thresholds
    # ------------------------------------------------------------------

    async def list_thresholds(self) -> list[ApprovalThreshold]:
        return await self.state.list_records(THRESHOLDS, ApprovalThreshold)

    async def get_threshold(self, entity_type: str) -> ApprovalThreshold | None:
        for threshold in await self.list_thresholds():
            if threshold.entity_type == entity_type and threshold.is_active:
                return threshold
        return None

    async def set_threshold(self, entity_type: str, **fields: Any) -> ApprovalThreshold:
        """Create or replace the threshold for ``entity_type``.

        Raises:
            ConfigurationError: If the amounts are not strictly increasing.
        """
        existing = next((t for t in await self.list_thresholds() if t.entity_type == entity_type), None)
        try:
            if existing is None:
                threshold = await self.state.insert(
                    THRESHOLDS,
                    lambda record_id: ApprovalThreshold(id=record_id, entity_type=entity_type, **fields),
                )
            else:
                threshold = ApprovalThreshold.model_validate(
                    {**existing.model_dump(), **fields, "id": existing.id, "entity_type": entity_type}
                )
                await self.state.save(THRESHOLDS, threshold.id, threshold)
        except ValueError as e:
            raise ConfigurationError(f"Invalid approval threshold for '{entity_type}': {e}") from e

        log.info("approval_threshold_set", entity_type=entity_type, threshold_id=threshold.id)
        return threshold

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate(
        self,
        run: Run,
        amount: Decimal,
        entity_type: str | None,
        workflow: WorkflowDefinition | None = None,
    ) -> ApprovalDecision:
        """Classify ``amount`` without persisting anything."""
        threshold = await self.get_threshold(entity_type) if entity_type else None

        if threshold is None:
            limit = self.config.default_auto_approve_amount
            if workflow is not None and workflow.auto_approve_threshold is not None:
                limit = workflow.auto_approve_threshold
            if amount <= limit:
                return ApprovalDecision(outcome=ApprovalOutcome.AUTO_APPROVED)
            return ApprovalDecision(
                outcome=ApprovalOutcome.PENDING,
                level=1,
                escalation_minutes=self.config.default_escalation_minutes,
            )

        if threshold.auto_approve_max_amount is not None and amount <= threshold.auto_approve_max_amount:
            return ApprovalDecision(outcome=ApprovalOutcome.AUTO_APPROVED, threshold_id=threshold.id)

        for level, max_amount in threshold.level_limits():
            if amount <= max_amount:
                return ApprovalDecision(
                    outcome=ApprovalOutcome.PENDING,
                    level=level,
                    escalation_minutes=threshold.escalation_timeout_minutes,
                    threshold_id=threshold.id,
                )

        log.info("approval_above_all_levels", run_id=run.id, amount=str(amount), entity_type=entity_type)
        return ApprovalDecision(
            outcome=ApprovalOutcome.ESCALATED,
            level=SENIOR_LEVEL,
            escalation_minutes=threshold.escalation_timeout_minutes,
            threshold_id=threshold.id,
        )

    async def submit(
        self,
        run: Run,
        amount: Decimal,
        entity_type: str | None,
        workflow: WorkflowDefinition | None = None,
    ) -> ApprovalDecision:
        """Evaluate and, when a human is needed, persist an approval request."""
        decision = await self.evaluate(run, amount, entity_type, workflow)
        if not decision.needs_human:
            log.info("approval_auto_approved", run_id=run.id, amount=str(amount))
            return decision

        now = self.clock()
        senior = decision.outcome == ApprovalOutcome.ESCALATED
        escalate_at = None if senior else now + timedelta(minutes=decision.escalation_minutes or 60)

        decision.request = await self.state.insert(
            APPROVALS,
            lambda record_id: ApprovalRequest(
                id=record_id,
                run_id=run.id,
                workflow_id=run.workflow_id,
                entity_type=entity_type,
                amount=amount,
                level=decision.level or 1,
                status=ApprovalStatus.SENIOR_REQUIRED if senior else ApprovalStatus.PENDING,
                requested_at=now,
                escalate_at=escalate_at,
            ),
        )
        log.info(
            "approval_requested",
            approval_id=decision.request.id,
            run_id=run.id,
            level=decision.request.level,
            status=str(decision.request.status),
            amount=str(amount),
        )
        return decision

    # ------------------------------------------------------------------
    # Escalation and decisions
    # ------------------------------------------------------------------

    async def check_escalations(self, now: datetime | None = None) -> list[ApprovalRequest]:
        """Escalate every pending request whose deadline has passed.

        Returns:
            The requests that changed.
        """
        now = now or self.clock()
        changed: list[ApprovalRequest] = []

        for request in await self.list_requests(ApprovalStatus.PENDING):
            if request.escalate_at is None or request.escalate_at > now:
                continue
            minutes = await self._escalation_minutes(request.entity_type)

            def apply(req: ApprovalRequest) -> None:
                if req.status != ApprovalStatus.PENDING:
                    return
                req.escalation_count += 1
                if req.level >= MAX_HUMAN_LEVEL:
                    req.level = SENIOR_LEVEL
                    req.status = ApprovalStatus.SENIOR_REQUIRED
                    req.escalate_at = None
                else:
                    req.level += 1
                    req.escalate_at = now + timedelta(minutes=minutes)

            updated = await self.state.update(APPROVALS, request.id, ApprovalRequest, apply)
            log.warning(
                "approval_escalated",
                approval_id=updated.id,
                run_id=updated.run_id,
                level=updated.level,
                status=str(updated.status),
            )
            changed.append(updated)

        return changed

    async def decide(
        self,
        approval_id: int,
        approved: bool,
        decided_by: str,
        notes: str | None = None,
    ) -> ApprovalRequest:
        """Record a human decision.

        Raises:
            RecordNotFoundError: If the request does not exist.
            ApprovalStateError: If the request was already decided.
        """
        now = self.clock()

        def apply(req: ApprovalRequest) -> None:
            if not req.status.is_open:
                raise ApprovalStateError(f"Approval {approval_id} is already {req.status}")
            req.status = ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED
            req.decided_at = now
            req.decided_by = decided_by
            req.notes = notes
            req.escalate_at = None

        request = await self.state.update(APPROVALS, approval_id, ApprovalRequest, apply)
        log.info("approval_decided", approval_id=approval_id, approved=approved, decided_by=decided_by)
        return request

    async def get(self, approval_id: int) -> ApprovalRequest:
        request = await self.state.get(APPROVALS, approval_id, ApprovalRequest)
        if request is None:
            raise RecordNotFoundError(APPROVALS, approval_id)
        return request

    async def list_requests(self, status: ApprovalStatus | None = None) -> list[ApprovalRequest]:
        requests = await self.state.list_records(APPROVALS, ApprovalRequest)
        return [r for r in requests if status is None or r.status == status]

    async def open_for_run(self, run_id: int) -> ApprovalRequest | None:
        for request in await self.list_requests():
            if request.run_id == run_id and request.status.is_open:
                return request
        return None

    async def pending_count(self) -> int:
        return sum(1 for r in await self.list_requests() if r.status.is_open)

    async def _escalation_minutes(self, entity_type: str | None) -> int:
        threshold = await self.get_threshold(entity_type) if entity_type else None
        if threshold is not None:
            return threshold.escalation_timeout_minutes
        return self.config.default_escalation_minutes
