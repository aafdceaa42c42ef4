"""Business exception queue for human review.

Workflow bodies report anomalies (price variances, late shipments, quality
holds, ...) through ``raise_exception``. Raising never fails the run that
reported it. Exceptions are never deleted; operators move them through
their review states:

    open -> in_progress | escalated | resolved | ignored
    in_progress -> escalated | resolved | ignored
    escalated -> in_progress | resolved | ignored

Exception rules pick the initial status of a new exception by type. They
never change its severity, which always comes from the reporter.
"""

from decimal import Decimal
from typing import Any

import structlog

from opsflow.engine.state_manager import StateManager
from opsflow.enums import ExceptionStatus, ResolutionStrategy, Severity
from opsflow.exceptions import ConfigurationError, InvalidTransitionError, RecordNotFoundError
from opsflow.models.domain import BusinessException, ExceptionRule
from opsflow.utils.clock import Clock, utcnow

log = structlog.get_logger(__name__)

EXCEPTIONS = "exceptions"
RULES = "exception_rules"

_TRANSITIONS: dict[ExceptionStatus, set[ExceptionStatus]] = {
    ExceptionStatus.OPEN: {
        ExceptionStatus.IN_PROGRESS,
        ExceptionStatus.ESCALATED,
        ExceptionStatus.RESOLVED,
        ExceptionStatus.IGNORED,
    },
    ExceptionStatus.IN_PROGRESS: {ExceptionStatus.ESCALATED, ExceptionStatus.RESOLVED, ExceptionStatus.IGNORED},
    ExceptionStatus.ESCALATED: {ExceptionStatus.IN_PROGRESS, ExceptionStatus.RESOLVED, ExceptionStatus.IGNORED},
    ExceptionStatus.RESOLVED: set(),
    ExceptionStatus.IGNORED: set(),
}

UNRESOLVED = (ExceptionStatus.OPEN, ExceptionStatus.IN_PROGRESS, ExceptionStatus.ESCALATED)


class ExceptionManager:
    """Raise, route and resolve business exceptions."""

    def __init__(self, state: StateManager, clock: Clock = utcnow) -> None:
        self.state = state
        self.clock = clock

    async def raise_exception(
        self,
        exception_type: str,
        severity: Severity,
        description: str,
        run_id: int | None = None,
        financial_impact: Decimal | None = None,
        title: str = "",
    ) -> int:
        """Record a new exception and apply the matching rule.

        Returns:
            The new exception id.
        """
        now = self.clock()
        rule = await self.match_rule(exception_type)
        status = ExceptionStatus.OPEN
        resolution_action = None

        if rule is not None:
            if rule.resolution_strategy == ResolutionStrategy.AUTO_RESOLVE:
                status = ExceptionStatus.RESOLVED
                resolution_action = rule.auto_resolution_action or f"auto-resolved by rule '{rule.name}'"
            elif rule.resolution_strategy == ResolutionStrategy.ESCALATE:
                status = ExceptionStatus.ESCALATED
            elif rule.resolution_strategy == ResolutionStrategy.NOTIFY_AND_CONTINUE:
                log.warning(
                    "exception_notification",
                    exception_type=exception_type,
                    severity=str(severity),
                    notify_roles=rule.notify_roles,
                )

        exception = await self.state.insert(
            EXCEPTIONS,
            lambda record_id: BusinessException(
                id=record_id,
                run_id=run_id,
                exception_type=exception_type,
                severity=severity,
                title=title or exception_type.replace("_", " ").title(),
                description=description,
                status=status,
                rule_id=rule.id if rule else None,
                detected_at=now,
                escalated_at=now if status == ExceptionStatus.ESCALATED else None,
                resolved_at=now if status == ExceptionStatus.RESOLVED else None,
                resolution_action=resolution_action,
                financial_impact=financial_impact,
            ),
        )
        log.info(
            "exception_raised",
            exception_id=exception.id,
            exception_type=exception_type,
            severity=str(severity),
            status=str(status),
            run_id=run_id,
        )
        return exception.id

    async def start_progress(self, exception_id: int) -> BusinessException:
        return await self._transition(exception_id, ExceptionStatus.IN_PROGRESS)

    async def resolve(self, exception_id: int, action: str, notes: str | None = None) -> BusinessException:
        now = self.clock()

        def extra(exc: BusinessException) -> None:
            exc.resolved_at = now
            exc.resolution_action = action
            exc.resolution_notes = notes

        return await self._transition(exception_id, ExceptionStatus.RESOLVED, extra)

    async def escalate(self, exception_id: int) -> BusinessException:
        now = self.clock()

        def extra(exc: BusinessException) -> None:
            exc.escalated_at = now

        return await self._transition(exception_id, ExceptionStatus.ESCALATED, extra)

    async def ignore(self, exception_id: int, notes: str | None = None) -> BusinessException:
        now = self.clock()

        def extra(exc: BusinessException) -> None:
            exc.resolved_at = now
            exc.resolution_notes = notes

        return await self._transition(exception_id, ExceptionStatus.IGNORED, extra)

    async def get(self, exception_id: int) -> BusinessException:
        exception = await self.state.get(EXCEPTIONS, exception_id, BusinessException)
        if exception is None:
            raise RecordNotFoundError(EXCEPTIONS, exception_id)
        return exception

    async def list_exceptions(
        self,
        status: ExceptionStatus | None = None,
        severity: Severity | None = None,
        limit: int = 50,
    ) -> list[BusinessException]:
        """Matching exceptions, most severe first, then most recent."""
        exceptions = [
            exc
            for exc in await self.state.list_records(EXCEPTIONS, BusinessException)
            if (status is None or exc.status == status) and (severity is None or exc.severity == severity)
        ]
        exceptions.sort(key=lambda e: (e.severity.rank, e.detected_at), reverse=True)
        return exceptions[:limit]

    async def open_count(self) -> int:
        exceptions = await self.state.list_records(EXCEPTIONS, BusinessException)
        return sum(1 for exc in exceptions if exc.status in UNRESOLVED)

    async def count_by_status(self) -> dict[str, int]:
        counts = {str(status): 0 for status in ExceptionStatus}
        for exc in await self.state.list_records(EXCEPTIONS, BusinessException):
            counts[str(exc.status)] += 1
        return counts

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    async def list_rules(self) -> list[ExceptionRule]:
        rules = await self.state.list_records(RULES, ExceptionRule)
        return sorted(rules, key=lambda r: (r.priority, r.id))

    async def create_rule(self, **fields: Any) -> ExceptionRule:
        try:
            rule = await self.state.insert(RULES, lambda record_id: ExceptionRule(id=record_id, **fields))
        except ValueError as e:
            raise ConfigurationError(f"Invalid exception rule: {e}") from e
        log.info("exception_rule_created", rule_id=rule.id, exception_type=rule.exception_type)
        return rule

    async def match_rule(self, exception_type: str) -> ExceptionRule | None:
        """Highest-priority active rule for the type, if any."""
        for rule in await self.list_rules():
            if rule.is_active and rule.exception_type == exception_type:
                return rule
        return None

    async def _transition(
        self,
        exception_id: int,
        target: ExceptionStatus,
        extra: Any = None,
    ) -> BusinessException:
        def apply(exc: BusinessException) -> None:
            if target not in _TRANSITIONS[exc.status]:
                raise InvalidTransitionError("exception", exc.id, str(exc.status), str(target))
            exc.status = target
            if extra is not None:
                extra(exc)

        exception = await self.state.update(EXCEPTIONS, exception_id, BusinessException, apply)
        log.info("exception_status_changed", exception_id=exception_id, status=str(target))
        return exception
