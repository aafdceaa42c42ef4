"""Tests for the business exception manager."""

from decimal import Decimal

import pytest

from opsflow.engine.exception_manager import ExceptionManager
from opsflow.engine.state_manager import StateManager
from opsflow.enums import ExceptionStatus, ResolutionStrategy, Severity
from opsflow.exceptions import ConfigurationError, InvalidTransitionError, RecordNotFoundError
from opsflow.utils.clock import ManualClock


@pytest.fixture
def manager(state_manager: StateManager, clock: ManualClock) -> ExceptionManager:
    return ExceptionManager(state_manager, clock)


class TestRaise:
    @pytest.mark.asyncio
    async def test_without_rule_stays_open(self, manager: ExceptionManager):
        exception_id = await manager.raise_exception(
            "shipment_delay", Severity.HIGH, "Carrier reports 3 day delay", run_id=8, financial_impact=Decimal("1200")
        )

        exc = await manager.get(exception_id)
        assert exc.status == ExceptionStatus.OPEN
        assert exc.severity == Severity.HIGH
        assert exc.run_id == 8
        assert exc.title == "Shipment Delay"
        assert exc.rule_id is None
        assert await manager.open_count() == 1

    @pytest.mark.asyncio
    async def test_auto_resolve_rule(self, manager: ExceptionManager):
        rule = await manager.create_rule(
            name="Minor price variance",
            exception_type="price_variance",
            resolution_strategy=ResolutionStrategy.AUTO_RESOLVE,
            auto_resolution_action="accept_variance",
        )

        exc = await manager.get(await manager.raise_exception("price_variance", Severity.LOW, "2% over PO"))

        assert exc.status == ExceptionStatus.RESOLVED
        assert exc.resolution_action == "accept_variance"
        assert exc.rule_id == rule.id
        assert await manager.open_count() == 0

    @pytest.mark.asyncio
    async def test_escalate_rule_keeps_reported_severity(self, manager: ExceptionManager):
        await manager.create_rule(
            name="Stockout", exception_type="stockout", resolution_strategy=ResolutionStrategy.ESCALATE
        )

        exc = await manager.get(await manager.raise_exception("stockout", Severity.MEDIUM, "SKU A-1 out"))

        assert exc.status == ExceptionStatus.ESCALATED
        assert exc.escalated_at is not None
        assert exc.severity == Severity.MEDIUM

    @pytest.mark.asyncio
    async def test_notify_and_continue_stays_open(self, manager: ExceptionManager):
        await manager.create_rule(
            name="Quality", exception_type="quality_hold", resolution_strategy=ResolutionStrategy.NOTIFY_AND_CONTINUE
        )

        exc = await manager.get(await manager.raise_exception("quality_hold", Severity.LOW, "Lot 7 on hold"))

        assert exc.status == ExceptionStatus.OPEN

    @pytest.mark.asyncio
    async def test_lowest_priority_value_wins(self, manager: ExceptionManager):
        await manager.create_rule(
            name="Route", exception_type="stockout", resolution_strategy=ResolutionStrategy.ROUTE_TO_HUMAN, priority=50
        )
        urgent = await manager.create_rule(
            name="Escalate", exception_type="stockout", resolution_strategy=ResolutionStrategy.ESCALATE, priority=10
        )

        rule = await manager.match_rule("stockout")

        assert rule is not None and rule.id == urgent.id
        assert [r.priority for r in await manager.list_rules()] == [10, 50]

    @pytest.mark.asyncio
    async def test_inactive_rule_ignored(self, manager: ExceptionManager):
        await manager.create_rule(
            name="Off", exception_type="stockout", resolution_strategy=ResolutionStrategy.ESCALATE, is_active=False
        )

        assert await manager.match_rule("stockout") is None

    @pytest.mark.asyncio
    async def test_invalid_rule(self, manager: ExceptionManager):
        with pytest.raises(ConfigurationError):
            await manager.create_rule(name="Bad", exception_type="x", resolution_strategy="not-a-strategy")


class TestTransitions:
    @pytest.mark.asyncio
    async def test_resolve(self, manager: ExceptionManager, clock: ManualClock):
        exception_id = await manager.raise_exception("shipment_delay", Severity.HIGH, "late")

        exc = await manager.resolve(exception_id, "expedited", "Switched carrier")

        assert exc.status == ExceptionStatus.RESOLVED
        assert exc.resolution_action == "expedited"
        assert exc.resolution_notes == "Switched carrier"
        assert exc.resolved_at == clock()

    @pytest.mark.asyncio
    async def test_escalated_can_return_to_progress(self, manager: ExceptionManager):
        exception_id = await manager.raise_exception("shipment_delay", Severity.HIGH, "late")

        await manager.escalate(exception_id)
        exc = await manager.start_progress(exception_id)

        assert exc.status == ExceptionStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_resolved_is_terminal(self, manager: ExceptionManager):
        exception_id = await manager.raise_exception("shipment_delay", Severity.HIGH, "late")
        await manager.ignore(exception_id, "duplicate")

        with pytest.raises(InvalidTransitionError):
            await manager.escalate(exception_id)

    @pytest.mark.asyncio
    async def test_missing_exception(self, manager: ExceptionManager):
        with pytest.raises(RecordNotFoundError):
            await manager.get(404)


class TestListing:
    @pytest.mark.asyncio
    async def test_sorted_by_severity_then_recency(self, manager: ExceptionManager, clock: ManualClock):
        low = await manager.raise_exception("a", Severity.LOW, "low")
        clock.advance(minutes=1)
        critical = await manager.raise_exception("b", Severity.CRITICAL, "critical")
        clock.advance(minutes=1)
        high_old = await manager.raise_exception("c", Severity.HIGH, "high old")
        clock.advance(minutes=1)
        high_new = await manager.raise_exception("d", Severity.HIGH, "high new")

        ordered = [e.id for e in await manager.list_exceptions()]

        assert ordered == [critical, high_new, high_old, low]

    @pytest.mark.asyncio
    async def test_filters(self, manager: ExceptionManager):
        first = await manager.raise_exception("a", Severity.LOW, "x")
        await manager.raise_exception("b", Severity.HIGH, "y")
        await manager.resolve(first, "done")

        assert [e.severity for e in await manager.list_exceptions(severity=Severity.HIGH)] == [Severity.HIGH]
        assert [e.id for e in await manager.list_exceptions(status=ExceptionStatus.RESOLVED)] == [first]
        counts = await manager.count_by_status()
        assert counts["open"] == 1
        assert counts["resolved"] == 1
