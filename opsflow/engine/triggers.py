"""Trigger evaluation for the scheduler loop.

Three kinds of trigger need more than a flag check:

- ``CronSchedule``: 5-field cron expressions for scheduled workflows
- ``EventQueue``: persisted supply-chain events for event workflows
- ``ThresholdMonitor``: named checks for threshold workflows

Cron Syntax:
    ``minute hour day-of-month month day-of-week`` where each field accepts
    ``*``, ``N``, ``A-B``, ``*/S``, ``A-B/S`` and comma-separated lists.
    Day-of-week runs 0-6 from Sunday, 7 is also Sunday. When both day
    fields are restricted a time matches if either one does.

Example:
    >>> CronSchedule("0 6 * * 1-5").next_after(datetime(2024, 1, 5, 7, 0, tzinfo=UTC))
    datetime.datetime(2024, 1, 8, 6, 0, tzinfo=datetime.timezone.utc)
"""

import re
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

import structlog

from opsflow.engine.state_manager import StateManager
from opsflow.exceptions import ConfigurationError, RecordNotFoundError
from opsflow.models.domain import SupplyChainEvent, WorkflowDefinition
from opsflow.utils.clock import Clock, utcnow

log = structlog.get_logger(__name__)

EVENTS = "events"

_FIELD_RE = re.compile(r"^(\*|\d+(?:-\d+)?)(?:/(\d+))?$")

# (name, minimum, maximum)
_FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day_of_month", 1, 31),
    ("month", 1, 12),
    ("day_of_week", 0, 7),
)

# Longest gap between two matches of any valid expression (Feb 29 on a given weekday).
_SEARCH_LIMIT = timedelta(days=366 * 28)


class CronSchedule:
    """A parsed 5-field cron expression."""

    def __init__(self, expression: str) -> None:
        self.expression = expression.strip()
        parts = self.expression.split()
        if len(parts) != 5:
            raise ConfigurationError(f"Cron expression must have 5 fields: '{expression}'")

        values = [self._parse_field(part, name, lo, hi) for part, (name, lo, hi) in zip(parts, _FIELDS)]
        self.minutes, self.hours, self.days, self.months, weekdays = values
        self.weekdays = {0 if d == 7 else d for d in weekdays}
        self._dom_restricted = parts[2] != "*"
        self._dow_restricted = parts[4] != "*"

    @staticmethod
    def _parse_field(field: str, name: str, lo: int, hi: int) -> set[int]:
        values: set[int] = set()
        for item in field.split(","):
            match = _FIELD_RE.match(item)
            if not match:
                raise ConfigurationError(f"Invalid cron {name} field: '{field}'")

            span, step_text = match.groups()
            step = int(step_text) if step_text else 1
            if step < 1:
                raise ConfigurationError(f"Cron step must be positive in {name} field: '{field}'")

            if span == "*":
                start, end = lo, hi
            elif "-" in span:
                start, end = (int(v) for v in span.split("-"))
            else:
                start = end = int(span)
                if step_text:
                    end = hi

            if start < lo or end > hi or start > end:
                raise ConfigurationError(f"Cron {name} field out of range {lo}-{hi}: '{field}'")
            values.update(range(start, end + 1, step))
        return values

    def _day_matches(self, moment: datetime) -> bool:
        dom = moment.day in self.days
        dow = (moment.isoweekday() % 7) in self.weekdays
        if self._dom_restricted and self._dow_restricted:
            return dom or dow
        return dom and dow

    def matches(self, moment: datetime) -> bool:
        return (
            moment.minute in self.minutes
            and moment.hour in self.hours
            and moment.month in self.months
            and self._day_matches(moment)
        )

    def next_after(self, moment: datetime) -> datetime:
        """First matching minute strictly after ``moment``."""
        candidate = moment.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = candidate + _SEARCH_LIMIT

        while candidate <= limit:
            if candidate.month not in self.months or not self._day_matches(candidate):
                candidate = candidate.replace(hour=0, minute=0) + timedelta(days=1)
                continue
            if candidate.hour not in self.hours:
                candidate = candidate.replace(minute=0) + timedelta(hours=1)
                continue
            if candidate.minute not in self.minutes:
                candidate += timedelta(minutes=1)
                continue
            return candidate

        raise ConfigurationError(f"Cron expression never matches: '{self.expression}'")


def validate_cron(expression: str) -> None:
    """Raise ``ConfigurationError`` if ``expression`` is not valid cron."""
    CronSchedule(expression)


class EventQueue:
    """Persisted events consumed by event-triggered workflows."""

    def __init__(self, state: StateManager, clock: Clock = utcnow) -> None:
        self.state = state
        self.clock = clock

    async def emit(self, event_type: str, payload: dict[str, Any] | None = None) -> SupplyChainEvent:
        try:
            event = await self.state.insert(
                EVENTS,
                lambda record_id: SupplyChainEvent(
                    id=record_id,
                    event_type=event_type,
                    payload=payload or {},
                    created_at=self.clock(),
                ),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid event: {e}") from e
        log.info("event_emitted", event_id=event.id, event_type=event_type)
        return event

    async def pending(self) -> list[SupplyChainEvent]:
        return [e for e in await self.state.list_records(EVENTS, SupplyChainEvent) if not e.processed]

    async def mark_processed(self, event_id: int) -> SupplyChainEvent:
        now = self.clock()

        def apply(event: SupplyChainEvent) -> None:
            event.processed = True
            event.processed_at = now

        try:
            return await self.state.update(EVENTS, event_id, SupplyChainEvent, apply)
        except RecordNotFoundError:
            log.warning("event_not_found", event_id=event_id)
            raise

    async def list_events(self, event_type: str | None = None, limit: int = 50) -> list[SupplyChainEvent]:
        events = [
            e
            for e in await self.state.list_records(EVENTS, SupplyChainEvent)
            if event_type is None or e.event_type == event_type
        ]
        events.sort(key=lambda e: e.id, reverse=True)
        return events[:limit]


ThresholdCheck = Callable[[dict[str, Any]], Awaitable[dict[str, Any] | None]]


def count_at_least(counter: Callable[[], Awaitable[int]], default_threshold: int = 1) -> ThresholdCheck:
    """Build a check that fires when ``counter()`` reaches the configured threshold."""

    async def check(config: dict[str, Any]) -> dict[str, Any] | None:
        threshold = int(config.get("threshold", default_threshold))
        value = await counter()
        if value >= threshold:
            return {"value": value, "threshold": threshold}
        return None

    return check


class ThresholdMonitor:
    """Named threshold checks for threshold-triggered workflows.

    A check receives the workflow's ``threshold_config`` and returns the
    reading that breached it, or None. The reading becomes the run's input.
    """

    def __init__(self, clock: Clock = utcnow) -> None:
        self.clock = clock
        self._checks: dict[str, ThresholdCheck] = {}

    def register(self, name: str, check: ThresholdCheck) -> None:
        self._checks[name] = check

    @property
    def names(self) -> list[str]:
        return sorted(self._checks)

    async def evaluate(self, workflow: WorkflowDefinition) -> dict[str, Any] | None:
        """Return the breach reading for ``workflow`` or None.

        A workflow that ran within its ``cooldown_minutes`` (default 60) is
        not re-triggered.

        Raises:
            ConfigurationError: If the configured check is unknown.
        """
        config = workflow.threshold_config or {}
        name = config.get("type")
        check = self._checks.get(name or "")
        if check is None:
            raise ConfigurationError(f"Unknown threshold check '{name}' for workflow {workflow.id}")

        cooldown = timedelta(minutes=float(config.get("cooldown_minutes", 60)))
        if workflow.last_run_at is not None and self.clock() - workflow.last_run_at < cooldown:
            return None

        reading = await check(config)
        if reading is not None:
            log.info("threshold_breached", workflow_id=workflow.id, check=name, **reading)
        return reading
