"""Time helpers shared by the engine components.

Components accept a ``clock`` callable so tests can move time forward
without sleeping.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def duration_ms(started: datetime | None, finished: datetime) -> int | None:
    if started is None:
        return None
    return int((finished - started).total_seconds() * 1000)


class ManualClock:
    """Clock that only moves when told to.

    Example:
        >>> clock = ManualClock(datetime(2024, 1, 1, tzinfo=UTC))
        >>> clock.advance(seconds=90)
        >>> clock().minute
        1
    """

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now
