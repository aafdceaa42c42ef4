"""
Fleet-wide circuit breaker for workflow dispatch.

One breaker guards every dispatch the orchestrator makes. Failures are
counted in a sliding time window; when the count reaches the threshold the
breaker opens and every workflow is refused until the cooldown elapses.
After the cooldown each workflow may make exactly one probe dispatch. A
successful probe closes the breaker, a failed one reopens it.

State transitions::

    closed --(failures in window >= threshold)--> open
    open --(cooldown elapsed)--> half_open
    half_open --(probe succeeds)--> closed
    half_open --(probe fails)--> open
"""

import asyncio
from collections import deque
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

import structlog

from opsflow.enums import CircuitState
from opsflow.utils.clock import Clock, utcnow

log = structlog.get_logger(__name__)


class CircuitBreaker:
    """Shared breaker state with atomic transitions.

    All mutations happen under an ``asyncio.Lock``. ``snapshot()`` is a
    synchronous read for status reporting.

    Example:
        >>> breaker = CircuitBreaker(failure_threshold=5, window_seconds=300, cooldown_seconds=60)
        >>> if await breaker.allow(workflow_id=3):
        ...     ...
        ...     await breaker.record_success(3)
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        window_seconds: float = 300.0,
        cooldown_seconds: float = 60.0,
        clock: Clock = utcnow,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.window = timedelta(seconds=window_seconds)
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.clock = clock

        self._state = CircuitState.CLOSED
        self._failures: deque[datetime] = deque()
        self._last_transition_at = clock()
        self._probes: set[int] = set()
        self._trip_reason: str | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        """Current state, applying the open to half_open timeout."""
        self._refresh()
        return self._state

    @property
    def failure_count(self) -> int:
        self._prune()
        return len(self._failures)

    def _refresh(self) -> None:
        if self._state == CircuitState.OPEN and self.clock() - self._last_transition_at >= self.cooldown:
            self._transition_to(CircuitState.HALF_OPEN)

    def _prune(self) -> None:
        cutoff = self.clock() - self.window
        while self._failures and self._failures[0] < cutoff:
            self._failures.popleft()

    def _transition_to(self, new_state: CircuitState, reason: str | None = None) -> None:
        old_state = self._state
        self._state = new_state
        self._last_transition_at = self.clock()
        self._probes.clear()

        if new_state == CircuitState.CLOSED:
            self._failures.clear()
            self._trip_reason = None
        elif new_state == CircuitState.OPEN:
            self._trip_reason = reason

        log.warning(
            "circuit_breaker_transition",
            from_state=str(old_state),
            to_state=str(new_state),
            failures=len(self._failures),
            reason=reason,
        )

    async def allow(self, workflow_id: int) -> bool:
        """Decide whether ``workflow_id`` may dispatch now.

        In half_open this consumes the workflow's probe slot, so call it
        only when the dispatch will actually happen.
        """
        async with self._lock:
            state = self.state
            if state == CircuitState.CLOSED:
                return True
            if state == CircuitState.OPEN:
                log.debug("dispatch_refused_circuit_open", workflow_id=workflow_id)
                return False
            if workflow_id in self._probes:
                log.debug("probe_slot_used", workflow_id=workflow_id)
                return False
            self._probes.add(workflow_id)
            log.info("probe_dispatch_allowed", workflow_id=workflow_id)
            return True

    async def release(self, workflow_id: int) -> None:
        """Give back a probe slot whose dispatch produced no health signal."""
        async with self._lock:
            self._probes.discard(workflow_id)

    async def record_success(self, workflow_id: int | None = None) -> None:
        async with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.CLOSED, reason=f"probe succeeded for workflow {workflow_id}")

    async def record_failure(self, workflow_id: int | None = None) -> None:
        async with self._lock:
            now = self.clock()
            self._failures.append(now)
            self._prune()
            state = self.state

            if state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN, reason=f"probe failed for workflow {workflow_id}")
            elif state == CircuitState.CLOSED and len(self._failures) >= self.failure_threshold:
                self._transition_to(
                    CircuitState.OPEN,
                    reason=f"{len(self._failures)} failures within {int(self.window.total_seconds())}s",
                )

    async def trip(self, reason: str) -> None:
        """Open the breaker immediately, e.g. when bookkeeping fails."""
        async with self._lock:
            if self._state != CircuitState.OPEN:
                self._transition_to(CircuitState.OPEN, reason=reason)
            else:
                self._last_transition_at = self.clock()

    async def reset(self) -> None:
        """Manually close the breaker and forget recorded failures."""
        async with self._lock:
            self._transition_to(CircuitState.CLOSED, reason="manual reset")

    def rebuild(self, failure_times: Iterable[datetime]) -> None:
        """Restore the failure window from persisted run history.

        Called once on startup before the loop runs, so no lock is taken.
        """
        cutoff = self.clock() - self.window
        recent = sorted(t for t in failure_times if t >= cutoff)
        self._failures = deque(recent)
        if len(recent) >= self.failure_threshold:
            self._state = CircuitState.OPEN
            self._last_transition_at = recent[-1]
            self._trip_reason = "rebuilt from run history"
            log.warning("circuit_breaker_rebuilt_open", failures=len(recent))

    def snapshot(self) -> dict[str, Any]:
        state = self.state
        return {
            "state": str(state),
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "last_transition_at": self._last_transition_at.isoformat(),
            "reason": self._trip_reason,
            "probing_workflows": sorted(self._probes),
        }
