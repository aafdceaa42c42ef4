"""Pytest configuration and shared fixtures."""

from datetime import UTC, datetime
from pathlib import Path

import pytest

from opsflow.config.settings import OrchestratorSettings
from opsflow.engine.orchestrator import Orchestrator
from opsflow.engine.registry import BodyRegistry
from opsflow.engine.state_manager import StateManager
from opsflow.utils.clock import ManualClock

START = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Temporary state directory."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def state_manager(temp_state_dir: Path) -> StateManager:
    """StateManager instance with temp directory."""
    return StateManager(str(temp_state_dir))


@pytest.fixture
def clock() -> ManualClock:
    """Clock frozen at 2024-01-01 12:00 UTC."""
    return ManualClock(START)


@pytest.fixture
def settings(temp_state_dir: Path) -> OrchestratorSettings:
    """Settings with a temp state directory, no retry jitter and short deadlines."""
    return OrchestratorSettings(
        storage={"state_directory": str(temp_state_dir)},
        retry={"max_attempts": 3, "base_delay_seconds": 30, "jitter_ratio": 0},
        scheduler={
            "tick_interval_seconds": 0.01,
            "default_timeout_seconds": 5,
            "shutdown_grace_seconds": 0.2,
            "max_concurrent_runs": 5,
        },
        circuit_breaker={"failure_threshold": 5, "window_seconds": 300, "cooldown_seconds": 60},
    )


@pytest.fixture
def bodies() -> BodyRegistry:
    """Empty body registry."""
    return BodyRegistry()


@pytest.fixture
def orchestrator(settings: OrchestratorSettings, bodies: BodyRegistry, clock: ManualClock) -> Orchestrator:
    """Orchestrator wired to the temp state directory and the manual clock."""
    return Orchestrator(settings, bodies=bodies, clock=clock)
