"""Tests for opsflow/config/settings.py."""

from decimal import Decimal
from pathlib import Path

import pytest

from opsflow.config.settings import OrchestratorSettings, RetryConfig
from opsflow.exceptions import ConfigurationError


class TestDefaults:
    """Every section is usable without a config file."""

    def test_default_values(self):
        settings = OrchestratorSettings()

        assert settings.scheduler.tick_interval_seconds == 30
        assert settings.scheduler.max_concurrent_runs == 5
        assert settings.circuit_breaker.failure_threshold == 5
        assert settings.circuit_breaker.window_seconds == 300
        assert settings.circuit_breaker.cooldown_seconds == 60
        assert settings.retry.max_attempts == 3
        assert settings.pipeline.max_workers == 3
        assert settings.approval.default_auto_approve_amount == Decimal("500")

    def test_state_dir_is_path(self):
        settings = OrchestratorSettings(storage={"state_directory": "/tmp/opsflow"})

        assert settings.state_dir == Path("/tmp/opsflow")

    def test_env_override_nested(self, monkeypatch):
        monkeypatch.setenv("OPSFLOW_SCHEDULER__MAX_CONCURRENT_RUNS", "9")

        assert OrchestratorSettings().scheduler.max_concurrent_runs == 9


class TestRetryConfig:
    def test_max_delay_below_base_rejected(self):
        with pytest.raises(ValueError, match="max_delay_seconds"):
            RetryConfig(base_delay_seconds=60, max_delay_seconds=10)

    def test_jitter_ratio_bounds(self):
        with pytest.raises(ValueError):
            RetryConfig(jitter_ratio=1.5)


class TestFromYaml:
    """Loading settings from YAML files."""

    def test_load_sections(self, tmp_path: Path):
        config = tmp_path / "opsflow.yaml"
        config.write_text(
            """
scheduler:
  tick_interval_seconds: 10
  max_concurrent_runs: 2
retry:
  max_attempts: 4
storage:
  state_directory: /var/lib/opsflow
"""
        )

        settings = OrchestratorSettings.from_yaml(str(config))

        assert settings.scheduler.tick_interval_seconds == 10
        assert settings.scheduler.max_concurrent_runs == 2
        assert settings.retry.max_attempts == 4
        assert settings.state_dir == Path("/var/lib/opsflow")

    def test_env_interpolation_with_default(self, tmp_path: Path, monkeypatch):
        monkeypatch.delenv("OPSFLOW_TEST_THRESHOLD", raising=False)
        monkeypatch.setenv("OPSFLOW_TEST_STATE", "/data/state")
        config = tmp_path / "opsflow.yaml"
        config.write_text(
            """
circuit_breaker:
  failure_threshold: ${OPSFLOW_TEST_THRESHOLD:-7}
storage:
  state_directory: ${OPSFLOW_TEST_STATE}
"""
        )

        settings = OrchestratorSettings.from_yaml(str(config))

        assert settings.circuit_breaker.failure_threshold == 7
        assert settings.storage.state_directory == "/data/state"

    def test_comment_lines_not_interpolated(self, tmp_path: Path, monkeypatch):
        monkeypatch.delenv("OPSFLOW_UNSET_VAR", raising=False)
        config = tmp_path / "opsflow.yaml"
        config.write_text("# uses ${OPSFLOW_UNSET_VAR}\nretry:\n  max_attempts: 2\n")

        assert OrchestratorSettings.from_yaml(str(config)).retry.max_attempts == 2

    def test_missing_env_var(self, tmp_path: Path, monkeypatch):
        monkeypatch.delenv("OPSFLOW_UNSET_VAR", raising=False)
        config = tmp_path / "opsflow.yaml"
        config.write_text("storage:\n  state_directory: ${OPSFLOW_UNSET_VAR}\n")

        with pytest.raises(ConfigurationError, match="OPSFLOW_UNSET_VAR"):
            OrchestratorSettings.from_yaml(str(config))

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="not found"):
            OrchestratorSettings.from_yaml(str(tmp_path / "missing.yaml"))

    def test_invalid_yaml(self, tmp_path: Path):
        config = tmp_path / "opsflow.yaml"
        config.write_text("scheduler: [unclosed\n")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            OrchestratorSettings.from_yaml(str(config))

    def test_non_mapping_rejected(self, tmp_path: Path):
        config = tmp_path / "opsflow.yaml"
        config.write_text("- one\n- two\n")

        with pytest.raises(ConfigurationError, match="YAML object"):
            OrchestratorSettings.from_yaml(str(config))

    def test_empty_file_gives_defaults(self, tmp_path: Path):
        config = tmp_path / "opsflow.yaml"
        config.write_text("")

        assert OrchestratorSettings.from_yaml(str(config)).retry.max_attempts == 3

    def test_invalid_values(self, tmp_path: Path):
        config = tmp_path / "opsflow.yaml"
        config.write_text("scheduler:\n  max_concurrent_runs: 0\n")

        with pytest.raises(ConfigurationError, match="Failed to validate"):
            OrchestratorSettings.from_yaml(str(config))
