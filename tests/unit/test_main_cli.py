"""Unit tests for the opsflow CLI.

Commands run against a real state directory under ``tmp_path``; only the
logging setup is patched out so log lines do not depend on test order.
"""

from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from opsflow.config.settings import OrchestratorSettings
from opsflow.engine.orchestrator import Orchestrator
from opsflow.enums import WorkflowType
from opsflow.main import _load_plugins, cli

BODIES_MODULE = '''
from opsflow.engine.context import CallableBody
from opsflow.enums import WorkflowType


async def forecast(context):
    return {"items_succeeded": 12, "output_data": {"horizon_days": 30}}


def register_bodies(registry):
    registry.register(WorkflowType.DEMAND_FORECASTING, CallableBody(forecast))
'''

THRESHOLDS_MODULE = '''
from opsflow.engine.triggers import count_at_least


async def low_stock_items():
    return 3


def register_thresholds(monitor):
    monitor.register("inventory_below", count_at_least(low_stock_items))
'''


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def no_logging_setup():
    with patch("opsflow.main.configure_logging"):
        yield


@pytest.fixture
def cli_runner():
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Configuration pointing the state store at a temp directory."""
    config_path = tmp_path / "opsflow.yaml"
    config_path.write_text(
        f"""
scheduler:
  default_timeout_seconds: 5
retry:
  jitter_ratio: 0
storage:
  state_directory: {tmp_path / "state"}
"""
    )
    return config_path


@pytest.fixture
def bodies_module(tmp_path: Path, monkeypatch) -> str:
    """Importable module registering a demand forecasting body."""
    package_dir = tmp_path / "bodies"
    package_dir.mkdir()
    (package_dir / "cli_test_bodies.py").write_text(BODIES_MODULE)
    monkeypatch.syspath_prepend(str(package_dir))
    return "cli_test_bodies"


@pytest.fixture
def plugin_dir(tmp_path: Path, monkeypatch) -> Path:
    """Importable directory for plug-in modules written by a test."""
    package_dir = tmp_path / "plugins"
    package_dir.mkdir()
    monkeypatch.syspath_prepend(str(package_dir))
    return package_dir


@pytest.fixture
def seeded(cli_runner: CliRunner, config_file: Path) -> Path:
    """Config file whose state directory already holds the defaults."""
    result = cli_runner.invoke(cli, ["--config", str(config_file), "init-defaults"])
    assert result.exit_code == 0, result.output
    return config_file


def _invoke(runner: CliRunner, config_file: Path, *args: str, bodies: str | None = None):
    options = ["--config", str(config_file)]
    if bodies:
        options += ["--bodies", bodies]
    return runner.invoke(cli, [*options, *args])


# =============================================================================
# Help and configuration
# =============================================================================


class TestCLIBasics:
    def test_main_help(self, cli_runner: CliRunner):
        result = cli_runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "Autonomous workflow orchestration CLI" in result.output
        assert "--config" in result.output
        assert "--bodies" in result.output

    def test_daemon_help(self, cli_runner: CliRunner):
        result = cli_runner.invoke(cli, ["daemon", "--help"])

        assert result.exit_code == 0
        assert "--init-defaults" in result.output

    def test_missing_config_file(self, cli_runner: CliRunner, tmp_path: Path):
        result = cli_runner.invoke(cli, ["--config", str(tmp_path / "missing.yaml"), "status"])

        assert result.exit_code == 1
        assert "Configuration file not found" in result.output

    def test_invalid_config(self, cli_runner: CliRunner, tmp_path: Path):
        config_path = tmp_path / "bad.yaml"
        config_path.write_text("retry:\n  max_attempts: 0\n")

        result = cli_runner.invoke(cli, ["--config", str(config_path), "status"])

        assert result.exit_code == 1
        assert "Failed to validate configuration" in result.output

    def test_unknown_bodies_module(self, cli_runner: CliRunner, config_file: Path):
        result = _invoke(cli_runner, config_file, "status", bodies="no_such_bodies_module")

        assert result.exit_code == 1
        assert "Cannot import workflow bodies module 'no_such_bodies_module'" in result.output

    def test_module_without_hooks(self, cli_runner: CliRunner, config_file: Path, plugin_dir: Path):
        (plugin_dir / "cli_test_empty_plugin.py").write_text("VERSION = 1\n")

        result = _invoke(cli_runner, config_file, "status", bodies="cli_test_empty_plugin")

        assert result.exit_code == 1
        assert "has neither register_bodies(registry) nor register_thresholds(monitor)" in result.output

    def test_thresholds_only_module_is_accepted(self, cli_runner: CliRunner, config_file: Path, plugin_dir: Path):
        (plugin_dir / "cli_test_threshold_cli.py").write_text(THRESHOLDS_MODULE)

        result = _invoke(cli_runner, config_file, "status", bodies="cli_test_threshold_cli")

        assert result.exit_code == 0, result.output

    @pytest.mark.asyncio
    async def test_plugin_threshold_check_drives_seeded_reorder(
        self, settings: OrchestratorSettings, plugin_dir: Path
    ):
        (plugin_dir / "cli_test_thresholds.py").write_text(THRESHOLDS_MODULE)
        orchestrator = Orchestrator(settings)
        await orchestrator.initialize_defaults()

        _load_plugins(orchestrator, "cli_test_thresholds")

        assert "inventory_below" in orchestrator.thresholds.names
        reorder = await orchestrator.workflows.find_by_type(WorkflowType.INVENTORY_REORDER)
        assert await orchestrator.thresholds.evaluate(reorder) == {"value": 3, "threshold": 1}

    def test_status(self, cli_runner: CliRunner, config_file: Path):
        result = _invoke(cli_runner, config_file, "status")

        assert result.exit_code == 0
        assert "is_running: False" in result.output
        assert "state: closed" in result.output


# =============================================================================
# Workflows and runs
# =============================================================================


class TestWorkflowCommands:
    def test_init_defaults_is_idempotent(self, cli_runner: CliRunner, seeded: Path):
        result = _invoke(cli_runner, seeded, "init-defaults")

        assert result.exit_code == 0
        assert "Initialized defaults:" in result.output
        assert "workflows: 0" in result.output

    def test_list_workflows(self, cli_runner: CliRunner, seeded: Path):
        result = _invoke(cli_runner, seeded, "workflows")

        assert result.exit_code == 0
        assert "[1] Daily Demand Forecasting (demand_forecasting)  active  trigger=0 6 * * *" in result.output

    def test_empty_workflow_list(self, cli_runner: CliRunner, config_file: Path):
        result = _invoke(cli_runner, config_file, "workflows")

        assert "No workflows found." in result.output

    def test_toggle(self, cli_runner: CliRunner, seeded: Path):
        result = _invoke(cli_runner, seeded, "toggle", "1", "--disable")

        assert result.exit_code == 0
        assert "Workflow 1 (Daily Demand Forecasting) is now inactive" in result.output

        triggered = _invoke(cli_runner, seeded, "trigger", "1")
        assert triggered.exit_code == 1
        assert "Error: Workflow 'Daily Demand Forecasting' (1) is disabled" in triggered.output

    def test_trigger_with_body(self, cli_runner: CliRunner, seeded: Path, bodies_module: str):
        result = _invoke(cli_runner, seeded, "trigger", "1", "--input", '{"region": "EU"}', bodies=bodies_module)

        assert result.exit_code == 0
        assert "Run WF-DEMA-000001 finished with status completed" in result.output

        runs = _invoke(cli_runner, seeded, "runs", "--workflow-id", "1")
        assert "WF-DEMA-000001  completed  workflow=1  attempt=1" in runs.output

    def test_trigger_without_body_dead_letters(self, cli_runner: CliRunner, seeded: Path):
        result = _invoke(cli_runner, seeded, "trigger", "1")

        assert result.exit_code == 0
        assert "finished with status failed" in result.output

        dlq = _invoke(cli_runner, seeded, "dlq")
        assert "[1] WF-DEMA-000001" in dlq.output
        assert "[DLQ] No workflow body registered for type 'demand_forecasting'" in dlq.output

    def test_retry_dlq_after_body_registered(self, cli_runner: CliRunner, seeded: Path, bodies_module: str):
        _invoke(cli_runner, seeded, "trigger", "1")

        result = _invoke(cli_runner, seeded, "retry-dlq", "1", bodies=bodies_module)

        assert result.exit_code == 0
        assert "Retried run 1 as WF-DEMA-000002: completed" in result.output
        assert "Dead-letter queue is empty." in _invoke(cli_runner, seeded, "dlq").output

    def test_archive(self, cli_runner: CliRunner, seeded: Path):
        result = _invoke(cli_runner, seeded, "archive", "1")

        assert result.exit_code == 0
        assert "Workflow 1 (Daily Demand Forecasting) archived" in result.output
        assert "Daily Demand Forecasting" not in _invoke(cli_runner, seeded, "workflows").output

    def test_show_run(self, cli_runner: CliRunner, seeded: Path, bodies_module: str):
        _invoke(cli_runner, seeded, "trigger", "1", bodies=bodies_module)

        result = _invoke(cli_runner, seeded, "show-run", "1")

        assert result.exit_code == 0
        assert "run_number: WF-DEMA-000001" in result.output
        assert "horizon_days: 30" in result.output

    def test_trigger_unknown_workflow(self, cli_runner: CliRunner, seeded: Path):
        result = _invoke(cli_runner, seeded, "trigger", "99")

        assert result.exit_code == 1
        assert "Error: Workflow 99 not found" in result.output

    def test_trigger_rejects_bad_json(self, cli_runner: CliRunner, seeded: Path):
        result = _invoke(cli_runner, seeded, "trigger", "1", "--input", "[1, 2]")

        assert result.exit_code == 2
        assert "must be a JSON object" in result.output

    def test_runs_empty(self, cli_runner: CliRunner, config_file: Path):
        result = _invoke(cli_runner, config_file, "runs")

        assert result.exit_code == 0
        assert "No runs found." in result.output

    def test_run_stats(self, cli_runner: CliRunner, seeded: Path, bodies_module: str):
        _invoke(cli_runner, seeded, "trigger", "1", bodies=bodies_module)

        result = _invoke(cli_runner, seeded, "run-stats", "--days", "7")

        assert result.exit_code == 0
        assert "total: 1" in result.output
        assert "completed: 1" in result.output


# =============================================================================
# Pipelines
# =============================================================================


class TestPipelineCommands:
    def test_list_pipelines(self, cli_runner: CliRunner, seeded: Path):
        result = _invoke(cli_runner, seeded, "pipelines")

        assert "plan_to_produce: Plan-to-Produce (5 stages)" in result.output

    def test_pipeline_plan(self, cli_runner: CliRunner, seeded: Path):
        result = _invoke(cli_runner, seeded, "pipeline-plan", "plan_to_produce")

        assert result.exit_code == 0
        assert "Wave 1: 0:demand_forecasting" in result.output
        assert "Wave 3: 2:material_requirements, 3:work_order_generation" in result.output

    def test_unknown_pipeline(self, cli_runner: CliRunner, seeded: Path):
        result = _invoke(cli_runner, seeded, "run-pipeline", "nope")

        assert result.exit_code == 1
        assert "Error: Pipeline 'nope' not found" in result.output

    def test_run_pipeline_with_missing_bodies(self, cli_runner: CliRunner, seeded: Path, bodies_module: str):
        result = _invoke(cli_runner, seeded, "run-pipeline", "plan_to_produce", bodies=bodies_module)

        assert result.exit_code == 0
        assert "Pipeline plan_to_produce: 1/5 stages completed" in result.output
        assert "stage 0: completed" in result.output
        assert "stage 1: failed" in result.output
        assert "stage 4: skipped" in result.output


# =============================================================================
# Exceptions, approvals, events and metrics
# =============================================================================


class TestReviewCommands:
    def test_exception_rules(self, cli_runner: CliRunner, seeded: Path):
        result = _invoke(cli_runner, seeded, "exception-rules")

        assert result.output.index("stockout") < result.output.index("price_variance")

    def test_add_exception_rule(self, cli_runner: CliRunner, seeded: Path):
        result = _invoke(
            cli_runner, seeded, "add-exception-rule", "customs_hold", "--name", "Customs", "--strategy", "escalate"
        )

        assert result.exit_code == 0
        assert "added for customs_hold" in result.output
        assert "customs_hold -> escalate  Customs" in _invoke(cli_runner, seeded, "exception-rules").output

    def test_ignore_unknown_exception(self, cli_runner: CliRunner, seeded: Path):
        result = _invoke(cli_runner, seeded, "ignore-exception", "8")

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_no_exceptions(self, cli_runner: CliRunner, seeded: Path):
        assert "No exceptions found." in _invoke(cli_runner, seeded, "exceptions", "--severity", "high").output

    def test_resolve_unknown_exception(self, cli_runner: CliRunner, seeded: Path):
        result = _invoke(cli_runner, seeded, "resolve-exception", "5", "--action", "refund")

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_approve_unknown_request(self, cli_runner: CliRunner, seeded: Path):
        result = _invoke(cli_runner, seeded, "approve", "3", "--by", "ops-lead")

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_no_approvals(self, cli_runner: CliRunner, seeded: Path):
        assert "No approval requests found." in _invoke(cli_runner, seeded, "approvals").output

    def test_set_threshold(self, cli_runner: CliRunner, seeded: Path):
        result = _invoke(cli_runner, seeded, "set-threshold", "freight", "--auto", "200", "--level1", "2000")

        assert result.exit_code == 0
        assert "Threshold for freight saved" in result.output
        assert "freight: auto<=200  L1<=2000" in _invoke(cli_runner, seeded, "thresholds").output

    def test_set_threshold_rejects_decreasing_levels(self, cli_runner: CliRunner, seeded: Path):
        result = _invoke(cli_runner, seeded, "set-threshold", "freight", "--level1", "500", "--level2", "100")

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_emit_event(self, cli_runner: CliRunner, config_file: Path):
        result = _invoke(cli_runner, config_file, "emit-event", "stock_low", "--payload", '{"sku": "A-1"}')

        assert result.exit_code == 0
        assert "Event 1 (stock_low) queued" in result.output
        listed = _invoke(cli_runner, config_file, "events", "--type", "stock_low")
        assert '[1] stock_low  pending  {"sku": "A-1"}' in listed.output

    def test_metrics_overview(self, cli_runner: CliRunner, seeded: Path, bodies_module: str):
        _invoke(cli_runner, seeded, "trigger", "1", bodies=bodies_module)

        result = _invoke(cli_runner, seeded, "metrics", "--days", "1")

        assert result.exit_code == 0
        assert "total_runs: 1" in result.output
        assert "[1] Daily Demand Forecasting: ok=1 failed=0" in result.output

    def test_metrics_prometheus(self, cli_runner: CliRunner, config_file: Path):
        result = _invoke(cli_runner, config_file, "metrics", "--prometheus")

        assert result.exit_code == 0
        assert "opsflow_" in result.output
