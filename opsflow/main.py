"""CLI entry point for the opsflow orchestrator."""

import asyncio
import importlib
import json
import signal
import sys
from collections.abc import Coroutine
from decimal import Decimal
from pathlib import Path
from typing import Any

import click
import structlog

from opsflow.config.settings import OrchestratorSettings
from opsflow.engine.orchestrator import Orchestrator
from opsflow.enums import ApprovalStatus, ExceptionStatus, ResolutionStrategy, RunStatus, Severity
from opsflow.exceptions import ConfigurationError, OpsflowError
from opsflow.models.domain import Run
from opsflow.monitoring.metrics import MetricsCollector
from opsflow.utils.logging_config import LOG_LEVELS, configure_logging

log = structlog.get_logger(__name__)


def _parse_json(ctx: click.Context, param: click.Parameter, value: str | None) -> dict[str, Any] | None:
    if value is None:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise click.BadParameter("must be a JSON object")
    return parsed


@click.group()
@click.option("--config", default=None, help="Path to YAML configuration file")
@click.option("--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False), default="INFO", help="Logging level")
@click.option(
    "--bodies",
    envvar="OPSFLOW_BODIES",
    default=None,
    help="Module providing register_bodies(registry) and/or register_thresholds(monitor)",
)
@click.pass_context
def cli(ctx: click.Context, config: str | None, log_level: str, bodies: str | None) -> None:
    """opsflow: Autonomous workflow orchestration CLI."""
    configure_logging(log_level)

    if config is None:
        settings = OrchestratorSettings()
    else:
        config_path = Path(config)
        if not config_path.exists():
            click.echo(f"Error: Configuration file not found: {config}", err=True)
            sys.exit(1)
        try:
            settings = OrchestratorSettings.from_yaml(str(config_path))
        except ConfigurationError as e:
            click.echo(f"Error: {e.message}", err=True)
            log.debug("config_error", exc_info=True)
            sys.exit(1)

    ctx.obj = {"settings": settings, "bodies": bodies}


def _run(command: str, coro: Coroutine[Any, Any, None]) -> None:
    """Run a command coroutine with the shared error reporting."""
    try:
        asyncio.run(coro)
    except OpsflowError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{command}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error(f"{command}_unexpected", exc_info=True)
        sys.exit(1)


def _load_plugins(orchestrator: Orchestrator, module_name: str | None) -> None:
    """Plug a module's workflow bodies and threshold checks into ``orchestrator``.

    The module provides ``register_bodies(registry)``, which receives the
    ``BodyRegistry``, and/or ``register_thresholds(monitor)``, which receives
    the ``ThresholdMonitor`` (e.g. to supply ``inventory_below``).

    Raises:
        ConfigurationError: If the module cannot be imported or provides
            neither function.
    """
    if not module_name:
        return

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import workflow bodies module '{module_name}': {e}") from e

    register_bodies = getattr(module, "register_bodies", None)
    register_thresholds = getattr(module, "register_thresholds", None)
    if not callable(register_bodies) and not callable(register_thresholds):
        raise ConfigurationError(
            f"Module '{module_name}' has neither register_bodies(registry) nor register_thresholds(monitor)"
        )

    if callable(register_bodies):
        register_bodies(orchestrator.bodies)
    if callable(register_thresholds):
        register_thresholds(orchestrator.thresholds)
    log.info(
        "workflow_plugins_loaded",
        module=module_name,
        types=[str(t) for t in orchestrator.bodies.registered_types()],
        threshold_checks=orchestrator.thresholds.names,
    )


def _create_orchestrator(ctx: click.Context) -> Orchestrator:
    orchestrator = Orchestrator(ctx.obj["settings"])
    try:
        _load_plugins(orchestrator, ctx.obj["bodies"])
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("bodies_error", exc_info=True)
        sys.exit(1)
    return orchestrator


def _echo_run(run: Run) -> None:
    line = f"  {run.run_number}  {run.status}  workflow={run.workflow_id}  attempt={run.attempt_number}"
    if run.total_value is not None:
        line += f"  value={run.total_value}"
    if run.error_message:
        line += f"  error={run.error_message}"
    click.echo(line)


def _echo_mapping(data: dict[str, Any], indent: int = 0) -> None:
    for key, value in data.items():
        if isinstance(value, dict):
            click.echo(f"{' ' * indent}{key}:")
            _echo_mapping(value, indent + 2)
        else:
            click.echo(f"{' ' * indent}{key}: {value}")


# =============================================================================
# Daemon and status
# =============================================================================


@cli.command()
@click.option("--init-defaults", "seed", is_flag=True, help="Seed built-in definitions before starting")
@click.pass_context
def daemon(ctx: click.Context, seed: bool) -> None:
    """Run the scheduler loop until interrupted."""
    _run("daemon", _daemon_mode(_create_orchestrator(ctx), seed))


async def _daemon_mode(orchestrator: Orchestrator, seed: bool) -> None:
    """Run in daemon mode.

    Args:
        orchestrator: Orchestrator to run
        seed: Seed built-in definitions first
    """
    if seed:
        await orchestrator.initialize_defaults()

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    await orchestrator.start()
    interval = orchestrator.settings.scheduler.tick_interval_seconds
    click.echo(f"Starting daemon mode (tick every {interval:g}s)")
    log.info("daemon_mode_started", interval=interval)

    try:
        await stop_requested.wait()
        click.echo("\nShutting down daemon...")
    finally:
        await orchestrator.stop()


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show orchestrator status."""
    _run("status", _show_status(_create_orchestrator(ctx)))


async def _show_status(orchestrator: Orchestrator) -> None:
    await orchestrator.recover_breaker()
    _echo_mapping(await orchestrator.status())


@cli.command("init-defaults")
@click.pass_context
def init_defaults(ctx: click.Context) -> None:
    """Seed built-in workflows, thresholds, rules and pipelines."""
    _run("init_defaults", _init_defaults(_create_orchestrator(ctx)))


async def _init_defaults(orchestrator: Orchestrator) -> None:
    created = await orchestrator.initialize_defaults()
    click.echo("Initialized defaults:")
    _echo_mapping(created, indent=2)


# =============================================================================
# Workflows and runs
# =============================================================================


@cli.command()
@click.option("--all", "include_archived", is_flag=True, help="Include archived workflows")
@click.pass_context
def workflows(ctx: click.Context, include_archived: bool) -> None:
    """List workflow definitions."""
    _run("workflows", _list_workflows(_create_orchestrator(ctx), include_archived))


async def _list_workflows(orchestrator: Orchestrator, include_archived: bool) -> None:
    definitions = await orchestrator.list_workflows(include_archived)
    if not definitions:
        click.echo("No workflows found.")
        return

    click.echo(f"Workflows ({len(definitions)}):\n")
    for workflow in definitions:
        state = "archived" if workflow.is_archived else ("active" if workflow.is_active else "inactive")
        trigger = workflow.cron_schedule or ",".join(workflow.trigger_events) or str(workflow.trigger_type)
        click.echo(
            f"  [{workflow.id}] {workflow.name} ({workflow.workflow_type})  {state}  "
            f"trigger={trigger}  ok={workflow.success_count} failed={workflow.failure_count}"
        )


@cli.command()
@click.argument("workflow_id", type=int)
@click.option("--enable/--disable", "enabled", required=True, help="Activate or deactivate")
@click.pass_context
def toggle(ctx: click.Context, workflow_id: int, enabled: bool) -> None:
    """Activate or deactivate a workflow."""
    _run("toggle", _toggle(_create_orchestrator(ctx), workflow_id, enabled))


async def _toggle(orchestrator: Orchestrator, workflow_id: int, enabled: bool) -> None:
    workflow = await orchestrator.toggle_workflow(workflow_id, enabled)
    click.echo(f"Workflow {workflow.id} ({workflow.name}) is now {'active' if workflow.is_active else 'inactive'}")


@cli.command()
@click.argument("workflow_id", type=int)
@click.pass_context
def archive(ctx: click.Context, workflow_id: int) -> None:
    """Archive a workflow; it is never dispatched again."""
    _run("archive", _archive(_create_orchestrator(ctx), workflow_id))


async def _archive(orchestrator: Orchestrator, workflow_id: int) -> None:
    workflow = await orchestrator.archive_workflow(workflow_id)
    click.echo(f"Workflow {workflow.id} ({workflow.name}) archived")


@cli.command()
@click.argument("workflow_id", type=int)
@click.option("--input", "input_data", callback=_parse_json, help="Run input as a JSON object")
@click.pass_context
def trigger(ctx: click.Context, workflow_id: int, input_data: dict[str, Any] | None) -> None:
    """Run a workflow now."""
    _run("trigger", _trigger(_create_orchestrator(ctx), workflow_id, input_data))


async def _trigger(orchestrator: Orchestrator, workflow_id: int, input_data: dict[str, Any] | None) -> None:
    run = await orchestrator.trigger_workflow(workflow_id, input_data)
    click.echo(f"Run {run.run_number} finished with status {run.status}")
    _echo_run(run)


@cli.command("show-run")
@click.argument("run_id", type=int)
@click.pass_context
def show_run(ctx: click.Context, run_id: int) -> None:
    """Show one run in full."""
    _run("show_run", _show_run(_create_orchestrator(ctx), run_id))


async def _show_run(orchestrator: Orchestrator, run_id: int) -> None:
    run = await orchestrator.get_run(run_id)
    _echo_mapping(run.model_dump(mode="json", exclude_none=True))


@cli.command()
@click.option("--workflow-id", type=int, default=None, help="Only runs of this workflow")
@click.option("--status", "run_status", type=click.Choice([s.value for s in RunStatus]), default=None)
@click.option("--limit", type=int, default=20, show_default=True)
@click.option("--offset", type=int, default=0)
@click.pass_context
def runs(ctx: click.Context, workflow_id: int | None, run_status: str | None, limit: int, offset: int) -> None:
    """List runs, newest first."""
    status_filter = RunStatus(run_status) if run_status else None
    _run("runs", _list_runs(_create_orchestrator(ctx), workflow_id, status_filter, limit, offset))


async def _list_runs(
    orchestrator: Orchestrator,
    workflow_id: int | None,
    run_status: RunStatus | None,
    limit: int,
    offset: int,
) -> None:
    found = await orchestrator.list_runs(workflow_id, run_status, limit, offset)
    if not found:
        click.echo("No runs found.")
        return
    click.echo(f"Runs ({len(found)}):\n")
    for run in found:
        _echo_run(run)


@cli.command("run-stats")
@click.option("--workflow-id", type=int, default=None)
@click.option("--days", type=int, default=None, help="Only runs created in the last N days")
@click.pass_context
def run_stats(ctx: click.Context, workflow_id: int | None, days: int | None) -> None:
    """Show run statistics."""
    _run("run_stats", _run_stats(_create_orchestrator(ctx), workflow_id, days))


async def _run_stats(orchestrator: Orchestrator, workflow_id: int | None, days: int | None) -> None:
    _echo_mapping(await orchestrator.run_stats(workflow_id, days))


# =============================================================================
# Pipelines
# =============================================================================


@cli.command()
@click.pass_context
def pipelines(ctx: click.Context) -> None:
    """List pipeline definitions."""
    _run("pipelines", _list_pipelines(_create_orchestrator(ctx)))


async def _list_pipelines(orchestrator: Orchestrator) -> None:
    definitions = await orchestrator.list_pipelines()
    if not definitions:
        click.echo("No pipelines found.")
        return
    click.echo(f"Pipelines ({len(definitions)}):\n")
    for pipeline in definitions:
        click.echo(f"  {pipeline.id}: {pipeline.name} ({pipeline.stage_count} stages)")


@cli.command("pipeline-plan")
@click.argument("pipeline_id")
@click.pass_context
def pipeline_plan(ctx: click.Context, pipeline_id: str) -> None:
    """Show the execution waves of a pipeline."""
    _run("pipeline_plan", _pipeline_plan(_create_orchestrator(ctx), pipeline_id))


async def _pipeline_plan(orchestrator: Orchestrator, pipeline_id: str) -> None:
    plan = await orchestrator.get_execution_plan(pipeline_id)
    click.echo(f"{plan['name']} ({plan['stages_total']} stages)\n")
    for number, wave in enumerate(plan["waves"], start=1):
        stages = ", ".join(f"{stage['index']}:{stage['workflow_type']}" for stage in wave)
        click.echo(f"  Wave {number}: {stages}")


@cli.command("run-pipeline")
@click.argument("pipeline_id")
@click.pass_context
def run_pipeline(ctx: click.Context, pipeline_id: str) -> None:
    """Execute a pipeline now."""
    _run("run_pipeline", _run_pipeline(_create_orchestrator(ctx), pipeline_id))


async def _run_pipeline(orchestrator: Orchestrator, pipeline_id: str) -> None:
    execution = await orchestrator.execute_pipeline(pipeline_id)
    click.echo(
        f"Pipeline {execution.pipeline_id}: {execution.stages_completed}/{execution.stages_total} stages completed"
    )
    for index, stage_status in sorted(execution.stage_statuses.items()):
        line = f"  stage {index}: {stage_status}"
        if index in execution.stage_errors:
            line += f"  ({execution.stage_errors[index]})"
        click.echo(line)


# =============================================================================
# Dead-letter queue
# =============================================================================


@cli.command()
@click.option("--limit", type=int, default=20, show_default=True)
@click.pass_context
def dlq(ctx: click.Context, limit: int) -> None:
    """List dead-lettered runs."""
    _run("dlq", _list_dlq(_create_orchestrator(ctx), limit))


async def _list_dlq(orchestrator: Orchestrator, limit: int) -> None:
    entries = await orchestrator.list_dead_letter_queue(limit)
    if not entries:
        click.echo("Dead-letter queue is empty.")
        return
    click.echo(f"Dead-letter queue ({len(entries)}):\n")
    for run in entries:
        click.echo(f"  [{run.id}] {run.run_number}  workflow={run.workflow_id}  {run.error_message}")


@cli.command("retry-dlq")
@click.argument("run_id", type=int)
@click.pass_context
def retry_dlq(ctx: click.Context, run_id: int) -> None:
    """Re-dispatch a dead-lettered run."""
    _run("retry_dlq", _retry_dlq(_create_orchestrator(ctx), run_id))


async def _retry_dlq(orchestrator: Orchestrator, run_id: int) -> None:
    run = await orchestrator.retry_dlq(run_id)
    click.echo(f"Retried run {run_id} as {run.run_number}: {run.status}")


# =============================================================================
# Business exceptions
# =============================================================================


@cli.command()
@click.option("--status", "exc_status", type=click.Choice([s.value for s in ExceptionStatus]), default=None)
@click.option("--severity", type=click.Choice([s.value for s in Severity]), default=None)
@click.option("--limit", type=int, default=50, show_default=True)
@click.pass_context
def exceptions(ctx: click.Context, exc_status: str | None, severity: str | None, limit: int) -> None:
    """List business exceptions, most severe first."""
    _run(
        "exceptions",
        _list_exceptions(
            _create_orchestrator(ctx),
            ExceptionStatus(exc_status) if exc_status else None,
            Severity(severity) if severity else None,
            limit,
        ),
    )


async def _list_exceptions(
    orchestrator: Orchestrator,
    exc_status: ExceptionStatus | None,
    severity: Severity | None,
    limit: int,
) -> None:
    found = await orchestrator.list_exceptions(exc_status, severity, limit)
    if not found:
        click.echo("No exceptions found.")
        return
    click.echo(f"Exceptions ({len(found)}):\n")
    for exc in found:
        click.echo(f"  [{exc.id}] {exc.severity.upper()}  {exc.status}  {exc.exception_type}: {exc.description}")


@cli.command("resolve-exception")
@click.argument("exception_id", type=int)
@click.option("--action", required=True, help="Action taken to resolve it")
@click.option("--notes", default=None)
@click.pass_context
def resolve_exception(ctx: click.Context, exception_id: int, action: str, notes: str | None) -> None:
    """Mark a business exception resolved."""
    _run("resolve_exception", _resolve_exception(_create_orchestrator(ctx), exception_id, action, notes))


async def _resolve_exception(orchestrator: Orchestrator, exception_id: int, action: str, notes: str | None) -> None:
    exc = await orchestrator.resolve_exception(exception_id, action, notes)
    click.echo(f"Exception {exc.id} resolved: {exc.resolution_action}")


@cli.command("escalate-exception")
@click.argument("exception_id", type=int)
@click.pass_context
def escalate_exception(ctx: click.Context, exception_id: int) -> None:
    """Escalate a business exception."""
    _run("escalate_exception", _escalate_exception(_create_orchestrator(ctx), exception_id))


async def _escalate_exception(orchestrator: Orchestrator, exception_id: int) -> None:
    exc = await orchestrator.escalate_exception(exception_id)
    click.echo(f"Exception {exc.id} escalated")


@cli.command("ignore-exception")
@click.argument("exception_id", type=int)
@click.option("--notes", default=None)
@click.pass_context
def ignore_exception(ctx: click.Context, exception_id: int, notes: str | None) -> None:
    """Close a business exception without action."""
    _run("ignore_exception", _ignore_exception(_create_orchestrator(ctx), exception_id, notes))


async def _ignore_exception(orchestrator: Orchestrator, exception_id: int, notes: str | None) -> None:
    exc = await orchestrator.ignore_exception(exception_id, notes)
    click.echo(f"Exception {exc.id} ignored")


@cli.command("exception-rules")
@click.pass_context
def exception_rules(ctx: click.Context) -> None:
    """List exception routing rules in priority order."""
    _run("exception_rules", _list_rules(_create_orchestrator(ctx)))


async def _list_rules(orchestrator: Orchestrator) -> None:
    rules = await orchestrator.get_exception_rules()
    if not rules:
        click.echo("No exception rules configured.")
        return
    for rule in rules:
        state = "" if rule.is_active else "  (inactive)"
        click.echo(f"  [{rule.priority}] {rule.exception_type} -> {rule.resolution_strategy}  {rule.name}{state}")


@cli.command("add-exception-rule")
@click.argument("exception_type")
@click.option("--name", required=True)
@click.option(
    "--strategy",
    type=click.Choice([s.value for s in ResolutionStrategy]),
    default=ResolutionStrategy.ROUTE_TO_HUMAN.value,
    show_default=True,
)
@click.option("--priority", type=int, default=100, show_default=True, help="Lower values win")
@click.pass_context
def add_exception_rule(ctx: click.Context, exception_type: str, name: str, strategy: str, priority: int) -> None:
    """Add an exception routing rule."""
    _run(
        "add_exception_rule",
        _add_rule(_create_orchestrator(ctx), exception_type, name, ResolutionStrategy(strategy), priority),
    )


async def _add_rule(
    orchestrator: Orchestrator,
    exception_type: str,
    name: str,
    strategy: ResolutionStrategy,
    priority: int,
) -> None:
    rule = await orchestrator.create_exception_rule(
        name=name,
        exception_type=exception_type,
        resolution_strategy=strategy,
        priority=priority,
    )
    click.echo(f"Rule {rule.id} ({rule.name}) added for {rule.exception_type}")


# =============================================================================
# Approvals
# =============================================================================


@cli.command()
@click.option("--status", "approval_status", type=click.Choice([s.value for s in ApprovalStatus]), default=None)
@click.pass_context
def approvals(ctx: click.Context, approval_status: str | None) -> None:
    """List approval requests."""
    _run(
        "approvals",
        _list_approvals(_create_orchestrator(ctx), ApprovalStatus(approval_status) if approval_status else None),
    )


async def _list_approvals(orchestrator: Orchestrator, approval_status: ApprovalStatus | None) -> None:
    requests = await orchestrator.list_approvals(approval_status)
    if not requests:
        click.echo("No approval requests found.")
        return
    for request in requests:
        click.echo(
            f"  [{request.id}] run={request.run_id}  level={request.level}  {request.status}  "
            f"amount={request.amount}  entity={request.entity_type or '-'}"
        )


@cli.command()
@click.argument("approval_id", type=int)
@click.option("--by", "decided_by", required=True, help="Who approves")
@click.option("--notes", default=None)
@click.pass_context
def approve(ctx: click.Context, approval_id: int, decided_by: str, notes: str | None) -> None:
    """Approve a pending request and resume its run."""
    _run("approve", _decide(_create_orchestrator(ctx), approval_id, True, decided_by, notes))


@cli.command()
@click.argument("approval_id", type=int)
@click.option("--by", "decided_by", required=True, help="Who rejects")
@click.option("--notes", default=None, help="Reason for the rejection")
@click.pass_context
def reject(ctx: click.Context, approval_id: int, decided_by: str, notes: str | None) -> None:
    """Reject a pending request and cancel its run."""
    _run("reject", _decide(_create_orchestrator(ctx), approval_id, False, decided_by, notes))


async def _decide(
    orchestrator: Orchestrator,
    approval_id: int,
    approved: bool,
    decided_by: str,
    notes: str | None,
) -> None:
    run = await orchestrator.decide_approval(approval_id, approved, decided_by, notes)
    click.echo(f"Approval {approval_id} {'approved' if approved else 'rejected'}; run {run.run_number} is {run.status}")


@cli.command()
@click.pass_context
def thresholds(ctx: click.Context) -> None:
    """List approval thresholds."""
    _run("thresholds", _list_thresholds(_create_orchestrator(ctx)))


async def _list_thresholds(orchestrator: Orchestrator) -> None:
    configured = await orchestrator.get_thresholds()
    if not configured:
        click.echo("No approval thresholds configured.")
        return
    for threshold in configured:
        click.echo(
            f"  {threshold.entity_type}: auto<={threshold.auto_approve_max_amount}  "
            f"L1<={threshold.level1_max_amount}  L2<={threshold.level2_max_amount}  "
            f"L3<={threshold.level3_max_amount}  escalate after {threshold.escalation_timeout_minutes}m"
        )


@cli.command("set-threshold")
@click.argument("entity_type")
@click.option("--auto", "auto_max", type=Decimal, default=None, help="Auto-approve up to this amount")
@click.option("--level1", type=Decimal, default=None)
@click.option("--level2", type=Decimal, default=None)
@click.option("--level3", type=Decimal, default=None)
@click.option("--escalation-minutes", type=int, default=None)
@click.pass_context
def set_threshold(
    ctx: click.Context,
    entity_type: str,
    auto_max: Decimal | None,
    level1: Decimal | None,
    level2: Decimal | None,
    level3: Decimal | None,
    escalation_minutes: int | None,
) -> None:
    """Create or update the approval threshold of an entity type."""
    fields = {
        "auto_approve_max_amount": auto_max,
        "level1_max_amount": level1,
        "level2_max_amount": level2,
        "level3_max_amount": level3,
        "escalation_timeout_minutes": escalation_minutes,
    }
    _run(
        "set_threshold",
        _set_threshold(_create_orchestrator(ctx), entity_type, {k: v for k, v in fields.items() if v is not None}),
    )


async def _set_threshold(orchestrator: Orchestrator, entity_type: str, fields: dict[str, Any]) -> None:
    threshold = await orchestrator.update_threshold(entity_type, **fields)
    click.echo(f"Threshold for {threshold.entity_type} saved")


# =============================================================================
# Events and metrics
# =============================================================================


@cli.command("emit-event")
@click.argument("event_type")
@click.option("--payload", callback=_parse_json, help="Event payload as a JSON object")
@click.pass_context
def emit_event(ctx: click.Context, event_type: str, payload: dict[str, Any] | None) -> None:
    """Queue an event for event-triggered workflows."""
    _run("emit_event", _emit_event(_create_orchestrator(ctx), event_type, payload))


async def _emit_event(orchestrator: Orchestrator, event_type: str, payload: dict[str, Any] | None) -> None:
    event = await orchestrator.emit_event(event_type, payload)
    click.echo(f"Event {event.id} ({event.event_type}) queued")


@cli.command()
@click.option("--type", "event_type", default=None, help="Only events of this type")
@click.option("--limit", type=int, default=20, show_default=True)
@click.pass_context
def events(ctx: click.Context, event_type: str | None, limit: int) -> None:
    """List recent events, newest first."""
    _run("events", _list_events(_create_orchestrator(ctx), event_type, limit))


async def _list_events(orchestrator: Orchestrator, event_type: str | None, limit: int) -> None:
    found = await orchestrator.list_events(event_type, limit)
    if not found:
        click.echo("No events found.")
        return
    for event in found:
        state = "processed" if event.processed else "pending"
        click.echo(f"  [{event.id}] {event.event_type}  {state}  {json.dumps(event.payload)}")


@cli.command()
@click.option("--days", type=int, default=7, show_default=True)
@click.option("--prometheus", is_flag=True, help="Print this process's Prometheus exposition instead")
@click.pass_context
def metrics(ctx: click.Context, days: int, prometheus: bool) -> None:
    """Show the run overview for the last N days."""
    if prometheus:
        click.echo(MetricsCollector.get_metrics().decode())
        return
    _run("metrics", _metrics(_create_orchestrator(ctx), days))


async def _metrics(orchestrator: Orchestrator, days: int) -> None:
    overview = await orchestrator.metrics_overview(days)
    health = overview.pop("workflows")
    _echo_mapping(overview)
    if health:
        click.echo("workflows:")
        for entry in health:
            click.echo(f"  [{entry['workflow_id']}] {entry['name']}: ok={entry['success_count']} failed={entry['failure_count']}")


if __name__ == "__main__":
    cli()
