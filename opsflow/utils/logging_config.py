"""
Structured logging setup.

Modules log through ``structlog.get_logger(__name__)`` with snake_case event
names. Dispatch code binds ``run_id`` and ``workflow_id`` as contextvars, so
every line emitted while a body runs carries them.

Logs go to stderr; stdout is reserved for CLI output.
"""

import sys
from typing import Any

import structlog

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def configure_logging(log_level: str = "INFO", json_output: bool | None = None) -> None:
    """Install the shared processor chain.

    Args:
        log_level: Minimum level, one of ``LOG_LEVELS`` (case-insensitive)
        json_output: JSON lines when True, console layout when False; by
            default JSON unless stderr is a terminal
    """
    level = log_level.upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"Unknown log level '{log_level}'")
    if json_output is None:
        json_output = not sys.stderr.isatty()

    renderer: Any = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
