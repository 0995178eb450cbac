"""Logging configuration using structlog.

Logs go to stderr: stdout belongs to the JSON envelope printed by the CLI.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, unbind_contextvars

from bddrun.core import config as config_core

_CONFIGURED = False


def _truthy(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str | None = None, json_format: bool | None = None) -> None:
    """Configure structlog on top of stdlib logging.

    Args:
        level: Log level name. Falls back to config `[logging] level`, then
            `BDDRUN_LOG_LEVEL`, then WARNING.
        json_format: Render JSON lines instead of the console format. Falls back to
            config `[logging] json`, then `BDDRUN_LOG_JSON`.
    """
    global _CONFIGURED

    level_name = str(
        config_core.resolve_setting(
            cli_value=level,
            env_key="BDDRUN_LOG_LEVEL",
            config_keys=("logging", "level"),
            default="WARNING",
        )
    ).upper()
    as_json = _truthy(
        config_core.resolve_setting(
            cli_value=json_format,
            env_key="BDDRUN_LOG_JSON",
            config_keys=("logging", "json"),
            default=False,
        )
    )
    log_level = getattr(logging, level_name, logging.WARNING)

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level, force=True)

    shared_processors: list[structlog.typing.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if as_json:
        processors = shared_processors + [structlog.processors.JSONRenderer()]
    else:
        colors = sys.stderr.isatty() and not os.environ.get("NO_COLOR")
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=colors)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(max(log_level, logging.INFO))
    _CONFIGURED = True


def is_configured() -> bool:
    return _CONFIGURED


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_execution_context(execution_id: str) -> None:
    """Bind the execution id to every log call made from the current context."""
    bind_contextvars(execution_id=execution_id)


def unbind_execution_context() -> None:
    unbind_contextvars("execution_id")


def clear_context() -> None:
    clear_contextvars()
