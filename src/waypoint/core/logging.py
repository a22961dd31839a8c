"""Structured logging for Waypoint.

structlog events and plain stdlib records share one processor chain and one
handler, so a library logging through logging.getLogger() shows up in the
same JSON or console format as Waypoint's own snake_case events.

Output goes to stderr unless another stream is given. An orchestrator's
stdout is frequently piped into the interpreter transcript and must not
carry log lines.
"""

import logging
import sys
from typing import Any, TextIO

import structlog
from structlog.stdlib import ProcessorFormatter

from waypoint.core.config import LoggingSettings

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

# dynaconf logs every settings file it looks for at DEBUG
_QUIET_LOGGERS = ("dynaconf",)


def _drop_formatter_keys(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    # Always present once ProcessorFormatter is involved; a KeyError here
    # means the formatter wiring is wrong.
    del event_dict["_record"]
    del event_dict["_from_structlog"]
    return event_dict


def _pre_chain() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]


def _render_chain(json_output: bool, stream: TextIO) -> list[Any]:
    if json_output:
        return [_drop_formatter_keys, structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [_drop_formatter_keys, structlog.dev.ConsoleRenderer(colors=stream.isatty())]


def configure_logging(
    *,
    json_output: bool = False,
    level: str = "INFO",
    stream: TextIO | None = None,
) -> None:
    """Route structlog and stdlib logging through one formatter.

    Safe to call again: the root handler is replaced, not added to.

    Args:
        json_output: One JSON object per line instead of console rendering
        level: DEBUG, INFO, WARNING or ERROR (case-insensitive)
        stream: Destination (default: sys.stderr)

    Raises:
        ValueError: If level is not one of the supported names
    """
    name = level.upper()
    if name not in _LEVELS:
        raise ValueError(f"Unsupported log level {level!r} (expected one of {', '.join(_LEVELS)})")
    log_level: int = getattr(logging, name)
    target = stream if stream is not None else sys.stderr

    pre_chain = _pre_chain()
    structlog.configure(
        processors=[*pre_chain, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Tests reconfigure between cases
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(target)
    handler.setFormatter(ProcessorFormatter(processors=_render_chain(json_output, target), foreign_pre_chain=pre_chain))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)
    for logger_name in _QUIET_LOGGERS:
        logging.getLogger(logger_name).setLevel(max(log_level, logging.WARNING))


def configure_from_settings(settings: LoggingSettings, *, stream: TextIO | None = None) -> None:
    """configure_logging() driven by the logging section of waypoint.yaml."""
    configure_logging(json_output=settings.json_output, level=settings.level, stream=stream)


def bind_run_context(*, report_title: str, run_id: str) -> None:
    """Attach report/run identity to every log line emitted from this context."""
    structlog.contextvars.bind_contextvars(report_title=report_title, run_id=run_id)


def clear_run_context() -> None:
    structlog.contextvars.unbind_contextvars("report_title", "run_id")


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger
