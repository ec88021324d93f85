"""Structured logging for pocketcoder.

Every module logs through ``get_logger(__name__)`` with keyword context.
Hosts that show logs in their own surface (a debug console, a file) pass a
line callback to ``set_log_sink`` before calling ``configure_logging``.
"""

import logging
import sys
from typing import Any, Callable, TYPE_CHECKING

import structlog

from pocketcoder.config import get_config

if TYPE_CHECKING:
    from pocketcoder.config import Config

REDACTED = "***"

_log_sink: Callable[[str], None] | None = None


class _LineSink:
    """Buffers renderer output and hands complete lines to a callback."""

    def __init__(self, callback: Callable[[str], None]):
        self._callback = callback
        self._pending = ""

    def write(self, text: str) -> int:
        self._pending += text
        *lines, self._pending = self._pending.split("\n")
        for line in lines:
            if line:
                self._callback(line)
        return len(text)

    def flush(self) -> None:
        if self._pending:
            self._callback(self._pending)
            self._pending = ""


def set_log_sink(sink: Callable[[str], None] | None) -> None:
    """Route rendered log lines to ``sink`` instead of stderr.

    Takes effect on the next ``configure_logging`` call.
    """
    global _log_sink
    _log_sink = sink


def _secret_redactor(redact_keys: frozenset[str]) -> Callable[..., dict[str, Any]]:
    def redact(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        for key in event_dict.keys() & redact_keys:
            if event_dict[key]:
                event_dict[key] = REDACTED
        return event_dict

    return redact


def configure_logging(config: "Config | None" = None) -> None:
    """Configure structlog from the ``logging`` config section."""
    settings = (config or get_config()).logging
    level = getattr(logging, settings.level.upper(), logging.INFO)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _secret_redactor(frozenset(k.lower() for k in settings.redact_keys)),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=_log_sink is None))

    output = _LineSink(_log_sink) if _log_sink else sys.stderr
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=output),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Return a structlog logger, named after the calling module when given."""
    return structlog.get_logger(name) if name else structlog.get_logger()
