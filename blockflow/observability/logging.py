"""
Structured logging with per-run trace context.

The executor stores the identifiers of the run it is driving (execution id,
workflow id, the block currently dispatched) in a ContextVar. Formatters read
that context, so plain ``logger.info(...)`` calls anywhere in the engine or in
block handlers are correlated with the run automatically. ContextVars are
copied into asyncio tasks, which keeps concurrently dispatched blocks apart.
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar(
    "blockflow_trace_context", default=None
)

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m")

# LogRecord attributes copied into JSON output when passed via ``extra=``
_EXTRA_FIELDS = ("event", "block_id", "block_type", "duration_ms", "iteration")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text for clean JSON logging."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, with the active trace context merged in."""

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }
        entry.update(context)

        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Colourised single-line output for local development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        parts = []
        if context.get("execution_id"):
            parts.append(f"exec:{str(context['execution_id'])[-8:]}")
        if context.get("workflow_id"):
            parts.append(f"wf:{context['workflow_id']}")
        if context.get("block_id"):
            parts.append(f"block:{context['block_id']}")
        prefix = f"[{' | '.join(parts)}] " if parts else ""

        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"
        message = f"{color}[{level}]{self.RESET} {prefix}{record.getMessage()}"

        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def configure_logging(level: str = "INFO", format: str = "auto") -> None:
    """
    Configure root logging for the application.

    Call once at startup (the CLI does this). ``format`` is ``"json"``,
    ``"human"`` or ``"auto"``; auto picks JSON when ``LOG_FORMAT=json`` or
    ``ENV=production``.
    """
    if format == "auto":
        log_format_env = os.getenv("LOG_FORMAT", "").lower()
        env = os.getenv("ENV", "development").lower()
        format = "json" if log_format_env == "json" or env == "production" else "human"

    formatter: logging.Formatter
    if format == "json":
        formatter = StructuredFormatter()
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())


def set_trace_context(**kwargs: Any) -> None:
    """Merge fields into the trace context of the current task."""
    current = trace_context.get() or {}
    trace_context.set({**current, **kwargs})


def get_trace_context() -> dict[str, Any]:
    """Return a copy of the current trace context."""
    context = trace_context.get() or {}
    return context.copy()


def clear_trace_context() -> None:
    """Drop all trace context fields (used between runs and in tests)."""
    trace_context.set(None)
