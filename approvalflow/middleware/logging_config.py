"""
Structured logging configuration.

Engine modules log with ``extra={...}`` workflow context (request, chain,
actor, action, ...). Both formatters surface that context:

- Development / testing: one coloured line, context appended as key=value
- Production: one JSON object per record, context as top-level keys
- Level: LOG_LEVEL from app config or env (DEBUG in dev, INFO otherwise)
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Workflow context keys carried on log records, in display order
WORKFLOW_CONTEXT_KEYS = (
    "request_id",
    "chain_id",
    "section_order",
    "step_number",
    "actor_id",
    "action",
    "from_status",
    "to_status",
    "event_type",
    "attempt",
)

# Shown inline by the readable formatter; the rest only go to JSON
_INLINE_KEYS = ("request_id", "actor_id", "action", "event_type")


def workflow_context(record: logging.LogRecord) -> dict:
    """Workflow fields attached to ``record`` via ``extra``."""
    context = {}
    for key in WORKFLOW_CONTEXT_KEYS:
        value = getattr(record, key, None)
        if value is not None:
            context[key] = value
    return context


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log aggregation in production."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        payload.update(workflow_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Coloured single-line formatter for development and tests."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:<8}"
        if self.use_color:
            level = f"{self.LEVEL_COLORS.get(record.levelname, '')}{level}{self.RESET}"
        context = workflow_context(record)
        tail = " ".join(f"{k}={context[k]}" for k in _INLINE_KEYS if k in context)
        line = f"{ts} {level} {record.name}: {record.getMessage()}"
        if tail:
            line += f"  [{tail}]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install a single root handler on stderr for the Flask app.

    Production (neither DEBUG nor TESTING) logs JSON; everything else logs
    readable lines, without colour when stderr is not a terminal.
    """
    testing = app.config.get("TESTING", False)
    production = not app.config.get("DEBUG", False) and not testing

    level_name = (app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL")
                  or ("INFO" if production else "DEBUG"))
    level = getattr(logging, str(level_name).upper(), logging.INFO)

    if production:
        formatter = JSONFormatter()
    else:
        formatter = ReadableFormatter(use_color=sys.stderr.isatty())

    root = logging.getLogger()
    # Re-running the factory (tests, CLI) must not stack handlers
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("sqlalchemy.engine", "alembic", "werkzeug"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info(
            "Logging configured: level=%s format=%s",
            logging.getLevelName(level), "json" if production else "readable",
        )
