"""
Logging setup for the governance service.

Services pass tenant and governance identifiers through ``extra={...}``:

    logger.info("gate decided", extra={"project_id": 7, "gate_key": "g1"})

Production writes one JSON object per line with those identifiers as
top-level fields. Development and testing write a colored line with the
identifiers appended as ``key=value`` pairs. LOG_LEVEL comes from config.
"""

import json
import logging
import sys
from datetime import datetime, timezone

REQUEST_KEYS = ("method", "path", "status", "duration_ms", "remote_addr", "request_id")

# Order here is the order of the readable suffix.
GOVERNANCE_KEYS = (
    "organization_id",
    "workspace_id",
    "project_id",
    "template_key",
    "document_id",
    "gate_key",
    "event_type",
)

_SHORT_NAMES = {
    "organization_id": "org",
    "workspace_id": "ws",
    "project_id": "project",
    "template_key": "template",
    "document_id": "doc",
    "gate_key": "gate",
    "event_type": "event",
}


def governance_context(record: logging.LogRecord) -> dict:
    """Governance identifiers present on the record, in GOVERNANCE_KEYS order."""
    return {
        key: getattr(record, key)
        for key in GOVERNANCE_KEYS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        for key in REQUEST_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        entry.update(governance_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, "")
        line = (
            f"{color}{datetime.now():%H:%M:%S} {record.levelname:<8}{self.RESET} "
            f"{record.name}: {record.getMessage()}"
        )
        context = governance_context(record)
        if context:
            line += " [" + " ".join(f"{_SHORT_NAMES[k]}={v}" for k, v in context.items()) + "]"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" ({duration:.0f}ms)"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger.

    JSON outside DEBUG/TESTING, readable otherwise. Re-running replaces the
    handler, so repeated ``create_app`` calls in tests do not duplicate output.
    """
    testing = app.config.get("TESTING", False)
    structured = not app.config.get("DEBUG", False) and not testing

    level_name = str(app.config.get("LOG_LEVEL") or ("INFO" if structured else "DEBUG")).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if structured else ReadableFormatter())
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in ("werkzeug", "sqlalchemy.engine", "alembic"):
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Logging configured level=%s format=%s", level_name,
                        "json" if structured else "readable")
