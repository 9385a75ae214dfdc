"""Logging setup: readable lines in development and tests, JSON in production."""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Workflow extras promoted to top-level JSON keys.
_EXTRA_KEYS = (
    "document_id",
    "document_type",
    "actor_id",
    "event_type",
    "failure_kind",
    "escalation_id",
    "from_state",
    "to_state",
)


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update({k: getattr(record, k) for k in _EXTRA_KEYS if getattr(record, k, None) is not None})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ReadableFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL logger: message [doc=<id>]``"""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-8s %(name)s: %(message)s", datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        doc = getattr(record, "document_id", None)
        if doc is None:
            return line
        head, sep, tail = line.partition("\n")
        return f"{head} [doc={doc}]{sep}{tail}"


def configure_logging(app):
    """Install one stderr handler on the root logger; level from LOG_LEVEL."""
    is_prod = not app.config.get("DEBUG", False) and not app.config.get("TESTING", False)
    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG").upper()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter())
    root = logging.getLogger()
    # Repeated app creation in tests must not stack handlers.
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level_name, logging.INFO))
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
