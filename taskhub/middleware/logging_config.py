"""
Logging setup for the app factory.

Production writes one JSON object per line; development and tests get a
short coloured line. ``LOG_LEVEL`` overrides the default level. Records
emitted inside a request are stamped with its request id and actor so
service-layer lines (dispatch, step completion) can be joined to the
access log.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Copied onto JSON records when set.
CONTEXT_FIELDS = ("method", "path", "status", "duration_ms", "remote_addr", "request_id")
DOMAIN_FIELDS = ("task_id", "step_id", "actor_id")


class RequestContextFilter(logging.Filter):
    """Fill ``request_id`` / ``actor_id`` from ``flask.g`` unless the caller passed them."""

    def filter(self, record):
        if has_request_context():
            if getattr(record, "request_id", None) is None:
                record.request_id = g.get("request_id")
            if getattr(record, "actor_id", None) is None:
                record.actor_id = g.get("actor_id")
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        for key in CONTEXT_FIELDS + DOMAIN_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    _LEVEL_COLOURS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    _RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        colour = self._LEVEL_COLOURS.get(record.levelno, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        tags = "".join(
            f" {key}={getattr(record, key)}"
            for key in DOMAIN_FIELDS
            if getattr(record, key, None) is not None
        )
        line = f"{colour}{stamp} {record.levelname:<8}{self._RESET} {record.name}: {record.getMessage()}{tags}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Replace the root handlers with a single stderr handler.

    JSON when neither DEBUG nor TESTING is set. Default level is INFO there
    and DEBUG elsewhere.
    """
    structured = not (app.config.get("DEBUG") or app.config.get("TESTING"))
    level_name = os.getenv("LOG_LEVEL", "INFO" if structured else "DEBUG").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if structured else ReadableFormatter())
    handler.addFilter(RequestContextFilter())

    root = logging.getLogger()
    # create_app() runs once per test session but may run again in scripts.
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    app.logger.setLevel(level)

    for chatty in ("werkzeug", "sqlalchemy.engine", "alembic.runtime.migration"):
        logging.getLogger(chatty).setLevel(logging.WARNING)

    if not app.config.get("TESTING"):
        app.logger.info("Logging ready (level=%s, %s)", level_name, "json" if structured else "readable")
