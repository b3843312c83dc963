"""
Structured logging for the agent-stream services.

Every log line is a single JSON object on stdout so Modal's log drain (and
anything tailing a sandbox log file) can index it. Loggers carry bound
context (service, project_id, sandbox_id, session_id) that is merged into
each line, and call sites pass an event name plus keyword fields:

    log = get_logger("runner", service="sandbox", project_id=project_id)
    log.info("runner.start", backend="claude")
    log.error("event_store.write_failed", exc=e, attempt=3)
"""

import json
import logging
import os
import sys
import time
from typing import Any

_configured = False


class JsonFormatter(logging.Formatter):
    """Render a record and its structured fields as one JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created))
            + f".{int(record.msecs):03d}Z",
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        payload.update(getattr(record, "fields", {}))
        if record.exc_info:
            payload["traceback"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: str | None = None) -> None:
    """Install the JSON handler on the root logger. Safe to call repeatedly."""
    global _configured
    if _configured:
        return

    resolved = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, resolved, logging.INFO))

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True


class StructuredLogger:
    """Thin wrapper that turns keyword arguments into structured fields."""

    def __init__(self, logger: logging.Logger, context: dict[str, Any]):
        self._logger = logger
        self.context = context

    def bind(self, **context: Any) -> "StructuredLogger":
        """Return a logger with additional bound context."""
        return StructuredLogger(self._logger, {**self.context, **context})

    def debug(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._log(logging.DEBUG, event, exc, fields)

    def info(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._log(logging.INFO, event, exc, fields)

    def warn(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._log(logging.WARNING, event, exc, fields)

    def error(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._log(logging.ERROR, event, exc, fields)

    def _log(
        self,
        level: int,
        event: str,
        exc: BaseException | None,
        fields: dict[str, Any],
    ) -> None:
        if not self._logger.isEnabledFor(level):
            return

        merged = {**self.context, **{k: v for k, v in fields.items() if v is not None}}
        exc_info = None
        if exc is not None:
            merged["error_type"] = type(exc).__name__
            merged["error_message"] = str(exc)
            if level >= logging.ERROR:
                exc_info = (type(exc), exc, exc.__traceback__)

        self._logger.log(level, event, exc_info=exc_info, extra={"fields": merged})


def get_logger(name: str, **context: Any) -> StructuredLogger:
    """Get a structured logger with optional bound context."""
    return StructuredLogger(logging.getLogger(name), {k: v for k, v in context.items() if v})
