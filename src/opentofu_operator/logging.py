from __future__ import annotations

import json
import logging
import sys
from typing import Any

# Fields always promoted to top-level keys of a log entry
STRUCTURED_FIELDS = ("controller", "resource", "uid", "action", "job", "event", "reason")

# LogRecord attributes that never belong in the JSON payload
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime", "taskName"}


class StructuredJSONFormatter(logging.Formatter):
    """Render log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.default_time_format),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in STRUCTURED_FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)

        # Anything passed through ``extra`` that is not a standard attribute
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS and key not in log_entry:
                log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_structured_logging(level: int = logging.INFO) -> None:
    """Configure the root logger to emit structured JSON on stdout."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredJSONFormatter())
    root_logger.addHandler(handler)

    # kopf propagates to the root logger
    logging.getLogger("kopf").setLevel(level)
    # The kubernetes client logs full request bodies at DEBUG, including secrets
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


class StructuredLogger:
    """Logger that attaches workspace/job context as structured fields."""

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)

    def _log_with_fields(
        self,
        level: int,
        message: str,
        controller: str | None = None,
        resource: str | None = None,
        uid: str | None = None,
        action: str | None = None,
        event: str | None = None,
        reason: str | None = None,
        **kwargs: Any,
    ) -> None:
        extra: dict[str, Any] = {}
        if controller is not None:
            extra["controller"] = controller
        if resource is not None:
            extra["resource"] = resource
        if uid is not None:
            extra["uid"] = uid
        if action is not None:
            extra["action"] = action
        if event is not None:
            extra["event"] = event
        if reason is not None:
            extra["reason"] = reason
        extra.update(kwargs)

        self._logger.log(level, message, extra=extra)

    def info(self, message: str, **fields: Any) -> None:
        self._log_with_fields(logging.INFO, message, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._log_with_fields(logging.WARNING, message, **fields)

    def error(self, message: str, **fields: Any) -> None:
        self._log_with_fields(logging.ERROR, message, **fields)

    def debug(self, message: str, **fields: Any) -> None:
        self._log_with_fields(logging.DEBUG, message, **fields)


# Global logger instance
logger = StructuredLogger("opentofu-operator")
