from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from crm_insights.context import get_correlation_id

# Fields copied from ``extra=`` into the JSON payload; anything else is dropped.
LOGGED_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "operation",
        "company_id",
        "route_group",
        "user_id",
        "error",
    }
)
_MAX_ERROR_LENGTH = 500

_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def extract_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {key: value for key, value in record.__dict__.items() if key in LOGGED_FIELDS}
    error = fields.get("error")
    if isinstance(error, str):
        fields["error"] = error[:_MAX_ERROR_LENGTH]
    return fields


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, correlation id and whitelisted extras."""

    def format(self, record: logging.LogRecord) -> str:
        fields = extract_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


def configure_logging(level_name: str | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_crm_insights_configured", False):
        return

    level = getattr(logging, (level_name or os.getenv("LOG_LEVEL", "INFO")).upper(), logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._crm_insights_configured = True  # type: ignore[attr-defined]
