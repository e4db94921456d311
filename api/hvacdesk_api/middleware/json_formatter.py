"""JSON log formatter.

Emits each log record as a single-line JSON object that log aggregators can
index without regex parsing.  Activate with ``API_STRUCTURED_LOGGING=true``.

Output schema per line::

    {
        "timestamp": "2026-10-01T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "hvacdesk_api.access",
        "message": "request completed",
        "request": { ... },          // present when emitted by RequestLoggingMiddleware
        "impersonation": { ... },    // present on impersonated requests
        "exc_info": "Traceback ..."  // present only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# ``extra={...}`` keys copied into the payload when present.
_STRUCTURED_FIELDS: tuple[str, ...] = ("request", "impersonation", "stripe_event")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in _STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
