"""One JSON object per log line.

Enabled by ``API_STRUCTURED_LOGGING=true``.  Besides the fixed keys
(timestamp, level, logger, message) a few well-known ``extra`` attributes
are lifted onto the object when they are set: the correlation id, the
access-log ``request`` dict, and the tenant/event ids the billing engine
attaches.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

_LIFTED_ATTRS = ("correlation_id", "tenant_id", "event_id", "request")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update({attr: getattr(record, attr) for attr in _LIFTED_ATTRS if getattr(record, attr, None)})
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc_info"] = self.formatException(record.exc_info)
        # json.dumps escapes embedded newlines, so each record stays on one line.
        return json.dumps(entry, default=str, ensure_ascii=False)
