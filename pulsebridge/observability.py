from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

# Keys lifted out of ``fields`` into the top-level ``sync`` object so poll
# and transport context can be filtered on without digging into free-form
# fields.
SYNC_CONTEXT_KEYS = ("poll", "transport_mode", "error_kind", "from", "to")


def _utc_iso(ts: float | None = None) -> str:
    dt = datetime.fromtimestamp(ts or time.time(), tz=timezone.utc)
    return dt.isoformat()


@dataclass
class JsonLogConfig:
    service_name: str = "pulsebridge"
    logger_prefix: str = "pulsebridge."


class JsonFormatter(logging.Formatter):
    """One JSON object per line for the sync loops.

    ``component`` is the logger name below the package (``client``,
    ``background.forwarder``...). Structured context passed as
    ``extra={"fields": {...}}`` is split: poll/transport keys go under
    ``sync``, anything else stays under ``fields``.
    """

    def __init__(self, config: JsonLogConfig) -> None:
        super().__init__()
        self.config = config

    def _component(self, name: str) -> str:
        if name.startswith(self.config.logger_prefix):
            return name[len(self.config.logger_prefix) :]
        return name

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": _utc_iso(record.created),
            "severity": record.levelname,
            "service": self.config.service_name,
            "component": self._component(record.name),
            "message": record.getMessage(),
        }

        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            sync = {k: fields[k] for k in SYNC_CONTEXT_KEYS if k in fields}
            rest = {k: v for k, v in fields.items() if k not in SYNC_CONTEXT_KEYS}
            if sync:
                payload["sync"] = sync
            if rest:
                payload["fields"] = rest

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(*, level: int, log_format: str) -> None:
    """Configure process logging.

    - log_format="json": structured JSON lines
    - log_format="text": standard human-readable
    """

    root = logging.getLogger()
    root.setLevel(level)

    # Replace handlers to avoid duplicate logs when called multiple times.
    root.handlers.clear()

    handler = logging.StreamHandler()
    if log_format.strip().lower() == "json":
        handler.setFormatter(JsonFormatter(JsonLogConfig()))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s"))

    root.addHandler(handler)

    # APScheduler logs every job run at INFO; poll ticks already log their own.
    logging.getLogger("apscheduler").setLevel(max(level, logging.WARNING))
