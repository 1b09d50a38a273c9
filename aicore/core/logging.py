import json
import logging
import sys
from datetime import UTC, datetime
from typing import TextIO

_EXTRA_FIELDS = (
    "request_id",
    "tenant_id",
    "user_id",
    "operation",
    "priority",
    "fingerprint",
    "provider",
    "attempt",
    "error_code",
    "latency_ms",
    "cost_cents",
)

# Libraries that log every outbound request at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore")


class JsonFormatter(logging.Formatter):
    """One JSON object per line with the whitelisted ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            {
                name: getattr(record, name)
                for name in _EXTRA_FIELDS
                if getattr(record, name, None) is not None
            }
        )
        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_type"] = record.exc_info[0].__name__
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging(log_level: str, stream: TextIO | None = None) -> None:
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter())
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level.upper())
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(root_logger.level, logging.WARNING))
