import json
import logging
import logging.config
from datetime import datetime, timezone

_CONTEXT_KEYS = (
    "request_id",
    "actor_id",
    "path",
    "method",
    "status",
    "duration_ms",
    "order_id",
    "payment_id",
    "event_id",
    "event_type",
    "session_id",
    "subscription_id",
    "attempt",
    "delay_seconds",
    "security_event",
)


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": JsonLogFormatter,
            }
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "json",
            }
        },
        "loggers": {
            # Operator channel: invariant breaches that need a human.
            "app.operator": {"level": "WARNING", "propagate": True},
        },
        "root": {"handlers": ["default"], "level": "INFO"},
    }
    logging.config.dictConfig(logging_config)
