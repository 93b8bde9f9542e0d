"""
JSON logging for the bot, the API and the workers.

Every process calls configure_logging(component) once at start-up; the
component name ends up on every line so a shared log sink can tell them apart.
"""
import json
import logging
from logging.handlers import RotatingFileHandler
from datetime import datetime, timezone

from vpnshop.core.config import settings

# httpx logs every request URL at INFO, and Bot API URLs embed the token
NOISY_LOGGERS = ("httpx", "httpcore", "aiogram.event")


def redact(text: str) -> str:
    token = settings.telegram_bot_token
    if token and token in text:
        return text.replace(token, "<bot-token>")
    return text


class JsonFormatter(logging.Formatter):
    """One JSON object per line with whitelisted extra fields."""

    EXTRA_FIELDS = (
        "payment_id", "user_id", "telegram_id", "request_id", "path", "method",
        "status_code", "gateway", "payment_type", "status", "authority", "error",
        "chat_id", "service_id", "account_id", "amount", "new_balance",
        "breaker_name", "old_state", "new_state", "attempt", "url", "duration_ms",
    )

    def __init__(self, component: str) -> None:
        super().__init__()
        self.component = component

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "component": self.component,
            "logger": record.name,
            "message": redact(record.getMessage()),
        }
        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = redact(value) if isinstance(value, str) else value

        if record.exc_info:
            payload["exception"] = redact(self.formatException(record.exc_info))

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(component: str = "app") -> None:
    formatter = JsonFormatter(component)
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    handlers: list[logging.Handler] = [handler]
    if settings.log_file:
        file_handler = RotatingFileHandler(
            settings.log_file,
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    root.handlers = handlers
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
