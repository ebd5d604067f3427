import json
import logging
from logging.handlers import RotatingFileHandler
from datetime import datetime, timezone

from app.core.config import settings

# httpx logs every Daraja request line at INFO
NOISY_LOGGERS = ("httpx", "httpcore")


def mask_phone(value) -> str:
    """254712345678 -> 2547****5678. Payer numbers never reach the logs in full."""
    phone = str(value)
    if len(phone) <= 8:
        return "*" * len(phone)
    return f"{phone[:4]}{'*' * (len(phone) - 8)}{phone[-4:]}"


class JsonFormatter(logging.Formatter):
    """One JSON object per line: payment correlation ids plus request fields."""

    EXTRA_FIELDS = (
        "checkout_request_id", "merchant_request_id", "transaction_id", "sale_id",
        "user_id", "result_code", "receipt", "items", "amount", "status",
        "request_id", "path", "method", "status_code", "latency_ms", "error",
        "client_ip", "breaker_name", "old_state", "new_state",
        "failed_count", "awaiting_callback", "skipped",
    )
    MASKED_FIELDS = {"phone_number": mask_phone}

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        for field, mask in self.MASKED_FIELDS.items():
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = mask(value)

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        # Decimal amounts and datetimes fall back to str
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging() -> None:
    formatter = JsonFormatter()
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
