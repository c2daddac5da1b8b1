"""
Structured Logging Module

JSON log lines for money movement and credential checks. Every line carries
the request correlation id when one is bound, and anything that looks like a
PIN or verification code is masked before it reaches a handler.
"""

import contextvars
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# Request-scoped correlation id, bound by the API middleware
_correlation_id: contextvars.ContextVar = contextvars.ContextVar('correlation_id', default=None)

SECRET_KEYS = frozenset({"pin", "code", "otp", "otp_code", "cot_code", "secure_id_code", "pin_hash", "token"})
MASK = "***"

_STRUCTURED_FIELDS = ("correlation_id", "user_id", "action", "resource", "extra")


def bind_correlation_id(correlation_id: Optional[str]) -> contextvars.Token:
    """Attach a correlation id to everything logged in the current context"""
    return _correlation_id.set(correlation_id)


def reset_correlation_id(token: contextvars.Token) -> None:
    _correlation_id.reset(token)


def current_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def redact(data: Any) -> Any:
    """Mask secret-looking keys anywhere in a nested structure"""
    if isinstance(data, dict):
        return {
            key: MASK if str(key).lower() in SECRET_KEYS else redact(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact(value) for value in data]
    return data


class SecretRedactionFilter(logging.Filter):
    """Masks secrets in the structured ``extra`` payload"""

    def filter(self, record: logging.LogRecord) -> bool:
        extra = getattr(record, "extra", None)
        if extra:
            record.extra = redact(extra)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record; empty fields are dropped"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in _STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if name == "correlation_id" and value is None:
                value = current_correlation_id()
            if value is not None:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "funds_core", log_format: str = "json") -> logging.Logger:
    """
    Configure the package logger

    Calling it again replaces the handler instead of stacking a second one.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        logger_name: Root of the logger tree to configure
        log_format: "json" for structured output, "text" for plain lines
    """
    logger = logging.getLogger(logger_name)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler.addFilter(SecretRedactionFilter())

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False
    return logger


def get_logger(name: str = "funds_core") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None) -> None:
    """
    Log a business event (transfer executed, OTP issued, reversal, freeze)

    Never pass PINs or codes here; ``extra`` is redacted by the handler
    filter but the message text is not.
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    fields = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id or current_correlation_id(),
        "extra": extra,
    }
    logger.log(levelno, message, extra={k: v for k, v in fields.items() if v})
