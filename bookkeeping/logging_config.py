"""Logging setup.

Configures stdlib logging for the service and installs a filter that
redacts OAuth tokens, client secrets and similar credentials before any
record is emitted.
"""
import logging
import logging.config
import re
from typing import Any, Dict

from bookkeeping.config import settings


SENSITIVE_PATTERNS = [
    (re.compile(r"(access_token['\":\s=]+['\"]?)([^'\"\s,}&]+)", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(refresh_token['\":\s=]+['\"]?)([^'\"\s,}&]+)", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(id_token['\":\s=]+['\"]?)([^'\"\s,}&]+)", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(client_secret['\":\s=]+['\"]?)([^'\"\s,}&]+)", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(password['\":\s=]+['\"]?)([^'\"\s,}&]+)", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(bearer\s+)([^\s,}]+)", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"([?&]code=)([^&\s]+)", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"([?&]state=)([^&\s]+)", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"((?:set-)?cookie:\s*)([^\s;,}]+)", re.IGNORECASE), r"\1[REDACTED]"),
]

SENSITIVE_FIELDS = {
    "access_token",
    "refresh_token",
    "id_token",
    "client_secret",
    "password",
    "token",
    "api_key",
    "authorization",
    "cookie",
    "set-cookie",
}


def sanitize_string(value: str) -> str:
    """Redact credentials from a string."""
    for pattern, replacement in SENSITIVE_PATTERNS:
        value = pattern.sub(replacement, value)
    return value


def sanitize(value: Any) -> Any:
    """Recursively redact sensitive fields from dicts, lists and strings."""
    if isinstance(value, dict):
        return {
            k: "[REDACTED]" if str(k).lower() in SENSITIVE_FIELDS else sanitize(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(sanitize(v) for v in value)
    if isinstance(value, str):
        return sanitize_string(value)
    return value


class SensitiveDataFilter(logging.Filter):
    """Scrubs credentials out of log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = sanitize_string(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = sanitize(record.args)
            else:
                record.args = tuple(sanitize(arg) for arg in record.args)
        return True


def build_logging_config(level: str) -> Dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "sensitive": {"()": SensitiveDataFilter},
        },
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "filters": ["sensitive"],
            },
        },
        "root": {
            "level": level,
            "handlers": ["console"],
        },
        "loggers": {
            "uvicorn.access": {"level": "WARNING"},
            "apscheduler": {"level": "WARNING"},
        },
    }


def configure_logging(level: str = None) -> None:
    logging.config.dictConfig(build_logging_config(level or settings.LOG_LEVEL))
