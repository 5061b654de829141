import logging
import os
import re
from logging.config import dictConfig
from typing import Optional

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_SECRET_PATTERNS = (
    re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+"),
    re.compile(r"((?:password|apikey|api_key|access_token|refresh_token)[\"']?\s*[:=]\s*[\"']?)[^\s\"',&}]+", re.I),
)


class RedactSecretsFilter(logging.Filter):
    """Masks bearer tokens and password-like fields in rendered log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = message
        for pattern in _SECRET_PATTERNS:
            redacted = pattern.sub(r"\1***", redacted)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def configure_logging(level: Optional[str] = None) -> None:
    """Install the learnsync handler; ``level`` overrides LEARNSYNC_LOG_LEVEL."""
    root_level = (level or os.getenv("LEARNSYNC_LOG_LEVEL", "INFO")).upper()
    telemetry_level = "INFO" if os.getenv("LEARNSYNC_TELEMETRY_LOG", "1") == "1" else "WARNING"
    http_level = "DEBUG" if os.getenv("LEARNSYNC_DEBUG_HTTP", "0") == "1" else "WARNING"

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "redact": {"()": RedactSecretsFilter},
            },
            "formatters": {
                "default": {
                    "format": DEFAULT_LOG_FORMAT,
                },
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "filters": ["redact"],
                },
            },
            "loggers": {
                "learnsync.telemetry": {"level": telemetry_level},
                "httpx": {"level": http_level},
                "httpcore": {"level": http_level},
                "sqlalchemy.engine": {"level": "WARNING"},
            },
            "root": {
                "handlers": ["default"],
                "level": root_level,
            },
        }
    )
