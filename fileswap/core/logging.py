"""Logging Configuration

Download tokens are bearer credentials: anyone holding one can fetch the file.
The redacting filter keeps them out of every log line, including uvicorn's
access log where they appear in the query string.
"""

import logging
import re
import sys
import json
from datetime import datetime, timezone
from logging import Filter

from fileswap.config import settings

REDACTED = "***"

# token=<value> in query strings or key=value log output
TOKEN_PARAM_PATTERN = re.compile(r"((?:^|(?<=[?&\s;,]))token=)([^&\s\"']+)", re.IGNORECASE)
# Compact JWS (three base64url segments, header starting with '{"')
JWT_PATTERN = re.compile(r"eyJ[\w-]+\.[\w-]+\.[\w-]+")


def redact_tokens(text: str) -> str:
    """Replace download tokens in text with a placeholder"""
    text = TOKEN_PARAM_PATTERN.sub(lambda m: m.group(1) + REDACTED, text)
    return JWT_PATTERN.sub(REDACTED, text)


class TokenRedactingFilter(Filter):
    """Filter to strip download tokens from log records"""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_tokens(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = {
                    key: redact_tokens(value) if isinstance(value, str) else value
                    for key, value in record.args.items()
                }
            else:
                record.args = tuple(
                    redact_tokens(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )

        return True


class JSONFormatter(logging.Formatter):
    """JSON log formatter"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = redact_tokens(self.formatException(record.exc_info))

        return json.dumps(log_data)


class TextFormatter(logging.Formatter):
    """Human-readable log formatter"""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def formatException(self, ei) -> str:
        return redact_tokens(super().formatException(ei))


def setup_logging() -> logging.Logger:
    """Setup application logging"""

    # Get root logger
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    # Remove existing handlers
    logger.handlers.clear()

    # Create console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)
    console_handler.addFilter(TokenRedactingFilter())

    # Set formatter based on configuration
    if settings.LOG_FORMAT.lower() == "json":
        formatter = JSONFormatter()
    else:
        formatter = TextFormatter()

    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # Set levels for third-party loggers
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(
        logging.INFO if settings.DEBUG else logging.WARNING
    )

    return logger
