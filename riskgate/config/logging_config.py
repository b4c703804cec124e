"""
Logging configuration.

Console logging for every environment: human-readable lines in development,
one JSON object per line everywhere else so log shippers can index the
security decision fields without parsing free text.
"""

import json
import logging
import sys

from riskgate.config.config import Config

logger = logging.getLogger(__name__)

# Attributes present on every LogRecord; anything else was passed via extra=
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Fields passed through ``extra=`` (for example ``risk_score`` or
    ``decision``) are copied onto the top-level JSON object.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_data[key] = value

        return json.dumps(log_data, default=str)


def configure_logging(level: str | None = None) -> None:
    """
    Configure application logging.

    Sets up:
    - Console handler on stdout
    - Plain format in development, JSON (StructuredFormatter) otherwise
    - Reduced verbosity for chatty libraries
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level or Config.LOG_LEVEL)

    # Clear existing handlers
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)

    if Config.IS_DEVELOPMENT:
        console_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    else:
        console_formatter = StructuredFormatter()

    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    logger.info("Console logging configured (env=%s)", Config.APP_ENV)
