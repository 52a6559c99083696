"""
Structured Logging Configuration Module

Engine decisions (schedule generation, payment application, recasts and
status changes) are logged as one JSON object per line. Loan id, action and
correlation id travel as record attributes and are emitted only when set.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .config import EngineConfig, get_config

# Record attributes copied into the JSON payload when present
STRUCTURED_FIELDS = ("loan_id", "action", "correlation_id", "extra")

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


class JSONFormatter(logging.Formatter):
    """Render a log record as a single JSON line"""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def setup_logging(level: str = "INFO", log_format: str = "json",
                  logger_name: str = "loan_engine",
                  log_file: Optional[str] = None) -> logging.Logger:
    """
    Attach a single handler to the engine logger.

    Calling this again replaces the previous handler. Output goes to
    ``log_file`` when given and to stderr otherwise; ``log_format`` selects
    JSON lines ("json") or the plain text layout.
    """
    logger = logging.getLogger(logger_name)
    while logger.handlers:
        stale = logger.handlers[0]
        logger.removeHandler(stale)
        stale.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    formatter = JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT)
    handler.setFormatter(formatter)

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.propagate = False
    return logger


def configure_logging(settings: Optional[EngineConfig] = None) -> logging.Logger:
    """Set up the engine logger from EngineConfig logging settings"""
    settings = settings or get_config()
    return setup_logging(settings.log_level, settings.log_format, log_file=settings.log_file)


def get_logger(name: str = "loan_engine") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               loan_id: Optional[str] = None, action: Optional[str] = None,
               correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log an engine decision together with its structured fields.

    Args:
        logger: Logger to write to
        level: Level name such as "info" or "warning"
        message: Human readable description
        loan_id: Loan the decision concerns
        action: Engine operation, e.g. "apply_payment"
        correlation_id: Caller supplied id tying related entries together
        extra: Any further key/value data
    """
    fields = dict(zip(STRUCTURED_FIELDS, (loan_id, action, correlation_id, extra)))
    logger.log(
        logging.getLevelName(level.upper()),
        message,
        extra={name: value for name, value in fields.items() if value},
    )
