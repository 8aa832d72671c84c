"""
Structured logging for the hedging engine.

Every record may carry hedge context in `extra_fields`: the underlying, the
hedge order id and, for operator alerts, the alert kind. Both formatters lift
these to first-class fields so a single order can be followed through the
logs of the worker, the order manager and the gateway.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

from volatility_hedging.core.config import LoggingConfig

# Rendered as top-level keys, in this order
CONTEXT_FIELDS = ("underlying", "order_id", "alert")


def split_context(record: logging.LogRecord) -> tuple[dict[str, Any], dict[str, Any]]:
    """Separate hedge context fields from any other extra fields of a record."""
    fields = dict(getattr(record, "extra_fields", None) or {})
    context = {key: fields.pop(key) for key in CONTEXT_FIELDS if key in fields}
    return context, fields


def _record_time(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record.

    Example output:
        {"timestamp": "...", "level": "WARNING", "logger": "...hedging.orders",
         "underlying": "ES", "order_id": "4f1c...", "message": "...",
         "details": {"attempts": 3}}
    """

    def format(self, record: logging.LogRecord) -> str:
        context, details = split_context(record)
        log_data: dict[str, Any] = {
            "timestamp": _record_time(record).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            **context,
            "message": record.getMessage(),
        }
        if details:
            log_data["details"] = details
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """
    Console formatter.

    `2025-06-02 14:00:00 | WARNING  | [ES 4f1c...] Submission attempt 1 failed | attempts=1`
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = True) -> None:
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        context, details = split_context(record)

        level = f"{record.levelname:8s}"
        if self.color and record.levelname in self.COLORS:
            level = f"{self.COLORS[record.levelname]}{level}{self.RESET}"

        tag = " ".join(str(context[key]) for key in CONTEXT_FIELDS if key in context)
        message = record.getMessage()
        if tag:
            message = f"[{tag}] {message}"

        line = f"{_record_time(record):%Y-%m-%d %H:%M:%S} | {level} | {message}"
        if details:
            line += " | " + " ".join(f"{k}={v}" for k, v in details.items())
        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(config: Optional[LoggingConfig] = None) -> None:
    """
    Configure the root logger.

    Console output follows `config.format`; the log file under
    `config.log_dir` is always JSON.
    """
    config = config or LoggingConfig()
    level = getattr(logging, config.level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    if config.console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(
            JSONFormatter() if config.format == "json" else TextFormatter(color=sys.stdout.isatty())
        )
        root_logger.addHandler(console_handler)

    config.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = config.log_dir / f"hedger_{datetime.now():%Y%m%d_%H%M%S}.log"
    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(JSONFormatter())
    root_logger.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class HedgeContextAdapter(logging.LoggerAdapter):
    """Adds bound hedge context to every record; per-call fields win."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        fields = {**self.extra, **extra.pop("extra_fields", {})}
        extra["extra_fields"] = fields
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **context: Any) -> "HedgeContextAdapter":
        """Adapter with additional context, e.g. an order id under an underlying."""
        return HedgeContextAdapter(self.logger, {**self.extra, **context})


def get_contextual_logger(name: str, **context: Any) -> HedgeContextAdapter:
    """
    Logger that tags every record with hedge context.

    Example:
        >>> log = get_contextual_logger(__name__, underlying="ES")
        >>> log.bind(order_id=intent.id).info("Hedge order submitted")
    """
    return HedgeContextAdapter(get_logger(name), context)
