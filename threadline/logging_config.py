"""Structured logging for the Threadline gateway."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

LOGGER_NAMESPACE = "threadline"
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "asyncio")


class JSONFormatter(logging.Formatter):
    """Render each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class PlainFormatter(logging.Formatter):
    """Readable single-line output for local debugging."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = getattr(record, "context", None)
        if context:
            pairs = " ".join(f"{key}={value}" for key, value in context.items())
            line = f"{line} [{pairs}]"
        return line


def setup_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    """Install a single stdout handler on the root logger."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_output else PlainFormatter())
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Merge bound context (thread, message, service) into every record."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        if context or self.extra:
            combined_context = {**self.extra, **(context or {})}
            kwargs["extra"] = {"context": combined_context}
        return msg, kwargs


def bind_logger(name: str, **context: Any) -> LoggerAdapter:
    return LoggerAdapter(get_logger(name), {k: v for k, v in context.items() if v is not None})
