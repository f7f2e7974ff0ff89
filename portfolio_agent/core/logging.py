"""Structured logging configuration for the Portfolio Evidence Agent."""

import logging
import sys
from typing import Any

# Request-scoped fields, emitted right after the level in this order
REQUEST_FIELDS = ("client", "intent", "stage")

# Fields carrying user text; always shortened before output
USER_TEXT_FIELDS = ("question",)


def preview(text: str, limit: int = 80) -> str:
    """Shorten user text before it reaches a log line."""
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _format_value(value: Any) -> str:
    text = str(value).replace("\n", "\\n")
    if " " in text or "=" in text or not text:
        text = '"' + text.replace('"', '\\"') + '"'
    return text


class StructuredFormatter(logging.Formatter):
    """key=value structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured output."""
        log_data: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
        }

        extra_data = dict(getattr(record, "extra_data", {}))
        for name in REQUEST_FIELDS:
            value = getattr(record, name, None)
            if value is None:
                value = extra_data.pop(name, None)
            else:
                extra_data.pop(name, None)
            if value is not None:
                log_data[name] = value

        log_data["module"] = record.module
        log_data["function"] = record.funcName
        log_data["message"] = record.getMessage()

        for name in USER_TEXT_FIELDS:
            if isinstance(extra_data.get(name), str):
                extra_data[name] = preview(extra_data[name])
        log_data.update(extra_data)

        line = " ".join(f"{k}={_format_value(v)}" for k, v in log_data.items())
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def get_logger(name: str) -> logging.Logger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)

        try:
            from portfolio_agent.core.config import get_settings

            settings = get_settings()
            logger.setLevel(logging.DEBUG if settings.PORTFOLIO_ENV == "dev" else logging.INFO)
        except Exception:
            # Settings not loadable (bad env); logging must still work
            logger.setLevel(logging.INFO)

    return logger


def log_with_context(logger: logging.Logger, level: int, msg: str, **kwargs: Any) -> None:
    """
    Log with additional context fields.

    Request-scoped fields (client, intent, stage) are lifted onto the record
    so the formatter can place them first; everything else rides in
    extra_data.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, etc.)
        msg: Log message
        **kwargs: Context fields (e.g., client, intent, stage, duration_ms)
    """
    extra: dict[str, Any] = {name: kwargs.pop(name) for name in REQUEST_FIELDS if name in kwargs}
    extra["extra_data"] = kwargs
    logger.log(level, msg, extra=extra)
