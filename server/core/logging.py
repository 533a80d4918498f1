"""Structured logging configuration for the relay."""

import sys
import structlog
import logging
from pathlib import Path
from core.config import Settings

# Third-party loggers that are too chatty at INFO for a streaming relay
NOISY_LOGGERS = (
    "aiohttp.access",
    "aiohttp.client",
    "uvicorn",
    "uvicorn.access",
    "uvicorn.error",
    "watchfiles",
)


def configure_logging(settings: Settings) -> None:
    """Configure structured logging based on settings."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    for handler in handlers:
        handler.setLevel(level)

    logging.basicConfig(level=level, handlers=handlers, format="%(message)s", force=True)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json":
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))
        processors.insert(0, structlog.stdlib.add_logger_name)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.insert(0, structlog.processors.TimeStamper(fmt="%H:%M:%S"))
        processors.append(structlog.dev.ConsoleRenderer(
            colors=False,
            pad_event=35,
            exception_formatter=structlog.dev.plain_traceback
        ))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def bind_conversation(conversation_id: str, device_id: str) -> None:
    """Attach conversation context to every log line of the current task."""
    structlog.contextvars.bind_contextvars(
        conversation_id=conversation_id,
        device_id=device_id,
    )


def clear_conversation() -> None:
    """Drop conversation context bound by bind_conversation."""
    structlog.contextvars.unbind_contextvars("conversation_id", "device_id")
