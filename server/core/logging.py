"""Modern structured logging configuration."""

import sys
import structlog
import logging
from pathlib import Path
from typing import Optional
from core.config import Settings


def configure_logging(settings: Settings) -> None:
    """Configure structured logging based on settings."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    handlers = [console_handler]

    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, format="%(message)s", force=True)

    processors = [
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


def log_execution_time(logger: structlog.BoundLogger, operation: str,
                      duration_ms: float, slow_threshold_ms: Optional[float] = None,
                      **kwargs) -> None:
    """Log execution time, escalating to a warning above the slow threshold."""
    if slow_threshold_ms is not None and duration_ms > slow_threshold_ms:
        logger.warning(
            "Slow operation",
            operation=operation,
            duration_ms=round(duration_ms, 2),
            threshold_ms=slow_threshold_ms,
            **kwargs
        )
        return
    logger.debug(
        "Operation completed",
        operation=operation,
        duration_ms=round(duration_ms, 2),
        **kwargs
    )


def log_api_call(logger: structlog.BoundLogger, service: str, operation: str,
                success: bool, **kwargs) -> None:
    """Log calls to external collaborators with standardized format."""
    logger.info(
        "API call completed",
        service=service,
        operation=operation,
        success=success,
        **kwargs
    )


def log_cache_operation(logger: structlog.BoundLogger, operation: str,
                       key: str, hit: bool = None, **kwargs) -> None:
    """Log cache operations."""
    log_data = {
        "operation": operation,
        "cache_key": key,
        **kwargs
    }

    if hit is not None:
        log_data["cache_hit"] = hit

    logger.debug("Cache operation", **log_data)


def log_queue_event(logger: structlog.BoundLogger, queue: str, event: str,
                    request_id: str, **kwargs) -> None:
    """Log request queue lifecycle events (dispatch, retry, drop)."""
    logger.debug("Queue event", queue=queue, queue_event=event,
                 request_id=request_id, **kwargs)
