from __future__ import annotations

import logging
import os
from functools import wraps
from time import perf_counter
from typing import Any, Callable

import structlog


def configure_logging(service_name: str, level: str | None = None) -> None:
    resolved = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, resolved, logging.INFO))
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
    logger = structlog.get_logger(service=service_name)
    logger.info("logging_configured", level=resolved)


def get_logger(service_name: str) -> structlog.BoundLogger:
    return structlog.get_logger(service=service_name)


def log_entry_exit(service_name: str, name: str) -> Callable:
    """Log duration and outcome of a call without dumping its arguments.

    Generation prompts and payloads can be large, so only the function name,
    status and elapsed milliseconds are recorded.
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            logger = get_logger(service_name)
            started = perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "exit",
                    function=name,
                    status="error",
                    duration_ms=int((perf_counter() - started) * 1000),
                    error=str(exc),
                )
                raise
            logger.info(
                "exit",
                function=name,
                status="ok",
                duration_ms=int((perf_counter() - started) * 1000),
            )
            return result

        return wrapper

    return decorator
