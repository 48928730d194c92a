"""
Structured logging setup for the account portal backend.
Provides JSON-formatted logs with consistent fields for production monitoring.
"""

import logging
import os
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output for production.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_process_context,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    # Configure stdlib logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("psycopg.pool").setLevel(logging.WARNING)
    logging.getLogger("aiosmtplib").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def _add_process_context(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Tag entries with the emitting process id (web tier and worker share one log stream)."""
    event_dict.setdefault("pid", os.getpid())
    return event_dict


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


# Convenience functions for common log patterns
def log_action(category: str, source: str, action: str, message: str, **fields: Any) -> None:
    """
    Log an application action with the category/source/action/message shape.

    Fire-and-forget: a failure to emit the entry never reaches the caller.

    Args:
        category: Log category (e.g. "mail_scheduler")
        source: Component emitting the entry (e.g. "MailSchedulerWorker")
        action: What happened (e.g. "startup", "processJob")
        message: Free-text description
        **fields: Extra structured context
    """
    try:
        logger = get_logger(category)
        logger.info(
            message,
            event_type="action",
            category=category,
            source=source,
            action=action,
            **fields,
        )
    except Exception:  # noqa: BLE001
        logging.getLogger(__name__).debug("log_action failed", exc_info=True)


def log_health_check(service: str, healthy: bool, latency_ms: float, error: str = None):
    """Log health check results with consistent fields."""
    logger = get_logger("health")

    log_data = {
        "service": service,
        "healthy": healthy,
        "latency_ms": latency_ms,
        "event_type": "health_check",
    }

    if error:
        log_data["error"] = error

    if healthy:
        logger.info("Health check passed", **log_data)
    else:
        logger.error("Health check failed", **log_data)


def log_request(method: str, path: str, status_code: int, duration_ms: float):
    """Log HTTP requests with consistent fields."""
    logger = get_logger("http")

    log_data = {
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
        "event_type": "http_request",
    }

    if status_code >= 400:
        logger.warning("HTTP request failed", **log_data)
    else:
        logger.info("HTTP request completed", **log_data)
