"""
Structured logging setup for the CRM chat assistant.
Provides JSON-formatted logs with consistent fields; credential values passed as
log fields are reduced to a short preview before rendering.
"""

import logging
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
            _redact_secrets,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


_SECRET_KEYS = {"access_token", "refresh_token", "client_secret", "token"}


def _redact_secrets(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Replace raw credential values with a short preview."""
    for key in _SECRET_KEYS & event_dict.keys():
        value = event_dict[key]
        if isinstance(value, str) and value:
            event_dict[key] = token_preview(value)
    return event_dict


def token_preview(value: str | None, length: int = 8) -> str:
    """Short, log-safe preview of a secret."""
    if not value:
        return ""
    return value[:length] + "..."


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def log_crm_call(
    provider: str, operation: str, status_code: int, duration_ms: float, user_id: str = None
):
    """Log one CRM API round trip with consistent fields."""
    logger = get_logger("crm")

    log_data = {
        "provider": provider,
        "operation": operation,
        "status_code": status_code,
        "duration_ms": duration_ms,
    }

    if user_id:
        log_data["user_id"] = user_id

    if status_code >= 400:
        logger.warning("CRM call failed", **log_data)
    else:
        logger.debug("CRM call completed", **log_data)


def log_request(method: str, path: str, status_code: int, duration_ms: float, user_id: str = None):
    """Log HTTP requests with consistent fields."""
    logger = get_logger("http")

    log_data = {
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
    }

    if user_id:
        log_data["user_id"] = user_id

    if status_code >= 400:
        logger.warning("HTTP request failed", **log_data)
    else:
        logger.info("HTTP request completed", **log_data)
