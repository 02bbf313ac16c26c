"""
Structured logging configuration.

Uses structlog for JSON-formatted logs. Request ids (HTTP middleware) and
order identity (`order_context`) ride on contextvars, so every log line
emitted while an order is being reconciled carries its id and reference.
"""
import logging
import sys
from typing import Any, ContextManager

import structlog
from pythonjsonlogger import jsonlogger

from engagement_orders.config import get_settings


def add_app_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Add service and payment environment to log events.

    Args:
        logger: Logger instance
        method_name: Log method name
        event_dict: Event dictionary

    Returns:
        dict[str, Any]: Enhanced event dictionary
    """
    settings = get_settings()
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    event_dict["pesapal_env"] = "sandbox" if settings.is_sandbox else "live"
    return event_dict


def add_order_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Render order identity fields (UUIDs, numeric supplier ids) as strings."""
    for key in ("order_id", "supplier_order_id", "correlation_id"):
        value = event_dict.get(key)
        if value is not None and not isinstance(value, str):
            event_dict[key] = str(value)
    return event_dict


def order_context(order: Any) -> ContextManager[Any]:
    """Bind an order's identity to every log line emitted inside the block."""
    return structlog.contextvars.bound_contextvars(
        order_id=str(order.id),
        merchant_reference=order.merchant_reference,
        order_status=order.status,
    )


def setup_logging() -> None:
    """
    Configure structured logging.

    JSON on stdout in every environment except debug, which renders
    human-readable console lines. SQLAlchemy and HTTP client chatter is
    quieted; the adapters log their own vendor calls.
    """
    settings = get_settings()
    renderer: Any = (
        structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            add_app_context,
            add_order_context,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Third-party stdlib loggers share the JSON shape of structlog events
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(handler)

    for noisy in ("httpx", "httpcore", "sqlalchemy.engine", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        pesapal_sandbox=settings.is_sandbox,
    )
