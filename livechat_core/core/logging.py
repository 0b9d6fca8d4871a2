"""
Standardized Logging Configuration

Structured logging setup shared by every routing component. Components log
through ``structlog.get_logger(__name__)`` with snake_case event names and
key/value context; this module wires those loggers to the standard library
and picks a JSON renderer for production or a console renderer for
development.
"""

import logging
import sys
from typing import Optional

import structlog

from livechat_core.config import get_settings


def configure_logging(
    level: Optional[str] = None,
    fmt: Optional[str] = None,
    cache_loggers: bool = True,
) -> None:
    """
    Configure structlog and the root stdlib logger.

    Args:
        level: Log level name; defaults to ``RoutingSettings.log_level``
        fmt: ``json`` or ``console``; defaults to ``RoutingSettings.log_format``
        cache_loggers: Cache bound loggers on first use
    """
    settings = get_settings()
    level = (level or settings.log_level).upper()
    fmt = (fmt or settings.log_format).lower()

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level))
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    if fmt == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=cache_loggers,
    )

    # Suppress noisy loggers
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        level=level,
        format=fmt,
        environment=settings.environment,
    )


def tenant_context(tenant_id: Optional[str], **extra):
    """
    Bind the tenant id (and any extra fields) to every log line emitted
    inside the block.

    Usage:
        with tenant_context("site-1", conversation_id=conv.id):
            logger.info("conversation_opened")
    """
    return structlog.contextvars.bound_contextvars(tenant_id=tenant_id, **extra)
