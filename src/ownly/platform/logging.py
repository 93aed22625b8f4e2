"""
structlog configuration for the billing service.

Modules log through ``structlog.get_logger(__name__)``; billing state
changes additionally go through ``log_audit_event`` on the "audit" logger.
"""

import logging

import structlog

from ownly.platform.settings import settings


def setup_logging() -> None:
    """Route structlog through stdlib logging with the configured renderer."""
    logging.basicConfig(format="%(message)s", level=settings.observability.log_level.value)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    # Fields bound with structlog.contextvars, e.g. the webhook event id
    if settings.observability.enable_correlation_ids:
        processors.insert(0, structlog.contextvars.merge_contextvars)

    if settings.observability.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def log_audit_event(
    action: str,
    category: str,
    org_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    actor: str | None = None,
    **kwargs,
) -> None:
    """
    Record a billing state change on the audit logger.

    Subscription and invoice transitions are kept as structured log
    entries with ``audit_*`` fields rather than rows in an audit table.
    """
    structlog.get_logger("audit").info(
        action,
        audit_category=category,
        audit_org_id=org_id,
        audit_resource_type=resource_type,
        audit_resource_id=resource_id,
        audit_actor=actor,
        **kwargs,
    )
