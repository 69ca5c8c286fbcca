import structlog
import logging
from tiered_approvals.config import settings

SERVICE_NAME = "tiered-approvals"


def resolve_log_level(name: str) -> int:
    """Numeric level for ``name``; unknown names fall back to INFO."""
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else logging.INFO


def add_service_context(logger, method_name, event_dict):
    event_dict.setdefault("service", SERVICE_NAME)
    event_dict.setdefault("env", settings.ENVIRONMENT)
    return event_dict


def setup_logging():
    development = settings.ENVIRONMENT == "development"
    renderer = (
        structlog.dev.ConsoleRenderer()
        if development
        else structlog.processors.JSONRenderer()
    )
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if not development:
        # Console renderer prints tracebacks itself
        processors += [add_service_context, structlog.processors.format_exc_info]
    structlog.configure(
        processors=processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            resolve_log_level(settings.LOG_LEVEL)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
