"""
Structured logging for the billing service.

Features:
- JSON output for log aggregation, console output for development
- Request context propagation (request_id, user_id, trace_id)
- Webhook context (stripe event id) for correlating redeliveries
- Redaction of credentials and email addresses

Architecture:
- structlog processors over the standard library logging module
- Context variables carry request-scoped data across await points
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar

import structlog
from structlog.types import EventDict, Processor

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)
event_id_var: ContextVar[str | None] = ContextVar("stripe_event_id", default=None)

SENSITIVE_FIELDS = frozenset(
    {
        "api_key",
        "authorization",
        "password",
        "secret",
        "signature",
        "stripe_signature",
        "token",
        "webhook_secret",
    }
)


# ============================================================================
# CUSTOM PROCESSORS
# ============================================================================


def add_request_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Inject request_id, user_id, trace_id and the stripe event id when set."""
    for key, var in (
        ("request_id", request_id_var),
        ("user_id", user_id_var),
        ("trace_id", trace_id_var),
        ("stripe_event_id", event_id_var),
    ):
        value = var.get()
        if value and key not in event_dict:
            event_dict[key] = value
    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add an ISO 8601 UTC timestamp with microsecond precision."""
    now = time.time()
    event_dict["timestamp"] = (
        time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(now)) + f".{int((now % 1) * 1_000_000):06d}Z"
    )
    return event_dict


def add_service_metadata(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add service, version and environment for filtering in log aggregation.

    Configured via LOGGING_SERVICE_NAME, LOGGING_SERVICE_VERSION and
    LOGGING_ENVIRONMENT.
    """
    # Import here to avoid circular dependency
    from cutglue.config import get_settings

    settings = get_settings().logging
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.service_version
    event_dict["environment"] = settings.environment
    return event_dict


def redact_sensitive_fields(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Redact credentials and customer email addresses.

    - secrets keep a short prefix for debugging (whsec_abc1***)
    - email becomes domain-only (***@example.com)
    """
    for key in list(event_dict.keys()):
        value = event_dict[key]
        if not isinstance(value, str):
            continue

        lowered = key.lower()
        if lowered in SENSITIVE_FIELDS:
            event_dict[key] = f"{value[:10]}***" if len(value) > 16 else "***REDACTED***"
        elif lowered in ("email", "customer_email", "to_email") and "@" in value:
            event_dict[key] = f"***@{value.split('@', 1)[1]}"

    return event_dict


def add_exception_info(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add exception_type/exception_message so errors can be grouped."""
    exc_info = event_dict.get("exc_info")
    if exc_info and isinstance(exc_info, tuple) and len(exc_info) == 3:
        exc_type, exc_value, _ = exc_info
        event_dict["exception_type"] = exc_type.__name__ if exc_type else "Unknown"
        event_dict["exception_message"] = str(exc_value) if exc_value else ""
    return event_dict


# ============================================================================
# LOGGER CONFIGURATION
# ============================================================================


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    colorized: bool = False,
) -> None:
    """
    Configure structured logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Use JSON output (True for production, False for development)
        colorized: Colorize console output (only for development)
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_context,
        add_service_metadata,
        redact_sensitive_fields,
        add_timestamp,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        add_exception_info,
        structlog.processors.format_exc_info,
    ]

    if json_output:
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=colorized)

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("usage recorded", feature="ai_generation", used_today=3)
    """
    return structlog.get_logger(name)


# ============================================================================
# CONTEXT MANAGERS
# ============================================================================


class RequestContext:
    """
    Context manager for request-scoped logging.

    Generates a request_id when none is supplied and always resets every
    variable on exit so values never leak into the next request handled by
    the same task.
    """

    def __init__(
        self,
        user_id: str | None = None,
        trace_id: str | None = None,
        request_id: str | None = None,
    ):
        self.request_id = request_id or f"req_{uuid.uuid4().hex[:16]}"
        self.user_id = user_id
        self.trace_id = trace_id or f"trace_{uuid.uuid4().hex[:16]}"
        self._tokens: list = []

    def __enter__(self):
        self._tokens = [
            (request_id_var, request_id_var.set(self.request_id)),
            (user_id_var, user_id_var.set(self.user_id)),
            (trace_id_var, trace_id_var.set(self.trace_id)),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []


class WebhookContext:
    """Bind a Stripe event id to every log line emitted while processing it."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        self._token = None

    def __enter__(self):
        self._token = event_id_var.set(self.event_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            event_id_var.reset(self._token)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def set_user_id(user_id: str | None) -> None:
    """Set user ID for current context."""
    user_id_var.set(user_id)


def get_request_id() -> str | None:
    return request_id_var.get()


def get_user_id() -> str | None:
    return user_id_var.get()


def get_trace_id() -> str | None:
    return trace_id_var.get()
