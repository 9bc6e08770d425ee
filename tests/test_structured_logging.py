"""
Tests for structured logging.

Tests:
- JSON and console configuration
- Request and webhook context propagation
- Credential and email redaction
- Request ID middleware
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from cutglue.observability.logging import (
    RequestContext,
    WebhookContext,
    add_request_context,
    configure_logging,
    event_id_var,
    get_logger,
    get_request_id,
    get_trace_id,
    get_user_id,
    redact_sensitive_fields,
    set_user_id,
)
from cutglue.observability.logging_middleware import (
    RequestLoggingFilter,
    StructuredLoggingMiddleware,
)


@pytest.mark.parametrize("json_output", [True, False])
def test_configure_logging(json_output):
    configure_logging(log_level="INFO", json_output=json_output, colorized=False)

    logger = get_logger("test")
    logger.info("Usage recorded", feature="ai_generation", used_today=3)


def test_request_context_sets_and_resets():
    assert get_request_id() is None

    with RequestContext(user_id="user_1", request_id="req_123", trace_id="trace_9"):
        assert get_request_id() == "req_123"
        assert get_user_id() == "user_1"
        assert get_trace_id() == "trace_9"

    assert get_request_id() is None
    assert get_user_id() is None


def test_request_context_generates_ids():
    with RequestContext() as ctx:
        assert ctx.request_id.startswith("req_")
        assert get_trace_id().startswith("trace_")


def test_set_user_id_inside_request():
    with RequestContext():
        set_user_id("user_42")
        assert get_user_id() == "user_42"


def test_webhook_context_binds_event_id():
    with WebhookContext("evt_123"):
        event_dict = add_request_context(None, "info", {"event": "Processing"})
        assert event_dict["stripe_event_id"] == "evt_123"

    assert event_id_var.get() is None


def test_request_context_does_not_override_explicit_fields():
    with RequestContext(user_id="user_1"):
        event_dict = add_request_context(None, "info", {"event": "x", "user_id": "other"})

    assert event_dict["user_id"] == "other"


def test_redacts_secrets_and_emails():
    event_dict = redact_sensitive_fields(
        None,
        "info",
        {
            "event": "Config loaded",
            "webhook_secret": "whsec_abcdefghijklmnopqrstuvwxyz",
            "api_key": "short",
            "to_email": "maker@example.com",
            "tier": "maker",
        },
    )

    assert event_dict["webhook_secret"] == "whsec_abcd***"
    assert event_dict["api_key"] == "***REDACTED***"
    assert event_dict["to_email"] == "***@example.com"
    assert event_dict["tier"] == "maker"


def test_probe_paths_are_not_logged():
    assert not RequestLoggingFilter.should_log("/health/readiness")
    assert not RequestLoggingFilter.should_log("/metrics")
    assert RequestLoggingFilter.should_log("/api/v1/billing/usage")


def test_middleware_echoes_and_generates_ids():
    app = FastAPI()
    app.add_middleware(StructuredLoggingMiddleware)

    @app.get("/whoami")
    async def whoami():
        return {"request_id": get_request_id(), "user_id": get_user_id()}

    client = TestClient(app)

    response = client.get("/whoami", headers={"X-Request-ID": "req_given", "X-User-ID": "u1"})
    assert response.headers["X-Request-ID"] == "req_given"
    assert response.json() == {"request_id": "req_given", "user_id": "u1"}

    generated = client.get("/whoami")
    assert generated.headers["X-Request-ID"].startswith("req_")
    assert generated.headers["X-Trace-ID"].startswith("trace_")
