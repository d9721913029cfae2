"""
Tests for logging processors.
"""

import structlog

from chatbot.observability.logging import REDACTED, log_context, redact_sensitive


def test_credentials_are_masked():
    event = {"event": "login_failed", "email": "a@example.com", "password": "hunter22"}

    result = redact_sensitive(None, "info", event)

    assert result["password"] == REDACTED
    assert result["email"] == "a@example.com"


def test_log_context_binds_and_unbinds():
    with log_context(request_id="req-1"):
        assert structlog.contextvars.get_contextvars()["request_id"] == "req-1"
    assert "request_id" not in structlog.contextvars.get_contextvars()
