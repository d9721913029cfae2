"""
Tests for SMTPMailer.

smtplib.SMTP is patched; no network connection is made.
"""

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from chatbot.config import settings
from chatbot.services.mailer import SIGNUP_SUBJECT, SMTPMailer, reset_otp_html, signup_otp_html


@pytest.fixture
def mailer() -> SMTPMailer:
    configured = settings.model_copy(
        update={
            "smtp_host": "smtp.test",
            "smtp_user": "bot@test",
            "smtp_password": "pw",
            "smtp_from": "ChatBot <bot@test>",
        }
    )
    return SMTPMailer(configured)


def test_otp_templates_include_code_and_ttl():
    assert "123456" in signup_otp_html("Ann", "123456", 10)
    assert "10 minutes" in reset_otp_html("Ann", "654321", 10)
    assert "Hi Ann" in reset_otp_html("Ann", "654321", 10)


async def test_unconfigured_mailer_reports_not_sent():
    assert await SMTPMailer(settings).send("a@example.com", SIGNUP_SUBJECT, "<p>x</p>") is False


async def test_send_uses_starttls_and_login(mailer):
    smtp = MagicMock()
    with patch("chatbot.services.mailer.smtplib.SMTP") as smtp_cls:
        smtp_cls.return_value.__enter__.return_value = smtp

        sent = await mailer.send("a@example.com", SIGNUP_SUBJECT, "<p>123456</p>")

    assert sent is True
    smtp_cls.assert_called_once_with("smtp.test", 587, timeout=30)
    smtp.starttls.assert_called_once()
    smtp.login.assert_called_once_with("bot@test", "pw")
    message = smtp.send_message.call_args.args[0]
    assert message["To"] == "a@example.com"
    assert message["Subject"] == SIGNUP_SUBJECT
    assert message["From"] == "ChatBot <bot@test>"


async def test_smtp_failure_is_reported_not_raised(mailer):
    with patch(
        "chatbot.services.mailer.smtplib.SMTP",
        side_effect=smtplib.SMTPConnectError(421, "unavailable"),
    ):
        assert await mailer.send("a@example.com", SIGNUP_SUBJECT, "<p>x</p>") is False


async def test_network_failure_is_reported_not_raised(mailer):
    with patch("chatbot.services.mailer.smtplib.SMTP", side_effect=OSError("refused")):
        assert await mailer.send("a@example.com", SIGNUP_SUBJECT, "<p>x</p>") is False
