"""
Mail Sender - SMTP delivery for OTP emails.

smtplib is blocking, so each send runs in a worker thread. A send never
raises: failures are logged and reported as False.
"""

import asyncio
import smtplib
from email.message import EmailMessage
from typing import Protocol

from structlog import get_logger

from chatbot.config import Settings

logger = get_logger(__name__)

SIGNUP_SUBJECT = "Your OTP for ChatBot Registration"
RESET_SUBJECT = "Password Reset OTP - ChatBot"


class MailSender(Protocol):
    async def send(self, to: str, subject: str, html: str) -> bool: ...


def _otp_block(code: str) -> str:
    return (
        '<div style="background:#f3f4f6;border-radius:8px;padding:16px;text-align:center;'
        'font-size:28px;letter-spacing:6px;font-weight:bold;color:#111827;">'
        f"{code}</div>"
    )


def signup_otp_html(name: str, code: str, ttl_minutes: int) -> str:
    return (
        '<div style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto;">'
        "<h2>Welcome to ChatBot!</h2>"
        f"<p>Hi {name},</p>"
        "<p>Use the following code to verify your email address:</p>"
        f"{_otp_block(code)}"
        f"<p>This code expires in {ttl_minutes} minutes.</p>"
        "<p>If you didn't create an account, you can ignore this email.</p>"
        "</div>"
    )


def reset_otp_html(name: str, code: str, ttl_minutes: int) -> str:
    return (
        '<div style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto;">'
        "<h2>Password Reset</h2>"
        f"<p>Hi {name},</p>"
        "<p>Use the following code to reset your ChatBot password:</p>"
        f"{_otp_block(code)}"
        f"<p>This code expires in {ttl_minutes} minutes.</p>"
        "<p>If you didn't request a password reset, you can ignore this email.</p>"
        "</div>"
    )


class SMTPMailer:
    """STARTTLS SMTP sender configured from Settings."""

    def __init__(self, settings: Settings) -> None:
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.user = settings.smtp_user
        self.password = settings.smtp_password
        self.sender = settings.smtp_from or settings.smtp_user
        self.use_tls = settings.smtp_use_tls

    def is_configured(self) -> bool:
        return bool(self.host and self.user and self.password)

    def _send_sync(self, to: str, subject: str, html: str) -> None:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content("This message requires an HTML-capable mail client.")
        message.add_alternative(html, subtype="html")
        with smtplib.SMTP(self.host, self.port, timeout=30) as smtp:
            if self.use_tls:
                smtp.starttls()
            smtp.login(self.user, self.password)
            smtp.send_message(message)

    async def send(self, to: str, subject: str, html: str) -> bool:
        if not self.is_configured():
            logger.warning("mail_not_configured", to=to, subject=subject)
            return False

        try:
            await asyncio.to_thread(self._send_sync, to, subject, html)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(
                "mail_send_failed",
                to=to,
                subject=subject,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False

        logger.info("mail_sent", to=to, subject=subject)
        return True
