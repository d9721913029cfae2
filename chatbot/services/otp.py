"""
OTP Service - Six-digit one-time codes for signup and password reset.

One live code per (email, purpose). Issuing replaces the previous code,
verifying consumes it.
"""

import secrets
from datetime import timedelta

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from chatbot.config import Settings
from chatbot.db.models import OTPCode, ensure_utc, utc_now
from chatbot.exceptions import InvalidOTPError, OTPCooldownError
from chatbot.models.api import OTPPurpose
from chatbot.models.domain import OTPDispatch
from chatbot.services.mailer import (
    RESET_SUBJECT,
    SIGNUP_SUBJECT,
    MailSender,
    reset_otp_html,
    signup_otp_html,
)

logger = get_logger(__name__)


def generate_code() -> str:
    """Uniformly random 6-digit code, leading zeros kept."""
    return f"{secrets.randbelow(1_000_000):06d}"


class OTPService:
    """Issues, mails and verifies one-time codes."""

    def __init__(self, session: AsyncSession, mailer: MailSender, settings: Settings) -> None:
        self.session = session
        self.mailer = mailer
        self.ttl = timedelta(minutes=settings.otp_ttl_minutes)
        self.cooldown = timedelta(seconds=settings.otp_resend_cooldown_seconds)
        self.expose_code = settings.expose_otp_in_response

    async def ensure_can_issue(self, email: str, purpose: OTPPurpose) -> None:
        """
        Raises:
            OTPCooldownError: Previous code was issued less than the cooldown ago
        """
        if self.cooldown.total_seconds() <= 0:
            return
        row = await self._find_code(email, purpose)
        if row is None:
            return

        now = utc_now()
        ready_at = ensure_utc(row.issued_at) + self.cooldown
        if now < ready_at:
            retry_after = max(1, int((ready_at - now).total_seconds()))
            logger.info("otp_cooldown_active", email=email, purpose=purpose.value)
            raise OTPCooldownError(retry_after)

    async def issue(self, email: str, purpose: OTPPurpose, name: str) -> OTPDispatch:
        """
        Create (or replace) the code for email/purpose and mail it.

        A failed delivery is logged, not raised: the code stays valid and can
        be resent.

        Raises:
            OTPCooldownError: Previous code was issued less than the cooldown ago
        """
        await self.ensure_can_issue(email, purpose)

        now = utc_now()
        row = await self._find_code(email, purpose)
        code = generate_code()
        expires_at = now + self.ttl
        if row is None:
            row = OTPCode(email=email, purpose=purpose.value)
            self.session.add(row)
        row.code = code
        row.issued_at = now
        row.expires_at = expires_at
        await self.session.flush()
        await self.session.commit()

        ttl_minutes = int(self.ttl.total_seconds() // 60)
        if purpose is OTPPurpose.SIGNUP:
            delivered = await self.mailer.send(
                email, SIGNUP_SUBJECT, signup_otp_html(name, code, ttl_minutes)
            )
        else:
            delivered = await self.mailer.send(
                email, RESET_SUBJECT, reset_otp_html(name, code, ttl_minutes)
            )

        if not delivered:
            # Kept in the log so an operator can relay the code by hand
            logger.warning(
                "otp_email_not_delivered", email=email, purpose=purpose.value, otp_code=code
            )
        logger.info("otp_issued", email=email, purpose=purpose.value, delivered=delivered)

        return OTPDispatch(
            email=email,
            expires_at=expires_at,
            delivered=delivered,
            code=code if self.expose_code else None,
        )

    async def verify(self, email: str, purpose: OTPPurpose, code: str) -> None:
        """
        Check and consume a code.

        Raises:
            InvalidOTPError: No code, expired code or wrong code
        """
        row = await self._find_code(email, purpose)
        if row is None:
            raise InvalidOTPError("No OTP found. Please request a new one")

        if ensure_utc(row.expires_at) <= utc_now():
            await self.discard(email, purpose)
            logger.info("otp_expired", email=email, purpose=purpose.value)
            raise InvalidOTPError("OTP has expired. Please request a new one")

        if not secrets.compare_digest(row.code, code.strip()):
            logger.info("otp_mismatch", email=email, purpose=purpose.value)
            raise InvalidOTPError("Invalid OTP")

        await self.discard(email, purpose)
        logger.info("otp_verified", email=email, purpose=purpose.value)

    async def discard(self, email: str, purpose: OTPPurpose | None = None) -> None:
        """Drop the code for email/purpose, or every code for email."""
        stmt = delete(OTPCode).where(OTPCode.email == email)
        if purpose is not None:
            stmt = stmt.where(OTPCode.purpose == purpose.value)
        await self.session.execute(stmt)
        await self.session.commit()

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_code(self, email: str, purpose: OTPPurpose) -> OTPCode | None:
        result = await self.session.execute(
            select(OTPCode).where(OTPCode.email == email, OTPCode.purpose == purpose.value)
        )
        return result.scalar_one_or_none()
