"""
Auth Service - Email/password accounts with OTP-verified signup and reset.

Passwords are hashed with Argon2id; access tokens are HS256 JWTs whose
subject is the user id.
"""

from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

import jwt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from chatbot.db.models import Chat, CreditTransaction, Message, User, ensure_utc
from chatbot.exceptions import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    UserNotFoundError,
    ValidationError,
)
from chatbot.models.api import OTPPurpose
from chatbot.models.domain import OTPDispatch, UserData
from chatbot.services.memory import MemoryService
from chatbot.services.otp import OTPService

logger = get_logger(__name__)

PASSWORD_RESET_NOTICE = "If this email is registered, you will receive password reset instructions"
INVALID_CREDENTIALS = "Invalid email or password"
NOT_VERIFIED = "Account not verified. Please check your email and verify your account."


def normalize_email(email: str) -> str:
    return email.strip().lower()


def user_to_domain(user: User) -> UserData:
    return UserData(
        id=user.id,
        email=user.email,
        name=user.name,
        credits=user.credits,
        is_verified=user.is_verified,
        stripe_customer_id=user.stripe_customer_id,
        created_at=ensure_utc(user.created_at),
    )


class TokenIssuer:
    """Signs and verifies access tokens."""

    def __init__(self, secret: str, algorithm: str = "HS256", expiry_hours: int = 24 * 7) -> None:
        self.secret = secret
        self.algorithm = algorithm
        self.expiry_hours = expiry_hours

    def create(self, user: UserData) -> str:
        now = datetime.now(UTC)
        payload = {
            "sub": str(user.id),
            "email": user.email,
            "iat": now,
            "exp": now + timedelta(hours=self.expiry_hours),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def decode(self, token: str) -> UUID:
        """
        Return the user id a token was issued for.

        Raises:
            AuthenticationError: Token expired, tampered with or malformed
        """
        try:
            payload: dict[str, Any] = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError as exc:
            logger.info("access_token_expired")
            raise AuthenticationError("Token has expired") from exc
        except jwt.InvalidTokenError as exc:
            logger.warning("access_token_invalid", error_type=type(exc).__name__)
            raise AuthenticationError("Invalid token") from exc

        try:
            return UUID(str(payload["sub"]))
        except (KeyError, ValueError) as exc:
            raise AuthenticationError("Invalid token") from exc


class AuthService:
    """Account lifecycle: signup, login, password reset, profile."""

    def __init__(
        self,
        session: AsyncSession,
        otp: OTPService,
        tokens: TokenIssuer,
        memory: MemoryService | None = None,
    ) -> None:
        self.session = session
        self.otp = otp
        self.tokens = tokens
        self.memory = memory
        self.password_hasher = PasswordHasher()

    # ========================================================================
    # Signup
    # ========================================================================

    async def initiate_signup(self, name: str, email: str, password: str) -> OTPDispatch:
        """
        Register an unverified account and mail its signup code.

        Signing up again before verifying updates the pending registration.

        Raises:
            ConflictError: A verified account already uses this email
            OTPCooldownError: A code was sent moments ago
        """
        email = normalize_email(email)
        user = await self._find_user_by_email(email)

        if user is not None and user.is_verified:
            logger.info("signup_rejected_existing_user", email=email)
            raise ConflictError("User already exists")

        # Refuse a too-early repeat before touching the pending registration
        await self.otp.ensure_can_issue(email, OTPPurpose.SIGNUP)

        password_hash = self.password_hasher.hash(password)
        if user is None:
            user = User(
                email=email,
                name=name.strip(),
                password_hash=password_hash,
                credits=0,
                is_verified=False,
            )
            self.session.add(user)
            logger.info("signup_pending_user_created", email=email)
        else:
            user.name = name.strip()
            user.password_hash = password_hash
            logger.info("signup_pending_user_updated", email=email)
        await self.session.flush()
        await self.session.commit()

        return await self.otp.issue(email, OTPPurpose.SIGNUP, user.name)

    async def verify_signup(self, email: str, code: str) -> UserData:
        """
        Raises:
            NotFoundError: No pending signup for this email
            InvalidOTPError: Code missing, expired or wrong
        """
        email = normalize_email(email)
        user = await self._find_user_by_email(email)
        if user is None:
            raise NotFoundError("User not found. Please sign up first")
        if user.is_verified:
            raise ConflictError("Account already verified")

        await self.otp.verify(email, OTPPurpose.SIGNUP, code)
        user.is_verified = True
        await self.session.commit()

        logger.info("signup_verified", user_id=str(user.id), email=email)
        return user_to_domain(user)

    async def resend_signup_otp(self, email: str) -> OTPDispatch:
        """
        Raises:
            NotFoundError: No pending signup for this email
            ConflictError: Account already verified
            OTPCooldownError: A code was sent moments ago
        """
        email = normalize_email(email)
        user = await self._find_user_by_email(email)
        if user is None:
            raise NotFoundError("User not found. Please sign up first")
        if user.is_verified:
            raise ConflictError("Account already verified")
        return await self.otp.issue(email, OTPPurpose.SIGNUP, user.name)

    # ========================================================================
    # Login
    # ========================================================================

    async def login(self, email: str, password: str) -> tuple[UserData, str]:
        """
        Returns:
            (user, access_token)

        Raises:
            AuthenticationError: Unknown email, wrong password or unverified account
        """
        email = normalize_email(email)
        user = await self._find_user_by_email(email)
        if user is None or not self._verify_password(user.password_hash, password):
            logger.info("login_failed", email=email)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not user.is_verified:
            logger.info("login_rejected_unverified", email=email)
            raise AuthenticationError(NOT_VERIFIED)

        data = user_to_domain(user)
        logger.info("login_succeeded", user_id=str(user.id))
        return data, self.tokens.create(data)

    def authenticate_token(self, token: str) -> UUID:
        return self.tokens.decode(token)

    # ========================================================================
    # Password Reset
    # ========================================================================

    async def request_password_reset(self, email: str) -> tuple[str, OTPDispatch | None]:
        """
        Mail a reset code if the account exists.

        The returned notice is identical either way so callers cannot probe
        for registered emails.
        """
        email = normalize_email(email)
        user = await self._find_user_by_email(email)
        if user is None:
            logger.info("password_reset_unknown_email")
            return PASSWORD_RESET_NOTICE, None

        dispatch = await self.otp.issue(email, OTPPurpose.PASSWORD_RESET, user.name)
        return PASSWORD_RESET_NOTICE, dispatch

    async def reset_password(self, email: str, code: str, new_password: str) -> None:
        """
        Raises:
            InvalidOTPError: Code missing, expired or wrong
            NotFoundError: Account vanished after the code was issued
        """
        email = normalize_email(email)
        await self.otp.verify(email, OTPPurpose.PASSWORD_RESET, code)

        user = await self._find_user_by_email(email)
        if user is None:
            raise NotFoundError("User not found")

        user.password_hash = self.password_hasher.hash(new_password)
        await self.session.commit()
        logger.info("password_reset_completed", user_id=str(user.id))

    # ========================================================================
    # Profile
    # ========================================================================

    async def get_user(self, user_id: UUID) -> UserData:
        """
        Raises:
            UserNotFoundError: User doesn't exist
        """
        user = await self._find_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user_to_domain(user)

    async def update_profile(
        self, user_id: UUID, name: str | None = None, email: str | None = None
    ) -> UserData:
        """
        Raises:
            UserNotFoundError: User doesn't exist
            ValidationError: Name too short
            ConflictError: Another account already uses the new email
        """
        user = await self._find_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        if name is not None:
            name = name.strip()
            if len(name) < 2:
                raise ValidationError("Name must be at least 2 characters")
            user.name = name

        if email is not None:
            email = normalize_email(email)
            if email != user.email:
                existing = await self._find_user_by_email(email)
                if existing is not None:
                    raise ConflictError("Email is already in use")
                user.email = email

        await self.session.commit()
        logger.info("profile_updated", user_id=str(user_id))
        return user_to_domain(user)

    async def delete_account(self, user_id: UUID) -> None:
        """
        Remove the user with their chats, messages, ledger rows and codes.

        Raises:
            UserNotFoundError: User doesn't exist
        """
        user = await self._find_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        email = user.email

        chat_ids = select(Chat.id).where(Chat.owner_id == user_id)
        await self.session.execute(delete(Message).where(Message.chat_id.in_(chat_ids)))
        await self.session.execute(delete(Chat).where(Chat.owner_id == user_id))
        await self.session.execute(
            delete(CreditTransaction).where(CreditTransaction.user_id == user_id)
        )
        await self.session.execute(delete(User).where(User.id == user_id))
        await self.session.commit()
        await self.otp.discard(email)

        if self.memory is not None:
            await self.memory.clear_user(str(user_id))

        logger.info("account_deleted", user_id=str(user_id))

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _verify_password(self, password_hash: str, password: str) -> bool:
        try:
            return self.password_hasher.verify(password_hash, password)
        except (VerificationError, InvalidHashError):
            return False

    async def _find_user(self, user_id: UUID) -> User | None:
        result = await self.session.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def _find_user_by_email(self, email: str) -> User | None:
        result = await self.session.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()
