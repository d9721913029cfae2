"""
API Models - Pydantic models for request/response validation.

Every endpoint has its own request type, validated before any field is read.
Every response uses the ApiResponse envelope.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Generic, TypeVar
from uuid import UUID

from pydantic import AfterValidator, BaseModel, EmailStr, Field, field_validator

T = TypeVar("T")


class MessageRole(str, Enum):
    """Chat message author."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class TransactionType(str, Enum):
    """Credit ledger transaction type."""

    PURCHASE = "purchase"
    GRANT = "grant"
    USAGE = "usage"


class OTPPurpose(str, Enum):
    """What a one-time code authorizes."""

    SIGNUP = "signup"
    PASSWORD_RESET = "password_reset"


class MemoryType(str, Enum):
    """Kind of remembered content."""

    USER_PREFERENCE = "user_preference"
    FACT = "fact"
    CONTEXT = "context"
    SUMMARY = "summary"


# ============================================================================
# Response Envelope
# ============================================================================


class ApiResponse(BaseModel, Generic[T]):
    """Uniform response envelope for every endpoint."""

    success: bool = True
    data: T | None = None
    message: str | None = None


class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    errors: list[dict[str, str]] | None = None


# ============================================================================
# Auth Models
# ============================================================================


def _strip_otp(v: str) -> str:
    v = v.strip()
    if len(v) != 6 or not v.isdigit():
        raise ValueError("OTP must be a 6-digit code")
    return v


OTPCodeStr = Annotated[str, AfterValidator(_strip_otp)]


class SignupRequest(BaseModel):
    """POST /auth/signup request body."""

    name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Name must be at least 2 characters")
        return v


class VerifyOTPRequest(BaseModel):
    """POST /auth/verify-otp request body."""

    email: EmailStr
    otp: OTPCodeStr


class EmailRequest(BaseModel):
    """Body for /auth/resend-otp and /auth/forgot-password."""

    email: EmailStr


class LoginRequest(BaseModel):
    """POST /auth/login request body."""

    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)


class ResetPasswordRequest(BaseModel):
    """POST /auth/reset-password request body."""

    email: EmailStr
    otp: OTPCodeStr
    new_password: str = Field(..., min_length=6, max_length=128)


class UpdateProfileRequest(BaseModel):
    """PATCH /users/me request body."""

    name: str | None = Field(None, min_length=2, max_length=100)
    email: EmailStr | None = None


class UserResponse(BaseModel):
    id: UUID
    email: str
    name: str
    credits: int
    is_verified: bool
    created_at: datetime


class OTPDispatchResponse(BaseModel):
    email: str
    expires_at: datetime
    email_sent: bool
    otp: str | None = None  # only when EXPOSE_OTP_IN_RESPONSE is enabled


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse


# ============================================================================
# Chat Models
# ============================================================================


class SendMessageRequest(BaseModel):
    """POST /chat/send request body."""

    message: str = Field(..., min_length=1, max_length=10000)
    chat_id: UUID | None = None
    model: str | None = Field(None, min_length=1, max_length=255)

    @field_validator("message")
    @classmethod
    def message_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Message is required")
        return v


class SaveChatRequest(BaseModel):
    """POST /chat/save request body. Without chat_id a new empty chat is created."""

    chat_id: UUID | None = None
    title: str | None = Field(None, max_length=255)


class MessageResponse(BaseModel):
    id: UUID
    role: MessageRole
    content: str
    model: str | None
    timestamp: datetime


class ChatResponse(BaseModel):
    id: UUID
    title: str
    created_at: datetime
    updated_at: datetime
    messages: list[MessageResponse]


class ChatSidebarItemResponse(BaseModel):
    id: UUID
    title: str
    updated_at: datetime


class SendMessageResponse(BaseModel):
    chat: ChatResponse
    message: MessageResponse
    remaining_credits: int | None = None


class UsageResponse(BaseModel):
    total_chats: int
    total_messages: int
    credits: int | None = None


class SavedChatResponse(BaseModel):
    id: UUID
    title: str
    saved: bool = True


class DeletedResponse(BaseModel):
    deleted: bool = True
    count: int | None = None


class ModelInfo(BaseModel):
    id: str
    name: str | None = None
    context_length: int | None = None


# ============================================================================
# Payment Models
# ============================================================================


class ConfirmPaymentRequest(BaseModel):
    """POST /payment/confirm request body."""

    session_id: str = Field(..., min_length=1, max_length=255)


class CreditsResponse(BaseModel):
    credits: int


class HasCreditsResponse(BaseModel):
    has_credits: bool


class CheckoutSessionResponse(BaseModel):
    url: str


class ConfirmPaymentResponse(BaseModel):
    credits: int
    newly_credited: bool


class WebhookAckResponse(BaseModel):
    received: bool = True
