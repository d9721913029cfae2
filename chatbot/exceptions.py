"""
Exception Classes - Strongly typed exception hierarchy.

Every error carries an HTTP status and a user-facing message; upstream
library errors are logged by the raiser and never exposed.
"""

from uuid import UUID


class ChatbotError(Exception):
    """Base exception for all chatbot errors."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# ============================================================================
# Request Errors
# ============================================================================


class ValidationError(ChatbotError):
    """Raised when a request is malformed; no side effect has happened."""

    status_code = 400


class InvalidOTPError(ValidationError):
    """Raised when a one-time code is missing, expired or wrong."""


class OTPCooldownError(ValidationError):
    """Raised when a new code is requested too soon after the last one."""

    status_code = 429

    def __init__(self, retry_after_seconds: int) -> None:
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Please wait {retry_after_seconds} seconds before requesting a new OTP"
        )


class NotFoundError(ChatbotError):
    """Raised when a referenced record doesn't exist."""

    status_code = 404


class UserNotFoundError(NotFoundError):
    """Raised when a user doesn't exist."""

    def __init__(self, user_id: UUID | str) -> None:
        self.user_id = user_id
        super().__init__("User not found")


class ChatNotFoundError(NotFoundError):
    """Raised when a chat doesn't exist or isn't visible to the caller."""

    def __init__(self, chat_id: UUID | str) -> None:
        self.chat_id = chat_id
        super().__init__("Chat not found")


class ConflictError(ChatbotError):
    """Raised when a record already exists."""

    status_code = 409


class AuthenticationError(ChatbotError):
    """Raised when credentials or tokens are invalid."""

    status_code = 401


class AuthorizationError(ChatbotError):
    """Raised when the caller may not act on a resource."""

    status_code = 403


# ============================================================================
# Credit Errors
# ============================================================================


class InsufficientCreditsError(ChatbotError):
    """Raised when a metered user has no credits left."""

    status_code = 402

    def __init__(self, balance: int = 0) -> None:
        self.balance = balance
        super().__init__("Insufficient credits. Please purchase more credits to continue.")


# ============================================================================
# Upstream Errors
# ============================================================================


class UpstreamConfigurationError(ChatbotError):
    """Raised when a required external integration was never configured."""

    status_code = 503

    def __init__(self, integration: str) -> None:
        self.integration = integration
        super().__init__(f"{integration} is not configured")


class UpstreamFailureError(ChatbotError):
    """Raised when an external service errored or timed out."""

    status_code = 502


class ModelGatewayError(UpstreamFailureError):
    """Raised when the model aggregation endpoint fails."""

    def __init__(self, message: str, status: int | None = None) -> None:
        self.status = status
        super().__init__(message)


class ModelAuthenticationError(ModelGatewayError):
    """Raised when the model aggregation endpoint rejects our API key."""

    def __init__(self) -> None:
        super().__init__("Invalid OpenRouter API key", status=401)


class PaymentProviderError(UpstreamFailureError):
    """Raised when payment provider operation fails."""

    def __init__(self, error_type: str = "unknown") -> None:
        self.error_type = error_type
        super().__init__("Checkout failed, please try again")


class WebhookVerificationError(ValidationError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Webhook verification error: {message}")


class MemoryServiceError(UpstreamFailureError):
    """Raised when the embedding or vector index service fails."""
