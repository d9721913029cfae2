"""
Checkout Provider Protocol - Provider-agnostic hosted checkout interface.
"""

from dataclasses import dataclass, field
from typing import Protocol

from chatbot.models.domain import CreditBundle


@dataclass(frozen=True)
class CheckoutSessionRequest:
    """
    Provider-agnostic request for a hosted checkout session.

    The bundle size travels in metadata so reconciliation can read it back.
    """

    customer_id: str
    bundle: CreditBundle
    success_url: str
    cancel_url: str
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CheckoutSessionInfo:
    """Provider-agnostic view of a hosted checkout session."""

    session_id: str
    url: str | None
    payment_status: str  # "paid", "unpaid" or "no_payment_required"
    customer_id: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


@dataclass(frozen=True)
class WebhookEvent:
    """Provider-agnostic webhook notification."""

    event_id: str
    event_type: str
    session_id: str | None
    payment_status: str | None


class CheckoutProvider(Protocol):
    """
    Checkout provider protocol.

    Any hosted checkout (Stripe, Paddle, ...) must implement this interface.
    """

    async def create_customer(self, email: str, user_id: str) -> str:
        """
        Create a customer record with the provider.

        Returns:
            Provider customer id

        Raises:
            PaymentProviderError: If the provider call fails
        """
        ...

    async def create_checkout_session(self, request: CheckoutSessionRequest) -> CheckoutSessionInfo:
        """
        Create a hosted checkout session.

        Raises:
            PaymentProviderError: If the provider call fails
        """
        ...

    async def retrieve_session(self, session_id: str) -> CheckoutSessionInfo | None:
        """
        Look up a checkout session.

        Returns:
            The session, or None if the provider does not know the id

        Raises:
            PaymentProviderError: If the provider call fails
        """
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse a webhook notification.

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        ...
