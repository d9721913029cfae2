"""
Checkout Bridge - Hosted Stripe checkout for the fixed credit bundle.

StripeCheckoutProvider implements the CheckoutProvider protocol on top of the
stripe SDK. CheckoutBridge ties it to the users table (customer reference)
and hands completed sessions to the credit ledger.
"""

import asyncio
import json
from typing import Any
from uuid import UUID

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from chatbot.config import Settings
from chatbot.db.models import User
from chatbot.exceptions import PaymentProviderError, UserNotFoundError, WebhookVerificationError
from chatbot.models.domain import CreditBundle, ReconcileResult
from chatbot.observability.metrics import metrics
from chatbot.services.credit_ledger import CreditLedger
from chatbot.services.payment_provider import (
    CheckoutProvider,
    CheckoutSessionInfo,
    CheckoutSessionRequest,
    WebhookEvent,
)

logger = get_logger(__name__)

CHECKOUT_COMPLETED_EVENT = "checkout.session.completed"


def bundle_from_settings(settings: Settings) -> CreditBundle:
    return CreditBundle(
        credits=settings.bundle_credits,
        price_minor=settings.bundle_price_minor,
        currency=settings.bundle_currency,
        name=settings.bundle_product_name,
        description=settings.bundle_product_description,
    )


def _metadata_to_dict(metadata: Any) -> dict[str, str]:
    if metadata is None:
        return {}
    # StripeObject stopped being a dict subclass in newer SDK releases
    if isinstance(metadata, stripe.StripeObject):
        metadata = metadata.to_dict()
    return {str(key): str(value) for key, value in metadata.items()}


def _field(obj: Any, name: str) -> Any:
    """Read an optional field from a StripeObject, None when unset."""
    return getattr(obj, name, None)


def _session_to_info(session: Any) -> CheckoutSessionInfo:
    return CheckoutSessionInfo(
        session_id=session.id,
        url=_field(session, "url"),
        payment_status=_field(session, "payment_status") or "unpaid",
        customer_id=_field(session, "customer"),
        metadata=_metadata_to_dict(_field(session, "metadata")),
    )


class StripeCheckoutProvider:
    """
    Stripe checkout provider implementation.

    Implements the CheckoutProvider protocol. SDK calls are blocking, so they
    run in a worker thread.
    """

    def __init__(self, api_key: str, webhook_secret: str = "") -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        stripe.api_key = api_key

    async def create_customer(self, email: str, user_id: str) -> str:
        try:
            logger.info("creating_stripe_customer", user_id=user_id)

            customer = await asyncio.to_thread(
                stripe.Customer.create, email=email, metadata={"user_id": user_id}
            )

            logger.info("stripe_customer_created", user_id=user_id, customer_id=customer.id)
            customer_id: str = customer.id
            return customer_id

        except stripe.StripeError as exc:
            logger.error(
                "stripe_customer_creation_failed",
                user_id=user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(type(exc).__name__) from exc

    async def create_checkout_session(self, request: CheckoutSessionRequest) -> CheckoutSessionInfo:
        """
        Create a Stripe Checkout Session in payment mode for one bundle.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        bundle = request.bundle
        try:
            logger.info(
                "creating_stripe_checkout_session",
                customer_id=request.customer_id,
                amount_minor=bundle.price_minor,
                credits=bundle.credits,
            )

            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                customer=request.customer_id,
                payment_method_types=["card"],
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": bundle.currency,
                            "product_data": {
                                "name": bundle.name,
                                "description": bundle.description,
                            },
                            "unit_amount": bundle.price_minor,
                        },
                        "quantity": 1,
                    }
                ],
                success_url=request.success_url,
                cancel_url=request.cancel_url,
                metadata=request.metadata,
            )

            logger.info("stripe_checkout_session_created", session_id=session.id)
            return _session_to_info(session)

        except stripe.StripeError as exc:
            logger.error(
                "stripe_checkout_session_failed",
                customer_id=request.customer_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(type(exc).__name__) from exc

    async def retrieve_session(self, session_id: str) -> CheckoutSessionInfo | None:
        try:
            session = await asyncio.to_thread(stripe.checkout.Session.retrieve, session_id)
        except stripe.InvalidRequestError as exc:
            if exc.code == "resource_missing":
                logger.warning("stripe_checkout_session_not_found", session_id=session_id)
                return None
            logger.error(
                "stripe_checkout_session_retrieve_failed",
                session_id=session_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(type(exc).__name__) from exc
        except stripe.StripeError as exc:
            logger.error(
                "stripe_checkout_session_retrieve_failed",
                session_id=session_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(type(exc).__name__) from exc

        logger.info(
            "stripe_checkout_session_retrieved",
            session_id=session_id,
            payment_status=_field(session, "payment_status"),
        )
        return _session_to_info(session)

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse a Stripe webhook event.

        Without a configured signing secret the payload is parsed unverified;
        reconciliation re-fetches the session from Stripe either way.

        Raises:
            WebhookVerificationError: If signature verification or parsing fails
        """
        try:
            if self.webhook_secret:
                event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                    payload, signature, self.webhook_secret
                )
            else:
                logger.warning("stripe_webhook_unverified", reason="no_webhook_secret")
                event = stripe.Event.construct_from(json.loads(payload), self.api_key)
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError("Malformed webhook payload") from exc

        obj = event.data.object
        logger.info("stripe_webhook_received", event_id=event.id, event_type=event.type)
        return WebhookEvent(
            event_id=event.id,
            event_type=event.type,
            session_id=_field(obj, "id") if event.type.startswith("checkout.session") else None,
            payment_status=_field(obj, "payment_status"),
        )


class CheckoutBridge:
    """Creates checkout sessions for users and reconciles completed ones."""

    def __init__(
        self, session: AsyncSession, provider: CheckoutProvider, settings: Settings
    ) -> None:
        self.session = session
        self.provider = provider
        self.settings = settings
        self.bundle = bundle_from_settings(settings)

    async def create_checkout_session(self, user_id: UUID, email: str) -> str:
        """
        Create a hosted checkout session for the credit bundle.

        Ensures the user has a Stripe customer reference first and persists a
        newly created one.

        Returns:
            The hosted checkout URL

        Raises:
            UserNotFoundError: User doesn't exist
            PaymentProviderError: Any provider failure
        """
        user = await self._find_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        try:
            customer_id = user.stripe_customer_id
            if not customer_id:
                customer_id = await self.provider.create_customer(email, str(user_id))
                user.stripe_customer_id = customer_id
                await self.session.flush()
                await self.session.commit()

            frontend = self.settings.frontend_url.rstrip("/")
            info = await self.provider.create_checkout_session(
                CheckoutSessionRequest(
                    customer_id=customer_id,
                    bundle=self.bundle,
                    success_url=f"{frontend}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
                    cancel_url=f"{frontend}/payment/cancel",
                    metadata={"user_id": str(user_id), "credits": str(self.bundle.credits)},
                )
            )
        except PaymentProviderError as exc:
            metrics.record_checkout(success=False, error_type=exc.error_type)
            raise

        if not info.url:
            metrics.record_checkout(success=False, error_type="missing_url")
            logger.error("checkout_session_missing_url", session_id=info.session_id)
            raise PaymentProviderError("missing_url")

        metrics.record_checkout(success=True)
        logger.info("checkout_session_created", user_id=str(user_id), session_id=info.session_id)
        return info.url

    async def handle_webhook(
        self, payload: bytes, signature: str, ledger: CreditLedger
    ) -> ReconcileResult | None:
        """
        Reconcile a completed checkout reported by webhook.

        Returns:
            The reconcile result, or None for events that are acknowledged and ignored
        """
        event = await self.provider.verify_webhook(payload, signature)
        if event.event_type != CHECKOUT_COMPLETED_EVENT or not event.session_id:
            logger.info("webhook_event_ignored", event_id=event.event_id, event_type=event.event_type)
            return None
        return await ledger.reconcile(event.session_id, self.provider)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_user(self, user_id: UUID) -> User | None:
        result = await self.session.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()
