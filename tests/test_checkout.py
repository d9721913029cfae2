"""
Tests for StripeCheckoutProvider and CheckoutBridge.

The Stripe SDK is patched at the call sites; the bridge runs against the
mock provider and a real SQLite database.
"""

import json
from unittest.mock import patch
from uuid import uuid4

import pytest
import stripe
from sqlalchemy import select

from chatbot.db.models import User
from chatbot.exceptions import PaymentProviderError, UserNotFoundError, WebhookVerificationError
from chatbot.services.checkout import CHECKOUT_COMPLETED_EVENT, CheckoutBridge, StripeCheckoutProvider
from chatbot.services.payment_provider import CheckoutSessionInfo, WebhookEvent


def stripe_session(**values) -> stripe.checkout.Session:
    return stripe.checkout.Session.construct_from(
        {"object": "checkout.session", **values}, "sk_test_fake_key"
    )


def completed_event_payload(session_id: str = "cs_test_1") -> bytes:
    return json.dumps(
        {
            "id": "evt_test_1",
            "object": "event",
            "type": CHECKOUT_COMPLETED_EVENT,
            "data": {
                "object": {
                    "id": session_id,
                    "object": "checkout.session",
                    "payment_status": "paid",
                }
            },
        }
    ).encode()


@pytest.fixture
def provider() -> StripeCheckoutProvider:
    return StripeCheckoutProvider(api_key="sk_test_fake_key")


@pytest.fixture
def bridge(db_session, mock_checkout_provider, test_settings) -> CheckoutBridge:
    mock_checkout_provider.create_checkout_session.return_value = CheckoutSessionInfo(
        session_id="cs_test_1",
        url="https://checkout.stripe.com/c/pay/cs_test_1",
        payment_status="unpaid",
    )
    return CheckoutBridge(db_session, mock_checkout_provider, test_settings)


class TestStripeCheckoutProvider:
    """Tests for the stripe SDK wrapper."""

    async def test_create_customer_returns_id(self, provider) -> None:
        customer = stripe.Customer.construct_from({"id": "cus_123"}, "sk_test_fake_key")

        with patch("stripe.Customer.create", return_value=customer) as create:
            customer_id = await provider.create_customer("a@example.com", "user-1")

        assert customer_id == "cus_123"
        assert create.call_args.kwargs["metadata"] == {"user_id": "user-1"}

    async def test_stripe_error_becomes_payment_provider_error(self, provider) -> None:
        with patch(
            "stripe.Customer.create", side_effect=stripe.APIConnectionError("network down")
        ):
            with pytest.raises(PaymentProviderError) as exc_info:
                await provider.create_customer("a@example.com", "user-1")

        assert exc_info.value.error_type == "APIConnectionError"
        assert exc_info.value.status_code == 502

    async def test_retrieve_session_maps_fields(self, provider) -> None:
        session = stripe_session(
            id="cs_test_1",
            url=None,
            payment_status="paid",
            customer="cus_123",
            metadata={"user_id": "u1", "credits": "20"},
        )

        with patch("stripe.checkout.Session.retrieve", return_value=session):
            info = await provider.retrieve_session("cs_test_1")

        assert info is not None
        assert info.is_paid
        assert info.customer_id == "cus_123"
        assert info.metadata == {"user_id": "u1", "credits": "20"}

    async def test_session_without_optional_fields_gets_defaults(self, provider) -> None:
        session = stripe_session(id="cs_test_2")

        with patch("stripe.checkout.Session.retrieve", return_value=session):
            info = await provider.retrieve_session("cs_test_2")

        assert info is not None
        assert info.url is None
        assert info.payment_status == "unpaid"
        assert info.customer_id is None
        assert info.metadata == {}

    async def test_retrieve_missing_session_returns_none(self, provider) -> None:
        missing = stripe.InvalidRequestError("No such session", "id", code="resource_missing")

        with patch("stripe.checkout.Session.retrieve", side_effect=missing):
            assert await provider.retrieve_session("cs_nope") is None

    async def test_unsigned_webhook_is_parsed_without_secret(self, provider) -> None:
        event = await provider.verify_webhook(completed_event_payload(), "")

        assert event.event_type == CHECKOUT_COMPLETED_EVENT
        assert event.session_id == "cs_test_1"
        assert event.payment_status == "paid"

    async def test_non_session_webhook_has_no_session_fields(self, provider) -> None:
        payload = json.dumps(
            {
                "id": "evt_test_2",
                "object": "event",
                "type": "customer.created",
                "data": {"object": {"id": "cus_123", "object": "customer"}},
            }
        ).encode()

        event = await provider.verify_webhook(payload, "")

        assert event.event_type == "customer.created"
        assert event.session_id is None
        assert event.payment_status is None

    async def test_bad_signature_is_rejected(self) -> None:
        provider = StripeCheckoutProvider("sk_test_fake_key", webhook_secret="whsec_test")

        with pytest.raises(WebhookVerificationError):
            await provider.verify_webhook(completed_event_payload(), "t=1,v1=bad")

    async def test_malformed_payload_is_rejected(self, provider) -> None:
        with pytest.raises(WebhookVerificationError, match="Malformed"):
            await provider.verify_webhook(b"not json", "")


class TestCheckoutBridge:
    async def test_creates_and_persists_customer(
        self, bridge, mock_checkout_provider, user_factory, db_session
    ) -> None:
        user = await user_factory(email="ann@example.com")

        url = await bridge.create_checkout_session(user.id, user.email)

        assert url == "https://checkout.stripe.com/c/pay/cs_test_1"
        mock_checkout_provider.create_customer.assert_awaited_once_with(
            "ann@example.com", str(user.id)
        )
        stored = await db_session.scalar(select(User.stripe_customer_id).where(User.id == user.id))
        assert stored == "cus_test_123"

    async def test_existing_customer_is_reused(
        self, bridge, mock_checkout_provider, user_factory
    ) -> None:
        user = await user_factory(stripe_customer_id="cus_existing")

        await bridge.create_checkout_session(user.id, user.email)

        mock_checkout_provider.create_customer.assert_not_called()
        request = mock_checkout_provider.create_checkout_session.await_args.args[0]
        assert request.customer_id == "cus_existing"

    async def test_session_request_carries_bundle_and_urls(
        self, bridge, mock_checkout_provider, user_factory
    ) -> None:
        user = await user_factory()

        await bridge.create_checkout_session(user.id, user.email)

        request = mock_checkout_provider.create_checkout_session.await_args.args[0]
        assert request.bundle.credits == 20
        assert request.bundle.price_minor == 300
        assert request.metadata == {"user_id": str(user.id), "credits": "20"}
        assert request.success_url.endswith(
            "/payment/success?session_id={CHECKOUT_SESSION_ID}"
        )
        assert request.cancel_url.endswith("/payment/cancel")

    async def test_provider_failure_propagates(
        self, bridge, mock_checkout_provider, user_factory
    ) -> None:
        user = await user_factory()
        mock_checkout_provider.create_checkout_session.side_effect = PaymentProviderError(
            "APIConnectionError"
        )

        with pytest.raises(PaymentProviderError):
            await bridge.create_checkout_session(user.id, user.email)

    async def test_unknown_user_raises(self, bridge) -> None:
        with pytest.raises(UserNotFoundError):
            await bridge.create_checkout_session(uuid4(), "ghost@example.com")

    async def test_webhook_for_other_events_is_ignored(
        self, bridge, mock_checkout_provider, ledger
    ) -> None:
        mock_checkout_provider.verify_webhook.return_value = WebhookEvent(
            event_id="evt_1",
            event_type="customer.created",
            session_id=None,
            payment_status=None,
        )

        assert await bridge.handle_webhook(b"{}", "sig", ledger) is None
        mock_checkout_provider.retrieve_session.assert_not_called()

    async def test_completed_webhook_credits_user(
        self, bridge, mock_checkout_provider, ledger, user_factory, paid_session
    ) -> None:
        user = await user_factory(credits=1)
        mock_checkout_provider.verify_webhook.return_value = WebhookEvent(
            event_id="evt_1",
            event_type=CHECKOUT_COMPLETED_EVENT,
            session_id="cs_test_9",
            payment_status="paid",
        )
        mock_checkout_provider.retrieve_session.return_value = paid_session("cs_test_9", user.id)

        result = await bridge.handle_webhook(b"{}", "sig", ledger)

        assert result is not None
        assert result.newly_credited is True
        assert result.credits == 21
