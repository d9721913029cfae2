"""
Payment Routes - Credit balance, checkout and payment reconciliation.

Every route except the webhook requires a signed-in user.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Header, Request

from chatbot.api.dependencies import (
    get_auth_service,
    get_checkout_bridge,
    get_checkout_provider,
    get_credit_ledger,
    get_current_user_id,
)
from chatbot.models.api import (
    ApiResponse,
    CheckoutSessionResponse,
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    CreditsResponse,
    HasCreditsResponse,
    WebhookAckResponse,
)
from chatbot.observability.logging import get_logger
from chatbot.services.auth import AuthService
from chatbot.services.checkout import CheckoutBridge
from chatbot.services.credit_ledger import CreditLedger
from chatbot.services.payment_provider import CheckoutProvider

logger = get_logger(__name__)
router = APIRouter(prefix="/payment", tags=["payment"])


@router.get("/credits", response_model=ApiResponse[CreditsResponse])
async def get_credits(
    user_id: UUID = Depends(get_current_user_id),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> ApiResponse[CreditsResponse]:
    return ApiResponse(data=CreditsResponse(credits=await ledger.get_credits(user_id)))


@router.get("/has-credits", response_model=ApiResponse[HasCreditsResponse])
async def has_credits(
    user_id: UUID = Depends(get_current_user_id),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> ApiResponse[HasCreditsResponse]:
    return ApiResponse(data=HasCreditsResponse(has_credits=await ledger.has_credits(user_id)))


@router.post("/create-checkout-session", response_model=ApiResponse[CheckoutSessionResponse])
async def create_checkout_session(
    user_id: UUID = Depends(get_current_user_id),
    auth: AuthService = Depends(get_auth_service),
    bridge: CheckoutBridge = Depends(get_checkout_bridge),
) -> ApiResponse[CheckoutSessionResponse]:
    """Start a hosted checkout for the credit bundle."""
    user = await auth.get_user(user_id)
    url = await bridge.create_checkout_session(user.id, user.email)
    return ApiResponse(data=CheckoutSessionResponse(url=url))


@router.post("/confirm", response_model=ApiResponse[ConfirmPaymentResponse])
async def confirm_payment(
    request: ConfirmPaymentRequest,
    user_id: UUID = Depends(get_current_user_id),
    ledger: CreditLedger = Depends(get_credit_ledger),
    provider: CheckoutProvider = Depends(get_checkout_provider),
) -> ApiResponse[ConfirmPaymentResponse]:
    """
    Credit a completed checkout to the caller.

    Safe to repeat: a session is only ever credited once.
    """
    result = await ledger.reconcile(request.session_id, provider, expected_user_id=user_id)
    return ApiResponse(
        data=ConfirmPaymentResponse(credits=result.credits, newly_credited=result.newly_credited),
        message="Payment confirmed" if result.newly_credited else "Payment already processed",
    )


@router.post("/webhook", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(default="", alias="Stripe-Signature"),
    bridge: CheckoutBridge = Depends(get_checkout_bridge),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> WebhookAckResponse:
    """Reconcile checkout.session.completed events; other events are acknowledged."""
    payload = await request.body()
    result = await bridge.handle_webhook(payload, stripe_signature, ledger)
    if result is not None:
        logger.info(
            "webhook_reconciled",
            credits=result.credits,
            newly_credited=result.newly_credited,
        )
    return WebhookAckResponse()
