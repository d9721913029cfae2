"""
FastAPI Dependencies - Authentication, integrations and service wiring.

Integrations (model gateway, memory, checkout provider, mailer) are built
once in the application lifespan and read from app.state. Services are
built per request around the request's database session.
"""

from uuid import UUID

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot.config import Settings, get_settings
from chatbot.db.session import get_db
from chatbot.exceptions import AuthenticationError
from chatbot.services.auth import AuthService, TokenIssuer
from chatbot.services.checkout import CheckoutBridge
from chatbot.services.conversation_store import ConversationStore
from chatbot.services.credit_ledger import CreditLedger
from chatbot.services.mailer import MailSender
from chatbot.services.memory import MemoryService
from chatbot.services.model_gateway import ModelGateway
from chatbot.services.orchestrator import ChatOrchestrator
from chatbot.services.otp import OTPService
from chatbot.services.payment_provider import CheckoutProvider

# Bearer token scheme; missing headers are handled per route
bearer_scheme = HTTPBearer(auto_error=False)


# ============================================================================
# Integrations (app-scoped)
# ============================================================================


def get_model_gateway(request: Request) -> ModelGateway:
    return request.app.state.model_gateway


def get_memory_service(request: Request) -> MemoryService:
    return request.app.state.memory


def get_checkout_provider(request: Request) -> CheckoutProvider:
    return request.app.state.checkout_provider


def get_mailer(request: Request) -> MailSender:
    return request.app.state.mailer


def get_token_issuer(settings: Settings = Depends(get_settings)) -> TokenIssuer:
    return TokenIssuer(settings.jwt_secret, settings.jwt_algorithm, settings.jwt_expiry_hours)


# ============================================================================
# Authentication
# ============================================================================


async def get_optional_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    tokens: TokenIssuer = Depends(get_token_issuer),
) -> UUID | None:
    """
    Owner id from the Bearer token, or None for anonymous callers.

    A token that is present but invalid is rejected rather than downgraded
    to anonymous.
    """
    if credentials is None:
        return None
    return tokens.decode(credentials.credentials)


async def get_current_user_id(
    user_id: UUID | None = Depends(get_optional_user_id),
) -> UUID:
    """
    Raises:
        AuthenticationError: No Bearer token supplied
    """
    if user_id is None:
        raise AuthenticationError("Authorization header required")
    return user_id


# ============================================================================
# Services (request-scoped)
# ============================================================================


def get_credit_ledger(db: AsyncSession = Depends(get_db)) -> CreditLedger:
    return CreditLedger(db)


def get_conversation_store(db: AsyncSession = Depends(get_db)) -> ConversationStore:
    return ConversationStore(db)


def get_orchestrator(
    ledger: CreditLedger = Depends(get_credit_ledger),
    store: ConversationStore = Depends(get_conversation_store),
    gateway: ModelGateway = Depends(get_model_gateway),
    memory: MemoryService = Depends(get_memory_service),
    settings: Settings = Depends(get_settings),
) -> ChatOrchestrator:
    return ChatOrchestrator(
        ledger=ledger,
        store=store,
        gateway=gateway,
        memory=memory,
        default_model=settings.default_model,
        temperature=settings.model_temperature,
        max_tokens=settings.model_max_tokens,
        history_window=settings.history_window,
    )


def get_checkout_bridge(
    db: AsyncSession = Depends(get_db),
    provider: CheckoutProvider = Depends(get_checkout_provider),
    settings: Settings = Depends(get_settings),
) -> CheckoutBridge:
    return CheckoutBridge(db, provider, settings)


def get_auth_service(
    db: AsyncSession = Depends(get_db),
    mailer: MailSender = Depends(get_mailer),
    tokens: TokenIssuer = Depends(get_token_issuer),
    memory: MemoryService = Depends(get_memory_service),
    settings: Settings = Depends(get_settings),
) -> AuthService:
    return AuthService(db, OTPService(db, mailer, settings), tokens, memory)
