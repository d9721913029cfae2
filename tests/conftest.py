"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- An in-memory SQLite database built from the ORM metadata, plus a file
  database for tests that run sessions concurrently
- Users in various states
- Services wired to the test database
- Fake model gateway, memory service, checkout provider and mailer
- API test client with app.state populated
"""

import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID

import pytest
from argon2 import PasswordHasher
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

# Set required environment variables BEFORE importing chatbot modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STRIPE_API_KEY", "sk_test_fake_key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-jwt-signing-min-32-chars")
os.environ.setdefault("OPENROUTER_API_KEY", "")
os.environ.setdefault("PINECONE_API_KEY", "")
os.environ.setdefault("SMTP_HOST", "")
os.environ.setdefault("LOG_FORMAT", "console")

from chatbot.config import Settings, settings
from chatbot.db.models import User
from chatbot.db.session import Database, build_engine
from chatbot.models.domain import UserData
from chatbot.services.auth import TokenIssuer, user_to_domain
from chatbot.services.conversation_store import ConversationStore
from chatbot.services.credit_ledger import CreditLedger
from chatbot.services.memory import MemoryService
from chatbot.services.model_gateway import ModelGateway
from chatbot.services.payment_provider import CheckoutProvider, CheckoutSessionInfo

TEST_PASSWORD = "secret123"

# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def test_settings() -> Settings:
    return settings


@pytest.fixture
async def database() -> AsyncGenerator[Database, None]:
    """Fresh in-memory database per test."""
    db = Database.from_settings(settings)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
async def db_session(database: Database) -> AsyncGenerator[AsyncSession, None]:
    async with database.session() as session:
        yield session


@pytest.fixture
async def file_database(tmp_path) -> AsyncGenerator[Database, None]:
    """
    SQLite file database with a connection per session.

    The in-memory database shares one connection, so tests that run
    sessions concurrently need this one.
    """
    db = Database(build_engine(f"sqlite+aiosqlite:///{tmp_path / 'chatbot.db'}"))
    await db.create_all()
    yield db
    await db.dispose()


# ============================================================================
# User Fixtures
# ============================================================================

_hasher = PasswordHasher()


@pytest.fixture
def password_hash() -> str:
    return _hasher.hash(TEST_PASSWORD)


@pytest.fixture
def user_factory(
    db_session: AsyncSession, password_hash: str
) -> Callable[..., Awaitable[UserData]]:
    """Create users directly in the database."""
    counter = 0

    async def _create_user(
        credits: int = 0,
        email: str | None = None,
        name: str = "Test User",
        is_verified: bool = True,
        stripe_customer_id: str | None = None,
    ) -> UserData:
        nonlocal counter
        counter += 1
        user = User(
            email=email or f"user{counter}@example.com",
            name=name,
            password_hash=password_hash,
            credits=credits,
            is_verified=is_verified,
            stripe_customer_id=stripe_customer_id,
        )
        db_session.add(user)
        await db_session.flush()
        await db_session.commit()
        return user_to_domain(user)

    return _create_user


# ============================================================================
# Service Fixtures
# ============================================================================


@pytest.fixture
def ledger(db_session: AsyncSession) -> CreditLedger:
    return CreditLedger(db_session)


@pytest.fixture
def store(db_session: AsyncSession) -> ConversationStore:
    return ConversationStore(db_session)


@pytest.fixture
def token_issuer() -> TokenIssuer:
    return TokenIssuer(settings.jwt_secret, settings.jwt_algorithm, settings.jwt_expiry_hours)


# ============================================================================
# Integration Fakes
# ============================================================================


@pytest.fixture
def mock_gateway() -> AsyncMock:
    """Model gateway that answers every request with a fixed reply."""
    gateway = AsyncMock(spec=ModelGateway)
    gateway.is_configured = MagicMock(return_value=True)
    gateway.generate = AsyncMock(return_value="Hello from the model")
    gateway.list_models = AsyncMock(return_value=[])
    gateway.close = AsyncMock()
    return gateway


@pytest.fixture
def unconfigured_memory() -> MemoryService:
    return MemoryService(embedder=None, index=None)


@pytest.fixture
def mock_checkout_provider() -> AsyncMock:
    provider = AsyncMock(spec=CheckoutProvider)
    provider.create_customer = AsyncMock(return_value="cus_test_123")
    provider.retrieve_session = AsyncMock(return_value=None)
    return provider


@pytest.fixture
def paid_session() -> Callable[..., CheckoutSessionInfo]:
    """Checkout session as the provider reports it after payment."""

    def _session(
        session_id: str, user_id: UUID, credits: int = 20, payment_status: str = "paid"
    ) -> CheckoutSessionInfo:
        return CheckoutSessionInfo(
            session_id=session_id,
            url=None,
            payment_status=payment_status,
            customer_id="cus_test_123",
            metadata={"user_id": str(user_id), "credits": str(credits)},
        )

    return _session


@pytest.fixture
def mock_mailer() -> AsyncMock:
    mailer = AsyncMock()
    mailer.send = AsyncMock(return_value=True)
    return mailer


# ============================================================================
# API Client Fixtures
# ============================================================================


@pytest.fixture
async def client(
    database: Database,
    mock_gateway: AsyncMock,
    unconfigured_memory: MemoryService,
    mock_checkout_provider: AsyncMock,
    mock_mailer: AsyncMock,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with test integrations on app.state."""
    from chatbot.main import app

    app.state.database = database
    app.state.model_gateway = mock_gateway
    app.state.memory = unconfigured_memory
    app.state.checkout_provider = mock_checkout_provider
    app.state.mailer = mock_mailer

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def auth_headers(token_issuer: TokenIssuer) -> Callable[[UserData], dict[str, str]]:
    def _headers(user: UserData) -> dict[str, str]:
        return {"Authorization": f"Bearer {token_issuer.create(user)}"}

    return _headers
