"""
Tests for CreditLedger.

Runs against an in-memory SQLite database so the conditional UPDATE and the
unique external reference are exercised for real. Concurrency tests use a
file database so each session has its own connection.
"""

import asyncio
from unittest.mock import AsyncMock, patch
from uuid import UUID, uuid4

import pytest
from sqlalchemy import func, select

from chatbot.db.models import CreditTransaction, User
from chatbot.db.session import Database
from chatbot.exceptions import AuthorizationError, UserNotFoundError, ValidationError
from chatbot.models.api import TransactionType
from chatbot.models.domain import DeductResult, ReconcileResult
from chatbot.services.credit_ledger import CreditLedger
from chatbot.services.payment_provider import CheckoutSessionInfo


async def count_transactions(ledger: CreditLedger, transaction_type: TransactionType) -> int:
    count = await ledger.session.scalar(
        select(func.count())
        .select_from(CreditTransaction)
        .where(CreditTransaction.transaction_type == transaction_type.value)
    )
    return count or 0


async def create_user(database: Database, password_hash: str, credits: int) -> UUID:
    async with database.session() as session:
        user = User(
            email=f"{uuid4().hex[:8]}@example.com",
            name="Concurrent User",
            password_hash=password_hash,
            credits=credits,
            is_verified=True,
        )
        session.add(user)
        await session.commit()
        return user.id


class TestHasCredits:
    """Tests for has_credits / get_credits."""

    async def test_zero_credit_user_has_no_credits(self, ledger, user_factory) -> None:
        user = await user_factory(credits=0)
        assert await ledger.has_credits(user.id) is False

    async def test_positive_balance_has_credits(self, ledger, user_factory) -> None:
        user = await user_factory(credits=1)
        assert await ledger.has_credits(user.id) is True

    async def test_unknown_user_has_no_credits(self, ledger) -> None:
        assert await ledger.has_credits(uuid4()) is False

    async def test_get_credits_unknown_user_raises(self, ledger) -> None:
        with pytest.raises(UserNotFoundError):
            await ledger.get_credits(uuid4())


class TestDeduct:
    """Tests for single-credit deduction."""

    async def test_deduct_decrements_exactly_one(self, ledger, user_factory) -> None:
        user = await user_factory(credits=5)

        result = await ledger.deduct(user.id)

        assert result.success is True
        assert result.credits == 4
        assert await ledger.get_credits(user.id) == 4
        assert await count_transactions(ledger, TransactionType.USAGE) == 1

    async def test_deduct_at_zero_is_not_an_error(self, ledger, user_factory) -> None:
        user = await user_factory(credits=0)

        result = await ledger.deduct(user.id)

        assert result.success is False
        assert result.credits == 0
        assert await ledger.get_credits(user.id) == 0
        assert await count_transactions(ledger, TransactionType.USAGE) == 0

    async def test_balance_never_goes_below_zero(self, ledger, user_factory) -> None:
        user = await user_factory(credits=2)

        outcomes = [await ledger.deduct(user.id) for _ in range(4)]

        assert [o.success for o in outcomes] == [True, True, False, False]
        assert await ledger.get_credits(user.id) == 0

    async def test_concurrent_deducts_never_overdraw(self, file_database, password_hash) -> None:
        user_id = await create_user(file_database, password_hash, credits=3)

        async def deduct() -> DeductResult:
            async with file_database.session() as session:
                return await CreditLedger(session).deduct(user_id)

        outcomes = await asyncio.gather(*(deduct() for _ in range(8)))

        assert sum(o.success for o in outcomes) == 3
        assert all(o.credits >= 0 for o in outcomes)
        async with file_database.session() as session:
            ledger = CreditLedger(session)
            assert await ledger.get_credits(user_id) == 0
            assert await count_transactions(ledger, TransactionType.USAGE) == 3

    async def test_deduct_unknown_user_raises(self, ledger) -> None:
        with pytest.raises(UserNotFoundError):
            await ledger.deduct(uuid4())


class TestAdd:
    """Tests for adding credits."""

    async def test_add_increments_and_records_grant(self, ledger, user_factory) -> None:
        user = await user_factory(credits=1)

        balance = await ledger.add(user.id, 10, description="Welcome bonus")

        assert balance == 11
        assert await count_transactions(ledger, TransactionType.GRANT) == 1

    @pytest.mark.parametrize("amount", [0, -5])
    async def test_add_rejects_non_positive_amount(self, ledger, user_factory, amount) -> None:
        user = await user_factory(credits=1)

        with pytest.raises(ValidationError):
            await ledger.add(user.id, amount)

        assert await ledger.get_credits(user.id) == 1

    async def test_add_rejects_non_integer_amount(self, ledger, user_factory) -> None:
        user = await user_factory()

        with pytest.raises(ValidationError):
            await ledger.add(user.id, 2.5)  # type: ignore[arg-type]

    async def test_add_unknown_user_raises(self, ledger) -> None:
        with pytest.raises(UserNotFoundError):
            await ledger.add(uuid4(), 5)


class TestReconcile:
    """Tests for crediting completed checkout sessions."""

    async def test_paid_session_credits_once(self, ledger, user_factory, paid_session) -> None:
        user = await user_factory(credits=0)
        provider = AsyncMock()
        provider.retrieve_session = AsyncMock(return_value=paid_session("cs_test_1", user.id))

        first = await ledger.reconcile("cs_test_1", provider)
        second = await ledger.reconcile("cs_test_1", provider)

        assert first.credits == 20
        assert first.newly_credited is True
        assert second.credits == 20
        assert second.newly_credited is False
        assert await count_transactions(ledger, TransactionType.PURCHASE) == 1

    async def test_unpaid_session_is_rejected(self, ledger, user_factory, paid_session) -> None:
        user = await user_factory(credits=0)
        provider = AsyncMock()
        provider.retrieve_session = AsyncMock(
            return_value=paid_session("cs_test_2", user.id, payment_status="unpaid")
        )

        with pytest.raises(ValidationError, match="Payment not completed"):
            await ledger.reconcile("cs_test_2", provider)

        assert await ledger.get_credits(user.id) == 0

    async def test_unknown_session_is_rejected(self, ledger) -> None:
        provider = AsyncMock()
        provider.retrieve_session = AsyncMock(return_value=None)

        with pytest.raises(ValidationError, match="Payment not completed"):
            await ledger.reconcile("cs_missing", provider)

    async def test_session_of_another_user_is_refused(
        self, ledger, user_factory, paid_session
    ) -> None:
        owner = await user_factory(credits=0)
        caller = await user_factory(credits=0)
        provider = AsyncMock()
        provider.retrieve_session = AsyncMock(return_value=paid_session("cs_test_3", owner.id))

        with pytest.raises(AuthorizationError):
            await ledger.reconcile("cs_test_3", provider, expected_user_id=caller.id)

        assert await ledger.get_credits(owner.id) == 0
        assert await ledger.get_credits(caller.id) == 0

    async def test_session_without_metadata_is_rejected(self, ledger) -> None:
        info = CheckoutSessionInfo(session_id="cs_test_4", url=None, payment_status="paid")
        provider = AsyncMock()
        provider.retrieve_session = AsyncMock(return_value=info)

        with pytest.raises(ValidationError):
            await ledger.reconcile("cs_test_4", provider)

    async def test_lost_insert_race_is_treated_as_duplicate(
        self, ledger, user_factory, paid_session
    ) -> None:
        user = await user_factory(credits=0)
        provider = AsyncMock()
        provider.retrieve_session = AsyncMock(return_value=paid_session("cs_test_5", user.id))
        await ledger.reconcile("cs_test_5", provider)

        # The lookup misses, as when another reconcile commits right after it
        with patch.object(
            ledger, "_find_transaction_by_reference", AsyncMock(return_value=None)
        ):
            result = await ledger.reconcile("cs_test_5", provider)

        assert result.newly_credited is False
        assert result.credits == 20
        assert await count_transactions(ledger, TransactionType.PURCHASE) == 1

    async def test_concurrent_reconciles_credit_once(
        self, file_database, password_hash, paid_session
    ) -> None:
        user_id = await create_user(file_database, password_hash, credits=0)
        callers = 4
        barrier = asyncio.Barrier(callers)

        async def retrieve_session(session_id: str) -> CheckoutSessionInfo:
            # Every caller has its session in hand before any of them credits
            await barrier.wait()
            return paid_session(session_id, user_id)

        provider = AsyncMock()
        provider.retrieve_session = AsyncMock(side_effect=retrieve_session)

        async def reconcile() -> ReconcileResult:
            async with file_database.session() as session:
                return await CreditLedger(session).reconcile("cs_test_6", provider)

        results = await asyncio.gather(*(reconcile() for _ in range(callers)))

        assert sum(r.newly_credited for r in results) == 1
        assert all(r.credits == 20 for r in results)
        async with file_database.session() as session:
            ledger = CreditLedger(session)
            assert await ledger.get_credits(user_id) == 20
            assert await count_transactions(ledger, TransactionType.PURCHASE) == 1
