"""
Credit Ledger - The only code that changes a user's credit balance.

Every mutation is a single conditional UPDATE ... RETURNING, so concurrent
requests can never push a balance below zero, and every mutation appends a
credit_transactions row in the same transaction.
"""

from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot.db.models import CreditTransaction, User, utc_now
from chatbot.exceptions import AuthorizationError, UserNotFoundError, ValidationError
from chatbot.models.api import TransactionType
from chatbot.models.domain import DeductResult, ReconcileResult
from chatbot.observability.logging import get_logger
from chatbot.observability.metrics import metrics

if TYPE_CHECKING:
    from chatbot.services.payment_provider import CheckoutProvider, CheckoutSessionInfo

logger = get_logger(__name__)


class CreditLedger:
    """
    Credit balance operations.

    deduct/add never read-modify-write in Python: the database applies the
    arithmetic and the guard in one statement.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def has_credits(self, user_id: UUID) -> bool:
        """True iff the user exists and has a positive balance."""
        credits = await self._find_credits(user_id)
        has_credits = credits is not None and credits > 0
        metrics.credit_checks_total.labels(has_credits=str(has_credits)).inc()
        logger.debug("credit_check_performed", user_id=str(user_id), has_credits=has_credits)
        return has_credits

    async def get_credits(self, user_id: UUID) -> int:
        """
        Raises:
            UserNotFoundError: User doesn't exist
        """
        credits = await self._find_credits(user_id)
        if credits is None:
            raise UserNotFoundError(user_id)
        return credits

    async def deduct(self, user_id: UUID) -> DeductResult:
        """
        Deduct exactly one credit.

        A zero balance is not an error: nothing changes and success is False.

        Raises:
            UserNotFoundError: User doesn't exist
        """
        result = await self.session.execute(
            update(User)
            .where(User.id == user_id, User.credits > 0)
            .values(credits=User.credits - 1, updated_at=utc_now())
            .returning(User.credits)
        )
        remaining = result.scalar_one_or_none()

        if remaining is None:
            await self.session.rollback()
            if await self._find_credits(user_id) is None:
                raise UserNotFoundError(user_id)
            metrics.credit_deductions_total.labels(success="False").inc()
            logger.info("credit_deduction_skipped", user_id=str(user_id), reason="no_credits")
            return DeductResult(credits=0, success=False)

        self.session.add(
            CreditTransaction(
                user_id=user_id,
                amount=-1,
                balance_after=remaining,
                transaction_type=TransactionType.USAGE.value,
                description="Chat message",
            )
        )
        await self.session.flush()
        await self.session.commit()

        metrics.credit_deductions_total.labels(success="True").inc()
        logger.info("credit_deducted", user_id=str(user_id), credits=remaining)
        return DeductResult(credits=remaining, success=True)

    async def add(
        self,
        user_id: UUID,
        amount: int,
        transaction_type: TransactionType = TransactionType.GRANT,
        description: str = "",
        external_reference: str | None = None,
    ) -> int:
        """
        Atomically add credits and record the transaction.

        Returns:
            The new balance

        Raises:
            ValidationError: amount is not a positive integer
            UserNotFoundError: User doesn't exist
            IntegrityError: external_reference was already recorded
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Credit amount must be a positive integer")

        result = await self.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(credits=User.credits + amount, updated_at=utc_now())
            .returning(User.credits)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            await self.session.rollback()
            raise UserNotFoundError(user_id)

        self.session.add(
            CreditTransaction(
                user_id=user_id,
                amount=amount,
                balance_after=new_balance,
                transaction_type=transaction_type.value,
                description=description or f"{transaction_type.value.title()} of {amount} credits",
                external_reference=external_reference,
            )
        )
        await self.session.flush()
        await self.session.commit()

        metrics.credits_added_total.labels(transaction_type=transaction_type.value).inc(amount)
        logger.info(
            "credits_added",
            user_id=str(user_id),
            amount=amount,
            credits=new_balance,
            transaction_type=transaction_type.value,
            external_reference=external_reference,
        )
        return new_balance

    async def reconcile(
        self,
        session_id: str,
        checkout: "CheckoutProvider",
        expected_user_id: UUID | None = None,
    ) -> ReconcileResult:
        """
        Credit a completed checkout session exactly once.

        The session id is stored as the transaction's unique external
        reference; a second call for the same session returns the current
        balance without crediting again.

        Raises:
            ValidationError: Session unknown, unpaid, or carries bad metadata
            AuthorizationError: Session belongs to a different user
            UserNotFoundError: Session's user doesn't exist
            PaymentProviderError: Provider lookup failed
        """
        info = await checkout.retrieve_session(session_id)
        if info is None or not info.is_paid:
            metrics.reconciliations_total.labels(outcome="not_paid").inc()
            logger.warning(
                "reconcile_payment_not_completed",
                session_id=session_id,
                payment_status=info.payment_status if info else None,
            )
            raise ValidationError("Payment not completed")

        user_id, credits_to_add = self._parse_session_metadata(info)
        if expected_user_id is not None and user_id != expected_user_id:
            logger.warning(
                "reconcile_user_mismatch",
                session_id=session_id,
                session_user_id=str(user_id),
                caller_user_id=str(expected_user_id),
            )
            raise AuthorizationError("Checkout session belongs to another user")

        if await self._find_transaction_by_reference(session_id) is not None:
            metrics.reconciliations_total.labels(outcome="already_credited").inc()
            logger.info("reconcile_already_credited", session_id=session_id, user_id=str(user_id))
            return ReconcileResult(credits=await self.get_credits(user_id), newly_credited=False)

        try:
            credits = await self.add(
                user_id,
                credits_to_add,
                transaction_type=TransactionType.PURCHASE,
                description=f"Purchase of {credits_to_add} credits",
                external_reference=session_id,
            )
        except IntegrityError:
            # Concurrent reconcile of the same session won the insert
            await self.session.rollback()
            metrics.reconciliations_total.labels(outcome="already_credited").inc()
            logger.info("reconcile_concurrent_duplicate", session_id=session_id)
            return ReconcileResult(credits=await self.get_credits(user_id), newly_credited=False)

        metrics.reconciliations_total.labels(outcome="credited").inc()
        return ReconcileResult(credits=credits, newly_credited=True)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_credits(self, user_id: UUID) -> int | None:
        result = await self.session.execute(select(User.credits).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def _find_transaction_by_reference(self, reference: str) -> CreditTransaction | None:
        result = await self.session.execute(
            select(CreditTransaction).where(CreditTransaction.external_reference == reference)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _parse_session_metadata(info: "CheckoutSessionInfo") -> tuple[UUID, int]:
        raw_user_id = info.metadata.get("user_id")
        raw_credits = info.metadata.get("credits")
        if not raw_user_id or not raw_credits:
            raise ValidationError("Checkout session is missing credit metadata")
        try:
            user_id = UUID(raw_user_id)
            credits = int(raw_credits)
        except ValueError as exc:
            raise ValidationError("Checkout session carries invalid credit metadata") from exc
        if credits <= 0:
            raise ValidationError("Checkout session carries invalid credit metadata")
        return user_id, credits
