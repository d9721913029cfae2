"""
Chat Orchestrator - The send-message use case as an explicit state machine.

    IDLE -> CREDIT_CHECKED -> CHAT_RESOLVED -> USER_MSG_PERSISTED -> GENERATING
         -> GENERATED | GENERATION_FAILED_FALLBACK
         -> ASSISTANT_MSG_PERSISTED -> CREDIT_DEDUCTED -> DONE

Failures end the call only before USER_MSG_PERSISTED (insufficient credits,
unknown chat). From GENERATING on, every call reaches DONE: a failed model
is retried once with the default model, then replaced by APOLOGY_TEXT, and a
failed deduction is logged but never undoes the delivered answer.

Anonymous sends (no owner) are unmetered: no credit check, no deduction and
no long-term memory.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from chatbot.exceptions import (
    ChatbotError,
    InsufficientCreditsError,
    UpstreamConfigurationError,
    UpstreamFailureError,
)
from chatbot.models.api import MessageRole
from chatbot.models.domain import ChatData, MessageData, PromptMessage, SendMessageResult
from chatbot.observability.logging import get_logger, log_context
from chatbot.observability.metrics import metrics
from chatbot.observability.tracing import trace_operation
from chatbot.services.conversation_store import ConversationStore, derive_title
from chatbot.services.credit_ledger import CreditLedger
from chatbot.services.memory import MemoryService
from chatbot.services.model_gateway import ModelGateway
from chatbot.services.prompt_builder import HISTORY_WINDOW, build_messages

logger = get_logger(__name__)

APOLOGY_TEXT = (
    "I'm sorry, I wasn't able to generate a response right now. Please try again in a moment."
)


class SendState(str, Enum):
    IDLE = "idle"
    CREDIT_CHECKED = "credit_checked"
    CHAT_RESOLVED = "chat_resolved"
    USER_MSG_PERSISTED = "user_msg_persisted"
    GENERATING = "generating"
    GENERATED = "generated"
    GENERATION_FAILED_FALLBACK = "generation_failed_fallback"
    ASSISTANT_MSG_PERSISTED = "assistant_msg_persisted"
    CREDIT_DEDUCTED = "credit_deducted"
    DONE = "done"


TRANSITIONS: dict[SendState, frozenset[SendState]] = {
    SendState.IDLE: frozenset({SendState.CREDIT_CHECKED}),
    SendState.CREDIT_CHECKED: frozenset({SendState.CHAT_RESOLVED}),
    SendState.CHAT_RESOLVED: frozenset({SendState.USER_MSG_PERSISTED}),
    SendState.USER_MSG_PERSISTED: frozenset({SendState.GENERATING}),
    SendState.GENERATING: frozenset(
        {SendState.GENERATED, SendState.GENERATION_FAILED_FALLBACK}
    ),
    SendState.GENERATED: frozenset({SendState.ASSISTANT_MSG_PERSISTED}),
    SendState.GENERATION_FAILED_FALLBACK: frozenset({SendState.ASSISTANT_MSG_PERSISTED}),
    SendState.ASSISTANT_MSG_PERSISTED: frozenset({SendState.CREDIT_DEDUCTED}),
    SendState.CREDIT_DEDUCTED: frozenset({SendState.DONE}),
    SendState.DONE: frozenset(),
}


@dataclass(frozen=True)
class GenerationOutcome:
    """What the generation step produced."""

    content: str
    answered_by: str | None
    attempts: int

    @property
    def degraded(self) -> bool:
        return self.answered_by is None


@dataclass
class SendRun:
    """Mutable state of one send-message call."""

    user_message: str
    owner_id: UUID | None
    requested_model: str
    state: SendState = SendState.IDLE
    history: list[SendState] = field(default_factory=lambda: [SendState.IDLE])
    chat: ChatData | None = None
    remaining_credits: int | None = None
    memory_used: bool = False
    on_transition: Callable[[SendState], None] | None = None

    @property
    def metered(self) -> bool:
        return self.owner_id is not None

    def advance(self, new_state: SendState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal send transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)
        if self.on_transition is not None:
            self.on_transition(new_state)


class ChatOrchestrator:
    """
    Composes ledger, store, memory and gateway into send_message.

    on_transition, when given, is called with every state a run enters.
    """

    def __init__(
        self,
        ledger: CreditLedger,
        store: ConversationStore,
        gateway: ModelGateway,
        memory: MemoryService,
        default_model: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
        history_window: int = HISTORY_WINDOW,
        on_transition: Callable[[SendState], None] | None = None,
    ) -> None:
        self.ledger = ledger
        self.store = store
        self.gateway = gateway
        self.memory = memory
        self.default_model = default_model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.history_window = history_window
        self.on_transition = on_transition

    async def send_message(
        self,
        chat_id: UUID | None,
        user_message: str,
        owner_id: UUID | None = None,
        model_id: str | None = None,
    ) -> SendMessageResult:
        """
        Run one chat turn.

        Raises:
            InsufficientCreditsError: Metered user has no credits; nothing was written
            ChatNotFoundError: chat_id unknown or not visible; nothing was written
        """
        run = SendRun(
            user_message=user_message,
            owner_id=owner_id,
            requested_model=model_id or self.default_model,
            on_transition=self.on_transition,
        )

        with log_context(owner_id=str(owner_id) if owner_id else "anonymous"):
            # IDLE -> CREDIT_CHECKED
            if run.metered:
                assert owner_id is not None
                if not await self.ledger.has_credits(owner_id):
                    metrics.generations_total.labels(outcome="insufficient_credits").inc()
                    logger.info("send_rejected_insufficient_credits")
                    raise InsufficientCreditsError()
            run.advance(SendState.CREDIT_CHECKED)

            # CREDIT_CHECKED -> CHAT_RESOLVED
            if chat_id is not None:
                run.chat = await self.store.get_chat(chat_id, owner_id)
            else:
                run.chat = await self.store.create_chat(owner_id, derive_title(user_message))
            run.advance(SendState.CHAT_RESOLVED)
            resolved_id = run.chat.id

            # CHAT_RESOLVED -> USER_MSG_PERSISTED; history is read first so the
            # new message is not replayed twice
            prior = list(run.chat.messages)
            await self.store.append_message(resolved_id, MessageRole.USER, user_message)
            run.advance(SendState.USER_MSG_PERSISTED)

            # USER_MSG_PERSISTED -> GENERATING
            prompt = await self._build_prompt(run, prior)
            run.advance(SendState.GENERATING)

            # GENERATING -> GENERATED | GENERATION_FAILED_FALLBACK
            outcome = await self._generate(run.requested_model, prompt)
            if outcome.degraded:
                run.advance(SendState.GENERATION_FAILED_FALLBACK)
            else:
                run.advance(SendState.GENERATED)

            # -> ASSISTANT_MSG_PERSISTED
            assistant_message = await self.store.append_message(
                resolved_id,
                MessageRole.ASSISTANT,
                outcome.content,
                model=outcome.answered_by or run.requested_model,
            )
            await self.store.maybe_autotitle(resolved_id, user_message)
            run.advance(SendState.ASSISTANT_MSG_PERSISTED)

            # -> CREDIT_DEDUCTED
            if run.metered:
                assert owner_id is not None
                run.remaining_credits = await self._deduct(owner_id)
            run.advance(SendState.CREDIT_DEDUCTED)

            if run.metered and not outcome.degraded:
                await self.memory.store_exchange(
                    user_message, outcome.content, str(owner_id), str(resolved_id)
                )

            chat = await self.store.get_chat(resolved_id, owner_id)
            run.advance(SendState.DONE)

        metrics.generations_total.labels(
            outcome="apology" if outcome.degraded else "generated"
        ).inc()
        logger.info(
            "message_sent",
            chat_id=str(resolved_id),
            requested_model=run.requested_model,
            answered_by=outcome.answered_by,
            attempts=outcome.attempts,
            remaining_credits=run.remaining_credits,
        )
        return SendMessageResult(
            chat=chat,
            assistant_message=assistant_message,
            remaining_credits=run.remaining_credits,
            degraded=outcome.degraded,
            answered_by=outcome.answered_by,
            memory_used=run.memory_used,
        )

    # ========================================================================
    # Steps
    # ========================================================================

    async def _build_prompt(self, run: SendRun, prior: Sequence[MessageData]) -> list[PromptMessage]:
        memory_context = ""
        if run.metered and self.memory.is_ready():
            context = await self.memory.retrieve(run.user_message, str(run.owner_id))
            memory_context = context.formatted_context
            run.memory_used = bool(memory_context)
        return build_messages(run.user_message, prior, memory_context, self.history_window)

    async def _generate(
        self, requested_model: str, prompt: Sequence[PromptMessage]
    ) -> GenerationOutcome:
        """Try the requested model, then the default once, then apologise."""
        candidates = [requested_model]
        if requested_model != self.default_model:
            candidates.append(self.default_model)

        for attempt, model in enumerate(candidates, start=1):
            try:
                with trace_operation("model_generate", model=model, attempt=attempt):
                    content = await self.gateway.generate(
                        model, prompt, temperature=self.temperature, max_tokens=self.max_tokens
                    )
                if attempt > 1:
                    metrics.generations_total.labels(outcome="default_model_fallback").inc()
                return GenerationOutcome(content=content, answered_by=model, attempts=attempt)
            except (UpstreamFailureError, UpstreamConfigurationError) as exc:
                logger.warning(
                    "generation_attempt_failed",
                    model=model,
                    attempt=attempt,
                    error=exc.message,
                    error_type=type(exc).__name__,
                )

        logger.error("generation_failed_using_apology", requested_model=requested_model)
        return GenerationOutcome(content=APOLOGY_TEXT, answered_by=None, attempts=len(candidates))

    async def _deduct(self, owner_id: UUID) -> int | None:
        """Charge one credit for a delivered answer. Never raises."""
        try:
            result = await self.ledger.deduct(owner_id)
        except (ChatbotError, SQLAlchemyError) as exc:
            await self.ledger.session.rollback()
            logger.error(
                "credit_deduction_failed_after_generation",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None

        if not result.success:
            logger.warning("credit_deduction_found_no_credits_after_generation")
        return result.credits
