"""
Domain Models - Internal business logic models using dataclasses.

All records crossing a service boundary are immutable dataclasses; ORM rows
never leave the service that loaded them.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from chatbot.models.api import MemoryType, MessageRole


@dataclass(frozen=True)
class UserData:
    """Immutable user snapshot (no password hash)."""

    id: UUID
    email: str
    name: str
    credits: int
    is_verified: bool
    stripe_customer_id: str | None
    created_at: datetime

    def __post_init__(self) -> None:
        if self.credits < 0:
            raise ValueError(f"Credits cannot be negative: {self.credits}")


@dataclass(frozen=True)
class OTPDispatch:
    """Result of issuing a one-time code."""

    email: str
    expires_at: datetime
    delivered: bool
    code: str | None = None  # populated only when exposure is enabled


@dataclass(frozen=True)
class MessageData:
    id: UUID
    chat_id: UUID
    role: MessageRole
    content: str
    model: str | None
    timestamp: datetime


@dataclass(frozen=True)
class ChatData:
    """A chat and its messages in insertion order."""

    id: UUID
    title: str
    owner_id: UUID | None
    created_at: datetime
    updated_at: datetime
    messages: tuple[MessageData, ...] = ()


@dataclass(frozen=True)
class ChatSidebarItem:
    id: UUID
    title: str
    updated_at: datetime


@dataclass(frozen=True)
class UsageSummary:
    total_chats: int
    total_messages: int
    credits: int | None


@dataclass(frozen=True)
class DeductResult:
    """Outcome of a single-credit deduction."""

    credits: int
    success: bool

    def __post_init__(self) -> None:
        if self.credits < 0:
            raise ValueError(f"Credits cannot be negative: {self.credits}")


@dataclass(frozen=True)
class ReconcileResult:
    credits: int
    newly_credited: bool


@dataclass(frozen=True)
class CreditBundle:
    """The single purchasable product: a fixed price for a fixed credit amount."""

    credits: int
    price_minor: int
    currency: str
    name: str
    description: str

    def __post_init__(self) -> None:
        if self.credits <= 0:
            raise ValueError(f"Bundle credits must be positive: {self.credits}")
        if self.price_minor <= 0:
            raise ValueError(f"Bundle price must be positive: {self.price_minor}")
        if len(self.currency) != 3:
            raise ValueError(f"Invalid currency code: {self.currency}")


@dataclass(frozen=True)
class PromptMessage:
    """One entry of the message list sent to the model gateway."""

    role: MessageRole
    content: str

    def to_payload(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class MemoryMatch:
    """A memory returned by a similarity query."""

    id: str
    content: str
    type: MemoryType
    score: float
    importance: int = 5
    chat_id: str | None = None
    timestamp: str | None = None


@dataclass(frozen=True)
class MemoryContext:
    memories: tuple[MemoryMatch, ...] = ()
    formatted_context: str = ""


@dataclass(frozen=True)
class SendMessageResult:
    """Outcome of one send-message call."""

    chat: ChatData
    assistant_message: MessageData
    remaining_credits: int | None = None
    degraded: bool = False
    answered_by: str | None = None
    memory_used: bool = False
