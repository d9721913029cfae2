"""
Conversation Store - Chats and their ordered messages.

Ownership rule: a chat with owner_id NULL is anonymous. Callers that pass an
owner id only ever see that owner's chats; callers without one only ever see
anonymous chats.
"""

from datetime import timedelta
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot.db.models import Chat, Message, User, ensure_utc, utc_now
from chatbot.exceptions import ChatNotFoundError
from chatbot.models.api import MessageRole
from chatbot.models.domain import ChatData, ChatSidebarItem, MessageData, UsageSummary
from chatbot.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TITLE = "Untitled Chat"
CREATION_TITLE_LIMIT = 30
AUTO_TITLE_LIMIT = 50
AUTO_TITLE_MAX_MESSAGES = 2


def derive_title(text: str, limit: int = CREATION_TITLE_LIMIT) -> str:
    """
    Title a chat from a message.

    Text longer than limit is cut to limit characters plus "..."; shorter
    text is kept as is. Blank text gives the default title.
    """
    text = text.strip()
    if not text:
        return DEFAULT_TITLE
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def _message_to_domain(message: Message) -> MessageData:
    return MessageData(
        id=message.id,
        chat_id=message.chat_id,
        role=MessageRole(message.role),
        content=message.content,
        model=message.model,
        timestamp=ensure_utc(message.timestamp),
    )


def _chat_to_domain(chat: Chat, messages: list[Message] | None = None) -> ChatData:
    return ChatData(
        id=chat.id,
        title=chat.title,
        owner_id=chat.owner_id,
        created_at=ensure_utc(chat.created_at),
        updated_at=ensure_utc(chat.updated_at),
        messages=tuple(_message_to_domain(m) for m in messages or []),
    )


class ConversationStore:
    """Chat thread and message persistence."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create_chat(self, owner_id: UUID | None, title: str) -> ChatData:
        chat = Chat(owner_id=owner_id, title=title.strip() or DEFAULT_TITLE)
        self.session.add(chat)
        await self.session.flush()
        await self.session.commit()

        logger.info("chat_created", chat_id=str(chat.id), owner_id=str(owner_id) if owner_id else None)
        return _chat_to_domain(chat)

    async def append_message(
        self,
        chat_id: UUID,
        role: MessageRole,
        content: str,
        model: str | None = None,
    ) -> MessageData:
        """
        Append a message and advance the chat's updated_at.

        The seq comes from bumping the chat's counter in place, so concurrent
        appends to one chat queue on the row instead of colliding.

        Raises:
            ChatNotFoundError: Chat doesn't exist
        """
        chat = await self._find_chat(chat_id)
        if chat is None:
            raise ChatNotFoundError(chat_id)

        result = await self.session.execute(
            update(Chat)
            .where(Chat.id == chat_id)
            .values(last_seq=Chat.last_seq + 1)
            .returning(Chat.last_seq)
            .execution_options(synchronize_session=False)
        )
        next_seq = result.scalar_one_or_none()
        if next_seq is None:
            # Deleted between the lookup and the update
            await self.session.rollback()
            raise ChatNotFoundError(chat_id)

        message = Message(
            chat_id=chat_id,
            seq=next_seq,
            role=role.value,
            content=content,
            model=model,
            timestamp=utc_now(),
        )
        self.session.add(message)
        self._touch(chat)
        await self.session.flush()
        await self.session.commit()

        return _message_to_domain(message)

    async def get_chat(self, chat_id: UUID, owner_id: UUID | None = None) -> ChatData:
        """
        Load a chat with its messages in insertion order.

        Raises:
            ChatNotFoundError: Chat doesn't exist or isn't visible to owner_id
        """
        chat = await self._find_visible_chat(chat_id, owner_id)
        if chat is None:
            raise ChatNotFoundError(chat_id)
        return _chat_to_domain(chat, await self._load_messages(chat_id))

    async def get_history(self, chat_id: UUID) -> list[MessageData]:
        return [_message_to_domain(m) for m in await self._load_messages(chat_id)]

    async def count_messages(self, chat_id: UUID) -> int:
        count = await self.session.scalar(
            select(func.count()).select_from(Message).where(Message.chat_id == chat_id)
        )
        return count or 0

    async def list_for_owner(self, owner_id: UUID | None) -> list[ChatSidebarItem]:
        """Sidebar entries, most recently updated first. No owner means no list."""
        if owner_id is None:
            return []

        result = await self.session.execute(
            select(Chat.id, Chat.title, Chat.updated_at)
            .where(Chat.owner_id == owner_id)
            .order_by(Chat.updated_at.desc())
        )
        return [
            ChatSidebarItem(id=row.id, title=row.title, updated_at=ensure_utc(row.updated_at))
            for row in result.all()
        ]

    async def rename_chat(
        self, chat_id: UUID, title: str | None, owner_id: UUID | None = None
    ) -> ChatData:
        """
        Raises:
            ChatNotFoundError: Chat doesn't exist or isn't visible to owner_id
        """
        chat = await self._find_visible_chat(chat_id, owner_id)
        if chat is None:
            raise ChatNotFoundError(chat_id)

        chat.title = (title or "").strip() or DEFAULT_TITLE
        self._touch(chat)
        await self.session.flush()
        await self.session.commit()
        return _chat_to_domain(chat)

    async def maybe_autotitle(self, chat_id: UUID, first_user_message: str) -> bool:
        """
        Title an untitled chat from its first user message.

        Only applies while the chat holds its first exchange, and never
        replaces a title that was derived at creation or set explicitly.
        """
        if await self.count_messages(chat_id) > AUTO_TITLE_MAX_MESSAGES:
            return False

        chat = await self._find_chat(chat_id)
        if chat is None:
            raise ChatNotFoundError(chat_id)
        if chat.title != DEFAULT_TITLE:
            return False

        title = derive_title(first_user_message, AUTO_TITLE_LIMIT)
        if title == DEFAULT_TITLE:
            return False

        chat.title = title
        self._touch(chat)
        await self.session.flush()
        await self.session.commit()
        return True

    async def delete_chat(self, chat_id: UUID, owner_id: UUID | None = None) -> None:
        """
        Raises:
            ChatNotFoundError: Chat doesn't exist or isn't visible to owner_id
        """
        chat = await self._find_visible_chat(chat_id, owner_id)
        if chat is None:
            raise ChatNotFoundError(chat_id)

        await self.session.execute(delete(Message).where(Message.chat_id == chat_id))
        await self.session.execute(delete(Chat).where(Chat.id == chat_id))
        await self.session.commit()
        logger.info("chat_deleted", chat_id=str(chat_id))

    async def delete_all_for_owner(self, owner_id: UUID | None) -> int:
        """Delete every chat of owner_id; without an owner only anonymous chats go."""
        owner_filter = Chat.owner_id == owner_id if owner_id else Chat.owner_id.is_(None)
        chat_ids = select(Chat.id).where(owner_filter)

        count = await self.session.scalar(select(func.count()).select_from(Chat).where(owner_filter))
        await self.session.execute(delete(Message).where(Message.chat_id.in_(chat_ids)))
        await self.session.execute(delete(Chat).where(owner_filter))
        await self.session.commit()

        logger.info(
            "chats_deleted",
            owner_id=str(owner_id) if owner_id else None,
            count=count or 0,
        )
        return count or 0

    async def usage_for_owner(self, owner_id: UUID | None) -> UsageSummary:
        """Chat and message totals for an owner, plus the current balance."""
        if owner_id is None:
            return UsageSummary(total_chats=0, total_messages=0, credits=None)
        owner_filter = Chat.owner_id == owner_id

        total_chats = await self.session.scalar(
            select(func.count()).select_from(Chat).where(owner_filter)
        )
        total_messages = await self.session.scalar(
            select(func.count())
            .select_from(Message)
            .join(Chat, Message.chat_id == Chat.id)
            .where(owner_filter)
        )
        credits = await self.session.scalar(select(User.credits).where(User.id == owner_id))
        return UsageSummary(
            total_chats=total_chats or 0,
            total_messages=total_messages or 0,
            credits=credits,
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    @staticmethod
    def _touch(chat: Chat) -> None:
        """Advance updated_at strictly, even within one clock tick."""
        now = utc_now()
        previous = ensure_utc(chat.updated_at) if chat.updated_at else None
        if previous is not None and now <= previous:
            now = previous + timedelta(microseconds=1)
        chat.updated_at = now

    async def _find_chat(self, chat_id: UUID) -> Chat | None:
        result = await self.session.execute(select(Chat).where(Chat.id == chat_id))
        return result.scalar_one_or_none()

    async def _find_visible_chat(self, chat_id: UUID, owner_id: UUID | None) -> Chat | None:
        owner_filter = Chat.owner_id == owner_id if owner_id else Chat.owner_id.is_(None)
        result = await self.session.execute(
            select(Chat).where(Chat.id == chat_id, owner_filter)
        )
        return result.scalar_one_or_none()

    async def _load_messages(self, chat_id: UUID) -> list[Message]:
        result = await self.session.execute(
            select(Message).where(Message.chat_id == chat_id).order_by(Message.seq)
        )
        return list(result.scalars().all())
