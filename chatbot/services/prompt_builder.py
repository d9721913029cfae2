"""
Prompt Builder - Assembles the message list sent to the model gateway.
"""

from collections.abc import Sequence

from chatbot.models.api import MessageRole
from chatbot.models.domain import MessageData, PromptMessage

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Please provide thoughtful and accurate responses. "
    "Remember the context of our conversation and refer back to previous messages when relevant."
)

MEMORY_SYSTEM_PROMPT = (
    "You are a helpful AI assistant with access to long-term memory.\n"
    "You can remember important information from previous conversations.\n"
    "Be concise, accurate, and helpful. Reference relevant memories when appropriate."
)

HISTORY_WINDOW = 10


def format_history(history: Sequence[MessageData]) -> list[PromptMessage]:
    """Keep only user/assistant turns; system rows are never replayed."""
    return [
        PromptMessage(role=m.role, content=m.content)
        for m in history
        if m.role in (MessageRole.USER, MessageRole.ASSISTANT)
    ]


def build_system_prompt(memory_context: str = "") -> str:
    if not memory_context:
        return DEFAULT_SYSTEM_PROMPT

    return (
        f"{MEMORY_SYSTEM_PROMPT}\n\n"
        "---\n"
        "LONG-TERM MEMORY CONTEXT:\n"
        f"{memory_context}\n"
        "---\n\n"
        "Use the above memories to provide more personalized and contextually relevant responses.\n"
        "If the memories are relevant to the user's question, incorporate them naturally."
    )


def build_messages(
    user_message: str,
    history: Sequence[MessageData],
    memory_context: str = "",
    history_window: int = HISTORY_WINDOW,
) -> list[PromptMessage]:
    """
    System preamble, then the last history_window prior turns, then the new
    user message.

    history must not already contain user_message.
    """
    recent = format_history(history)[-history_window:] if history_window > 0 else []
    return [
        PromptMessage(role=MessageRole.SYSTEM, content=build_system_prompt(memory_context)),
        *recent,
        PromptMessage(role=MessageRole.USER, content=user_message),
    ]
