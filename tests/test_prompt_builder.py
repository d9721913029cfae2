"""
Tests for prompt assembly.
"""

from datetime import UTC, datetime
from uuid import uuid4

from chatbot.models.api import MessageRole
from chatbot.models.domain import MessageData
from chatbot.services.prompt_builder import (
    DEFAULT_SYSTEM_PROMPT,
    build_messages,
    build_system_prompt,
)


def history_of(*pairs: tuple[MessageRole, str]) -> list[MessageData]:
    chat_id = uuid4()
    return [
        MessageData(
            id=uuid4(),
            chat_id=chat_id,
            role=role,
            content=content,
            model=None,
            timestamp=datetime.now(UTC),
        )
        for role, content in pairs
    ]


def test_system_first_and_new_message_last() -> None:
    history = history_of((MessageRole.USER, "q1"), (MessageRole.ASSISTANT, "a1"))

    messages = build_messages("q2", history)

    assert messages[0].role is MessageRole.SYSTEM
    assert messages[0].content == DEFAULT_SYSTEM_PROMPT
    assert [m.content for m in messages[1:]] == ["q1", "a1", "q2"]


def test_history_is_windowed_to_most_recent() -> None:
    history = history_of(*[(MessageRole.USER, f"m{i}") for i in range(15)])

    messages = build_messages("new", history)

    assert [m.content for m in messages[1:-1]] == [f"m{i}" for i in range(5, 15)]


def test_stored_system_rows_are_not_replayed() -> None:
    history = history_of((MessageRole.SYSTEM, "old system"), (MessageRole.USER, "q1"))

    messages = build_messages("q2", history)

    assert [m.content for m in messages[1:]] == ["q1", "q2"]


def test_memory_context_is_embedded_in_system_prompt() -> None:
    context = "Relevant memories from previous conversations:\n1. [Fact] lives in Oslo"

    prompt = build_system_prompt(context)

    assert "LONG-TERM MEMORY CONTEXT:" in prompt
    assert context in prompt
    assert build_system_prompt("") == DEFAULT_SYSTEM_PROMPT
