"""
Tests for the memory subsystem.

Pinecone is replaced with httpx.MockTransport; the unconfigured service must
behave as a silent no-op.
"""

import json

import httpx

from chatbot.models.api import MemoryType
from chatbot.models.domain import MemoryMatch
from chatbot.services.memory import (
    MemoryService,
    PineconeEmbedder,
    PineconeVectorIndex,
    format_memories,
)

INDEX_HOST = "https://chatbot-memory.svc.pinecone.io"


def make_service(handler) -> MemoryService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    embedder = PineconeEmbedder(api_key="pc-key", http_client=client)
    index = PineconeVectorIndex(api_key="pc-key", index_host=INDEX_HOST, http_client=client)
    return MemoryService(embedder, index)


def pinecone_handler(matches: list[dict], calls: list[tuple[str, dict]]):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        calls.append((request.url.path, body))
        if request.url.path == "/embed":
            return httpx.Response(200, json={"data": [{"values": [0.1, 0.2, 0.3]}]})
        if request.url.path == "/query":
            return httpx.Response(200, json={"matches": matches})
        return httpx.Response(200, json={})

    return handler


class TestUnconfigured:
    """Without Pinecone credentials everything is skipped."""

    async def test_retrieve_returns_empty_context(self, unconfigured_memory) -> None:
        context = await unconfigured_memory.retrieve("anything", "user-1")
        assert context.memories == ()
        assert context.formatted_context == ""

    async def test_store_returns_empty_id(self, unconfigured_memory) -> None:
        assert await unconfigured_memory.store("fact", "user-1") == ""

    async def test_clear_user_is_skipped(self, unconfigured_memory) -> None:
        assert await unconfigured_memory.clear_user("user-1") is False


class TestFormatting:
    def test_format_memories_ranks_by_score(self) -> None:
        memories = [
            MemoryMatch(id="a", content="likes tea", type=MemoryType.USER_PREFERENCE, score=0.6),
            MemoryMatch(id="b", content="lives in Oslo", type=MemoryType.FACT, score=0.9),
        ]

        assert format_memories(memories) == (
            "Relevant memories from previous conversations:\n"
            "1. [Fact] lives in Oslo\n"
            "2. [Preference] likes tea"
        )

    def test_format_no_memories_is_empty(self) -> None:
        assert format_memories([]) == ""


class TestRetrieve:
    async def test_filters_below_threshold_and_scopes_to_user(self) -> None:
        calls: list[tuple[str, dict]] = []
        matches = [
            {"id": "m1", "score": 0.82, "metadata": {"content": "likes tea", "type": "fact"}},
            {"id": "m2", "score": 0.31, "metadata": {"content": "noise", "type": "context"}},
        ]
        service = make_service(pinecone_handler(matches, calls))

        context = await service.retrieve("what do I drink?", "user-1")

        assert [m.id for m in context.memories] == ["m1"]
        assert "1. [Fact] likes tea" in context.formatted_context
        query_body = dict(calls)["/query"]
        assert query_body["filter"] == {"user_id": {"$eq": "user-1"}}
        assert query_body["namespace"] == "chatbot"
        assert dict(calls)["/embed"]["parameters"]["input_type"] == "query"

    async def test_failure_degrades_to_empty_context(self) -> None:
        service = make_service(lambda r: httpx.Response(500))

        context = await service.retrieve("anything", "user-1")

        assert context.formatted_context == ""

    async def test_malformed_match_is_skipped(self) -> None:
        matches = [
            {"id": "m1", "score": 0.9, "metadata": {"content": "likes tea", "importance": "high"}},
            {"id": "m2", "score": "n/a", "metadata": {"content": "lives in Oslo"}},
            {"id": "m3", "score": 0.8, "metadata": {"content": "has a cat", "type": "fact"}},
        ]
        service = make_service(pinecone_handler(matches, []))

        context = await service.retrieve("tell me about me", "user-1")

        assert [m.id for m in context.memories] == ["m3"]

    async def test_non_list_matches_degrade_to_empty_context(self) -> None:
        service = make_service(pinecone_handler({"m1": "oops"}, []))  # type: ignore[arg-type]

        context = await service.retrieve("anything", "user-1")

        assert context.memories == ()


class TestStore:
    async def test_store_exchange_upserts_with_metadata(self) -> None:
        calls: list[tuple[str, dict]] = []
        service = make_service(pinecone_handler([], calls))

        memory_id = await service.store_exchange("hello", "r" * 400, "user-1", "chat-1")

        assert memory_id
        upsert = dict(calls)["/vectors/upsert"]["vectors"][0]
        assert upsert["id"] == memory_id
        assert upsert["metadata"]["user_id"] == "user-1"
        assert upsert["metadata"]["chat_id"] == "chat-1"
        assert upsert["metadata"]["type"] == "context"
        assert upsert["metadata"]["content"].endswith("r" * 300)

    async def test_store_failure_returns_empty_id(self) -> None:
        service = make_service(lambda r: httpx.Response(503))
        assert await service.store_fact("a fact", "user-1") == ""

    async def test_preferences_are_stored_with_high_importance(self) -> None:
        calls: list[tuple[str, dict]] = []
        service = make_service(pinecone_handler([], calls))

        await service.store_preference("prefers short answers", "user-1")

        metadata = dict(calls)["/vectors/upsert"]["vectors"][0]["metadata"]
        assert metadata["type"] == "user_preference"
        assert metadata["importance"] == 9

    async def test_malformed_embedding_skips_store(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/embed":
                return httpx.Response(200, json={"data": [{"values": ["x", "y"]}]})
            return httpx.Response(200, json={})

        service = make_service(handler)

        assert await service.store_exchange("hello", "hi", "user-1", "chat-1") == ""
