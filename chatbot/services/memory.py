"""
Memory Subsystem - Long-term memory on Pinecone inference + vector index.

Memory is an enhancement: when Pinecone is not configured, or any call to it
fails, retrieval yields an empty context and stores are skipped. Nothing in
this module raises to its callers.
"""

import time
from typing import Any
from uuid import uuid4

import httpx
from structlog import get_logger

from chatbot.config import Settings
from chatbot.exceptions import MemoryServiceError
from chatbot.models.api import MemoryType
from chatbot.models.domain import MemoryContext, MemoryMatch
from chatbot.observability.metrics import metrics

logger = get_logger(__name__)

TYPE_LABELS = {
    MemoryType.USER_PREFERENCE: "Preference",
    MemoryType.FACT: "Fact",
    MemoryType.CONTEXT: "Context",
    MemoryType.SUMMARY: "Summary",
}
CONTEXT_HEADER = "Relevant memories from previous conversations:"
EXCHANGE_REPLY_CHARS = 300


def format_memories(memories: list[MemoryMatch]) -> str:
    """Render memories as a ranked, labelled list, best score first."""
    if not memories:
        return ""
    ranked = sorted(memories, key=lambda m: m.score, reverse=True)
    lines = [
        f"{i}. [{TYPE_LABELS.get(m.type, 'Memory')}] {m.content}"
        for i, m in enumerate(ranked, start=1)
    ]
    return CONTEXT_HEADER + "\n" + "\n".join(lines)


class PineconeEmbedder:
    """Pinecone hosted inference (POST /embed)."""

    def __init__(
        self,
        api_key: str,
        model: str = "multilingual-e5-large",
        api_url: str = "https://api.pinecone.io",
        api_version: str = "2025-01",
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.api_url = api_url.rstrip("/")
        self.api_version = api_version
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def embed(self, text: str, mode: str = "passage") -> list[float]:
        """
        Embed one text; mode is "passage" for storage, "query" for search.

        Raises:
            MemoryServiceError: Request failed or returned no vector
        """
        try:
            response = await self.http_client.post(
                f"{self.api_url}/embed",
                headers={
                    "Api-Key": self.api_key,
                    "X-Pinecone-API-Version": self.api_version,
                },
                json={
                    "model": self.model,
                    "parameters": {"input_type": mode, "truncate": "END"},
                    "inputs": [{"text": text}],
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise MemoryServiceError(f"Embedding request failed: {type(exc).__name__}") from exc

        try:
            data = response.json().get("data") or []
            values = [float(v) for v in data[0].get("values") or []] if data else []
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise MemoryServiceError("Malformed embedding response") from exc
        if not values:
            raise MemoryServiceError("No embedding returned from Pinecone inference")
        return values

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()


def _parse_match(match: dict[str, Any]) -> MemoryMatch | None:
    """Turn one index match into a MemoryMatch; None when it has no id."""
    if not match.get("id"):
        return None
    metadata = match.get("metadata") or {}
    try:
        memory_type = MemoryType(metadata.get("type", MemoryType.CONTEXT.value))
    except ValueError:
        memory_type = MemoryType.CONTEXT
    return MemoryMatch(
        id=str(match["id"]),
        content=str(metadata.get("content", "")),
        type=memory_type,
        score=float(match.get("score") or 0.0),
        importance=int(metadata.get("importance", 5)),
        chat_id=metadata.get("chat_id"),
        timestamp=str(metadata["timestamp"]) if "timestamp" in metadata else None,
    )


class PineconeVectorIndex:
    """Pinecone index data plane, scoped to one namespace."""

    def __init__(
        self,
        api_key: str,
        index_host: str,
        namespace: str = "chatbot",
        api_version: str = "2025-01",
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        host = index_host.rstrip("/")
        if host and not host.startswith(("http://", "https://")):
            host = f"https://{host}"
        self.index_host = host
        self.namespace = namespace
        self.api_version = api_version
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    def is_ready(self) -> bool:
        return bool(self.api_key and self.index_host)

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self.http_client.post(
                f"{self.index_host}{path}",
                headers={
                    "Api-Key": self.api_key,
                    "X-Pinecone-API-Version": self.api_version,
                },
                json=body,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise MemoryServiceError(f"Vector index request failed: {type(exc).__name__}") from exc
        if not response.content:
            return {}
        try:
            return dict(response.json())
        except (ValueError, TypeError) as exc:
            raise MemoryServiceError("Malformed vector index response") from exc

    async def upsert(self, record_id: str, values: list[float], metadata: dict[str, Any]) -> None:
        await self._post(
            "/vectors/upsert",
            {
                "vectors": [{"id": record_id, "values": values, "metadata": metadata}],
                "namespace": self.namespace,
            },
        )

    async def query(self, vector: list[float], user_id: str, top_k: int) -> list[MemoryMatch]:
        data = await self._post(
            "/query",
            {
                "vector": vector,
                "topK": top_k,
                "includeMetadata": True,
                "namespace": self.namespace,
                "filter": {"user_id": {"$eq": user_id}},
            },
        )
        raw_matches = data.get("matches") or []
        if not isinstance(raw_matches, list):
            raise MemoryServiceError("Malformed vector index response")

        matches = []
        for match in raw_matches:
            try:
                parsed = _parse_match(match)
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("memory_match_skipped", reason="malformed", error=str(exc))
                continue
            if parsed is not None:
                matches.append(parsed)
        return matches

    async def delete_for_user(self, user_id: str) -> None:
        await self._post(
            "/vectors/delete",
            {"filter": {"user_id": {"$eq": user_id}}, "namespace": self.namespace},
        )

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()


class MemoryService:
    """Retrieves and stores per-user memories; degrades to a no-op."""

    def __init__(
        self,
        embedder: PineconeEmbedder | None,
        index: PineconeVectorIndex | None,
        similarity_threshold: float = 0.5,
        top_k: int = 5,
    ) -> None:
        self.embedder = embedder
        self.index = index
        self.similarity_threshold = similarity_threshold
        self.top_k = top_k

    @classmethod
    def from_settings(cls, settings: Settings) -> "MemoryService":
        """Build the service; without Pinecone credentials it is a no-op."""
        if not settings.memory_configured:
            logger.warning("memory_not_configured")
            return cls(None, None, settings.memory_similarity_threshold, settings.memory_top_k)
        embedder = PineconeEmbedder(
            api_key=settings.pinecone_api_key,
            model=settings.embedding_model,
            api_url=settings.pinecone_api_url,
            api_version=settings.pinecone_api_version,
            timeout_seconds=settings.memory_timeout_seconds,
        )
        index = PineconeVectorIndex(
            api_key=settings.pinecone_api_key,
            index_host=settings.pinecone_index_host,
            namespace=settings.memory_namespace,
            api_version=settings.pinecone_api_version,
            timeout_seconds=settings.memory_timeout_seconds,
        )
        return cls(embedder, index, settings.memory_similarity_threshold, settings.memory_top_k)

    def is_ready(self) -> bool:
        return bool(
            self.embedder
            and self.embedder.is_configured()
            and self.index
            and self.index.is_ready()
        )

    async def retrieve(self, query: str, user_id: str, limit: int | None = None) -> MemoryContext:
        if not self.is_ready():
            metrics.record_memory("retrieve", "skipped")
            return MemoryContext()
        assert self.embedder is not None and self.index is not None

        try:
            vector = await self.embedder.embed(query, mode="query")
            matches = await self.index.query(vector, user_id, limit or self.top_k)
        except MemoryServiceError as exc:
            metrics.record_memory("retrieve", "failed")
            logger.error("memory_retrieval_failed", user_id=user_id, error=str(exc))
            return MemoryContext()

        relevant = sorted(
            (m for m in matches if m.score >= self.similarity_threshold),
            key=lambda m: m.score,
            reverse=True,
        )
        metrics.record_memory("retrieve", "hit" if relevant else "miss")
        logger.info("memories_retrieved", user_id=user_id, count=len(relevant))
        return MemoryContext(memories=tuple(relevant), formatted_context=format_memories(relevant))

    async def store(
        self,
        content: str,
        user_id: str,
        memory_type: MemoryType = MemoryType.CONTEXT,
        chat_id: str | None = None,
        importance: int = 5,
    ) -> str:
        """Embed and upsert one memory. Returns its id, or "" when skipped or failed."""
        if not self.is_ready():
            metrics.record_memory("store", "skipped")
            return ""
        assert self.embedder is not None and self.index is not None

        record_id = str(uuid4())
        metadata: dict[str, Any] = {
            "user_id": user_id,
            "content": content,
            "type": memory_type.value,
            "timestamp": int(time.time() * 1000),
            "importance": importance,
        }
        if chat_id:
            metadata["chat_id"] = chat_id

        try:
            vector = await self.embedder.embed(content, mode="passage")
            await self.index.upsert(record_id, vector, metadata)
        except MemoryServiceError as exc:
            metrics.record_memory("store", "failed")
            logger.error("memory_store_failed", user_id=user_id, error=str(exc))
            return ""

        metrics.record_memory("store", "stored")
        logger.info("memory_stored", memory_id=record_id, user_id=user_id, type=memory_type.value)
        return record_id

    async def store_exchange(
        self, user_message: str, reply: str, user_id: str, chat_id: str | None = None
    ) -> str:
        content = f"User said: {user_message}\nAssistant replied: {reply[:EXCHANGE_REPLY_CHARS]}"
        return await self.store(content, user_id, MemoryType.CONTEXT, chat_id, importance=5)

    async def store_preference(self, preference: str, user_id: str) -> str:
        return await self.store(preference, user_id, MemoryType.USER_PREFERENCE, importance=9)

    async def store_fact(self, fact: str, user_id: str) -> str:
        return await self.store(fact, user_id, MemoryType.FACT, importance=8)

    async def clear_user(self, user_id: str) -> bool:
        """Forget everything stored for a user. Returns False when skipped or failed."""
        if not self.is_ready():
            return False
        assert self.index is not None

        try:
            await self.index.delete_for_user(user_id)
        except MemoryServiceError as exc:
            metrics.record_memory("clear", "failed")
            logger.error("memory_clear_failed", user_id=user_id, error=str(exc))
            return False

        metrics.record_memory("clear", "cleared")
        logger.info("memories_cleared", user_id=user_id)
        return True

    async def close(self) -> None:
        if self.embedder:
            await self.embedder.close()
        if self.index:
            await self.index.close()
