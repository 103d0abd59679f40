"""
Context selection for chat prompts.

Picks a bounded, ordered subset of a conversation's prior messages to send
with a new message. Relevance blends semantic similarity with position:

    score = 0.7 * cosine(new, message) + 0.3 * (index / len(history))

The two most recent messages are always kept. When the new message cannot
be embedded, or anything else goes wrong, selection falls back to the most
recent messages.
"""

import asyncio
import logging
import math
from typing import List, Optional, Protocol, Sequence

from ..config import get_settings
from ..llm.providers import LLMClient
from ..storage.memory_cache import InMemoryCache
from .base import BaseService, CacheProtocol, ServiceResult


logger = logging.getLogger(__name__)

SIMILARITY_WEIGHT = 0.7
RECENCY_WEIGHT = 0.3
ALWAYS_KEEP_RECENT = 2


class HistoryMessage(Protocol):
    """What the selector needs from a stored message."""

    id: str
    role: str
    content: str


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors; 0.0 if either is zero."""
    if len(a) != len(b):
        raise ValueError(f"Vector length mismatch: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class EmbeddingCache:
    """Message embeddings keyed by (session, message id)."""

    def __init__(
        self,
        cache: Optional[CacheProtocol] = None,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        self._cache = cache or InMemoryCache()
        self._ttl_seconds = ttl_seconds

    @staticmethod
    def key(session_id: str, message_id: str) -> str:
        return f"embedding:{session_id}:{message_id}"

    async def get(self, session_id: str, message_id: str) -> Optional[List[float]]:
        return await self._cache.get(self.key(session_id, message_id))

    async def set(self, session_id: str, message_id: str, vector: List[float]) -> None:
        await self._cache.set(self.key(session_id, message_id), vector, self._ttl_seconds)


class ContextSelector(BaseService):
    """Selects relevant prior messages for a new chat message."""

    def __init__(
        self,
        llm_client: LLMClient,
        embedding_cache: Optional[EmbeddingCache] = None,
    ) -> None:
        super().__init__()
        self.llm_client = llm_client
        if embedding_cache is None:
            embedding_cache = EmbeddingCache(
                ttl_seconds=get_settings().embedding_cache_ttl_seconds
            )
        self.embedding_cache = embedding_cache

    async def embed(self, text: str) -> ServiceResult[List[float]]:
        try:
            vector = await self.llm_client.embed(text)
        except Exception as e:
            self.logger.warning(f"Embedding generation failed: {e}")
            return ServiceResult.fail(str(e), error_code="EMBEDDING_FAILED")
        if not vector:
            return ServiceResult.fail("Empty embedding", error_code="EMBEDDING_FAILED")
        return ServiceResult.ok(vector)

    async def _message_embedding(
        self,
        session_id: str,
        message: HistoryMessage,
    ) -> Optional[List[float]]:
        """Cache-first embedding of a stored message. None if it cannot be embedded."""
        try:
            cached = await self.embedding_cache.get(session_id, message.id)
        except Exception as e:
            self.logger.warning(f"Embedding cache read failed: {e}")
            cached = None
        if cached is not None:
            return cached

        result = await self.embed(message.content)
        if not result.success:
            return None
        try:
            await self.embedding_cache.set(session_id, message.id, result.data)
        except Exception as e:
            self.logger.warning(f"Embedding cache write failed: {e}")
        return result.data

    async def select_relevant(
        self,
        session_id: str,
        new_message_text: str,
        history: Sequence[HistoryMessage],
        max_messages: int,
    ) -> List[HistoryMessage]:
        """
        Pick at most ``max_messages`` messages, ordered oldest to newest.

        The last two messages of ``history`` are always included. The rest
        of the slots go to the highest scoring earlier messages.
        """
        history = list(history)
        if not history or max_messages <= 0:
            return []
        if len(history) <= max_messages:
            return self._dedupe(history)[-max_messages:]

        try:
            return await self._select_by_relevance(
                session_id, new_message_text, history, max_messages
            )
        except Exception as e:
            self.logger.error(f"Context selection failed, using recent messages: {e}")
            return self._recency(history, max_messages)

    async def _select_by_relevance(
        self,
        session_id: str,
        new_message_text: str,
        history: List[HistoryMessage],
        max_messages: int,
    ) -> List[HistoryMessage]:
        query = await self.embed(new_message_text)
        if not query.success:
            return self._recency(history, max_messages)

        total = len(history)
        recent = history[-ALWAYS_KEEP_RECENT:]
        candidates = history[:-ALWAYS_KEEP_RECENT]

        vectors = await asyncio.gather(
            *(self._message_embedding(session_id, m) for m in candidates)
        )

        scored = []
        for index, (message, vector) in enumerate(zip(candidates, vectors)):
            if vector is None:
                continue
            similarity = cosine_similarity(query.data, vector)
            score = SIMILARITY_WEIGHT * similarity + RECENCY_WEIGHT * (index / total)
            scored.append((score, index, message))

        scored.sort(key=lambda item: item[0], reverse=True)
        slots = max(max_messages - ALWAYS_KEEP_RECENT, 0)
        chosen = sorted(scored[:slots], key=lambda item: item[1])

        selected = self._dedupe([m for _, _, m in chosen] + recent)
        return selected[-max_messages:]

    @staticmethod
    def _dedupe(messages: List[HistoryMessage]) -> List[HistoryMessage]:
        seen = set()
        unique = []
        for message in messages:
            if message.id in seen:
                continue
            seen.add(message.id)
            unique.append(message)
        return unique

    def _recency(self, history: List[HistoryMessage], max_messages: int) -> List[HistoryMessage]:
        return self._dedupe(history)[-max_messages:]
