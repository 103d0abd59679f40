"""
Rolling conversation summaries.

Once a conversation has enough messages, a low-cost model compresses it
into a short summary that keeps decisions, insights and action items. Each
pass replaces the previous summary for the session. Summaries are kept for
display; they are not fed back into chat prompts.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..config import get_settings
from ..llm.prompts import SUMMARY_SYSTEM_PROMPT, format_transcript
from ..llm.providers import LLMClient
from ..storage.memory_cache import InMemoryCache
from .base import BaseService, CacheProtocol
from .cost_governor import ActualUsage, CostGovernor


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


SUMMARY_MAX_TOKENS = 200
SUMMARY_TEMPERATURE = 0.3


@dataclass
class ConversationSummary:
    """Latest summary of one session."""
    user_id: str
    session_id: str
    summary_text: str
    message_count_at_summary: int
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "summary": self.summary_text,
            "messageCount": self.message_count_at_summary,
            "timestamp": self.timestamp.isoformat(),
        }


class SummaryStore:
    """Summaries keyed by (user, session) on top of a cache."""

    def __init__(self, cache: Optional[CacheProtocol] = None) -> None:
        self._cache = cache or InMemoryCache()

    @staticmethod
    def key(user_id: str, session_id: str) -> str:
        return f"summary:{user_id}:{session_id}"

    async def get(self, user_id: str, session_id: str) -> Optional[ConversationSummary]:
        return await self._cache.get(self.key(user_id, session_id))

    async def save(self, summary: ConversationSummary) -> None:
        await self._cache.set(self.key(summary.user_id, summary.session_id), summary)


class ConversationSummarizer(BaseService):
    """Produces and stores conversation summaries."""

    def __init__(
        self,
        llm_client: LLMClient,
        store: Optional[SummaryStore] = None,
        cost_governor: Optional[CostGovernor] = None,
        model: Optional[str] = None,
        min_messages: Optional[int] = None,
    ) -> None:
        super().__init__()
        settings = get_settings()
        self.llm_client = llm_client
        self.store = store or SummaryStore()
        self.cost_governor = cost_governor
        self.model = model or settings.summary_model
        self.min_messages = min_messages or settings.summary_min_messages

    async def maybe_summarize(
        self,
        session_id: str,
        messages: List[Dict[str, str]],
        user_id: str,
    ) -> Optional[ConversationSummary]:
        """
        Summarize the conversation if it is long enough.

        Returns None for short conversations, when the user's budget has no
        room for the call, or when the call fails.
        """
        if len(messages) < self.min_messages:
            return None

        transcript = format_transcript(messages)
        prompt = [
            {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
            {"role": "user", "content": transcript},
        ]

        if self.cost_governor is not None:
            estimate = self.cost_governor.estimate_cost(
                self.model,
                len(SUMMARY_SYSTEM_PROMPT) + len(transcript),
                SUMMARY_MAX_TOKENS,
            )
            decision = await asyncio.to_thread(self.cost_governor.check_budget, user_id, estimate)
            if not decision.allowed:
                self.logger.info(f"Skipping summary for {session_id}: {decision.reason}")
                return None

        try:
            result = await self.llm_client.chat_completion(
                prompt,
                model=self.model,
                max_tokens=SUMMARY_MAX_TOKENS,
                temperature=SUMMARY_TEMPERATURE,
            )
        except Exception as e:
            self.logger.warning(f"Summary generation failed for {session_id}: {e}")
            return None

        if self.cost_governor is not None:
            usage = ActualUsage.from_tokens(
                self.model, result.input_tokens, result.output_tokens, result.duration_ms
            )
            await asyncio.to_thread(self.cost_governor.record_actual, user_id, usage)

        summary = ConversationSummary(
            user_id=user_id,
            session_id=session_id,
            summary_text=result.content.strip(),
            message_count_at_summary=len(messages),
        )
        try:
            await self.store.save(summary)
        except Exception as e:
            self.logger.warning(f"Failed to store summary for {session_id}: {e}")

        self.logger.info(f"Summarized session {session_id} at {len(messages)} messages")
        return summary

    async def get_summary(self, user_id: str, session_id: str) -> Optional[ConversationSummary]:
        return await self.store.get(user_id, session_id)
