"""Shared fixtures for the gateway tests."""

import os
import tempfile
from datetime import datetime, timezone
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from personal_os_ai.llm.providers import CompletionResult, StreamChunk
from personal_os_ai.services.context_selector import ContextSelector
from personal_os_ai.services.cost_governor import CostGovernor, CostLimits
from personal_os_ai.services.domain_summary import DomainSummaryService
from personal_os_ai.services.entity_linker import EntityLinker
from personal_os_ai.services.summarizer import ConversationSummarizer
from personal_os_ai.services.chat_orchestrator import ChatOrchestrator
from personal_os_ai.storage.chat_history import ChatHistoryRepository
from personal_os_ai.storage.domain_records import DomainRecordSource
from personal_os_ai.storage.usage_store import InMemoryUsageStore


FIXED_NOW = datetime(2024, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


def make_stream(deltas: List[str], usage: Optional[tuple] = (20, 3), error: Exception = None):
    """Build a stream_chat replacement yielding the given deltas."""

    async def _stream(*args, **kwargs):
        for delta in deltas:
            yield StreamChunk(content=delta)
        if error is not None:
            raise error
        if usage is not None:
            yield StreamChunk(input_tokens=usage[0], output_tokens=usage[1])

    return _stream


@pytest.fixture
def stream_factory():
    return make_stream


@pytest.fixture
def temp_db_path():
    """Create a temporary database file path."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    yield db_path
    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def usage_store():
    return InMemoryUsageStore()


@pytest.fixture
def governor(usage_store):
    """Cost governor with default ceilings and a frozen clock."""
    return CostGovernor(
        usage_store,
        limits=CostLimits(daily=10.0, monthly=100.0, per_request=1.0, warning_threshold=0.8),
        clock=lambda: FIXED_NOW,
        default_max_output_tokens=1000,
    )


@pytest.fixture
def mock_llm():
    """Provider client double with canned responses."""
    llm = MagicMock()
    llm.chat_completion = AsyncMock(return_value=CompletionResult(
        content="Here is my advice.",
        model="gpt-4",
        input_tokens=100,
        output_tokens=50,
        duration_ms=120.0,
    ))
    llm.stream_chat = make_stream(["Hi", " there", "!"])
    llm.embed = AsyncMock(return_value=[1.0, 0.0, 0.0])
    llm.transcribe = AsyncMock(return_value="How are my goals going?")
    llm.synthesize_speech = AsyncMock(return_value=b"mp3-bytes")
    return llm


@pytest.fixture
def records(temp_db_path):
    return DomainRecordSource(db_path=temp_db_path)


@pytest.fixture
def chat_history(temp_db_path):
    return ChatHistoryRepository(db_path=temp_db_path)


@pytest.fixture
def orchestrator(mock_llm, governor, records, chat_history):
    """Orchestrator wired to in-memory and temp-file collaborators."""
    return ChatOrchestrator(
        llm_client=mock_llm,
        cost_governor=governor,
        context_selector=ContextSelector(mock_llm),
        entity_linker=EntityLinker(records),
        summarizer=ConversationSummarizer(mock_llm, cost_governor=governor, min_messages=5),
        domain_summaries=DomainSummaryService(records),
        chat_history=chat_history,
    )
