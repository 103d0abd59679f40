"""Dependency injection for API routes."""

from functools import lru_cache

from ..config import get_settings
from ..llm.providers import LLMClient, get_llm_client
from ..services.chat_orchestrator import ChatOrchestrator
from ..services.context_selector import ContextSelector
from ..services.cost_governor import CostGovernor, get_cost_governor
from ..services.domain_summary import DomainSummaryService
from ..services.entity_linker import EntityLinker
from ..services.summarizer import ConversationSummarizer
from ..storage.chat_history import ChatHistoryRepository, get_chat_history_repository
from ..storage.domain_records import DomainRecordSource, get_domain_record_source


def get_governor() -> CostGovernor:
    """Get the process-wide cost governor."""
    return get_cost_governor()


def get_llm() -> LLMClient:
    """Get the shared provider client."""
    return get_llm_client()


def get_chat_history() -> ChatHistoryRepository:
    """Get the chat history repository."""
    return get_chat_history_repository(str(get_settings().database_path))


def get_domain_records() -> DomainRecordSource:
    """Get the domain record source."""
    return get_domain_record_source(str(get_settings().database_path))


@lru_cache
def get_domain_summary_service() -> DomainSummaryService:
    """Get the domain summary service."""
    return DomainSummaryService(get_domain_records())


@lru_cache
def get_orchestrator() -> ChatOrchestrator:
    """Wire the chat orchestrator from the shared collaborators."""
    llm_client = get_llm()
    governor = get_governor()
    records = get_domain_records()
    return ChatOrchestrator(
        llm_client=llm_client,
        cost_governor=governor,
        context_selector=ContextSelector(llm_client),
        entity_linker=EntityLinker(records),
        summarizer=ConversationSummarizer(llm_client, cost_governor=governor),
        domain_summaries=get_domain_summary_service(),
        chat_history=get_chat_history(),
    )
