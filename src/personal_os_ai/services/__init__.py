"""Services behind the AI gateway."""

from .base import BaseService, CacheProtocol, ServiceResult
from .cost_governor import (
    ActualUsage,
    BudgetDecision,
    CostEstimate,
    CostGovernor,
    CostLimits,
    LimitType,
    get_cost_governor,
)
from .context_selector import ContextSelector, EmbeddingCache
from .entity_linker import EntityLinker, EntityLinks, SubstringEntityMatcher
from .summarizer import ConversationSummarizer, SummaryStore
from .domain_summary import DomainSummaryService, SummaryContext
from .chat_orchestrator import ChatCommand, ChatOrchestrator, ChatState, VoiceCommand

__all__ = [
    "BaseService",
    "CacheProtocol",
    "ServiceResult",
    "ActualUsage",
    "BudgetDecision",
    "CostEstimate",
    "CostGovernor",
    "CostLimits",
    "LimitType",
    "get_cost_governor",
    "ContextSelector",
    "EmbeddingCache",
    "EntityLinker",
    "EntityLinks",
    "SubstringEntityMatcher",
    "ConversationSummarizer",
    "SummaryStore",
    "DomainSummaryService",
    "SummaryContext",
    "ChatCommand",
    "ChatOrchestrator",
    "ChatState",
    "VoiceCommand",
]
