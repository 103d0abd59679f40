"""Persistence: usage ledger, caches, chat history and domain records."""

from .usage_store import (
    DAILY,
    MONTHLY,
    InMemoryUsageStore,
    SQLiteUsageStore,
    UsageStore,
    create_usage_store,
)
from .memory_cache import InMemoryCache
from .chat_history import ChatHistoryRepository, get_chat_history_repository
from .domain_records import DomainRecordSource, get_domain_record_source

__all__ = [
    "DAILY",
    "MONTHLY",
    "InMemoryUsageStore",
    "SQLiteUsageStore",
    "UsageStore",
    "create_usage_store",
    "InMemoryCache",
    "ChatHistoryRepository",
    "get_chat_history_repository",
    "DomainRecordSource",
    "get_domain_record_source",
]
