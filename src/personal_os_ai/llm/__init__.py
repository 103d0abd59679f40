"""LLM provider client and prompt templates."""

from .providers import (
    CompletionResult,
    LLMClient,
    StreamChunk,
    get_llm_client,
    get_llm_metrics,
)

__all__ = [
    "CompletionResult",
    "LLMClient",
    "StreamChunk",
    "get_llm_client",
    "get_llm_metrics",
]
