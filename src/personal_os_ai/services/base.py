"""
Base service classes and protocols.

Defines the cache interface shared by the advisory subsystems and the
result wrapper they return instead of raising.
"""

from abc import ABC
from typing import Any, Dict, Generic, Optional, Protocol, TypeVar, runtime_checkable
import logging

from pydantic import BaseModel


T = TypeVar("T")


@runtime_checkable
class CacheProtocol(Protocol):
    """Protocol for cache implementations."""

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        ...

    async def set(
        self,
        key: str,
        value: Any,
        expire_seconds: Optional[int] = None,
    ) -> None:
        """Set value in cache."""
        ...

    async def delete(self, key: str) -> None:
        """Delete value from cache."""
        ...

    async def exists(self, key: str) -> bool:
        """Check if key exists in cache."""
        ...


class BaseService(ABC):
    """Abstract base class for services. Provides a per-class logger."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger(self.__class__.__name__)

    @property
    def logger(self) -> logging.Logger:
        """Get the logger instance."""
        return self._logger


class ServiceResult(BaseModel, Generic[T]):
    """
    Wrapper for service operation results.

    Advisory subsystems (entity linking, summaries, embeddings) return one
    of these so the caller decides whether a failure matters.
    """

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def ok(
        cls,
        data: T,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "ServiceResult[T]":
        """Create a successful result."""
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def fail(
        cls,
        error: str,
        error_code: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "ServiceResult[T]":
        """Create a failed result."""
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            metadata=metadata,
        )

    def unwrap_or(self, default: Any) -> Any:
        """Return the data on success, otherwise the given default."""
        return self.data if self.success and self.data is not None else default

    class Config:
        """Pydantic config."""

        arbitrary_types_allowed = True
