"""In-process implementation of CacheProtocol.

Contents are lost on restart. Suitable for embeddings (recomputable) and
conversation summaries (display only).
"""

import threading
import time
from typing import Any, Dict, Optional, Tuple


class InMemoryCache:
    """Dict-backed cache with optional per-key expiry."""

    def __init__(self) -> None:
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and time.monotonic() >= expires_at:
                del self._data[key]
                return None
            return value

    async def set(
        self,
        key: str,
        value: Any,
        expire_seconds: Optional[int] = None,
    ) -> None:
        expires_at = time.monotonic() + expire_seconds if expire_seconds else None
        with self._lock:
            self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
