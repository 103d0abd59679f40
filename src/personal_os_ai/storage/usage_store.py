"""Usage ledger stores.

The ledger maps ``(user_id, period, period_key)`` to accumulated spend in
USD. ``period`` is ``daily`` (key ``YYYY-MM-DD``) or ``monthly`` (key
``YYYY-MM``). Keys are zero-padded so lexical order is chronological,
which is what pruning relies on.

Two implementations ship:
- InMemoryUsageStore: process-local, lost on restart
- SQLiteUsageStore: durable, increments with a single upsert statement
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Optional, Protocol, Tuple, runtime_checkable

from ..exceptions import DatabaseError


logger = logging.getLogger(__name__)

DAILY = "daily"
MONTHLY = "monthly"
PERIODS = (DAILY, MONTHLY)


@runtime_checkable
class UsageStore(Protocol):
    """Interface for ledger backends."""

    def add(self, user_id: str, period: str, period_key: str, amount: float) -> float:
        """Add amount to the entry and return the new total."""
        ...

    def get(self, user_id: str, period: str, period_key: str) -> float:
        """Current total for the entry, 0.0 when absent."""
        ...

    def history(self, user_id: str, period: str) -> Dict[str, float]:
        """All retained entries for a user and period, keyed by period_key."""
        ...

    def prune(self, user_id: str, period: str, oldest_key: str) -> int:
        """Delete entries with period_key < oldest_key. Returns rows removed."""
        ...


class InMemoryUsageStore:
    """Dict-backed ledger guarded by a lock."""

    def __init__(self) -> None:
        self._entries: Dict[Tuple[str, str, str], float] = {}
        self._lock = threading.Lock()

    def add(self, user_id: str, period: str, period_key: str, amount: float) -> float:
        key = (user_id, period, period_key)
        with self._lock:
            total = self._entries.get(key, 0.0) + amount
            self._entries[key] = total
            return total

    def get(self, user_id: str, period: str, period_key: str) -> float:
        with self._lock:
            return self._entries.get((user_id, period, period_key), 0.0)

    def history(self, user_id: str, period: str) -> Dict[str, float]:
        with self._lock:
            return {
                k[2]: v
                for k, v in self._entries.items()
                if k[0] == user_id and k[1] == period
            }

    def prune(self, user_id: str, period: str, oldest_key: str) -> int:
        with self._lock:
            stale = [
                k for k in self._entries
                if k[0] == user_id and k[1] == period and k[2] < oldest_key
            ]
            for k in stale:
                del self._entries[k]
            return len(stale)


class SQLiteUsageStore:
    """
    SQLite-backed ledger.

    Increments are a single ``INSERT ... ON CONFLICT DO UPDATE`` so two
    writers never lose an update.
    """

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS ai_usage_ledger (
        user_id TEXT NOT NULL,
        period TEXT NOT NULL,
        period_key TEXT NOT NULL,
        amount REAL NOT NULL DEFAULT 0,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (user_id, period, period_key)
    );

    CREATE INDEX IF NOT EXISTS idx_ledger_user_period ON ai_usage_ledger(user_id, period);
    """

    def __init__(self, db_path: Optional[str] = None):
        if db_path:
            self.db_path = Path(db_path)
        else:
            from ..config import get_settings
            self.db_path = Path(get_settings().database_path)

        self._ensure_table_exists()

    @contextmanager
    def _get_connection(self):
        """Get database connection with context manager."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"Usage ledger query failed: {e}")
            raise DatabaseError(f"Usage ledger operation failed: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _ensure_table_exists(self) -> None:
        with self._get_connection() as conn:
            conn.executescript(self.CREATE_TABLE_SQL)

    def add(self, user_id: str, period: str, period_key: str, amount: float) -> float:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO ai_usage_ledger (user_id, period, period_key, amount)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, period, period_key)
                DO UPDATE SET amount = amount + excluded.amount,
                              updated_at = CURRENT_TIMESTAMP
                """,
                (user_id, period, period_key, amount),
            )
            row = conn.execute(
                """
                SELECT amount FROM ai_usage_ledger
                WHERE user_id = ? AND period = ? AND period_key = ?
                """,
                (user_id, period, period_key),
            ).fetchone()
            return float(row["amount"])

    def get(self, user_id: str, period: str, period_key: str) -> float:
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT amount FROM ai_usage_ledger
                WHERE user_id = ? AND period = ? AND period_key = ?
                """,
                (user_id, period, period_key),
            ).fetchone()
            return float(row["amount"]) if row else 0.0

    def history(self, user_id: str, period: str) -> Dict[str, float]:
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT period_key, amount FROM ai_usage_ledger
                WHERE user_id = ? AND period = ?
                ORDER BY period_key
                """,
                (user_id, period),
            ).fetchall()
            return {row["period_key"]: float(row["amount"]) for row in rows}

    def prune(self, user_id: str, period: str, oldest_key: str) -> int:
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                DELETE FROM ai_usage_ledger
                WHERE user_id = ? AND period = ? AND period_key < ?
                """,
                (user_id, period, oldest_key),
            )
            return cursor.rowcount


def create_usage_store(backend: str, db_path: Optional[str] = None) -> UsageStore:
    """Build the ledger store named by the ``usage_store_backend`` setting."""
    if backend == "sqlite":
        return SQLiteUsageStore(db_path)
    if backend == "memory":
        return InMemoryUsageStore()
    raise ValueError(f"Unknown usage store backend: {backend}")
