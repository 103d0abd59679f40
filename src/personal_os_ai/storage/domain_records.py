"""Read-only access to the user's domain records.

Tasks, projects, goals, skills, readings, budgets and income are owned by
the CRUD side of the application. The gateway only reads them, so they are
stored here as JSON documents tagged with a kind. ``add_record`` exists for
seeding and tests.
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..exceptions import DatabaseError, ValidationError


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


RECORD_KINDS = ("task", "project", "goal", "skill", "reading", "budget", "income")


class DomainRecordSource:
    """SQLite-backed source of domain documents keyed by user and kind."""

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS domain_records (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        data TEXT NOT NULL,
        created_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_domain_records_user_kind ON domain_records(user_id, kind);
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
            logger.error(f"Domain record query failed: {e}")
            raise DatabaseError(f"Domain record operation failed: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _ensure_table_exists(self) -> None:
        with self._get_connection() as conn:
            conn.executescript(self.CREATE_TABLE_SQL)

    def add_record(self, user_id: str, kind: str, data: Dict[str, Any]) -> str:
        """Store a document and return its id."""
        if kind not in RECORD_KINDS:
            raise ValidationError(f"Unknown record kind: {kind}", field="kind")

        record_id = data.get("id") or str(uuid.uuid4())
        payload = {k: v for k, v in data.items() if k != "id"}
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO domain_records (id, user_id, kind, data, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    record_id,
                    user_id,
                    kind,
                    json.dumps(payload, default=str),
                    _utcnow().isoformat(),
                ),
            )
        return record_id

    def _get_by_user(
        self,
        user_id: str,
        kind: str,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[Dict[str, Any]]:
        query = "SELECT id, data FROM domain_records WHERE user_id = ? AND kind = ?"
        query += " ORDER BY created_at DESC, rowid DESC" if newest_first else " ORDER BY created_at, rowid"
        params: List[Any] = [user_id, kind]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()

        records = []
        for row in rows:
            record = json.loads(row["data"])
            record["id"] = row["id"]
            records.append(record)
        return records

    def get_tasks(self, user_id: str) -> List[Dict[str, Any]]:
        return self._get_by_user(user_id, "task")

    def get_projects(self, user_id: str) -> List[Dict[str, Any]]:
        return self._get_by_user(user_id, "project")

    def get_goals(self, user_id: str) -> List[Dict[str, Any]]:
        return self._get_by_user(user_id, "goal")

    def get_skills(self, user_id: str) -> List[Dict[str, Any]]:
        return self._get_by_user(user_id, "skill")

    def get_readings(self, user_id: str) -> List[Dict[str, Any]]:
        return self._get_by_user(user_id, "reading")

    def get_active_budgets(self, user_id: str) -> List[Dict[str, Any]]:
        budgets = self._get_by_user(user_id, "budget")
        return [b for b in budgets if b.get("isActive", True)]

    def get_recent_income(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Most recent income entries, newest first by their ``date`` field."""
        income = self._get_by_user(user_id, "income")
        income.sort(key=lambda i: str(i.get("date") or ""), reverse=True)
        return income[:limit]


# Singleton instance
_domain_record_source: Optional[DomainRecordSource] = None


def get_domain_record_source(db_path: Optional[str] = None) -> DomainRecordSource:
    """Get or create the domain record source singleton."""
    global _domain_record_source
    if _domain_record_source is None:
        _domain_record_source = DomainRecordSource(db_path)
    return _domain_record_source
