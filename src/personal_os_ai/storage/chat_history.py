"""SQLite-backed chat history.

A chat history record groups the conversations a user has had about one
project. Each conversation (identified by its session id) holds an
append-only list of messages. Token counts and cost live on the messages;
totals are derived when stats are requested.
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..exceptions import ConversationNotFoundError, DatabaseError, ValidationError


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


VALID_ROLES = ("system", "user", "assistant")


@dataclass
class ChatMessage:
    """A single stored chat message."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    role: str = "user"
    content: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def cost(self) -> float:
        return float(self.metadata.get("cost") or 0.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "tokens": {"input": self.input_tokens, "output": self.output_tokens},
            "model": self.model,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class Conversation:
    """A chat session inside a chat history record."""
    session_id: str
    chat_history_id: str
    status: str = "active"
    tags: List[str] = field(default_factory=list)
    summary: str = ""
    started_at: datetime = field(default_factory=_utcnow)
    last_activity: datetime = field(default_factory=_utcnow)
    messages: List[ChatMessage] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "status": self.status,
            "tags": self.tags,
            "summary": self.summary,
            "startedAt": self.started_at.isoformat(),
            "lastActivity": self.last_activity.isoformat(),
            "messages": [m.to_dict() for m in self.messages],
        }


@dataclass
class ChatHistoryRecord:
    """Per-(user, project) container of conversations."""
    id: str
    user_id: str
    project_id: str
    title: str
    description: str = ""
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


class ChatHistoryRepository:
    """
    SQLite-backed repository for project chat histories.

    Mirrors the operations the chat gateway needs: create-or-get a project
    chat, start conversations, append messages, store a rolling summary
    and compute usage stats.
    """

    CREATE_TABLES_SQL = """
    CREATE TABLE IF NOT EXISTS chat_histories (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        project_id TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT DEFAULT '',
        created_at TEXT NOT NULL,
        UNIQUE(user_id, project_id)
    );

    CREATE TABLE IF NOT EXISTS chat_conversations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        chat_history_id TEXT NOT NULL REFERENCES chat_histories(id),
        session_id TEXT NOT NULL,
        status TEXT DEFAULT 'active',
        tags TEXT DEFAULT '[]',
        summary TEXT DEFAULT '',
        started_at TEXT NOT NULL,
        last_activity TEXT NOT NULL,
        UNIQUE(chat_history_id, session_id)
    );

    CREATE TABLE IF NOT EXISTS chat_messages (
        id TEXT PRIMARY KEY,
        conversation_id INTEGER NOT NULL REFERENCES chat_conversations(id),
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        input_tokens INTEGER DEFAULT 0,
        output_tokens INTEGER DEFAULT 0,
        model TEXT DEFAULT '',
        metadata TEXT DEFAULT '{}',
        timestamp TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_chat_histories_user ON chat_histories(user_id);
    CREATE INDEX IF NOT EXISTS idx_chat_messages_conversation ON chat_messages(conversation_id, timestamp);
    """

    def __init__(self, db_path: Optional[str] = None):
        if db_path:
            self.db_path = Path(db_path)
        else:
            from ..config import get_settings
            self.db_path = Path(get_settings().database_path)

        self._ensure_tables_exist()

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
            logger.error(f"Chat history query failed: {e}")
            raise DatabaseError(f"Chat history operation failed: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _ensure_tables_exist(self) -> None:
        with self._get_connection() as conn:
            conn.executescript(self.CREATE_TABLES_SQL)

    # ------------------------------------------------------------------
    # Chat history records
    # ------------------------------------------------------------------

    def create_or_get_project_chat(
        self,
        user_id: str,
        project_id: str,
        title: str = "AI Chat for Project",
        description: str = "",
    ) -> ChatHistoryRecord:
        """Return the user's chat record for a project, creating it if needed."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO chat_histories
                (id, user_id, project_id, title, description, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    user_id,
                    project_id,
                    title,
                    description,
                    _utcnow().isoformat(),
                ),
            )
            row = conn.execute(
                "SELECT * FROM chat_histories WHERE user_id = ? AND project_id = ?",
                (user_id, project_id),
            ).fetchone()
            return self._row_to_record(row)

    def get_by_project(self, user_id: str, project_id: str) -> Optional[ChatHistoryRecord]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM chat_histories WHERE user_id = ? AND project_id = ?",
                (user_id, project_id),
            ).fetchone()
            return self._row_to_record(row) if row else None

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def start_new_conversation(
        self,
        chat_history_id: str,
        session_id: str,
        tags: Optional[List[str]] = None,
    ) -> Conversation:
        now = _utcnow()
        normalized_tags = [t.strip().lower() for t in (tags or []) if t.strip()]
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO chat_conversations
                (chat_history_id, session_id, status, tags, summary, started_at, last_activity)
                VALUES (?, ?, 'active', ?, '', ?, ?)
                """,
                (
                    chat_history_id,
                    session_id,
                    json.dumps(normalized_tags),
                    now.isoformat(),
                    now.isoformat(),
                ),
            )
        logger.info(f"Started conversation {session_id} in chat history {chat_history_id}")
        return Conversation(
            session_id=session_id,
            chat_history_id=chat_history_id,
            tags=normalized_tags,
            started_at=now,
            last_activity=now,
        )

    def ensure_conversation(self, chat_history_id: str, session_id: str) -> Conversation:
        """Return the conversation, starting it when the session is new."""
        conversation = self.get_conversation(chat_history_id, session_id)
        if conversation is None:
            conversation = self.start_new_conversation(chat_history_id, session_id)
        return conversation

    def get_conversation(self, chat_history_id: str, session_id: str) -> Optional[Conversation]:
        """Fetch a conversation with its messages ordered oldest first."""
        with self._get_connection() as conn:
            row = self._conversation_row(conn, chat_history_id, session_id)
            if row is None:
                return None
            return self._load_conversation(conn, row)

    def list_conversations(self, chat_history_id: str) -> List[Conversation]:
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM chat_conversations
                WHERE chat_history_id = ?
                ORDER BY last_activity DESC
                """,
                (chat_history_id,),
            ).fetchall()
            return [self._load_conversation(conn, row) for row in rows]

    def add_message(
        self,
        chat_history_id: str,
        session_id: str,
        role: str,
        content: str,
        input_tokens: int = 0,
        output_tokens: int = 0,
        model: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage:
        """
        Append a message to a conversation.

        Raises:
            ValidationError: If the role is not system/user/assistant.
            ConversationNotFoundError: If the session is not part of the record.
        """
        if role not in VALID_ROLES:
            raise ValidationError(f"Invalid message role: {role}", field="role")

        message = ChatMessage(
            role=role,
            content=content,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=model,
            metadata=metadata or {},
        )
        with self._get_connection() as conn:
            row = self._conversation_row(conn, chat_history_id, session_id)
            if row is None:
                raise ConversationNotFoundError(session_id)

            conn.execute(
                """
                INSERT INTO chat_messages
                (id, conversation_id, role, content, input_tokens, output_tokens,
                 model, metadata, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    row["id"],
                    message.role,
                    message.content,
                    message.input_tokens,
                    message.output_tokens,
                    message.model,
                    json.dumps(message.metadata, default=str),
                    message.timestamp.isoformat(),
                ),
            )
            conn.execute(
                "UPDATE chat_conversations SET last_activity = ? WHERE id = ?",
                (message.timestamp.isoformat(), row["id"]),
            )
        return message

    def update_conversation_summary(
        self,
        chat_history_id: str,
        session_id: str,
        summary: str,
    ) -> None:
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE chat_conversations SET summary = ?
                WHERE chat_history_id = ? AND session_id = ?
                """,
                (summary, chat_history_id, session_id),
            )
            if cursor.rowcount == 0:
                raise ConversationNotFoundError(session_id)

    def get_conversation_stats(self, chat_history_id: str) -> Dict[str, Any]:
        """Totals across every conversation of a chat history record."""
        with self._get_connection() as conn:
            conversations = conn.execute(
                "SELECT COUNT(*) AS n FROM chat_conversations WHERE chat_history_id = ?",
                (chat_history_id,),
            ).fetchone()["n"]
            rows = conn.execute(
                """
                SELECT m.input_tokens, m.output_tokens, m.metadata
                FROM chat_messages m
                JOIN chat_conversations c ON c.id = m.conversation_id
                WHERE c.chat_history_id = ?
                """,
                (chat_history_id,),
            ).fetchall()

        total_messages = len(rows)
        total_tokens = sum(r["input_tokens"] + r["output_tokens"] for r in rows)
        total_cost = sum(float(json.loads(r["metadata"] or "{}").get("cost") or 0) for r in rows)

        return {
            "totalConversations": conversations,
            "totalMessages": total_messages,
            "totalTokens": total_tokens,
            "totalCost": total_cost,
            "avgTokensPerMessage": round(total_tokens / total_messages) if total_messages else 0,
        }

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _conversation_row(
        self,
        conn: sqlite3.Connection,
        chat_history_id: str,
        session_id: str,
    ) -> Optional[sqlite3.Row]:
        return conn.execute(
            """
            SELECT * FROM chat_conversations
            WHERE chat_history_id = ? AND session_id = ?
            """,
            (chat_history_id, session_id),
        ).fetchone()

    def _load_conversation(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Conversation:
        message_rows = conn.execute(
            """
            SELECT * FROM chat_messages
            WHERE conversation_id = ?
            ORDER BY timestamp, rowid
            """,
            (row["id"],),
        ).fetchall()
        return Conversation(
            session_id=row["session_id"],
            chat_history_id=row["chat_history_id"],
            status=row["status"],
            tags=json.loads(row["tags"] or "[]"),
            summary=row["summary"] or "",
            started_at=datetime.fromisoformat(row["started_at"]),
            last_activity=datetime.fromisoformat(row["last_activity"]),
            messages=[self._row_to_message(m) for m in message_rows],
        )

    def _row_to_message(self, row: sqlite3.Row) -> ChatMessage:
        return ChatMessage(
            id=row["id"],
            role=row["role"],
            content=row["content"],
            input_tokens=row["input_tokens"] or 0,
            output_tokens=row["output_tokens"] or 0,
            model=row["model"] or "",
            metadata=json.loads(row["metadata"] or "{}"),
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )

    def _row_to_record(self, row: sqlite3.Row) -> ChatHistoryRecord:
        return ChatHistoryRecord(
            id=row["id"],
            user_id=row["user_id"],
            project_id=row["project_id"],
            title=row["title"],
            description=row["description"] or "",
            created_at=datetime.fromisoformat(row["created_at"]),
        )


# Singleton instance
_chat_history_repository: Optional[ChatHistoryRepository] = None


def get_chat_history_repository(db_path: Optional[str] = None) -> ChatHistoryRepository:
    """Get or create the chat history repository singleton."""
    global _chat_history_repository
    if _chat_history_repository is None:
        _chat_history_repository = ChatHistoryRepository(db_path)
    return _chat_history_repository
