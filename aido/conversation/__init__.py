"""Conversation history with SQLite storage."""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from aido.config import get_config
from aido.exceptions import (
    ConcurrentUpdateError,
    ConversationNotFoundError,
    InvalidMessageError,
)
from aido.llm import Message, ToolCall
from aido.logging import get_logger

log = get_logger(__name__)

ROLES = ("system", "user", "assistant", "tool")


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat(timespec="microseconds")


@dataclass
class Conversation:
    """An ordered, append-only message history."""

    id: str
    messages: list[Message] = field(default_factory=list)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def recipe(self) -> str | None:
        return self.metadata.get("recipe")

    @property
    def allowed_tools(self) -> list[str] | None:
        """Allow-list last active in this conversation; None when never recorded."""
        tools = self.metadata.get("allowed_tools")
        return list(tools) if tools is not None else None

    def issued_tool_calls(self) -> list[ToolCall]:
        """Every tool call requested by assistant messages, in order."""
        return [call for msg in self.messages if msg.role == "assistant" for call in msg.tool_calls]

    def pending_tool_calls(self) -> list[ToolCall]:
        """Requested tool calls that have no tool message yet."""
        answered = {msg.tool_call_id for msg in self.messages if msg.role == "tool"}
        return [call for call in self.issued_tool_calls() if call.id not in answered]

    def check_append(self, message: Message) -> None:
        """Raise InvalidMessageError if `message` would break history invariants."""
        if message.role not in ROLES:
            raise InvalidMessageError(f"Unknown message role: {message.role!r}")

        if message.role == "tool":
            if not message.tool_call_id:
                raise InvalidMessageError("Tool message without tool_call_id")
            pending = {call.id for call in self.pending_tool_calls()}
            if message.tool_call_id not in pending:
                raise InvalidMessageError(
                    f"Tool message {message.tool_call_id!r} does not answer an open tool call"
                )
        elif message.tool_calls:
            if message.role != "assistant":
                raise InvalidMessageError("Only assistant messages may request tool calls")
            ids = [call.id for call in message.tool_calls]
            known = {call.id for call in self.issued_tool_calls()}
            if len(set(ids)) != len(ids) or known.intersection(ids):
                raise InvalidMessageError(f"Duplicate tool call id in {ids}")

    def append(self, message: Message) -> None:
        """Validate and append a message in memory."""
        self.check_append(message)
        self.messages.append(message)
        self.updated_at = _utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "messages": [msg.to_dict() for msg in self.messages],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Conversation":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            messages=[Message.from_dict(item) for item in data.get("messages", [])],
            created_at=data.get("created_at", _utcnow_iso()),
            updated_at=data.get("updated_at", _utcnow_iso()),
            metadata=data.get("metadata", {}),
        )


class ConversationStore:
    """Persists conversations in SQLite, one row per message.

    Appends never rewrite earlier rows. Each append runs in an immediate
    transaction that checks the stored sequence head, so two processes
    continuing the same conversation cannot silently drop each other's writes.
    """

    def __init__(self, db_path: Path | str | None = None):
        """Initialize conversation store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            config = get_config()
            self.db_path = Path(config.conversation.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None
        self._locks: dict[str, asyncio.Lock] = {}

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path), isolation_level=None, timeout=10.0)
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}'
                )
            """)
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                    seq INTEGER NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL DEFAULT '',
                    tool_call_id TEXT,
                    tool_name TEXT,
                    tool_calls TEXT NOT NULL DEFAULT '[]',
                    error TEXT,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (conversation_id, seq)
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_conversations_updated_at ON conversations(updated_at)"
            )
        return self._db

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    @staticmethod
    def _row_to_message(row: tuple[Any, ...]) -> Message:
        role, content, tool_call_id, tool_name, tool_calls, error, created_at = row
        return Message(
            role=role,
            content=content or "",
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            tool_calls=tuple(ToolCall.from_dict(item) for item in json.loads(tool_calls or "[]")),
            error=error,
            timestamp=created_at,
        )

    async def _load_messages(self, conversation_id: str) -> list[Message]:
        db = await self._ensure_db()
        async with db.execute(
            """
            SELECT role, content, tool_call_id, tool_name, tool_calls, error, created_at
            FROM messages
            WHERE conversation_id = ?
            ORDER BY seq
            """,
            (conversation_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_message(row) for row in rows]

    async def _conversation_from_row(self, row: tuple[Any, ...], with_messages: bool = True) -> Conversation:
        conversation = Conversation(
            id=row[0],
            created_at=row[1],
            updated_at=row[2],
            metadata=json.loads(row[3] or "{}"),
        )
        if with_messages:
            conversation.messages = await self._load_messages(conversation.id)
        return conversation

    async def create_conversation(self, metadata: dict[str, Any] | None = None) -> Conversation:
        """Create and persist an empty conversation."""
        db = await self._ensure_db()

        conversation = Conversation(id=str(uuid.uuid4()), metadata=dict(metadata or {}))
        await db.execute(
            "INSERT INTO conversations (id, created_at, updated_at, metadata) VALUES (?, ?, ?, ?)",
            (
                conversation.id,
                conversation.created_at,
                conversation.updated_at,
                json.dumps(conversation.metadata),
            ),
        )
        log.info("Created conversation", conversation_id=conversation.id)
        return conversation

    async def load_conversation(self, conversation_id: str) -> Conversation | None:
        """Get a conversation by ID.

        Returns:
            Conversation or None if not found
        """
        db = await self._ensure_db()
        async with db.execute(
            "SELECT id, created_at, updated_at, metadata FROM conversations WHERE id = ?",
            (conversation_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        return await self._conversation_from_row(row)

    async def load_latest(self) -> Conversation | None:
        """Load the most recently updated conversation, the continuation target."""
        db = await self._ensure_db()
        async with db.execute(
            """
            SELECT id, created_at, updated_at, metadata
            FROM conversations
            ORDER BY updated_at DESC, rowid DESC
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        return await self._conversation_from_row(row)

    async def list_conversations(self, limit: int = 10, with_messages: bool = False) -> list[Conversation]:
        """List recent conversations, newest first."""
        db = await self._ensure_db()
        async with db.execute(
            """
            SELECT id, created_at, updated_at, metadata
            FROM conversations
            ORDER BY updated_at DESC, rowid DESC
            LIMIT ?
            """,
            (limit,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [await self._conversation_from_row(row, with_messages=with_messages) for row in rows]

    async def append(self, conversation: Conversation, message: Message) -> None:
        """Persist one message at the end of a conversation.

        Raises:
            InvalidMessageError if the message breaks history invariants
            ConcurrentUpdateError if another writer appended first
            ConversationNotFoundError if the conversation was deleted
        """
        conversation.check_append(message)
        db = await self._ensure_db()
        seq = len(conversation.messages)

        async with self._lock_for(conversation.id):
            await db.execute("BEGIN IMMEDIATE")
            try:
                async with db.execute(
                    "SELECT COALESCE(MAX(seq), -1) FROM messages WHERE conversation_id = ?",
                    (conversation.id,),
                ) as cursor:
                    row = await cursor.fetchone()
                if row[0] != seq - 1:
                    raise ConcurrentUpdateError(conversation.id)

                await db.execute(
                    """
                    INSERT INTO messages
                        (conversation_id, seq, role, content, tool_call_id, tool_name, tool_calls, error, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        conversation.id,
                        seq,
                        message.role,
                        message.content,
                        message.tool_call_id,
                        message.tool_name,
                        json.dumps([call.to_dict() for call in message.tool_calls]),
                        message.error,
                        message.timestamp,
                    ),
                )
                updated_at = _utcnow_iso()
                cursor = await db.execute(
                    "UPDATE conversations SET updated_at = ? WHERE id = ?",
                    (updated_at, conversation.id),
                )
                if cursor.rowcount == 0:
                    raise ConversationNotFoundError(conversation.id)
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise

        conversation.append(message)
        conversation.updated_at = updated_at
        log.debug("Appended message", conversation_id=conversation.id, seq=seq, role=message.role)

    async def update_metadata(self, conversation: Conversation) -> None:
        """Persist the conversation's metadata (recipe, allow-list)."""
        db = await self._ensure_db()
        async with self._lock_for(conversation.id):
            conversation.updated_at = _utcnow_iso()
            cursor = await db.execute(
                "UPDATE conversations SET metadata = ?, updated_at = ? WHERE id = ?",
                (json.dumps(conversation.metadata), conversation.updated_at, conversation.id),
            )
        if cursor.rowcount == 0:
            raise ConversationNotFoundError(conversation.id)

    async def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation and its messages.

        Returns:
            True if deleted, False if not found
        """
        db = await self._ensure_db()
        await db.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
        cursor = await db.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        self._locks.pop(conversation_id, None)
        return cursor.rowcount > 0

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
