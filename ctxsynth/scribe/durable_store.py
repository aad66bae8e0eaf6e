"""
Durable Store

Long-term conversation/message store the hot tier mirrors into.

- Conversations are get-or-create by their external conversation id.
- Messages are append-only; idx is contiguous and strictly increasing per
  conversation, starting at 0.

Backed by aiosqlite, in its own database file so durable-tier health never
affects the hot tier.
"""

import json
import uuid
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence

import aiosqlite

from ..common.errors import DurableStoreError
from ..common.schemas import Conversation, DurableMessage, Role

logger = logging.getLogger("ctxsynth.scribe.durable_store")

_CONVERSATIONS_SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT NOT NULL PRIMARY KEY,
    external_id TEXT NOT NULL UNIQUE,
    title TEXT,
    created_at TEXT NOT NULL,
    markers TEXT
)
"""

_MESSAGES_SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    id TEXT NOT NULL PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id),
    idx INTEGER NOT NULL,
    role TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    ts REAL NOT NULL,
    content TEXT NOT NULL,
    project TEXT,
    meeting TEXT,
    markers TEXT,
    UNIQUE (conversation_id, idx)
)
"""


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class DurableStore:
    """
    Async durable store.

    Usage:
        store = DurableStore("~/.ctxsynth/data/durable.db")
        await store.initialize()
        conv = await store.get_or_create_conversation("conv-abc")
        msg = await store.append_message(conv.id, Role.USER, "hello")
        await store.close()
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = str(db_path)
        self.conn: Optional[aiosqlite.Connection] = None

    async def initialize(self) -> None:
        if self.conn is not None:
            return
        try:
            self.conn = await aiosqlite.connect(self.db_path)
            await self.conn.execute("PRAGMA foreign_keys = ON")
            await self.conn.execute(_CONVERSATIONS_SCHEMA)
            await self.conn.execute(_MESSAGES_SCHEMA)
            await self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_ts ON messages(ts DESC)"
            )
            await self.conn.commit()
            logger.info("Durable store initialized: %s", self.db_path)
        except aiosqlite.Error as e:
            raise DurableStoreError(f"Cannot open durable store at {self.db_path}: {e}") from e

    async def close(self) -> None:
        if self.conn is not None:
            await self.conn.close()
            self.conn = None

    def _require_conn(self, operation: str) -> aiosqlite.Connection:
        if self.conn is None:
            raise DurableStoreError(f"{operation}: durable store not initialized")
        return self.conn

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def get_or_create_conversation(
        self,
        external_conversation_id: str,
        title: Optional[str] = None,
    ) -> Conversation:
        """Idempotent: repeated calls with the same external id return one row"""
        conn = self._require_conn("get_or_create_conversation")
        try:
            existing = await self._select_conversation(conn, external_conversation_id)
            if existing is not None:
                return existing

            await conn.execute(
                """
                INSERT INTO conversations (id, external_id, title, created_at, markers)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (external_id) DO NOTHING
                """,
                (
                    _new_id("conv"),
                    external_conversation_id,
                    title,
                    datetime.now(timezone.utc).isoformat(),
                    json.dumps([]),
                ),
            )
            await conn.commit()
            created = await self._select_conversation(conn, external_conversation_id)
        except aiosqlite.Error as e:
            raise DurableStoreError(
                f"get_or_create_conversation failed for {external_conversation_id}: {e}"
            ) from e

        if created is None:
            raise DurableStoreError(f"Conversation {external_conversation_id} vanished after insert")
        logger.debug("Created conversation %s for %s", created.id, external_conversation_id)
        return created

    async def get_conversation(self, external_conversation_id: str) -> Optional[Conversation]:
        conn = self._require_conn("get_conversation")
        try:
            return await self._select_conversation(conn, external_conversation_id)
        except aiosqlite.Error as e:
            raise DurableStoreError(f"get_conversation failed: {e}") from e

    @staticmethod
    async def _select_conversation(
        conn: aiosqlite.Connection, external_conversation_id: str
    ) -> Optional[Conversation]:
        async with conn.execute(
            "SELECT id, external_id, title, created_at, markers "
            "FROM conversations WHERE external_id = ?",
            (external_conversation_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return Conversation(
            id=row[0],
            external_conversation_id=row[1],
            title=row[2],
            created_at=datetime.fromisoformat(row[3]),
            markers=json.loads(row[4]) if row[4] else [],
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def append_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        timestamp: Optional[datetime] = None,
        project: Optional[str] = None,
        meeting: Optional[str] = None,
        markers: Sequence[str] = (),
    ) -> DurableMessage:
        """
        Append a message at the next idx of its conversation.

        Raises:
            DurableStoreError: If the conversation is unknown or the write fails
        """
        conn = self._require_conn("append_message")
        timestamp = timestamp or datetime.now(timezone.utc)
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)

        try:
            async with conn.execute(
                "SELECT COALESCE(MAX(idx) + 1, 0) FROM messages WHERE conversation_id = ?",
                (conversation_id,),
            ) as cursor:
                row = await cursor.fetchone()
            next_idx = int(row[0])

            message = DurableMessage(
                id=_new_id("msg"),
                conversation_id=conversation_id,
                idx=next_idx,
                role=Role(role),
                timestamp=timestamp,
                content=content,
                project=project,
                meeting=meeting,
                markers=list(markers),
            )
            await conn.execute(
                """
                INSERT INTO messages (
                    id, conversation_id, idx, role, timestamp, ts,
                    content, project, meeting, markers
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    message.conversation_id,
                    message.idx,
                    message.role.value,
                    message.timestamp.isoformat(),
                    message.timestamp.timestamp(),
                    message.content,
                    message.project,
                    message.meeting,
                    json.dumps(message.markers),
                ),
            )
            await conn.commit()
        except aiosqlite.Error as e:
            raise DurableStoreError(f"append_message failed for {conversation_id}: {e}") from e

        return message

    async def get_conversation_messages(
        self,
        conversation_id: str,
        limit: Optional[int] = None,
    ) -> List[DurableMessage]:
        """Messages of one conversation in idx order"""
        conn = self._require_conn("get_conversation_messages")
        query = f"SELECT {self._MESSAGE_COLUMNS} FROM messages WHERE conversation_id = ? ORDER BY idx ASC"
        params: List[Any] = [conversation_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        try:
            async with conn.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise DurableStoreError(f"get_conversation_messages failed: {e}") from e
        return [self._row_to_message(row) for row in rows]

    async def recent_messages(
        self,
        limit: int = 20,
        project_variants: Optional[Sequence[str]] = None,
        since: Optional[float] = None,
    ) -> List[DurableMessage]:
        """
        Newest messages across all conversations, each carrying the
        external id of its conversation.

        Args:
            limit: Maximum rows
            project_variants: Optional case-insensitive substring OR-filter
            since: Unix seconds lower bound
        """
        conn = self._require_conn("recent_messages")
        where_parts: List[str] = []
        params: List[Any] = []

        variants = [v.strip().lower() for v in (project_variants or []) if v and v.strip()]
        if variants:
            where_parts.append(
                "(" + " OR ".join("INSTR(LOWER(m.project), ?) > 0" for _ in variants) + ")"
            )
            params.extend(variants)

        if since is not None:
            where_parts.append("m.ts >= ?")
            params.append(since)

        columns = ", ".join(f"m.{c.strip()}" for c in self._MESSAGE_COLUMNS.split(","))
        where_clause = f"WHERE {' AND '.join(where_parts)}" if where_parts else ""
        query = f"""
            SELECT {columns}, c.external_id
            FROM messages m
            LEFT JOIN conversations c ON c.id = m.conversation_id
            {where_clause}
            ORDER BY m.ts DESC
            LIMIT ?
        """
        params.append(max(int(limit), 0))

        try:
            async with conn.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise DurableStoreError(f"recent_messages failed: {e}") from e
        return [self._row_to_message(row) for row in rows]

    _MESSAGE_COLUMNS = "id, conversation_id, idx, role, timestamp, content, project, meeting, markers"

    @staticmethod
    def _row_to_message(row: Sequence[Any]) -> DurableMessage:
        return DurableMessage(
            id=row[0],
            conversation_id=row[1],
            idx=row[2],
            role=Role(row[3]),
            timestamp=datetime.fromisoformat(row[4]),
            content=row[5],
            project=row[6],
            meeting=row[7],
            markers=json.loads(row[8]) if row[8] else [],
            external_conversation_id=row[9] if len(row) > 9 else None,
        )
