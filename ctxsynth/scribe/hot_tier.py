"""
Hot Tier

Short-lived "active context" store. Every capture lands here first; rows
expire after the configured TTL (36h by default) and are never returned once
expired.

Backed by aiosqlite. Filter columns (project, mode, client type, unix time)
are denormalized next to the JSON payload so project matching can be done
server-side as a case-insensitive substring match.
"""

import time
import logging
from typing import Any, Callable, List, Optional, Sequence

import aiosqlite

from ..common.errors import HotTierError
from ..common.schemas import CapturedEntry, ClientType

logger = logging.getLogger("ctxsynth.scribe.hot_tier")

DEFAULT_TTL_HOURS = 36.0

_SCHEMA = """
CREATE TABLE IF NOT EXISTS active_context (
    message_id TEXT NOT NULL PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    project TEXT,
    mode TEXT,
    client_type TEXT NOT NULL,
    ts REAL NOT NULL,
    expires_at REAL NOT NULL,
    linkage TEXT,
    payload TEXT NOT NULL
)
"""


def _like_pattern(value: str) -> str:
    """%value% with LIKE wildcards escaped"""
    escaped = value.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class HotTier:
    """
    Async hot-tier store.

    Usage:
        hot = HotTier("~/.ctxsynth/data/hot.db", ttl_hours=36)
        await hot.initialize()
        await hot.insert(entry)
        rows = await hot.fetch(limit=10, project_variants=["float/evna", "evna"])
        await hot.close()
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        ttl_hours: float = DEFAULT_TTL_HOURS,
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = str(db_path)
        self.ttl_seconds = ttl_hours * 3600.0
        self._clock = clock
        self.conn: Optional[aiosqlite.Connection] = None

    @property
    def is_initialized(self) -> bool:
        return self.conn is not None

    async def initialize(self) -> None:
        """Open the database and create the schema. Failure is fatal."""
        if self.conn is not None:
            return
        try:
            self.conn = await aiosqlite.connect(self.db_path)
            await self.conn.execute(_SCHEMA)
            await self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_active_ts ON active_context(ts DESC)"
            )
            await self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_active_conversation "
                "ON active_context(conversation_id)"
            )
            await self.conn.commit()
            logger.info("Hot tier initialized: %s (ttl=%.0fh)", self.db_path, self.ttl_seconds / 3600)
        except aiosqlite.Error as e:
            raise HotTierError(f"Cannot open hot tier at {self.db_path}: {e}") from e

    async def close(self) -> None:
        if self.conn is not None:
            await self.conn.close()
            self.conn = None

    def _require_conn(self, operation: str) -> aiosqlite.Connection:
        if self.conn is None:
            raise HotTierError(f"{operation}: hot tier not initialized")
        return self.conn

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert(self, entry: CapturedEntry) -> None:
        """
        Store a captured entry.

        Re-inserting the same message id refreshes payload and expiry but
        keeps any linkage already set.

        Raises:
            HotTierError: If the write does not complete
        """
        conn = self._require_conn("insert")
        now = self._clock()
        ctx = entry.metadata.ctx
        try:
            await conn.execute(
                """
                INSERT INTO active_context (
                    message_id, conversation_id, project, mode, client_type,
                    ts, expires_at, linkage, payload
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (message_id) DO UPDATE SET
                    project = excluded.project,
                    mode = excluded.mode,
                    client_type = excluded.client_type,
                    ts = excluded.ts,
                    expires_at = excluded.expires_at,
                    linkage = COALESCE(active_context.linkage, excluded.linkage),
                    payload = excluded.payload
                """,
                (
                    entry.message.id,
                    entry.conversation_id,
                    entry.metadata.project,
                    ctx.mode if ctx else None,
                    entry.client_type.value,
                    entry.timestamp.timestamp(),
                    now + self.ttl_seconds,
                    entry.linkage,
                    entry.model_dump_json(),
                ),
            )
            await conn.commit()
        except aiosqlite.Error as e:
            raise HotTierError(f"Hot-tier write failed for {entry.message.id}: {e}") from e

    async def set_linkage(self, message_id: str, durable_message_id: str) -> bool:
        """
        Link a hot entry to its durable mirror.

        Only rows without linkage are updated, so linkage transitions
        null -> set exactly once.

        Returns:
            True if a row was updated
        """
        conn = self._require_conn("set_linkage")
        try:
            cursor = await conn.execute(
                "UPDATE active_context SET linkage = ? "
                "WHERE message_id = ? AND linkage IS NULL",
                (durable_message_id, message_id),
            )
            await conn.commit()
            return cursor.rowcount > 0
        except aiosqlite.Error as e:
            raise HotTierError(f"Linkage update failed for {message_id}: {e}") from e

    async def purge_expired(self) -> int:
        """Delete expired rows; returns how many were removed"""
        conn = self._require_conn("purge_expired")
        try:
            cursor = await conn.execute(
                "DELETE FROM active_context WHERE expires_at <= ?", (self._clock(),)
            )
            await conn.commit()
        except aiosqlite.Error as e:
            raise HotTierError(f"Purge failed: {e}") from e
        if cursor.rowcount:
            logger.debug("Purged %d expired hot-tier entries", cursor.rowcount)
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, message_id: str) -> Optional[CapturedEntry]:
        """Fetch one unexpired entry by message id"""
        conn = self._require_conn("get")
        try:
            async with conn.execute(
                "SELECT payload, linkage FROM active_context "
                "WHERE message_id = ? AND expires_at > ?",
                (message_id, self._clock()),
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise HotTierError(f"Hot-tier read failed: {e}") from e
        return self._row_to_entry(row) if row else None

    async def fetch(
        self,
        limit: int,
        project_variants: Optional[Sequence[str]] = None,
        since: Optional[float] = None,
        client_type: Optional[ClientType] = None,
        mode: Optional[str] = None,
    ) -> List[CapturedEntry]:
        """
        Fetch unexpired entries, newest first.

        Args:
            limit: Maximum rows
            project_variants: OR-matched as case-insensitive substrings of the
                stored project
            since: Unix seconds; older entries are skipped
            client_type: Restrict to one client
            mode: Case-insensitive substring of the ctx:: mode
        """
        conn = self._require_conn("fetch")

        where_parts = ["expires_at > ?"]
        params: List[Any] = [self._clock()]

        variants = [v for v in (project_variants or []) if v and v.strip()]
        if variants:
            where_parts.append(
                "(" + " OR ".join("LOWER(project) LIKE ? ESCAPE '\\'" for _ in variants) + ")"
            )
            params.extend(_like_pattern(v.strip()) for v in variants)

        if since is not None:
            where_parts.append("ts >= ?")
            params.append(since)

        if client_type is not None:
            where_parts.append("client_type = ?")
            params.append(ClientType(client_type).value)

        if mode:
            where_parts.append("LOWER(mode) LIKE ? ESCAPE '\\'")
            params.append(_like_pattern(mode.strip()))

        query = f"""
            SELECT payload, linkage
            FROM active_context
            WHERE {" AND ".join(where_parts)}
            ORDER BY ts DESC
            LIMIT ?
        """
        params.append(max(int(limit), 0))

        try:
            async with conn.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise HotTierError(f"Hot-tier query failed: {e}") from e

        return [self._row_to_entry(row) for row in rows]

    @staticmethod
    def _row_to_entry(row: Sequence[Any]) -> CapturedEntry:
        entry = CapturedEntry.model_validate_json(row[0])
        # linkage is updated in place after insert; the column is authoritative
        entry.linkage = row[1]
        return entry
