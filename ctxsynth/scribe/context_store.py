"""
Context Store

Dual-write capture over the hot tier (record of truth for capture) and the
durable store (best-effort mirror).

capture():
1. hot-tier insert - must succeed, HotTierError propagates
2. durable mirror - get-or-create conversation, append message
3. linkage - hot entry is linked to the durable message id
Failures in 2-3 are logged and returned as MirrorResult(ok=False), never
raised.
"""

import re
import time
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from ..common.aliases import AliasResolver
from ..common.schemas import CapturedEntry, ClientType, RawMessage, Role
from ..common.text import smart_truncate
from .annotation_parser import AnnotationParser
from .durable_store import DurableStore
from .hot_tier import HotTier

logger = logging.getLogger("ctxsynth.scribe.context_store")

DEFAULT_STREAM_TRUNCATE = 1200

CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```")
FILE_PATH_RE = re.compile(r"/[\w/-]+\.\w+")
SHELL_COMMAND_RE = re.compile(r"\b(?:cargo|npm|git|bash|cd|ls|grep)\s+", re.IGNORECASE)


def detect_client_type(text: str) -> ClientType:
    """Heuristic: code blocks, file paths or shell commands mean the code client"""
    if CODE_BLOCK_RE.search(text) or FILE_PATH_RE.search(text) or SHELL_COMMAND_RE.search(text):
        return ClientType.CODE
    return ClientType.DESKTOP


def generate_message_id() -> str:
    return f"msg_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass
class ContextQuery:
    """Hot-tier query filter"""
    limit: int = 10
    project: Optional[str] = None  # comma-separated; each part alias-expanded
    since: Optional[datetime] = None
    client_type: Optional[ClientType] = None
    exclude_conversation_id: Optional[str] = None
    personas: Optional[List[str]] = None  # any-of
    mode: Optional[str] = None


@dataclass
class MirrorResult:
    """Outcome of the durable mirror step"""
    ok: bool
    conversation_id: Optional[str] = None
    durable_message_id: Optional[str] = None
    linked: bool = False
    error: Optional[str] = None


@dataclass
class CaptureResult:
    entry: CapturedEntry
    mirror: MirrorResult


@dataclass
class _Session:
    conversation_id: Optional[str] = None
    client_type: ClientType = ClientType.DESKTOP


class ContextStore:
    """
    Capture and query primitives over both storage tiers.

    Usage:
        store = ContextStore(hot, durable, parser, aliases)
        result = await store.capture_message("conv-1", Role.USER, "ctx::... [project::evna]")
        entries = await store.query(ContextQuery(limit=5, project="evna"))
    """

    def __init__(
        self,
        hot: HotTier,
        durable: Optional[DurableStore] = None,
        parser: Optional[AnnotationParser] = None,
        aliases: Optional[AliasResolver] = None,
        stream_truncate: int = DEFAULT_STREAM_TRUNCATE,
    ):
        self._hot = hot
        self._durable = durable
        self._aliases = aliases or AliasResolver()
        self._parser = parser or AnnotationParser(self._aliases)
        self._stream_truncate = stream_truncate
        self._session = _Session()

    @property
    def hot(self) -> HotTier:
        return self._hot

    @property
    def durable(self) -> Optional[DurableStore]:
        return self._durable

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def capture(self, entry: CapturedEntry) -> MirrorResult:
        """
        Write entry to the hot tier, then mirror it to the durable store.

        Raises:
            HotTierError: If the hot-tier write fails (nothing is mirrored)
        """
        await self._hot.insert(entry)

        if self._durable is None:
            return MirrorResult(ok=False, error="durable store not configured")

        # Re-capture of a mirrored message: the upsert kept its linkage
        stored = await self._hot.get(entry.message.id)
        if stored is not None and stored.linkage:
            if entry.linkage is None:
                entry.link(stored.linkage)
            logger.debug("Message %s already mirrored as %s", entry.message.id, stored.linkage)
            return MirrorResult(ok=True, durable_message_id=stored.linkage, linked=True)

        return await self._mirror(entry)

    async def _mirror(self, entry: CapturedEntry) -> MirrorResult:
        conversation_id = None
        durable_message_id = None
        try:
            conversation = await self._durable.get_or_create_conversation(entry.conversation_id)
            conversation_id = conversation.id

            durable_message = await self._durable.append_message(
                conversation.id,
                role=entry.message.role,
                content=entry.message.text,
                timestamp=entry.timestamp,
                project=entry.metadata.project,
                markers=entry.metadata.personas,
            )
            durable_message_id = durable_message.id

            linked = await self._hot.set_linkage(entry.message.id, durable_message.id)
            if linked:
                entry.link(durable_message.id)
        except Exception as e:
            logger.error(
                "Durable mirror failed for %s (hot-tier copy kept): %s",
                entry.message.id, e, exc_info=True,
            )
            return MirrorResult(
                ok=False,
                conversation_id=conversation_id,
                durable_message_id=durable_message_id,
                error=str(e),
            )

        return MirrorResult(
            ok=True,
            conversation_id=conversation_id,
            durable_message_id=durable_message_id,
            linked=linked,
        )

    async def capture_message(
        self,
        conversation_id: str,
        role: Role,
        text: str,
        client_type: Optional[ClientType] = None,
        message_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> CaptureResult:
        """Build a CapturedEntry from raw text (annotations parsed here) and capture it"""
        message = RawMessage(
            id=message_id or generate_message_id(),
            conversation_id=conversation_id,
            role=Role(role),
            text=text,
            timestamp=timestamp or datetime.now(timezone.utc),
            client_type=client_type,
        )
        entry = CapturedEntry(
            message=message,
            metadata=self._parser.extract_metadata(text),
            client_type=client_type or detect_client_type(text),
        )
        mirror = await self.capture(entry)
        return CaptureResult(entry=entry, mirror=mirror)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def project_variants(self, project: Optional[str]) -> List[str]:
        """Comma-split project filter, every part expanded through the alias table"""
        if not project:
            return []
        variants: List[str] = []
        for part in project.split(","):
            part = part.strip()
            if not part:
                continue
            for variant in self._aliases.expand(part):
                if variant not in variants:
                    variants.append(variant)
        return variants

    async def query(self, query: ContextQuery) -> List[CapturedEntry]:
        """
        Newest-first hot-tier entries matching the filter.

        Project filtering is a substring match over every alias variant.
        Conversation exclusion and persona filtering are applied after the
        fetch; limit is applied last.
        """
        if query.limit <= 0:
            return []

        post_filtering = bool(query.exclude_conversation_id or query.personas)
        fetch_limit = query.limit * 2 if post_filtering else query.limit

        entries = await self._hot.fetch(
            limit=fetch_limit,
            project_variants=self.project_variants(query.project),
            since=query.since.timestamp() if query.since else None,
            client_type=query.client_type,
            mode=query.mode,
        )

        if query.exclude_conversation_id:
            entries = [e for e in entries if e.conversation_id != query.exclude_conversation_id]

        if query.personas:
            wanted = {p.lower() for p in query.personas}
            entries = [
                e for e in entries
                if any(p.lower() in wanted for p in e.metadata.personas)
            ]

        return entries[:query.limit]

    def set_session(self, conversation_id: str, client_type: ClientType) -> None:
        """Record the active conversation and client for client-aware queries"""
        self._session = _Session(conversation_id=conversation_id, client_type=ClientType(client_type))

    async def get_client_aware_context(
        self,
        is_first_message: bool,
        project: Optional[str] = None,
        limit: int = 10,
    ) -> List[CapturedEntry]:
        """
        First message: everything relevant, no client filter.
        Later messages: the other client's context, minus this conversation.
        """
        if is_first_message:
            return await self.query(ContextQuery(limit=limit, project=project))

        return await self.query(ContextQuery(
            limit=limit,
            project=project,
            client_type=self._session.client_type.other,
            exclude_conversation_id=self._session.conversation_id,
        ))

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def format_context(self, entries: Sequence[CapturedEntry]) -> str:
        """Markdown listing of captured entries"""
        if not entries:
            return "**No active context found**"

        lines = [f"## Active Context Stream ({len(entries)} messages)\n"]
        for idx, entry in enumerate(entries, 1):
            client_tag = "[code]" if entry.client_type is ClientType.CODE else "[desktop]"
            role_tag = "[user]" if entry.message.role is Role.USER else "[assistant]"
            stamp = entry.timestamp.strftime("%Y-%m-%d %H:%M")
            lines.append(f"### {idx}. {client_tag} {role_tag} {stamp}")

            metadata = entry.metadata
            if metadata.project:
                lines.append(f"**Project**: {metadata.project}")
            if metadata.personas:
                lines.append(f"**Personas**: {', '.join(metadata.personas)}")
            if metadata.ctx and metadata.ctx.mode:
                lines.append(f"**Mode**: {metadata.ctx.mode}")

            preview = smart_truncate(entry.message.text, self._stream_truncate, show_ratio=True)
            lines.append(f"\n{preview}\n")

            if metadata.highlights:
                lines.append(f"**Highlights**: {'; '.join(metadata.highlights)}")
            lines.append("---\n")

        return "\n".join(lines)
