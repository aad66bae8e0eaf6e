"""
Capture Schemas

Raw messages, the metadata derived from their annotations, and the two
storage-tier shapes (hot CapturedEntry, durable Conversation/DurableMessage).

Core principle: metadata is a pure function of the message text and the
alias table; it is never persisted on its own.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# Enums
# ============================================================================

class ClientType(str, Enum):
    """Where a message was captured from (exactly two exist)"""
    DESKTOP = "desktop"
    CODE = "code"

    @property
    def other(self) -> "ClientType":
        return ClientType.CODE if self is ClientType.DESKTOP else ClientType.DESKTOP


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


# ============================================================================
# Metadata
# ============================================================================

class CtxInfo(BaseModel):
    """Parsed ctx:: annotation"""
    date: Optional[str] = None
    time: Optional[str] = None
    mode: Optional[str] = None
    timestamp: Optional[str] = None  # "date time" or just date
    metadata: Optional[str] = None   # first free bracketed segment after " - "


class TemporalInfo(BaseModel):
    """First ISO-8601 timestamp found anywhere in the text"""
    extracted_timestamp: Optional[str] = None
    unix_timestamp: Optional[int] = None  # milliseconds


class MessageMetadata(BaseModel):
    """Structured metadata extracted from inline annotations"""
    ctx: Optional[CtxInfo] = None
    project: Optional[str] = None
    issue: Optional[str] = None
    personas: List[str] = Field(default_factory=list)
    connections: List[str] = Field(default_factory=list)
    highlights: List[str] = Field(default_factory=list)
    patterns: List[str] = Field(default_factory=list)
    commands: List[str] = Field(default_factory=list)
    temporal: TemporalInfo = Field(default_factory=TemporalInfo)


# ============================================================================
# Hot tier
# ============================================================================

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RawMessage(BaseModel):
    """A captured message as received. Immutable."""
    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    role: Role
    text: str
    timestamp: datetime = Field(default_factory=_utcnow)
    client_type: Optional[ClientType] = None

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # naive timestamps are UTC
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class CapturedEntry(BaseModel):
    """Hot-tier unit: message + derived metadata + durable linkage"""
    message: RawMessage
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)
    client_type: ClientType = ClientType.DESKTOP
    linkage: Optional[str] = None  # DurableMessage.id once mirrored

    @property
    def conversation_id(self) -> str:
        return self.message.conversation_id

    @property
    def timestamp(self) -> datetime:
        return self.message.timestamp

    @property
    def is_linked(self) -> bool:
        return self.linkage is not None

    def link(self, durable_message_id: str) -> None:
        """Set linkage once. Re-linking to a different message is an error."""
        if self.linkage is None:
            self.linkage = durable_message_id
        elif self.linkage != durable_message_id:
            raise ValueError(
                f"Entry {self.message.id} already linked to {self.linkage}"
            )


# ============================================================================
# Durable tier
# ============================================================================

class Conversation(BaseModel):
    """Durable conversation, keyed by its external id"""
    id: str
    external_conversation_id: str
    title: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    markers: List[str] = Field(default_factory=list)


class DurableMessage(BaseModel):
    """Append-only durable message; idx strictly increases per conversation"""
    id: str
    conversation_id: str
    idx: int = Field(ge=0)
    role: Role
    timestamp: datetime
    content: str
    project: Optional[str] = None
    meeting: Optional[str] = None
    markers: List[str] = Field(default_factory=list)
    external_conversation_id: Optional[str] = None  # set by recent_messages
