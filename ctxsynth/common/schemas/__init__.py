"""
ctxsynth Schemas

Capture-side message models and retrieval-side candidate models.
"""

from .messages import (
    ClientType,
    Role,
    CtxInfo,
    TemporalInfo,
    MessageMetadata,
    RawMessage,
    CapturedEntry,
    Conversation,
    DurableMessage,
)
from .candidates import Candidate, CandidateMetadata, RankedResult

__all__ = [
    "ClientType",
    "Role",
    "CtxInfo",
    "TemporalInfo",
    "MessageMetadata",
    "RawMessage",
    "CapturedEntry",
    "Conversation",
    "DurableMessage",
    "Candidate",
    "CandidateMetadata",
    "RankedResult",
]
