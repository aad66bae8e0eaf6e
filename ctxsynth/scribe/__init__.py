"""
Scribe - Context Capture

Turns raw messages into annotated entries and stores them in two tiers.

Key Components:
- AnnotationParser: type::value annotations -> MessageMetadata
- HotTier: short-lived active context (record of truth for capture)
- DurableStore: long-term conversations and messages (best-effort mirror)
- ContextStore: dual-write capture and client-aware queries

Capture rules:
1. Annotation syntax never rejects a message
2. The hot-tier write must succeed; the durable mirror may fail
3. Linkage is set once, after the mirror succeeds
"""

from .annotation_parser import AnnotationParser, Annotation
from .hot_tier import HotTier
from .durable_store import DurableStore
from .context_store import (
    ContextStore,
    ContextQuery,
    MirrorResult,
    CaptureResult,
    detect_client_type,
)

__all__ = [
    "AnnotationParser",
    "Annotation",
    "HotTier",
    "DurableStore",
    "ContextStore",
    "ContextQuery",
    "MirrorResult",
    "CaptureResult",
    "detect_client_type",
]
