"""
ctxsynth Common Module

Shared infrastructure for the capture (scribe) and restore (retriever) sides.
"""

from .config import CtxSynthConfig, load_config
from .aliases import AliasResolver, ProjectAlias, load_alias_table
from .cache import TTLCache
from .text import smart_truncate, content_key
from .errors import (
    CtxSynthError,
    ConfigurationError,
    HotTierError,
    DurableStoreError,
    AdapterError,
    RerankError,
)

__all__ = [
    "CtxSynthConfig",
    "load_config",
    "AliasResolver",
    "ProjectAlias",
    "load_alias_table",
    "TTLCache",
    "smart_truncate",
    "content_key",
    "CtxSynthError",
    "ConfigurationError",
    "HotTierError",
    "DurableStoreError",
    "AdapterError",
    "RerankError",
]
