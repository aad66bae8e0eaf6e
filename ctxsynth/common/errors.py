"""
Error types shared across the capture and restore pipelines.

Only HotTierError and ConfigurationError are meant to reach callers; the
rest are raised inside adapters and stores and converted to "absent" or to a
result object at the call site.
"""


class CtxSynthError(Exception):
    """Base class for ctxsynth errors."""
    pass


class ConfigurationError(CtxSynthError):
    """Startup configuration is missing or unreadable (fatal)."""
    pass


class HotTierError(CtxSynthError):
    """The hot-tier write failed; the capture did not happen."""
    pass


class DurableStoreError(CtxSynthError):
    """The durable tier rejected a read or write."""
    pass


class AdapterError(CtxSynthError):
    """A retrieval source failed to answer."""
    pass


class RerankError(CtxSynthError):
    """The cross-encoder reranking service failed."""
    pass
