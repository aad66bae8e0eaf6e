"""
ctxsynth

Personal context-synthesis engine: capture annotated activity notes and
restore working context on demand.

Philosophy:
- Annotation syntax never rejects a capture
- The hot tier is the record of truth; the durable mirror is best-effort
- Project names are matched generously and normalized gently
- A negative search result is an answer, not an error

Usage:
    from ctxsynth.common import load_config, AliasResolver
    from ctxsynth.scribe import AnnotationParser, ContextStore
    from ctxsynth.retriever import FusionRanker, SearchBudget, ContextSynthesizer
    from ctxsynth.engine import build_engine
"""

__version__ = "0.1.0"
