"""
Retrieval Schemas

Candidates are the one shape every retrieval source must produce. Loose
adapter payloads are coerced here and nowhere else.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class CandidateMetadata(BaseModel):
    """Provenance and native relevance of a candidate"""
    timestamp: str = ""
    project: Optional[str] = None
    score: float = 0.0
    conversation: Optional[str] = None
    identity: Optional[str] = None  # message id, conversation id, note path...
    extra: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("score", mode="before")
    @classmethod
    def _coerce_score(cls, value: Any) -> float:
        if value is None:
            return 0.0
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> str:
        if value is None:
            return ""
        if hasattr(value, "isoformat"):
            return value.isoformat()
        return str(value)


class Candidate(BaseModel):
    """Transient, unranked retrieved text awaiting fusion"""
    text: str
    source_tag: str = ""
    metadata: CandidateMetadata = Field(default_factory=CandidateMetadata)

    @classmethod
    def from_raw(cls, raw: Dict[str, Any], source_tag: str = "") -> "Candidate":
        """
        Coerce a loosely-typed adapter row into a Candidate.

        Accepts "text" or "content" for the body and "score", "similarity" or
        "similarity_score" for the native score, either at the top level or
        inside "metadata".
        """
        metadata = dict(raw.get("metadata") or {})
        text = raw.get("text") or raw.get("content") or metadata.pop("text", "") or ""

        score = raw.get("score")
        for key in ("similarity", "similarity_score"):
            if score is None:
                score = raw.get(key, metadata.get(key))
        if score is None:
            score = metadata.get("score", 0.0)

        known = {"timestamp", "project", "score", "conversation", "identity",
                  "similarity", "similarity_score"}
        return cls(
            text=str(text),
            source_tag=source_tag,
            metadata=CandidateMetadata(
                timestamp=raw.get("timestamp", metadata.get("timestamp")),
                project=raw.get("project", metadata.get("project")),
                score=score,
                conversation=raw.get("conversation", metadata.get("conversation")),
                identity=raw.get("id", metadata.get("identity")),
                extra={k: v for k, v in metadata.items() if k not in known},
            ),
        )


class RankedResult(BaseModel):
    """A fused candidate with its final relevance score"""
    text: str
    source_tag: str
    score: float
    metadata: CandidateMetadata

    @property
    def timestamp(self) -> str:
        return self.metadata.timestamp

    @property
    def project(self) -> Optional[str]:
        return self.metadata.project

    @property
    def conversation(self) -> Optional[str]:
        return self.metadata.conversation
