"""
Annotation Parser

Extracts `type::value` annotations from free-form activity notes and folds
them into MessageMetadata.

Examples:
    ctx::2025-10-21 @ 08:25 AM - [project::float/evna] [mode::build]
    project::float/evna, float/floatctl
    eureka:: the cache key was missing the tenant id
    float.dispatch(bridge)

Extraction never raises: malformed annotations degrade to the empty
metadata skeleton so a capture is never rejected for its syntax.
"""

import re
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from ..common.aliases import AliasResolver
from ..common.schemas import CtxInfo, MessageMetadata, TemporalInfo

logger = logging.getLogger("ctxsynth.scribe.annotation_parser")


# <word>::<value>, value ends before the next whitespace-preceded <word>::,
# at a line end, or at the end of the text
ANNOTATION_RE = re.compile(r"(\w+)::\s*([^\n]+?)(?=\s+\w+::|$)", re.MULTILINE)
HAS_ANNOTATION_RE = re.compile(r"\w+::\s*\S")

CTX_DATE_RE = re.compile(r"(\d{4}-\d{2}-\d{2})")
CTX_TIME_RE = re.compile(r"@\s*(\d{1,2}:\d{2}(?::\d{2})?\s*(?:AM|PM)?)", re.IGNORECASE)
CTX_MODE_RE = re.compile(r"\[mode::\s*([^\]]+)\]")
CTX_METADATA_RE = re.compile(r"-\s*\[([^\]]+)\]")
EMBEDDED_PROJECT_RE = re.compile(r"\[project::\s*([^\]]+)\]")
EMBEDDED_ISSUE_RE = re.compile(r"\[issue::\s*([^\]]+)\]")
DIRECT_PROJECT_RE = re.compile(r"project::\s*([^\s\]]+)")

COMMAND_NAMESPACE = "float"
COMMAND_RE = re.compile(rf"{COMMAND_NAMESPACE}\.\w+\([^)]*\)")

ISO_TIMESTAMP_RE = re.compile(
    r"(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:\d{2})?)"
)

PERSONAS = ("karen", "lf1m", "sysop", "evna", "qtb")
PERSONA_RE = re.compile(r"(" + "|".join(PERSONAS) + r")::", re.IGNORECASE)
HIGHLIGHT_TYPES = ("highlight", "eureka", "gotcha", "insight")
STRUCTURAL_TYPES = ("pattern", "bridge", "note")


@dataclass(frozen=True)
class Annotation:
    """A single `type::value` token"""
    type: str
    value: str
    full_match: str

    @property
    def key(self) -> str:
        """Dispatch key (type names are case-insensitive)"""
        return self.type.lower()


class AnnotationParser:
    """
    Tokenizes annotations and dispatches each by type.

    Dispatch:
    - ctx          -> date/time/mode sub-parse, backfills project/issue
    - project      -> first comma-separated token, alias-normalized
    - issue        -> first occurrence wins
    - personas     -> personas (type name)
    - connectto    -> connections
    - highlight family -> highlights
    - everything else  -> patterns as "type:value"
    """

    def __init__(self, alias_resolver: Optional[AliasResolver] = None):
        self._aliases = alias_resolver or AliasResolver()

        handlers: Dict[str, Callable[[Annotation, MessageMetadata], None]] = {
            "ctx": self._handle_ctx,
            "project": self._handle_project,
            "issue": self._handle_issue,
            "connectto": self._handle_connection,
        }
        for persona in PERSONAS:
            handlers[persona] = self._handle_persona
        for kind in HIGHLIGHT_TYPES:
            handlers[kind] = self._handle_highlight
        self._handlers = handlers

    def parse(self, text: str) -> List[Annotation]:
        """Parse all annotations from message text, in order of appearance"""
        if not text:
            return []
        return [
            Annotation(type=m.group(1), value=m.group(2).strip(), full_match=m.group(0))
            for m in ANNOTATION_RE.finditer(text)
        ]

    def has_annotations(self, text: str) -> bool:
        """Cheap precheck before running the full extraction"""
        return bool(text) and HAS_ANNOTATION_RE.search(text) is not None

    def extract_metadata(self, text: str) -> MessageMetadata:
        """
        Extract structured metadata from message text.

        Args:
            text: Raw message text

        Returns:
            MessageMetadata; list fields are always present (possibly empty)
        """
        try:
            return self._extract(text or "")
        except Exception as e:
            logger.warning("Annotation extraction failed, using empty metadata: %s", e)
            return MessageMetadata()

    def _extract(self, text: str) -> MessageMetadata:
        metadata = MessageMetadata()

        for annotation in self.parse(text):
            handler = self._handlers.get(annotation.key, self._handle_pattern)
            handler(annotation, metadata)

        # Side channels, independent of the :: grammar
        metadata.commands = COMMAND_RE.findall(text)
        metadata.temporal = self._extract_temporal(text)

        return metadata

    # ------------------------------------------------------------------
    # Dispatch handlers
    # ------------------------------------------------------------------

    def _handle_ctx(self, annotation: Annotation, metadata: MessageMetadata) -> None:
        value = annotation.value
        metadata.ctx = self._parse_ctx(value)

        project_match = EMBEDDED_PROJECT_RE.search(value)
        if project_match and not metadata.project:
            metadata.project = self._aliases.normalize(project_match.group(1).strip())

        issue_match = EMBEDDED_ISSUE_RE.search(value)
        if issue_match and not metadata.issue:
            metadata.issue = issue_match.group(1).strip()

    def _handle_project(self, annotation: Annotation, metadata: MessageMetadata) -> None:
        # "float/evna, float/floatctl" -> primary project is the first one
        primary = annotation.value.split(",")[0].strip()
        if primary:
            metadata.project = self._aliases.normalize(primary)

    def _handle_issue(self, annotation: Annotation, metadata: MessageMetadata) -> None:
        if metadata.issue is None:
            metadata.issue = annotation.value.strip()

    def _handle_persona(self, annotation: Annotation, metadata: MessageMetadata) -> None:
        metadata.personas.append(annotation.type)

    def _handle_connection(self, annotation: Annotation, metadata: MessageMetadata) -> None:
        metadata.connections.append(annotation.value)

    def _handle_highlight(self, annotation: Annotation, metadata: MessageMetadata) -> None:
        metadata.highlights.append(annotation.value)

    def _handle_pattern(self, annotation: Annotation, metadata: MessageMetadata) -> None:
        # pattern/bridge/note and any unrecognized type land here
        metadata.patterns.append(f"{annotation.type}:{annotation.value}")

    # ------------------------------------------------------------------
    # Sub-parsers
    # ------------------------------------------------------------------

    def _parse_ctx(self, value: str) -> CtxInfo:
        """
        Parse a ctx:: value.

        Examples:
        - 2025-10-21 @ 08:25:54 AM - [project::float/evna]
        - 2025-07-28 - session complete - [mode:: semantic archival]
        """
        ctx = CtxInfo()

        date_match = CTX_DATE_RE.search(value)
        if date_match:
            ctx.date = date_match.group(1)
            ctx.timestamp = ctx.date

        time_match = CTX_TIME_RE.search(value)
        if time_match:
            ctx.time = time_match.group(1).strip()
            if ctx.date:
                ctx.timestamp = f"{ctx.date} {ctx.time}"

        mode_match = CTX_MODE_RE.search(value)
        if mode_match:
            ctx.mode = mode_match.group(1).strip()

        metadata_match = CTX_METADATA_RE.search(value)
        if metadata_match:
            ctx.metadata = metadata_match.group(1).strip()

        return ctx

    def _extract_temporal(self, text: str) -> TemporalInfo:
        """First ISO-8601 timestamp; an unparseable one keeps only the string"""
        temporal = TemporalInfo()

        iso_match = ISO_TIMESTAMP_RE.search(text)
        if not iso_match:
            return temporal

        raw = iso_match.group(1)
        temporal.extracted_timestamp = raw
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            temporal.unix_timestamp = int(parsed.timestamp() * 1000)
        except ValueError as e:
            logger.debug("Failed to parse timestamp %r: %s", raw, e)

        return temporal

    # ------------------------------------------------------------------
    # Targeted extractors
    # ------------------------------------------------------------------

    def extract_project(self, text: str) -> Optional[str]:
        """
        Extract the raw (un-normalized) project from any of:
        - project::name
        - [project::name]
        - ctx:: ... [project::name]
        """
        direct = DIRECT_PROJECT_RE.search(text)
        if direct:
            return direct.group(1).split(",")[0].strip()

        embedded = EMBEDDED_PROJECT_RE.search(text)
        if embedded:
            return embedded.group(1).split(",")[0].strip()

        return None

    def extract_personas(self, text: str) -> List[str]:
        """Deduplicated lowercase persona invocations, in order of appearance"""
        seen: List[str] = []
        for match in PERSONA_RE.finditer(text):
            name = match.group(1).lower()
            if name not in seen:
                seen.append(name)
        return seen
