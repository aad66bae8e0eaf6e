"""
Text helpers shared by rendering and deduplication.
"""

from typing import Optional

ELLIPSIS = "..."
SENTENCE_ENDINGS = (". ", "! ", "? ")
CONTENT_PREFIX_LENGTH = 50


def smart_truncate(content: str, max_length: int = 400, show_ratio: bool = False) -> str:
    """
    Truncate at a sentence boundary, then a word boundary, then hard-cut.

    Args:
        content: Text to truncate
        max_length: Target length
        show_ratio: Append " [kept/total]" so readers know text was cut

    Returns:
        content unchanged when it already fits, otherwise the shortened text
    """
    if len(content) <= max_length:
        return content

    # Last sentence ending within max_length + 50
    search_end = min(max_length + 50, len(content))
    search_text = content[:search_end]
    end_pos = max(search_text.rfind(mark) for mark in SENTENCE_ENDINGS)

    if end_pos >= 0 and end_pos > max_length - 100:
        # +1 keeps the punctuation
        truncated = content[:end_pos + 1].strip()
    else:
        # a space exactly at max_length still counts as a boundary
        word_boundary = content.rfind(" ", 0, max_length + 1)
        if word_boundary > 0 and word_boundary > max_length - 50:
            truncated = content[:word_boundary].strip() + ELLIPSIS
        else:
            truncated = content[:max_length].strip() + ELLIPSIS

    if show_ratio:
        return f"{truncated} [{len(truncated)}/{len(content)}]"
    return truncated


def normalize_prefix(content: str, length: int = CONTENT_PREFIX_LENGTH) -> str:
    """Whitespace-collapsed, lowercased content prefix used for dedup keys"""
    return " ".join(content.split()).lower()[:length]


def content_key(identity: Optional[str], timestamp: str, content: str) -> str:
    """Composite dedup key: (identity, timestamp, normalized content prefix)"""
    return f"{identity or ''}::{timestamp}::{normalize_prefix(content)}"
