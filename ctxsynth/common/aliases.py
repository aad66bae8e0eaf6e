"""
Alias Resolver

Normalizes and expands free-form project identifiers against a static alias
table (workspace-context.json). Matching is generous on read and gentle on
write: unknown projects pass through unchanged so new vocabulary can grow
organically.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigurationError

logger = logging.getLogger("ctxsynth.common.aliases")


class ProjectAlias(BaseModel):
    """One canonical project name and its recognized synonyms"""
    canonical: str
    aliases: List[str] = Field(default_factory=list)
    description: str = ""
    repo: str = ""
    type: str = ""

    @property
    def variants(self) -> List[str]:
        return [self.canonical, *self.aliases]


class AliasResolver:
    """
    Resolves project names against the alias table.

    The table is read-only for the lifetime of the resolver; reloading means
    building a new resolver.
    """

    def __init__(self, entries: Optional[List[ProjectAlias]] = None):
        self._entries: List[ProjectAlias] = list(entries or [])
        # Lowercased variants, computed once
        self._lowered = [
            [v.lower() for v in entry.variants] for entry in self._entries
        ]

    @classmethod
    def from_dict(cls, data: Any) -> "AliasResolver":
        """
        Build a resolver from parsed JSON.

        Accepts either {"projects": {key: {...}}} or a bare list of entries.
        """
        if isinstance(data, dict):
            raw_entries = list((data.get("projects") or {}).values())
        elif isinstance(data, list):
            raw_entries = data
        else:
            raise ConfigurationError(
                f"Alias table must be an object or list, got {type(data).__name__}"
            )

        try:
            entries = [ProjectAlias.model_validate(e) for e in raw_entries]
        except ValidationError as e:
            raise ConfigurationError(f"Invalid alias table entry: {e}") from e
        return cls(entries)

    @property
    def entries(self) -> List[ProjectAlias]:
        return list(self._entries)

    def normalize(self, raw: str) -> str:
        """
        Map a project name to its canonical form.

        Case-insensitive exact match on canonical-or-alias. Unknown names are
        returned unchanged.

        Example: "floatctl" -> "floatctl-rs"
        """
        entry = self.project_config(raw)
        if entry is not None:
            return entry.canonical
        return raw

    def expand(self, name: str) -> List[str]:
        """
        Expand a project name to every known variant.

        Uses substring matching in either direction, so callers filtering on
        the result must match fuzzily (substring) rather than by equality.
        On a total miss returns [name].

        Example: "floatctl" -> ["floatctl-rs", "floatctl", "float/floatctl"]
        """
        lowered = name.lower()
        for entry, variants in zip(self._entries, self._lowered):
            if any(v in lowered or lowered in v for v in variants):
                return entry.variants
        return [name]

    def project_config(self, name: str) -> Optional[ProjectAlias]:
        """Get the alias entry for a canonical name or alias, if any"""
        lowered = name.lower().strip()
        for entry, variants in zip(self._entries, self._lowered):
            if lowered in variants:
                return entry
        return None

    def is_known(self, name: str) -> bool:
        """Check if a project name is known (canonical or alias)"""
        return self.project_config(name) is not None


def load_alias_table(path: str) -> AliasResolver:
    """
    Load the alias table from disk.

    Raises:
        ConfigurationError: the file is missing or not valid JSON
    """
    table_path = Path(path).expanduser()
    if not table_path.exists():
        raise ConfigurationError(f"Alias table not found: {table_path}")

    try:
        data: Dict[str, Any] = json.loads(table_path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        raise ConfigurationError(f"Failed to read alias table {table_path}: {e}") from e

    resolver = AliasResolver.from_dict(data)
    logger.info("Loaded %d project aliases from %s", len(resolver.entries), table_path)
    return resolver
