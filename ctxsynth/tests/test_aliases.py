"""Tests for project alias normalization and expansion."""

import json
import pytest


TABLE = {
    "projects": {
        "floatctl": {
            "canonical": "floatctl-rs",
            "aliases": ["floatctl", "float/floatctl"],
            "description": "Rust CLI",
        },
        "evna": {
            "canonical": "float/evna",
            "aliases": ["evna"],
        },
    }
}


@pytest.fixture
def resolver():
    from ctxsynth.common.aliases import AliasResolver
    return AliasResolver.from_dict(TABLE)


class TestNormalize:
    def test_alias_maps_to_canonical(self, resolver):
        assert resolver.normalize("floatctl") == "floatctl-rs"

    def test_case_insensitive(self, resolver):
        assert resolver.normalize("FloatCtl") == "floatctl-rs"
        assert resolver.normalize("  EVNA ") == "float/evna"

    def test_unknown_returned_unchanged(self, resolver):
        assert resolver.normalize("Some New Project") == "Some New Project"

    def test_substring_is_not_a_normalize_match(self, resolver):
        assert resolver.normalize("float") == "float"

    @pytest.mark.parametrize("name", [
        "floatctl", "FLOATCTL", "floatctl-rs", "float/floatctl",
        "evna", "float/evna", "unknown", "", "Mixed Case",
    ])
    def test_idempotent(self, resolver, name):
        once = resolver.normalize(name)
        assert resolver.normalize(once) == once


class TestExpand:
    def test_partial_match_returns_all_variants(self, resolver):
        assert resolver.expand("ctl") == ["floatctl-rs", "floatctl", "float/floatctl"]

    def test_longer_name_containing_variant(self, resolver):
        assert resolver.expand("floatctl-rs/cli") == ["floatctl-rs", "floatctl", "float/floatctl"]

    def test_case_insensitive(self, resolver):
        assert resolver.expand("EVNA") == ["float/evna", "evna"]

    def test_miss_returns_input(self, resolver):
        assert resolver.expand("rangle") == ["rangle"]

    def test_empty_table(self):
        from ctxsynth.common.aliases import AliasResolver
        assert AliasResolver().expand("anything") == ["anything"]


class TestLookup:
    def test_project_config(self, resolver):
        entry = resolver.project_config("float/floatctl")
        assert entry.canonical == "floatctl-rs"
        assert entry.description == "Rust CLI"

    def test_is_known(self, resolver):
        assert resolver.is_known("evna")
        assert not resolver.is_known("rangle")

    def test_entries(self, resolver):
        assert [e.canonical for e in resolver.entries] == ["floatctl-rs", "float/evna"]


class TestLoading:
    def test_from_list(self):
        from ctxsynth.common.aliases import AliasResolver

        resolver = AliasResolver.from_dict([{"canonical": "a", "aliases": ["b"]}])
        assert resolver.normalize("B") == "a"

    def test_bad_shape(self):
        from ctxsynth.common.aliases import AliasResolver
        from ctxsynth.common.errors import ConfigurationError

        with pytest.raises(ConfigurationError):
            AliasResolver.from_dict("not a table")

    def test_bad_entry(self):
        from ctxsynth.common.aliases import AliasResolver
        from ctxsynth.common.errors import ConfigurationError

        with pytest.raises(ConfigurationError):
            AliasResolver.from_dict({"projects": {"x": {"aliases": ["no canonical"]}}})

    def test_load_alias_table(self, tmp_path):
        from ctxsynth.common.aliases import load_alias_table

        path = tmp_path / "workspace-context.json"
        path.write_text(json.dumps(TABLE))

        resolver = load_alias_table(str(path))
        assert resolver.normalize("floatctl") == "floatctl-rs"

    def test_missing_file_is_fatal(self, tmp_path):
        from ctxsynth.common.aliases import load_alias_table
        from ctxsynth.common.errors import ConfigurationError

        with pytest.raises(ConfigurationError):
            load_alias_table(str(tmp_path / "missing.json"))

    def test_invalid_json_is_fatal(self, tmp_path):
        from ctxsynth.common.aliases import load_alias_table
        from ctxsynth.common.errors import ConfigurationError

        path = tmp_path / "workspace-context.json"
        path.write_text("{not json")

        with pytest.raises(ConfigurationError):
            load_alias_table(str(path))
