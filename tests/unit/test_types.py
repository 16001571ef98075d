"""Unit tests for chatmem.types."""
from __future__ import annotations

import json

from chatmem.types import SYSTEM_MEMORY_VERSION, ExtractedFacts, SystemMemory, parse_system_memory


class TestParseSystemMemory:
    def test_none_yields_empty(self) -> None:
        memory = parse_system_memory(None)
        assert memory.is_empty()
        assert memory.version == SYSTEM_MEMORY_VERSION

    def test_json_string(self) -> None:
        raw = json.dumps({"facts": {"name": "Aman"}, "lastUpdated": "2026-01-01T00:00:00+00:00"})
        memory = parse_system_memory(raw)
        assert memory.facts == {"name": "Aman"}
        assert memory.preferences == {}
        assert memory.last_updated == "2026-01-01T00:00:00+00:00"

    def test_dict_from_jsonb(self) -> None:
        memory = parse_system_memory({"preferences": {"tone": "formal"}, "version": 1})
        assert memory.preferences == {"tone": "formal"}

    def test_malformed_json_yields_empty(self) -> None:
        assert parse_system_memory("{not json").is_empty()

    def test_malformed_sections_default_to_empty(self) -> None:
        memory = parse_system_memory({"facts": ["a", "b"], "decisions": "x"})
        assert memory.facts == {}
        assert memory.decisions == {}

    def test_non_string_values_coerced(self) -> None:
        memory = parse_system_memory({"facts": {"age": 31, "gone": None}})
        assert memory.facts == {"age": "31"}

    def test_bytes_accepted(self) -> None:
        memory = parse_system_memory(b'{"facts": {"a": "1"}}')
        assert memory.facts == {"a": "1"}

    def test_bad_version_falls_back(self) -> None:
        memory = parse_system_memory({"version": "two"})
        assert memory.version == SYSTEM_MEMORY_VERSION


class TestSystemMemory:
    def test_to_json_round_trips_through_parser(self) -> None:
        original = SystemMemory(facts={"a": "1"}, preferences={"b": "2"}, decisions={"c": "3"})
        parsed = parse_system_memory(original.to_json())
        assert parsed == original

    def test_to_dict_uses_stored_key_names(self) -> None:
        data = SystemMemory().to_dict()
        assert set(data) == {"version", "facts", "preferences", "decisions", "lastUpdated"}

    def test_is_empty(self) -> None:
        assert SystemMemory().is_empty()
        assert not SystemMemory(decisions={"x": "y"}).is_empty()


class TestExtractedFacts:
    def test_is_empty(self) -> None:
        assert ExtractedFacts().is_empty()
        assert not ExtractedFacts(preferences={"a": "b"}).is_empty()
