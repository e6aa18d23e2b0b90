"""Tests for entity index lookup and formatting."""

from recollect.retriever.entity_index import (
    ENTITY_FACTS_HEADER,
    format_entity_facts,
    lookup_entity_facts,
    resolve_entity,
)

INDEX = {
    "Lilou": ["Lilou is a tabby cat", "Lilou was adopted in 2021"],
    "Uncle Bernard": ["Bernard is a carpenter"],
    "Empty": [],
}


class TestLookup:
    def test_case_insensitive_match_keeps_index_spelling(self):
        facts = lookup_entity_facts(["lilou"], INDEX)

        assert facts == {"Lilou": INDEX["Lilou"]}

    def test_whitespace_insensitive(self):
        facts = lookup_entity_facts(["uncle   bernard "], INDEX)

        assert list(facts) == ["Uncle Bernard"]

    def test_unmatched_entities_are_absent(self):
        facts = lookup_entity_facts(["Lilou", "Paris"], INDEX)

        assert list(facts) == ["Lilou"]

    def test_entity_without_facts_is_absent(self):
        assert lookup_entity_facts(["Empty"], INDEX) == {}

    def test_empty_inputs(self):
        assert lookup_entity_facts([], INDEX) == {}
        assert lookup_entity_facts(["Lilou"], {}) == {}

    def test_duplicates_collapse(self):
        facts = lookup_entity_facts(["Lilou", "LILOU"], INDEX)

        assert list(facts) == ["Lilou"]

    def test_resolve_entity(self):
        assert resolve_entity("LILOU", INDEX) == "Lilou"
        assert resolve_entity("", INDEX) is None
        assert resolve_entity("Paris", INDEX) is None


class TestFormat:
    def test_empty_facts_render_empty_string(self):
        assert format_entity_facts({}) == ""

    def test_block_layout(self):
        block = format_entity_facts({"Lilou": ["Lilou is a tabby cat", "Lilou was adopted in 2021"]})

        lines = block.split("\n")
        assert lines[0] == ENTITY_FACTS_HEADER
        assert lines[1] == "- Lilou: Lilou is a tabby cat; Lilou was adopted in 2021"
        assert len(lines) == 2
