"""
Unit tests for parsing and validating model output.
"""

import json

import pytest

from core.types.knowledge_types import KnowledgeScope, KnowledgeType
from modules.llm.llm_responses import (
    InsertDecision,
    KeepDecision,
    UpdateDecision,
    extract_json,
    parse_contradiction_results,
    parse_extraction,
    parse_merge_decision,
)


class TestExtractJson:

    def test_plain_json(self):
        assert extract_json('[{"a": 1}]') == [{"a": 1}]

    def test_fenced_block(self):
        text = 'Here you go:\n```json\n{"action": "keep"}\n```\nDone.'
        assert extract_json(text) == {"action": "keep"}

    def test_surrounding_prose(self):
        """The outermost bracket span is tried when nothing else parses."""
        text = 'I found these: [{"content": "x"}] hope that helps'
        assert extract_json(text) == [{"content": "x"}]

    @pytest.mark.parametrize("text", ["", "   ", "no json here", "[broken"])
    def test_unparseable_returns_none(self, text):
        assert extract_json(text) is None


class TestParseExtraction:

    def test_valid_entries_with_clamping(self):
        """Type, scope and confidence are coerced into their closed ranges."""
        text = json.dumps([
            {"type": "Architectural Decision", "content": " Use Postgres for billing. ",
             "topics": ["db", " billing "], "confidence": 1.7, "scope": "TEAM"},
            {"type": "gibberish", "content": "Build with make.", "topics": "build", "confidence": "n/a"},
        ])

        entries = parse_extraction(text)

        assert len(entries) == 2
        assert entries[0].type == KnowledgeType.DECISION
        assert entries[0].content == "Use Postgres for billing."
        assert entries[0].topics == ["db", "billing"]
        assert entries[0].confidence == 1.0
        assert entries[0].scope == KnowledgeScope.TEAM
        assert entries[1].type == KnowledgeType.FACT
        assert entries[1].topics == ["build"]
        assert entries[1].confidence == 0.5
        assert entries[1].scope == KnowledgeScope.PERSONAL

    def test_invalid_items_are_dropped(self):
        """Empty content and non-objects are skipped, valid siblings kept."""
        text = json.dumps([{"type": "fact", "content": "   "}, "junk", 3, {"type": "fact", "content": "ok"}])

        entries = parse_extraction(text)

        assert [e.content for e in entries] == ["ok"]

    def test_wrapped_list(self):
        text = json.dumps({"entries": [{"type": "pattern", "content": "Retry on 503."}]})
        assert [e.type for e in parse_extraction(text)] == [KnowledgeType.PATTERN]

    @pytest.mark.parametrize("text", ["[]", "nothing worth keeping", '{"note": "none"}'])
    def test_empty_or_unusable(self, text):
        assert parse_extraction(text) == []


class TestParseMergeDecision:

    def test_keep(self):
        assert isinstance(parse_merge_decision('{"action": "keep"}'), KeepDecision)

    @pytest.mark.parametrize("action", ["update", "replace", "UPDATE"])
    def test_update_and_replace(self, action):
        text = json.dumps({"action": action, "type": "procedure", "content": "Run migrations before deploy.",
                           "topics": ["deploy"], "confidence": 0.8})

        decision = parse_merge_decision(text)

        assert isinstance(decision, UpdateDecision)
        assert decision.type == KnowledgeType.PROCEDURE
        assert decision.content == "Run migrations before deploy."

    def test_insert(self):
        assert isinstance(parse_merge_decision('{"action": "insert"}'), InsertDecision)

    @pytest.mark.parametrize("text", [
        "",
        "I am not sure",
        '{"action": "delete"}',
        '{"action": "update"}',
        '{"action": "update", "content": ""}',
    ])
    def test_malformed_defaults_to_insert(self, text):
        """An update without usable content cannot be applied, so nothing is lost by inserting."""
        assert isinstance(parse_merge_decision(text), InsertDecision)


class TestParseContradictionResults:

    def test_camel_case_results(self):
        text = json.dumps([
            {"candidateId": "a", "resolution": "supersede_old", "reason": "port changed"},
            {"candidateId": "b", "resolution": "merge", "mergedContent": "Both apply.",
             "mergedType": "fact", "mergedTopics": ["x"], "mergedConfidence": 0.7},
        ])

        results = parse_contradiction_results(text)

        assert [r.candidate_id for r in results] == ["a", "b"]
        assert results[1].merge_data() == {
            "content": "Both apply.", "type": "fact", "topics": ["x"], "confidence": 0.7,
        }

    def test_unknown_resolution_is_discarded(self):
        text = json.dumps([{"candidateId": "a", "resolution": "delete_both"},
                           {"candidateId": "b", "resolution": "irresolvable"}])

        assert [r.candidate_id for r in parse_contradiction_results(text)] == ["b"]

    def test_results_wrapper_and_single_object(self):
        wrapped = json.dumps({"results": [{"candidateId": "a", "resolution": "no_conflict"}]})
        single = json.dumps({"candidateId": "b", "resolution": "irresolvable"})

        assert [r.candidate_id for r in parse_contradiction_results(wrapped)] == ["a"]
        assert [r.candidate_id for r in parse_contradiction_results(single)] == ["b"]

    def test_garbage_is_empty(self):
        assert parse_contradiction_results("no idea") == []
