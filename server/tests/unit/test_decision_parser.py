"""
Unit Tests for the Decision Parser

Tests the strict JSON, inline JSON and labelled plain-text layers, and the
failure path.
"""

from iterative_rag.decision_parser import (
    DecisionParsed,
    DecisionParseFailed,
    find_json_object,
    parse_decision,
    parse_json_payload,
)
from iterative_rag.models import DecisionType


# =============================================================================
# JSON LAYERS
# =============================================================================

class TestJsonLayers:
    """Tests for JSON decision responses."""

    def test_strict_json(self):
        result = parse_decision(
            '{"decision": "SEARCH_AGAIN", "reasoning": "Need the caller [2]", '
            '"next_codebase_query": "who calls refresh_session_token", "confidence_score": 0.4}'
        )
        assert isinstance(result, DecisionParsed)
        assert result.method == "json"
        assert result.decision.decision == DecisionType.SEARCH_AGAIN
        assert result.decision.next_codebase_query == "who calls refresh_session_token"
        assert result.decision.confidence_score == 0.4

    def test_fenced_json_with_think_block(self):
        raw = (
            "<think>the context looks complete</think>\n"
            '```json\n{"decision": "answer", "reasoning": "All there [1]"}\n```'
        )
        result = parse_decision(raw)
        assert isinstance(result, DecisionParsed)
        assert result.decision.decision == DecisionType.ANSWER

    def test_camel_case_and_synonym_keys(self):
        result = parse_decision(
            '{"decision": "SEARCH WEB", "reasoning": "external API", '
            '"nextWebSearchQuery": "tavily rate limits", "confidence": 0.7}'
        )
        assert isinstance(result, DecisionParsed)
        assert result.decision.decision == DecisionType.SEARCH_WEB
        assert result.decision.next_web_query == "tavily rate limits"
        assert result.decision.confidence_score == 0.7

    def test_inline_json_in_prose(self):
        raw = 'Here is my decision: {"decision": "ANSWER", "reasoning": "uses {braces} inside"} Thanks!'
        result = parse_decision(raw)
        assert isinstance(result, DecisionParsed)
        assert result.method == "inline_json"
        assert result.decision.reasoning == "uses {braces} inside"

    def test_inline_json_after_stray_braces(self):
        raw = 'The {refresh} flow is covered. {"decision": "ANSWER", "reasoning": "Covered by [1]"}'
        result = parse_decision(raw)
        assert isinstance(result, DecisionParsed)
        assert result.method == "inline_json"
        assert result.decision.decision == DecisionType.ANSWER

    def test_blank_query_becomes_none(self):
        result = parse_decision('{"decision": "SEARCH_AGAIN", "reasoning": "r", "next_codebase_query": "N/A"}')
        assert isinstance(result, DecisionParsed)
        assert result.decision.next_codebase_query is None


# =============================================================================
# PLAIN TEXT LAYER
# =============================================================================

class TestPlainText:
    """Tests for labelled plain-text decisions."""

    def test_labelled_lines(self):
        raw = (
            "**Decision:** SEARCH_AGAIN\n"
            "Reasoning: The refresh scheduler is missing [3].\n"
            "It is probably in the worker module.\n"
            "Next Codebase Search Query: token refresh scheduler\n"
            "Confidence: 0.35\n"
        )
        result = parse_decision(raw)
        assert isinstance(result, DecisionParsed)
        assert result.method == "plain_text"
        assert result.decision.decision == DecisionType.SEARCH_AGAIN
        assert result.decision.next_codebase_query == "token refresh scheduler"
        assert "worker module" in result.decision.reasoning
        assert result.decision.confidence_score == 0.35

    def test_out_of_range_score_dropped(self):
        result = parse_decision("Decision: ANSWER\nReasoning: ok\nConfidence: 85")
        assert isinstance(result, DecisionParsed)
        assert result.decision.confidence_score is None


# =============================================================================
# FAILURES
# =============================================================================

class TestFailures:
    """Tests for unparseable responses."""

    def test_empty_response(self):
        result = parse_decision("   ")
        assert isinstance(result, DecisionParseFailed)
        assert result.reason == "empty oracle response"

    def test_unknown_decision(self):
        result = parse_decision('{"decision": "MAYBE", "reasoning": "unsure"}')
        assert isinstance(result, DecisionParseFailed)

    def test_free_prose(self):
        result = parse_decision("I think the answer is probably in the auth module.")
        assert isinstance(result, DecisionParseFailed)
        assert "plain_text" in result.reason


# =============================================================================
# HELPERS
# =============================================================================

class TestHelpers:
    """Tests for JSON recovery helpers."""

    def test_find_json_object_nested(self):
        text = 'prefix {"a": {"b": "}"}, "c": 1} suffix'
        assert find_json_object(text) == {"a": {"b": "}"}, "c": 1}

    def test_find_json_object_skips_prose_braces(self):
        text = 'Use the {session} helper. {"decision": "ANSWER"} and {"other": 1}'
        assert find_json_object(text) == {"decision": "ANSWER"}

    def test_find_json_object_none(self):
        assert find_json_object("no object {here") is None

    def test_payload_array(self):
        assert parse_json_payload('Queries: ["a", "b"]') == ["a", "b"]

    def test_payload_garbage(self):
        assert parse_json_payload("not json at all") is None
        assert parse_json_payload(None) is None
