"""
Unit Tests for the Citation Tracker

Tests id assignment, source classification and answer validation scoring.
"""

import pytest

from conftest import make_context, make_contexts
from iterative_rag.citations import CitationTracker, classify_source, extract_references
from iterative_rag.context_flow import chunk_item
from iterative_rag.models import ContextKind, SourceType


@pytest.fixture
def tracker():
    tracker = CitationTracker("test")
    tracker.add_items(make_contexts(5))
    return tracker


# =============================================================================
# REGISTRATION
# =============================================================================

class TestRegistration:
    """Tests for citation id assignment."""

    def test_ids_are_sequential_from_one(self, tracker):
        assert [c.id for c in tracker.citations] == [1, 2, 3, 4, 5]

    def test_existing_items_not_recited(self, tracker):
        added = tracker.add_items(make_contexts(6))
        assert [c.id for c in added] == [6]
        assert len(tracker) == 6

    def test_chunks_resolve_to_parent(self, tracker):
        parent = make_context(2, content="w" * 300)
        chunk = chunk_item(parent, 100)[1]
        assert tracker.id_for(chunk) == 3

    def test_citation_fields(self):
        tracker = CitationTracker()
        item = make_context(1, start_line=3, end_line=9)
        citation = tracker.add_items([item])[0]

        assert citation.source_type == SourceType.CODE
        assert citation.file_path == item.source_path
        assert citation.line_numbers == (3, 9)
        assert citation.extracted_text == item.content[:200]

    def test_classification(self):
        web = make_context(1, kind=ContextKind.DOCUMENTATION, path="https://docs.example.org/x")
        doc = make_context(2, kind=ContextKind.DOCUMENTATION, path="docs/auth.md")
        node = make_context(3, kind=ContextKind.GRAPH_NODE, path="kg://SessionManager")

        assert classify_source(web) == SourceType.WEB
        assert classify_source(doc) == SourceType.DOCUMENTATION
        assert classify_source(node) == SourceType.KNOWLEDGE_GRAPH


# =============================================================================
# VALIDATION
# =============================================================================

class TestValidation:
    """Tests for scoring [n] references in generated text."""

    def test_extract_references_keeps_repeats(self):
        assert extract_references("see [1], [1] and [12]") == [1, 1, 12]
        assert extract_references(None) == []

    def test_mixed_valid_and_invalid(self, tracker):
        result = tracker.validate("Uses [1] twice [1], also [2] and [7].")

        # 2 distinct valid ids over 4 occurrences, 2 of 5 citations used
        assert result.accuracy == pytest.approx(0.5)
        assert result.coverage == pytest.approx(0.4)
        assert result.quality == pytest.approx(0.6 * 0.5 + 0.4 * 0.4)
        assert result.invalid_ids == [7]
        assert result.valid_ids == [1, 2]
        assert result.passed is False

    def test_all_cited(self, tracker):
        result = tracker.validate("[1] [2] [3] [4] [5]")
        assert result.accuracy == 1.0
        assert result.coverage == 1.0
        assert result.passed is True

    def test_no_references_with_citations(self, tracker):
        result = tracker.validate("An answer without any markers.")
        assert result.accuracy == 0.0
        assert result.coverage == 0.0

    def test_no_references_without_citations(self):
        result = CitationTracker().validate("Nothing to cite.")
        assert result.accuracy == 1.0
        assert result.coverage == 1.0
        assert result.passed is True

    def test_speculative_only_with_markers(self, tracker):
        assert tracker.speculative_quality("no markers here") is None
        assert tracker.speculative_quality("see [9]").passed is False
