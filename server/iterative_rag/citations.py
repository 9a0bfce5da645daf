"""
Citation Tracker

Assigns a numbered citation to every context item the session ingests and
checks [n] references in oracle output against the issued range.

Scoring:
    accuracy = distinct valid ids / total [n] occurrences
               (no occurrences: 1.0 when no citations exist, else 0.0)
    coverage = distinct valid ids / total citations (1.0 when none exist)
    quality  = 0.6 * accuracy + 0.4 * coverage
"""

import logging
import re
from typing import Dict, List, Optional, Sequence

from .models import (
    Citation,
    CitationValidation,
    ContextKind,
    RetrievedContext,
    SourceType,
)

logger = logging.getLogger("iterative_rag.citations")

CITATION_PATTERN = re.compile(r"\[(\d+)\]")

ACCURACY_WEIGHT = 0.6
COVERAGE_WEIGHT = 0.4
EXTRACT_LIMIT = 200


def extract_references(text: Optional[str]) -> List[int]:
    """All [n] references in order of appearance, repeats included"""
    if not text:
        return []
    return [int(m) for m in CITATION_PATTERN.findall(text)]


def classify_source(item: RetrievedContext) -> SourceType:
    if item.kind == ContextKind.GRAPH_NODE:
        return SourceType.KNOWLEDGE_GRAPH
    if item.kind == ContextKind.DOCUMENTATION:
        if item.source_path.startswith(("http://", "https://")):
            return SourceType.WEB
        return SourceType.DOCUMENTATION
    return SourceType.CODE


class CitationTracker:
    """
    Append-only citation registry for one session.

    Ids start at 1 and are never renumbered.
    """

    def __init__(self, request_id: str = "-"):
        self.request_id = request_id
        self.citations: List[Citation] = []
        self._by_key: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self.citations)

    def _build(self, citation_id: int, item: RetrievedContext) -> Citation:
        source_type = classify_source(item)
        start = item.metadata.get("start_line")
        end = item.metadata.get("end_line")
        line_numbers = (start, end) if isinstance(start, int) and isinstance(end, int) else None
        title = item.entity_name or item.source_path.rstrip("/").split("/")[-1] or item.source_path
        relevance = min(max(item.relevance_score, 0.0), 1.0)

        return Citation(
            id=citation_id,
            source=item.source_path,
            source_type=source_type,
            title=title,
            url=item.source_path if source_type == SourceType.WEB else None,
            file_path=item.source_path if source_type == SourceType.CODE else None,
            line_numbers=line_numbers,
            confidence=relevance,
            relevance_score=relevance,
            extracted_text=item.content[:EXTRACT_LIMIT],
        )

    def add_items(self, items: Sequence[RetrievedContext]) -> List[Citation]:
        """One new citation per not-yet-cited item"""
        added = []
        for item in items:
            key = item.dedup_key
            if key in self._by_key:
                continue
            citation = self._build(len(self.citations) + 1, item)
            self.citations.append(citation)
            self._by_key[key] = citation.id
            added.append(citation)
        return added

    def id_for(self, item: RetrievedContext) -> Optional[int]:
        """Citation id for an item, resolving chunks to their parent"""
        citation_id = self._by_key.get(item.dedup_key)
        if citation_id is None:
            parent_key = item.metadata.get("parent_key")
            if parent_key:
                citation_id = self._by_key.get(parent_key)
        return citation_id

    def validate(self, text: Optional[str], threshold: float = 0.6) -> CitationValidation:
        references = extract_references(text)
        total_citations = len(self.citations)

        valid_ids = sorted({ref for ref in references if 1 <= ref <= total_citations})
        invalid_ids = sorted({ref for ref in references if not 1 <= ref <= total_citations})

        if references:
            accuracy = len(valid_ids) / len(references)
        else:
            accuracy = 1.0 if total_citations == 0 else 0.0
        coverage = len(valid_ids) / total_citations if total_citations else 1.0
        quality = ACCURACY_WEIGHT * accuracy + COVERAGE_WEIGHT * coverage

        if invalid_ids:
            logger.warning(
                f"[{self.request_id}] Data quality warning: invalid citation ids {invalid_ids} "
                f"(valid range 1-{total_citations})"
            )

        return CitationValidation(
            accuracy=accuracy,
            coverage=coverage,
            quality=quality,
            passed=quality >= threshold,
            total_references=len(references),
            valid_ids=valid_ids,
            invalid_ids=invalid_ids,
        )

    def speculative_quality(self, text: Optional[str], threshold: float = 0.6) -> Optional[CitationValidation]:
        """Validate only when the text actually cites something"""
        if not extract_references(text):
            return None
        return self.validate(text, threshold)
