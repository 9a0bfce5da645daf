"""
Quality Gate

Decides whether an ANSWER decision is allowed to stand. An answer is
overridden into another search turn when any check fails:

- heuristic context quality below the threshold
- very little context and low oracle confidence
- citations in the oracle's reasoning that fail validation

The final iteration is always accepted.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .citations import CitationTracker
from .models import ContextKind, Decision, RetrievedContext

logger = logging.getLogger("iterative_rag.quality_gate")

STOPWORDS = frozenset({
    "how", "what", "when", "where", "why", "who", "which", "does", "do", "is",
    "are", "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from",
})

MAX_QUERY_TERMS = 10


def extract_query_terms(query: str) -> List[str]:
    """Lowercased content words of the query (length > 2, no stopwords), at most 10"""
    words = re.split(r"\W+", query.lower())
    return [w for w in words if len(w) > 2 and w not in STOPWORDS][:MAX_QUERY_TERMS]


def _item_score(item: RetrievedContext, query_terms: Sequence[str]) -> float:
    content_lower = item.content.lower()
    path_lower = item.source_path.lower()

    score = item.relevance_score * 0.4

    matching = [t for t in query_terms if t in content_lower or t in path_lower]
    score += min(len(matching) / max(len(query_terms), 1), 1.0) * 0.3

    indicators = 0.0
    if len(item.content) > 200:
        indicators += 0.3
    if "function" in item.content or "class" in item.content:
        indicators += 0.3
    if "export" in item.content or "import" in item.content:
        indicators += 0.2
    if item.entity_name:
        indicators += 0.2
    score += min(indicators, 1.0) * 0.2

    if item.kind != ContextKind.GENERIC_CHUNK:
        score += 0.1

    return min(score, 1.0)


def calculate_context_quality(context: Sequence[RetrievedContext], query: str) -> float:
    """
    Heuristic sufficiency score in [0.1, 1.0].

    Per item: 40% relevance, 30% query-term hit fraction, 20% structural
    indicators, 10% non-generic bonus. Overall: mean plus a diversity bonus
    of min(count / 10, 0.2).
    """
    if not context:
        return 0.1

    query_terms = extract_query_terms(query)
    average = sum(_item_score(item, query_terms) for item in context) / len(context)
    diversity_bonus = min(len(context) / 10, 0.2)
    return max(min(average + diversity_bonus, 1.0), 0.1)


@dataclass
class QualityGateConfig:
    """Thresholds for overriding ANSWER decisions"""
    quality_threshold: float = 0.55
    low_context_count: int = 6
    low_confidence_threshold: float = 0.6
    citation_quality_threshold: float = 0.6


@dataclass
class GateVerdict:
    """Result of evaluating an ANSWER decision"""
    accepted: bool
    quality: float
    reasons: List[str] = field(default_factory=list)
    citation_quality: Optional[float] = None

    def to_dict(self):
        return {
            "accepted": self.accepted,
            "quality": round(self.quality, 3),
            "reasons": self.reasons,
            "citation_quality": self.citation_quality,
        }


class QualityGate:
    """
    Usage:
        gate = QualityGate(QualityGateConfig())
        verdict = gate.evaluate(decision, context, query, tracker, is_final_iteration=False)
        if not verdict.accepted:
            ...  # schedule a corrective search
    """

    def __init__(self, config: Optional[QualityGateConfig] = None):
        self.config = config or QualityGateConfig()

    def evaluate(
        self,
        decision: Decision,
        context: Sequence[RetrievedContext],
        query: str,
        tracker: Optional[CitationTracker] = None,
        is_final_iteration: bool = False,
    ) -> GateVerdict:
        quality = calculate_context_quality(context, query)
        reasons: List[str] = []
        citation_quality = None

        if quality < self.config.quality_threshold:
            reasons.append(
                f"context quality {quality:.2f} below {self.config.quality_threshold:.2f}"
            )

        confidence = decision.confidence_score
        if (
            len(context) < self.config.low_context_count
            and confidence is not None
            and confidence < self.config.low_confidence_threshold
        ):
            reasons.append(
                f"only {len(context)} context items with confidence {confidence:.2f}"
            )

        if tracker is not None:
            validation = tracker.speculative_quality(
                decision.reasoning, self.config.citation_quality_threshold
            )
            if validation is not None:
                citation_quality = validation.quality
                if not validation.passed:
                    reasons.append(
                        f"citation quality {validation.quality:.2f} below "
                        f"{self.config.citation_quality_threshold:.2f}"
                    )

        if is_final_iteration and reasons:
            logger.info(f"Final iteration: accepting answer despite {'; '.join(reasons)}")
            return GateVerdict(True, quality, reasons, citation_quality)

        return GateVerdict(not reasons, quality, reasons, citation_quality)
