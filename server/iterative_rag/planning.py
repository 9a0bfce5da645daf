"""
Planning Module

Optional oracle-driven helpers around the main loop:

- agentic planning: pick a retrieval strategy and auxiliary queries up front
- reflection: critique a draft answer for hallucinations and gaps
- corrective queries: turn a critique into the next search query
- context analysis: re-score a batch of retrieved items in one oracle call

Malformed oracle output never fails the search; each helper degrades to a
neutral fallback. Oracle configuration and quota errors propagate so the
orchestrator can terminate with an explained reason.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from core.exceptions import OracleError, OracleNotInitializedError, OracleQuotaExceededError
from .decision_parser import parse_json_payload
from .models import (
    AgenticPlan,
    PlanStep,
    ReflectionResult,
    RetrievedContext,
    SearchStrategy,
)
from .prompts import (
    JSON_ONLY_SYSTEM_INSTRUCTION,
    ContextAnalysisPromptFields,
    CorrectivePromptFields,
    PlanningPromptFields,
    ReflectionPromptFields,
    build_context_analysis_prompt,
    build_corrective_prompt,
    build_planning_prompt,
    build_reflection_prompt,
)
from .protocols import Oracle, call_with_deadline

logger = logging.getLogger("iterative_rag.planning")

FATAL_ORACLE_ERRORS = (OracleNotInitializedError, OracleQuotaExceededError)

# relevance for items the context analysis did not score
UNANALYZED_RELEVANCE_FLOOR = 0.6


def _unit(value: Any, default: float) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return default
    return min(max(score, 0.0), 1.0)


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def fallback_plan(query: str) -> AgenticPlan:
    return AgenticPlan(
        strategy=SearchStrategy.VECTOR_SEARCH,
        steps=[PlanStep(action="search", target=query, priority=3, reasoning="fallback plan")],
        expected_outcome="relevant context",
        fallback_strategy=SearchStrategy.HYBRID_SEARCH,
    )


def heuristic_corrective_query(query: str, reflection: ReflectionResult) -> str:
    focus = f"{', '.join(reflection.corrections)} {', '.join(reflection.missing_info)}".strip()
    if not focus:
        return f'Find more context to support answering: "{query}"'
    return f"{query} focusing on: {focus}"


def auxiliary_queries(plan: AgenticPlan, query: str, limit: int = 2) -> List[str]:
    """Plan step targets that differ from the query, in priority order"""
    seen = {query.strip().lower()}
    queries = []
    for step in sorted(plan.steps, key=lambda s: s.priority):
        target = step.target.strip()
        if target and target.lower() not in seen:
            seen.add(target.lower())
            queries.append(target)
        if len(queries) >= limit:
            break
    return queries


class PlanningModule:
    def __init__(
        self,
        oracle: Oracle,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        request_id: str = "-",
    ):
        self.oracle = oracle
        self.model = model
        self.timeout = timeout
        self.request_id = request_id

    async def _ask(self, prompt: str) -> Optional[str]:
        """Oracle call for an auxiliary task; transient failures return None"""
        try:
            response = await call_with_deadline(
                self.oracle.ask(prompt, model=self.model, system_instruction=JSON_ONLY_SYSTEM_INSTRUCTION),
                self.timeout,
            )
        except FATAL_ORACLE_ERRORS:
            raise
        except (OracleError, asyncio.TimeoutError) as e:
            logger.warning(f"[{self.request_id}] Auxiliary oracle call failed: {e}")
            return None
        return response.content

    async def perform_agentic_planning(
        self,
        original_query: str,
        current_query: str,
        context: Sequence[RetrievedContext],
        iteration: int,
    ) -> AgenticPlan:
        summary = "\n".join(
            f"- {c.kind.value}: {c.entity_name or 'Unknown'} ({c.source_path})" for c in list(context)[-3:]
        )
        prompt = build_planning_prompt(PlanningPromptFields(
            original_query=original_query,
            current_query=current_query,
            iteration=iteration,
            previous_strategy="vector_search" if iteration > 1 else "initial",
            context_quality=0.7 if context else 0.3,
            information_gaps=(
                ["implementation details", "usage examples"] if len(context) < 3 else ["edge cases"]
            ),
            context_summary=summary,
        ))

        parsed = parse_json_payload(await self._ask(prompt))
        if not isinstance(parsed, dict):
            logger.warning(f"[{self.request_id}] Planning output unparseable, using fallback plan")
            return fallback_plan(current_query)

        strategy_block = parsed.get("recommended_strategy") or {}
        execution = parsed.get("execution_plan") or {}
        contingency = parsed.get("contingency_planning") or {}

        raw_strategy = (
            strategy_block.get("primary_modality") if isinstance(strategy_block, dict) else strategy_block
        )
        strategy = SearchStrategy.coerce(raw_strategy, SearchStrategy.VECTOR_SEARCH)
        fallback = SearchStrategy.coerce(
            contingency.get("fallback_strategy") if isinstance(contingency, dict) else None,
            SearchStrategy.HYBRID_SEARCH,
        )

        steps = []
        actions = execution.get("immediate_actions") if isinstance(execution, dict) else None
        for idx, action in enumerate(actions or []):
            if isinstance(action, dict):
                steps.append(PlanStep(
                    action=str(action.get("action", "search")),
                    target=str(action.get("target_query") or action.get("target") or current_query),
                    priority=idx + 1,
                    reasoning=str(action.get("reasoning") or f"Step {idx + 1} of agentic plan"),
                ))
            elif str(action).strip():
                steps.append(PlanStep(
                    action=str(action).strip(),
                    target=current_query,
                    priority=idx + 1,
                    reasoning=f"Step {idx + 1} of agentic plan",
                ))
        if not steps:
            steps = [PlanStep(action="search", target=current_query, priority=1, reasoning="default action")]

        plan = AgenticPlan(
            strategy=strategy,
            steps=steps,
            expected_outcome=str(execution.get("query_formulation") or "relevant context")
            if isinstance(execution, dict) else "relevant context",
            fallback_strategy=fallback,
        )
        logger.info(
            f"[{self.request_id}] Agentic plan: {plan.strategy.value} with {len(plan.steps)} steps "
            f"(fallback {fallback.value})"
        )
        return plan

    async def perform_reflection(
        self,
        original_query: str,
        context: Sequence[RetrievedContext],
        answer: str,
        strategy: str,
        iteration: int,
    ) -> ReflectionResult:
        source_context = "\n".join(
            f"Source: {c.source_path} | Entity: {c.entity_name or 'Unknown'} | Type: {c.kind.value}"
            for c in context
        )
        prompt = build_reflection_prompt(ReflectionPromptFields(
            original_query=original_query,
            generated_response=answer,
            source_context=source_context or "(no sources)",
            search_strategy=strategy,
            iteration_count=iteration,
        ))

        parsed = parse_json_payload(await self._ask(prompt))
        if not isinstance(parsed, dict):
            logger.warning(f"[{self.request_id}] Reflection output unparseable, using neutral result")
            return ReflectionResult.neutral()

        def block(name: str) -> Dict[str, Any]:
            value = parsed.get(name)
            return value if isinstance(value, dict) else {}

        hallucinations = _string_list(block("hallucination_analysis").get("detected_hallucinations"))
        assessment = block("overall_assessment")
        recommendations = block("improvement_recommendations")

        return ReflectionResult(
            has_hallucinations=len(hallucinations) > 0,
            missing_info=_string_list(block("completeness_analysis").get("missing_aspects")),
            quality_score=_unit(assessment.get("quality_score"), 0.5),
            suggestions=_string_list(recommendations.get("enhancement_suggestions")),
            corrections=_string_list(recommendations.get("immediate_fixes")),
            confidence=_unit(assessment.get("overall_confidence"), 0.5),
        )

    async def generate_corrective_query(
        self,
        query: str,
        reflection: ReflectionResult,
        context: Sequence[RetrievedContext],
    ) -> str:
        current_context = ", ".join(
            f"{c.source_path}: {c.entity_name or 'Unknown'}" for c in list(context)[-3:]
        )
        prompt = build_corrective_prompt(CorrectivePromptFields(
            current_query=query,
            reflection=reflection,
            current_context=current_context,
        ))

        parsed = parse_json_payload(await self._ask(prompt))
        if isinstance(parsed, dict):
            improved = parsed.get("improved_queries") or []
            if improved and isinstance(improved[0], dict) and str(improved[0].get("query") or "").strip():
                return str(improved[0]["query"]).strip()
            if improved and isinstance(improved[0], str) and improved[0].strip():
                return improved[0].strip()

        logger.info(f"[{self.request_id}] Corrective query from heuristic")
        return heuristic_corrective_query(query, reflection)

    async def analyze_contexts(
        self,
        query: str,
        contexts: Sequence[RetrievedContext],
        turn: int,
    ) -> List[RetrievedContext]:
        """
        Re-score freshly retrieved items with one consolidated oracle call.

        Relevance becomes max(provider score, oracle score), clamped to
        [0, 1], and the oracle's notes land in metadata["context_analysis"].
        Items the oracle skips, and all items when the call or its output
        fails, keep their provider score floored at 0.6.
        """
        if not contexts:
            return []

        prompt = build_context_analysis_prompt(ContextAnalysisPromptFields(
            query=query,
            turn=turn,
            contexts=list(contexts),
        ))
        parsed = parse_json_payload(await self._ask(prompt))

        analyses: Dict[int, Dict[str, Any]] = {}
        entries = parsed.get("context_analyses") if isinstance(parsed, dict) else None
        if isinstance(entries, list):
            for entry in entries:
                if not isinstance(entry, dict):
                    continue
                index, score = entry.get("context_index"), entry.get("relevance_score")
                if _is_number(index) and _is_number(score) and 1 <= index <= len(contexts):
                    analyses.setdefault(int(index) - 1, entry)
        else:
            logger.warning(f"[{self.request_id}] Context analysis unparseable, applying default scores")

        analyzed = []
        for idx, item in enumerate(contexts):
            entry = analyses.get(idx)
            if entry is None:
                score = max(item.relevance_score, UNANALYZED_RELEVANCE_FLOOR)
                notes = {
                    "analyzed": False,
                    "insights": "Analysis not available for this context",
                    "query_relationship": "Assumed relevant based on retrieval",
                    "confidence": 0.4,
                }
            else:
                score = max(item.relevance_score, _unit(entry["relevance_score"], 0.0))
                notes = {
                    "analyzed": True,
                    "insights": str(entry.get("insights") or "No insights provided"),
                    "query_relationship": str(entry.get("query_relationship") or "Relationship unclear"),
                    "confidence": _unit(entry.get("confidence"), 0.5),
                }
            analyzed.append(item.model_copy(update={
                "relevance_score": _unit(score, UNANALYZED_RELEVANCE_FLOOR),
                "metadata": {**item.metadata, "context_analysis": {**notes, "turn": turn}},
            }))

        overall = parsed.get("overall_analysis") if isinstance(parsed, dict) else None
        logger.info(
            f"[{self.request_id}] Context analysis: {len(analyses)}/{len(contexts)} items scored"
            f"{f' ({str(overall)[:120]})' if overall else ''}"
        )
        return analyzed
