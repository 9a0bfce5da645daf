"""
Unit Tests for Planning, Reflection, Corrective Queries and DMQR

Tests oracle-output parsing, fallbacks on malformed output and the
oracle error policy for auxiliary calls.
"""

import asyncio
import json

import pytest

from conftest import ScriptedOracle, make_context, make_contexts
from core.exceptions import OracleError, OracleNotInitializedError, OracleQuotaExceededError
from iterative_rag.models import ReflectionResult, SearchStrategy
from iterative_rag.planning import (
    PlanningModule,
    auxiliary_queries,
    fallback_plan,
    heuristic_corrective_query,
)
from iterative_rag.query_rewriter import DiverseQueryRewriter

QUERY = "How does the session token refresh work?"

PLAN_JSON = json.dumps({
    "recommended_strategy": {"primary_modality": "graph_traversal"},
    "execution_plan": {
        "immediate_actions": [
            {"action": "search", "target_query": "refresh_session_token callers", "reasoning": "find usage"},
            {"action": "search", "target_query": "token expiry configuration", "reasoning": "find config"},
            {"action": "search", "target_query": QUERY, "reasoning": "original"},
        ],
        "query_formulation": "call graph of token refresh",
    },
    "contingency_planning": {"fallback_strategy": "hybrid_search"},
})


# =============================================================================
# AGENTIC PLANNING
# =============================================================================

class TestAgenticPlanning:
    """Tests for plan generation."""

    @pytest.mark.asyncio
    async def test_parses_plan(self):
        module = PlanningModule(ScriptedOracle(auxiliary=[PLAN_JSON]))
        plan = await module.perform_agentic_planning(QUERY, QUERY, [], 1)

        assert plan.strategy == SearchStrategy.GRAPH_TRAVERSAL
        assert plan.fallback_strategy == SearchStrategy.HYBRID_SEARCH
        assert [s.priority for s in plan.steps] == [1, 2, 3]
        assert plan.expected_outcome == "call graph of token refresh"

    @pytest.mark.asyncio
    async def test_malformed_output_uses_fallback(self):
        module = PlanningModule(ScriptedOracle(auxiliary=["I would search for the code."]))
        plan = await module.perform_agentic_planning(QUERY, QUERY, [], 1)

        assert plan == fallback_plan(QUERY)
        assert plan.strategy == SearchStrategy.VECTOR_SEARCH

    @pytest.mark.asyncio
    async def test_unknown_strategy_defaults_to_vector(self):
        payload = json.dumps({"recommended_strategy": {"primary_modality": "telepathy"}})
        plan = await PlanningModule(ScriptedOracle(auxiliary=[payload])).perform_agentic_planning(QUERY, QUERY, [], 1)
        assert plan.strategy == SearchStrategy.VECTOR_SEARCH

    @pytest.mark.asyncio
    async def test_transient_error_uses_fallback(self):
        module = PlanningModule(ScriptedOracle(auxiliary=[OracleError("boom")]))
        plan = await module.perform_agentic_planning(QUERY, QUERY, [], 1)
        assert plan == fallback_plan(QUERY)

    @pytest.mark.asyncio
    async def test_timeout_uses_fallback(self):
        module = PlanningModule(ScriptedOracle(auxiliary=[asyncio.TimeoutError()]))
        plan = await module.perform_agentic_planning(QUERY, QUERY, [], 1)
        assert plan == fallback_plan(QUERY)

    @pytest.mark.asyncio
    async def test_fatal_errors_propagate(self):
        for error in (OracleNotInitializedError(), OracleQuotaExceededError()):
            module = PlanningModule(ScriptedOracle(auxiliary=[error]))
            with pytest.raises(type(error)):
                await module.perform_agentic_planning(QUERY, QUERY, [], 1)

    @pytest.mark.asyncio
    async def test_auxiliary_queries_skip_original(self):
        plan = await PlanningModule(ScriptedOracle(auxiliary=[PLAN_JSON])).perform_agentic_planning(QUERY, QUERY, [], 1)
        assert auxiliary_queries(plan, QUERY) == [
            "refresh_session_token callers",
            "token expiry configuration",
        ]
        assert auxiliary_queries(plan, QUERY, limit=1) == ["refresh_session_token callers"]


# =============================================================================
# REFLECTION
# =============================================================================

class TestReflection:
    """Tests for answer self-critique."""

    @pytest.mark.asyncio
    async def test_parses_reflection(self):
        payload = json.dumps({
            "hallucination_analysis": {"detected_hallucinations": ["claims Redis is used"]},
            "completeness_analysis": {"missing_aspects": ["expiry handling"]},
            "overall_assessment": {"quality_score": 0.4, "overall_confidence": 0.6},
            "improvement_recommendations": {"immediate_fixes": ["remove Redis claim"]},
        })
        module = PlanningModule(ScriptedOracle(auxiliary=[payload]))
        reflection = await module.perform_reflection(QUERY, make_contexts(2), "draft [1]", "vector_search", 2)

        assert reflection.has_hallucinations is True
        assert reflection.missing_info == ["expiry handling"]
        assert reflection.quality_score == 0.4
        assert reflection.corrections == ["remove Redis claim"]

    @pytest.mark.asyncio
    async def test_malformed_reflection_is_neutral(self):
        module = PlanningModule(ScriptedOracle(auxiliary=["looks fine"]))
        reflection = await module.perform_reflection(QUERY, [], "draft", "vector_search", 2)
        assert reflection == ReflectionResult.neutral()
        assert reflection.has_hallucinations is False


# =============================================================================
# CORRECTIVE QUERIES
# =============================================================================

class TestCorrectiveQuery:
    """Tests for corrective query generation."""

    @pytest.mark.asyncio
    async def test_oracle_query_used(self):
        payload = json.dumps({"improved_queries": [{"query": "token expiry check in middleware"}]})
        module = PlanningModule(ScriptedOracle(auxiliary=[payload]))
        query = await module.generate_corrective_query(QUERY, ReflectionResult(), [])
        assert query == "token expiry check in middleware"

    @pytest.mark.asyncio
    async def test_heuristic_fallback(self):
        module = PlanningModule(ScriptedOracle(auxiliary=["no json"]))
        reflection = ReflectionResult(missing_info=["expiry handling"])
        query = await module.generate_corrective_query(QUERY, reflection, [])
        assert query == f"{QUERY} focusing on: expiry handling"

    def test_heuristic_without_focus(self):
        assert heuristic_corrective_query(QUERY, ReflectionResult()) == (
            f'Find more context to support answering: "{QUERY}"'
        )


# =============================================================================
# CONTEXT ANALYSIS
# =============================================================================

class TestContextAnalysis:
    """Tests for consolidated re-scoring of retrieved items."""

    @pytest.mark.asyncio
    async def test_scores_merged_with_provider_relevance(self):
        contexts = [
            make_context(1, relevance=0.5),
            make_context(2, relevance=0.9),
            make_context(3, relevance=0.3),
        ]
        payload = json.dumps({
            "overall_analysis": "Mostly about token refresh",
            "context_analyses": [
                {"context_index": 1, "relevance_score": 0.8, "insights": "defines the refresh",
                 "query_relationship": "direct", "confidence": 0.9},
                {"context_index": 2, "relevance_score": 0.4},
            ],
        })
        oracle = ScriptedOracle(auxiliary=[payload])
        analyzed = await PlanningModule(oracle).analyze_contexts(QUERY, contexts, 2)

        assert [c.relevance_score for c in analyzed] == [0.8, 0.9, 0.6]
        first = analyzed[0].metadata["context_analysis"]
        assert first == {
            "analyzed": True,
            "insights": "defines the refresh",
            "query_relationship": "direct",
            "confidence": 0.9,
            "turn": 2,
        }
        assert analyzed[1].metadata["context_analysis"]["insights"] == "No insights provided"
        assert analyzed[2].metadata["context_analysis"]["analyzed"] is False
        assert oracle.count("auxiliary") == 1
        assert "Context 3:" in oracle.prompts("auxiliary")[0]

    @pytest.mark.asyncio
    async def test_out_of_range_entries(self):
        payload = json.dumps({"context_analyses": [
            {"context_index": 1, "relevance_score": 1.7},
            {"context_index": 5, "relevance_score": 0.9},
            {"context_index": True, "relevance_score": 0.9},
        ]})
        analyzed = await PlanningModule(ScriptedOracle(auxiliary=[payload])).analyze_contexts(
            QUERY, make_contexts(2, relevance=0.2), 1
        )
        assert [c.relevance_score for c in analyzed] == [1.0, 0.6]

    @pytest.mark.asyncio
    async def test_failure_applies_default_scores(self):
        contexts = [make_context(1, relevance=0.2), make_context(2, relevance=0.95)]
        for script in (OracleError("boom"), "no json here"):
            analyzed = await PlanningModule(ScriptedOracle(auxiliary=[script])).analyze_contexts(QUERY, contexts, 1)

            assert [c.relevance_score for c in analyzed] == [0.6, 0.95]
            assert all(c.metadata["context_analysis"]["analyzed"] is False for c in analyzed)
            assert contexts[0].relevance_score == 0.2

    @pytest.mark.asyncio
    async def test_fatal_errors_propagate(self):
        for error in (OracleNotInitializedError(), OracleQuotaExceededError()):
            module = PlanningModule(ScriptedOracle(auxiliary=[error]))
            with pytest.raises(type(error)):
                await module.analyze_contexts(QUERY, make_contexts(1), 1)

    @pytest.mark.asyncio
    async def test_nothing_to_analyze(self):
        oracle = ScriptedOracle()
        assert await PlanningModule(oracle).analyze_contexts(QUERY, [], 1) == []
        assert oracle.calls == []


# =============================================================================
# DMQR
# =============================================================================

class TestDiverseQueryRewriter:
    """Tests for diverse multi-query rewriting."""

    @pytest.mark.asyncio
    async def test_original_first_then_variants(self):
        payload = json.dumps({"strategic_queries": [
            {"query": "refresh_session_token implementation", "focus": "implementation"},
            {"query": QUERY.upper(), "focus": "duplicate of the original"},
            {"query": "token refresh tests", "focus": "tests"},
        ]})
        result = await DiverseQueryRewriter(ScriptedOracle(auxiliary=[payload])).rewrite(QUERY, 3)

        assert result.success is True
        assert result.queries == [QUERY, "refresh_session_token implementation", "token refresh tests"]
        assert len(result.generated) == 3

    @pytest.mark.asyncio
    async def test_failure_returns_original_only(self):
        result = await DiverseQueryRewriter(ScriptedOracle(auxiliary=["sorry"])).rewrite(QUERY, 3)
        assert result.queries == [QUERY]
        assert result.success is False
        assert result.error

    @pytest.mark.asyncio
    async def test_transient_error_returns_original_only(self):
        result = await DiverseQueryRewriter(ScriptedOracle(auxiliary=[OracleError("down")])).rewrite(QUERY)
        assert result.queries == [QUERY]
        assert result.success is False

    @pytest.mark.asyncio
    async def test_quota_error_propagates(self):
        with pytest.raises(OracleQuotaExceededError):
            await DiverseQueryRewriter(ScriptedOracle(auxiliary=[OracleQuotaExceededError()])).rewrite(QUERY)
