"""
Iterative RAG Orchestrator

Multi-turn retrieve -> analyze -> decide loop over a codebase knowledge
store. Each turn retrieves context for the next pending query, asks the
oracle whether the accumulated context answers the question, and either
answers (subject to the quality gate), searches again, or searches the web.

Termination is guaranteed: at most max_iterations decision calls, plus one
call for the final answer. perform_iterative_search never raises for
recoverable conditions; every outcome is explained by
search_metrics.termination_reason.

Usage:
    orchestrator = IterativeRagOrchestrator(store, oracle, web_search)
    result = await orchestrator.perform_iterative_search(
        IterativeRagRequest(agent_id="agent-1", query="How is the session token refreshed?")
    )
"""

import asyncio
import logging
import time
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field, replace
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from config.logging_config import DecisionAuditLogger, decision_audit_logger
from core.exceptions import (
    OracleError,
    OracleNotInitializedError,
    OracleQuotaExceededError,
)
from .citations import CitationTracker
from .context_cache import SessionContextCache
from .context_flow import ContextFlowBuilder, format_context_for_prompt
from .decision_parser import DecisionParseFailed, parse_decision
from .hybrid_search import HybridSearchCoordinator, OracleKeywordExtractor
from .models import (
    AgenticPlan,
    ContextKind,
    Decision,
    DecisionType,
    IterativeRagRequest,
    IterativeRagResult,
    ReflectionResult,
    RetrievedContext,
    SearchMetrics,
    SearchStrategy,
    TurnLogEntry,
    TurnType,
    WebSource,
)
from .planning import PlanningModule, auxiliary_queries
from .prompts import (
    ANALYSIS_SYSTEM_INSTRUCTION,
    ANSWER_SYSTEM_INSTRUCTION,
    AnalysisPromptFields,
    AnswerPromptFields,
    build_analysis_prompt,
    build_answer_prompt,
    build_empty_context_answer_prompt,
    build_focus_string,
)
from .protocols import KnowledgeStore, Oracle, WebSearchProvider, call_with_deadline
from .quality_gate import QualityGate, QualityGateConfig, calculate_context_quality
from .query_rewriter import DiverseQueryRewriter

logger = logging.getLogger("iterative_rag.orchestrator")

TERMINATION_ANSWER = "ANSWER decision reached with quality gates passed"
TERMINATION_FINAL_ITERATION = "ANSWER accepted on final iteration (quality gates bypassed)"
TERMINATION_MAX_ITERATIONS = "Max iterations reached; answer forced from accumulated context"
TERMINATION_REPEATED = "safety: repeated/empty queries"
TERMINATION_STABLE = "context stable: no new context for {turns} consecutive turns"
TERMINATION_NO_ACTION = "No valid next action"
TERMINATION_PARSE_FAILURE = "parsing failure: {reason}"
TERMINATION_ORACLE_NOT_INITIALIZED = "oracle not initialized: {message}"
TERMINATION_ORACLE_QUOTA = "oracle quota exceeded: {message}"
TERMINATION_ORACLE_ERROR = "oracle error: {message}"
TERMINATION_UNEXPECTED = "unexpected error: {message}"

WEB_RELEVANCE = 0.95

# Path fragments identifying architectural layers, used to steer
# diversification queries towards layers the context has not touched yet
ARCHITECTURE_LAYERS: List[Tuple[str, Tuple[str, ...]]] = [
    ("API routes and request handlers", ("api", "route", "controller", "handler", "endpoint")),
    ("service layer implementation", ("service", "manager", "core", "engine")),
    ("data models and persistence", ("model", "schema", "repository", "db", "database", "migration")),
    ("configuration and setup", ("config", "setting", "env", ".json", ".yaml", ".toml")),
    ("tests and usage examples", ("test", "spec", "example")),
]


def normalize_query(query: Optional[str]) -> str:
    return (query or "").strip().lower()


@dataclass(frozen=True)
class RagConfig:
    """Immutable loop configuration shared by all invocations"""
    repeated_query_limit: int = 2
    stable_turn_limit: int = 2
    max_accumulated_context: int = 200
    diversity_threshold: float = 0.5
    diversity_cap: int = 10
    max_diversification_queries: int = 2
    max_auxiliary_queries: int = 2
    prompt_item_char_limit: int = 1500
    keyword_extraction_via_oracle: bool = False
    gate: QualityGateConfig = field(default_factory=QualityGateConfig)
    reflection_quality_floor: float = 0.5
    cache_ttl_seconds: float = 600
    cache_max_entries: int = 50
    cache_evict_fraction: float = 0.3
    older_context_limit: int = 10
    older_context_keep: int = 5
    older_context_min_relevance: float = 0.8
    channel_weights: Dict[str, float] = field(
        default_factory=lambda: {"vector": 1.0, "keyword": 0.8, "graph": 0.9}
    )
    rrf_k: int = 60
    oracle_timeout: Optional[float] = 120.0
    retrieval_timeout: Optional[float] = 30.0
    web_search_timeout: Optional[float] = 30.0

    @classmethod
    def from_settings(cls, settings) -> "RagConfig":
        return cls(
            repeated_query_limit=settings.repeated_query_limit,
            stable_turn_limit=settings.stable_turn_limit,
            max_accumulated_context=settings.max_accumulated_context,
            diversity_threshold=settings.diversity_threshold,
            diversity_cap=settings.diversity_cap,
            max_diversification_queries=settings.max_diversification_queries,
            prompt_item_char_limit=settings.prompt_item_char_limit,
            keyword_extraction_via_oracle=settings.keyword_extraction_via_oracle,
            gate=QualityGateConfig(
                quality_threshold=settings.quality_threshold,
                low_context_count=settings.low_context_count,
                low_confidence_threshold=settings.low_confidence_threshold,
                citation_quality_threshold=settings.citation_quality_threshold,
            ),
            reflection_quality_floor=settings.reflection_quality_floor,
            cache_ttl_seconds=settings.context_cache_ttl_seconds,
            cache_max_entries=settings.context_cache_max_entries,
            cache_evict_fraction=settings.context_cache_evict_fraction,
            older_context_limit=settings.older_context_limit,
            older_context_keep=settings.older_context_keep,
            older_context_min_relevance=settings.older_context_min_relevance,
            channel_weights=settings.channel_weights,
            rrf_k=settings.rrf_k,
            oracle_timeout=settings.oracle_timeout_seconds or None,
            retrieval_timeout=settings.retrieval_timeout_seconds or None,
            web_search_timeout=settings.web_search_timeout_seconds or None,
        )


@dataclass
class RagSession:
    """All mutable state of one perform_iterative_search invocation"""
    request: IterativeRagRequest
    request_id: str
    cache: SessionContextCache
    tracker: CitationTracker
    metrics: SearchMetrics = field(default_factory=SearchMetrics)
    accumulated: List[RetrievedContext] = field(default_factory=list)
    seen_keys: Set[str] = field(default_factory=set)
    source_frequency: Counter = field(default_factory=Counter)
    pending: Deque[str] = field(default_factory=deque)
    issued: Set[str] = field(default_factory=set)
    decision_log: List[Decision] = field(default_factory=list)
    reflection_results: List[ReflectionResult] = field(default_factory=list)
    web_sources: List[WebSource] = field(default_factory=list)
    plan: Optional[AgenticPlan] = None
    final_answer: Optional[str] = None
    repeat_count: int = 0
    stable_turns: int = 0
    last_new_count: int = 0
    web_items_pending_analysis: Optional[List[RetrievedContext]] = None
    last_web_query: Optional[str] = None

    def ingest(self, items: List[RetrievedContext], limit: int) -> List[RetrievedContext]:
        """Add unseen items (first occurrence wins) up to the context ceiling"""
        added = []
        for item in items:
            if len(self.accumulated) >= limit:
                logger.warning(f"[{self.request_id}] Accumulated context ceiling ({limit}) reached")
                break
            key = item.dedup_key
            if key in self.seen_keys:
                continue
            self.seen_keys.add(key)
            self.accumulated.append(item)
            self.source_frequency[item.source_path] += 1
            added.append(item)

        if added:
            self.tracker.add_items(added)
            self.metrics.context_items_added += len(added)
            self.repeat_count = 0
        return added

    def source_diversity(self, cap: int) -> float:
        if not self.accumulated:
            return 0.0
        return len(self.source_frequency) / min(len(self.accumulated), cap)

    def terminate(self, reason: str):
        self.metrics.termination_reason = reason

    def to_result(self) -> IterativeRagResult:
        return IterativeRagResult(
            accumulated_context=self.accumulated,
            web_search_sources=self.web_sources,
            final_answer=self.final_answer,
            decision_log=self.decision_log,
            citations=self.tracker.citations,
            reflection_results=self.reflection_results,
            agentic_plan=self.plan,
            search_metrics=self.metrics,
        )


class IterativeRagOrchestrator:
    """
    Top-level iterative search loop.

    One instance may serve many concurrent requests: nothing mutable is kept
    on the orchestrator, all per-request state lives in a RagSession.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        oracle: Oracle,
        web_search: Optional[WebSearchProvider] = None,
        config: Optional[RagConfig] = None,
        audit: Optional[DecisionAuditLogger] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.oracle = oracle
        self.web_search = web_search
        self.config = config or RagConfig()
        self.audit = audit or decision_audit_logger
        self.clock = clock
        self.flow_builder = ContextFlowBuilder(
            older_limit=self.config.older_context_limit,
            older_keep=self.config.older_context_keep,
            older_min_relevance=self.config.older_context_min_relevance,
        )

    # ============================================
    # Public entry point
    # ============================================

    async def perform_iterative_search(self, request: IterativeRagRequest) -> IterativeRagResult:
        request_id = str(uuid.uuid4())[:8]
        session = RagSession(
            request=request,
            request_id=request_id,
            cache=SessionContextCache(
                ttl_seconds=self.config.cache_ttl_seconds,
                max_entries=self.config.cache_max_entries,
                evict_fraction=self.config.cache_evict_fraction,
                clock=self.clock,
            ),
            tracker=CitationTracker(request_id),
        )
        start_time = time.time()
        logger.info(
            f"[{request_id}] Starting iterative search (max {request.max_iterations} turns): "
            f"{request.query[:100]}"
        )

        try:
            await self._run(session)
        except OracleNotInitializedError as e:
            logger.error(f"[{request_id}] Oracle not initialized: {e.message}")
            session.terminate(TERMINATION_ORACLE_NOT_INITIALIZED.format(message=e.message))
        except OracleQuotaExceededError as e:
            logger.error(f"[{request_id}] Oracle quota exceeded: {e.message}")
            session.terminate(TERMINATION_ORACLE_QUOTA.format(message=e.message))
        except OracleError as e:
            logger.error(f"[{request_id}] Oracle error: {e.message}")
            session.terminate(TERMINATION_ORACLE_ERROR.format(message=e.message))
        except asyncio.TimeoutError:
            logger.error(f"[{request_id}] Oracle call exceeded {self.config.oracle_timeout}s")
            session.terminate(TERMINATION_ORACLE_ERROR.format(
                message=f"timed out after {self.config.oracle_timeout}s"
            ))
        except Exception as e:
            logger.exception(f"[{request_id}] Unexpected error in iterative search")
            session.terminate(TERMINATION_UNEXPECTED.format(message=str(e) or e.__class__.__name__))

        self._record_citation_metrics(session)
        self._sync_cache_metrics(session)

        logger.info(
            f"[{request_id}] Iterative search finished in {time.time() - start_time:.2f}s: "
            f"{session.metrics.termination_reason} ({session.metrics.total_iterations} turns, "
            f"{len(session.accumulated)} items, {len(session.tracker)} citations)"
        )
        self.audit.log_termination(
            request_id=request_id,
            reason=session.metrics.termination_reason,
            iterations=session.metrics.total_iterations,
            context_items=len(session.accumulated),
            citations=len(session.tracker),
            answered=session.final_answer is not None,
        )
        return session.to_result()

    # ============================================
    # Loop
    # ============================================

    async def _run(self, session: RagSession):
        request = session.request
        timeout = self.config.oracle_timeout
        planning = PlanningModule(self.oracle, request.model, timeout, session.request_id)
        gate = QualityGate(replace(
            self.config.gate,
            citation_quality_threshold=request.citation_accuracy_threshold,
        ))
        coordinator = HybridSearchCoordinator(
            store=self.store,
            cache=session.cache,
            weights=self.config.channel_weights,
            rrf_k=self.config.rrf_k,
            keyword_extractor=(
                OracleKeywordExtractor(self.oracle, request.model, timeout)
                if self.config.keyword_extraction_via_oracle else None
            ),
            timeout=self.config.retrieval_timeout,
            request_id=session.request_id,
        )
        focus = build_focus_string(request.focus_area, request.analysis_focus_points)

        session.pending.append(request.query)
        if request.enable_agentic_planning:
            session.plan = await planning.perform_agentic_planning(request.query, request.query, [], 1)
            aux = auxiliary_queries(session.plan, request.query, self.config.max_auxiliary_queries)
            session.pending.extend(aux)
            session.metrics.turn_log.append(TurnLogEntry(
                turn=0,
                query=request.query,
                strategy=session.plan.strategy.value,
                decision="PLAN",
                reasoning=f"{len(session.plan.steps)} steps, {len(aux)} auxiliary queries",
                type=TurnType.AGENTIC_PLAN,
            ))

        strategy = self._base_strategy(session)

        for turn in range(1, request.max_iterations + 1):
            session.metrics.total_iterations = turn
            is_final = turn == request.max_iterations
            analysis_only = session.web_items_pending_analysis is not None

            if analysis_only:
                new_items = session.web_items_pending_analysis
                session.web_items_pending_analysis = None
                query = session.last_web_query or request.query
                turn_strategy = SearchStrategy.WEB_AUGMENTED.value
            else:
                query = self._next_query(session)
                if query is None:
                    reason = TERMINATION_REPEATED if session.repeat_count > 0 else TERMINATION_NO_ACTION
                    self._log_turn(session, turn, request.query, strategy.value, "TERMINATE",
                                   reason, TurnType.EARLY_TERMINATION, 0)
                    session.terminate(reason)
                    await self._force_final_answer(session, focus)
                    return
                session.issued.add(normalize_query(query))
                new_items, turn_strategy = await self._retrieve_turn(session, coordinator, planning, query, strategy, turn)

            session.last_new_count = len(new_items)
            if new_items:
                session.stable_turns = 0
            elif turn > 1 and not analysis_only:
                session.stable_turns += 1
                if session.stable_turns >= self.config.stable_turn_limit:
                    reason = TERMINATION_STABLE.format(turns=session.stable_turns)
                    self._log_turn(session, turn, query, turn_strategy, "TERMINATE", reason,
                                   TurnType.STABILITY_TERMINATION, 0)
                    session.terminate(reason)
                    await self._force_final_answer(session, focus)
                    return

            logger.info(
                f"[{session.request_id}] Turn {turn}/{request.max_iterations}: +{len(new_items)} items "
                f"(total {len(session.accumulated)}) for '{query[:80]}'"
            )

            self._update_diversity(session, query, is_final)

            # Decision
            flow = self.flow_builder.build(
                session.accumulated,
                recent_count=len(new_items),
                enable_long_rag=request.enable_long_rag,
                chunk_size=request.long_rag_chunk_size,
            )
            prompt = build_analysis_prompt(AnalysisPromptFields(
                original_query=request.query,
                current_turn=turn,
                max_iterations=request.max_iterations,
                accumulated_context=self._format_flow(session, flow),
                focus=focus,
                enable_web_search=request.enable_web_search and self.web_search is not None,
            ))
            session.metrics.decision_calls += 1
            response = await call_with_deadline(
                self.oracle.ask(prompt, model=request.model, system_instruction=ANALYSIS_SYSTEM_INSTRUCTION),
                self.config.oracle_timeout,
            )

            parsed = parse_decision(response.content)
            if isinstance(parsed, DecisionParseFailed):
                logger.warning(f"[{session.request_id}] Turn {turn}: decision parse failed: {parsed.reason}")
                reason = TERMINATION_PARSE_FAILURE.format(reason=parsed.reason)
                self._log_turn(session, turn, query, turn_strategy, "PARSE_FAILED", parsed.reason,
                               TurnType.EARLY_TERMINATION, len(new_items))
                session.terminate(reason)
                return

            decision = parsed.decision
            session.decision_log.append(decision)
            quality = calculate_context_quality(session.accumulated, request.query)
            self.audit.log_decision(
                request_id=session.request_id,
                turn=turn,
                query=query,
                decision=decision.decision.value,
                strategy=turn_strategy,
                new_context_count=len(new_items),
                quality=round(quality, 3),
                confidence=decision.confidence_score,
            )
            logger.info(
                f"[{session.request_id}] Turn {turn}: {decision.decision.value} via {parsed.method} "
                f"(quality {quality:.2f}, confidence {decision.confidence_score})"
            )
            turn_type = TurnType.INITIAL if turn == 1 else TurnType.ITERATIVE

            if decision.decision == DecisionType.ANSWER:
                done = await self._handle_answer(
                    session, planning, gate, decision, query, turn, turn_strategy,
                    turn_type, len(new_items), is_final, focus, flow,
                )
                if done:
                    return
                continue

            self._log_turn(session, turn, query, turn_strategy, decision.decision.value,
                           decision.reasoning, turn_type, len(new_items), quality)

            if decision.decision == DecisionType.SEARCH_WEB:
                await self._handle_web_search(session, decision)
                continue

            if decision.next_codebase_query:
                session.pending.appendleft(decision.next_codebase_query)
            else:
                logger.info(f"[{session.request_id}] Turn {turn}: SEARCH_AGAIN without a query")
                session.terminate(TERMINATION_NO_ACTION)
                await self._force_final_answer(session, focus)
                return

        session.terminate(TERMINATION_MAX_ITERATIONS)
        await self._force_final_answer(session, focus)

    # ============================================
    # Query selection and retrieval
    # ============================================

    def _next_query(self, session: RagSession) -> Optional[str]:
        """Pop the next fresh query, counting repeats; None stops the loop"""
        while session.pending:
            candidate = session.pending.popleft()
            if not normalize_query(candidate) or normalize_query(candidate) in session.issued:
                session.repeat_count += 1
                logger.info(
                    f"[{session.request_id}] Skipping repeated/empty query '{candidate[:60]}' "
                    f"({session.repeat_count}/{self.config.repeated_query_limit})"
                )
                if session.repeat_count >= self.config.repeated_query_limit:
                    return None
                continue
            return candidate
        return None

    def _base_strategy(self, session: RagSession) -> SearchStrategy:
        if session.plan is not None:
            return session.plan.strategy
        if session.request.enable_hybrid_search:
            return SearchStrategy.HYBRID_SEARCH
        return SearchStrategy.VECTOR_SEARCH

    def _channels_for(self, session: RagSession, strategy: SearchStrategy) -> Tuple[bool, bool]:
        """
        (hybrid, include_graph) for a strategy.

        The graph channel joins only when a plan recommends graph or hybrid
        retrieval, or when context_options.use_hybrid_search forces it.
        """
        forced = bool(session.request.context_options.use_hybrid_search)
        planned_graph = session.plan is not None and strategy in (
            SearchStrategy.GRAPH_TRAVERSAL, SearchStrategy.HYBRID_SEARCH
        )
        include_graph = forced or planned_graph
        if strategy == SearchStrategy.VECTOR_SEARCH:
            hybrid = forced
        elif strategy == SearchStrategy.WEB_AUGMENTED:
            hybrid = session.request.enable_hybrid_search or forced
        else:
            hybrid = True
        return hybrid or include_graph, include_graph

    async def _retrieve_turn(
        self,
        session: RagSession,
        coordinator: HybridSearchCoordinator,
        planning: PlanningModule,
        query: str,
        strategy: SearchStrategy,
        turn: int,
    ) -> Tuple[List[RetrievedContext], str]:
        request = session.request
        options = request.context_options

        queries = [query]
        rewrite_variants: List[str] = []
        if turn == 1 and request.enable_dmqr:
            session.metrics.dmqr.enabled = True
            session.metrics.dmqr.query_count = request.dmqr_query_count
            rewriter = DiverseQueryRewriter(self.oracle, request.model, self.config.oracle_timeout, session.request_id)
            rewrite = await rewriter.rewrite(query, request.dmqr_query_count)
            session.metrics.dmqr.success = rewrite.success
            session.metrics.dmqr.error = rewrite.error
            session.metrics.dmqr.generated_queries = rewrite.generated
            rewrite_variants = [q for q in rewrite.queries[1:] if normalize_query(q) not in session.issued]
            queries += rewrite_variants
            session.issued.update(normalize_query(q) for q in rewrite_variants)

        hybrid, include_graph = self._channels_for(session, strategy)
        results = await coordinator.retrieve_many(request.agent_id, queries, options, hybrid, include_graph)
        self._count_channels(session, results)
        retrieved = [item for result in results for item in result.items]
        used_strategy = strategy

        fallback = session.plan.fallback_strategy if session.plan else None
        if not retrieved and fallback is not None and fallback != strategy:
            logger.info(
                f"[{session.request_id}] {strategy.value} returned nothing; retrying with {fallback.value}"
            )
            hybrid, include_graph = self._channels_for(session, fallback)
            results = await coordinator.retrieve_many(request.agent_id, [query], options, hybrid, include_graph)
            self._count_channels(session, results)
            retrieved = [item for result in results for item in result.items]
            used_strategy = fallback

        if request.enable_context_analysis:
            retrieved = await self._analyze_new_items(session, planning, retrieved, turn)

        new_items = session.ingest(retrieved, self.config.max_accumulated_context)
        if turn == 1 and request.enable_dmqr:
            session.metrics.dmqr.context_items_generated = len(new_items)
        self._sync_cache_metrics(session)
        return new_items, used_strategy.value

    async def _analyze_new_items(
        self,
        session: RagSession,
        planning: PlanningModule,
        retrieved: List[RetrievedContext],
        turn: int,
    ) -> List[RetrievedContext]:
        """Batch-analyze the items ingest would add; already seen items are dropped"""
        fresh: Dict[str, RetrievedContext] = {}
        for item in retrieved:
            if item.dedup_key not in session.seen_keys:
                fresh.setdefault(item.dedup_key, item)
        if not fresh:
            return []
        session.metrics.context_analyses_performed += 1
        return await planning.analyze_contexts(session.request.query, list(fresh.values()), turn)

    def _count_channels(self, session: RagSession, results):
        for result in results:
            if result.hybrid:
                session.metrics.hybrid_searches += 1
            if result.graph_used:
                session.metrics.graph_traversals += 1

    def _sync_cache_metrics(self, session: RagSession):
        session.metrics.cache_hits = session.cache.stats["hits"]
        session.metrics.cache_misses = session.cache.stats["misses"]

    def _update_diversity(self, session: RagSession, query: str, is_final: bool):
        diversity = session.source_diversity(self.config.diversity_cap)
        session.metrics.source_diversity = round(diversity, 3)
        if is_final or not session.accumulated or diversity >= self.config.diversity_threshold:
            return

        queries = self._diversification_queries(session, session.request.query)
        # extendleft reverses, so feed it backwards to keep the listed order
        session.pending.extendleft(reversed(queries))
        if queries:
            logger.info(
                f"[{session.request_id}] Low source diversity ({diversity:.2f}); "
                f"queued {len(queries)} diversification queries"
            )

    def _diversification_queries(self, session: RagSession, query: str) -> List[str]:
        paths = [p.lower() for p in session.source_frequency]
        blocked = session.issued | {normalize_query(q) for q in session.pending}
        queries = []
        for label, markers in ARCHITECTURE_LAYERS:
            if any(marker in path for path in paths for marker in markers):
                continue
            candidate = f"{query} ({label})"
            if normalize_query(candidate) in blocked:
                continue
            queries.append(candidate)
            if len(queries) >= self.config.max_diversification_queries:
                break
        return queries

    # ============================================
    # Decision handlers
    # ============================================

    async def _handle_answer(
        self,
        session: RagSession,
        planning: PlanningModule,
        gate: QualityGate,
        decision: Decision,
        query: str,
        turn: int,
        strategy: str,
        turn_type: TurnType,
        new_count: int,
        is_final: bool,
        focus: str,
        flow: List[RetrievedContext],
    ) -> bool:
        """Returns True when the search is finished"""
        request = session.request
        verdict = gate.evaluate(decision, session.accumulated, request.query, session.tracker, is_final)

        if not verdict.accepted:
            corrective = await self._corrective_query(
                session, planning, decision,
                ReflectionResult(missing_info=verdict.reasons, quality_score=verdict.quality),
            )
            logger.info(
                f"[{session.request_id}] Turn {turn}: ANSWER overridden ({'; '.join(verdict.reasons)})"
            )
            self.audit.log_override(
                session.request_id, turn, verdict.reasons, corrective, verdict=verdict.to_dict()
            )
            self._log_turn(session, turn, query, strategy, DecisionType.SEARCH_AGAIN.value,
                           "; ".join(verdict.reasons), TurnType.HYBRID_OVERRIDE, new_count, verdict.quality)
            session.metrics.self_correction_loops += 1
            session.pending.appendleft(corrective)
            return False

        self._log_turn(session, turn, query, strategy, decision.decision.value,
                       decision.reasoning, turn_type, new_count, verdict.quality)

        answer = await self._generate_answer(session, flow, focus)

        if request.enable_reflection and turn % request.reflection_frequency == 0:
            reflection = await planning.perform_reflection(
                request.query, session.accumulated, answer, strategy, turn
            )
            session.metrics.hallucination_checks_performed += 1
            session.reflection_results.append(reflection)
            needs_correction = (
                reflection.has_hallucinations
                or reflection.quality_score < self.config.reflection_quality_floor
            )
            self._log_turn(session, turn, query, strategy, "REFLECTION",
                           f"hallucinations={reflection.has_hallucinations}, quality={reflection.quality_score:.2f}",
                           TurnType.REFLECTION, 0, reflection.quality_score)

            if needs_correction and request.enable_corrective_rag and not is_final:
                corrective = await self._corrective_query(session, planning, decision, reflection)
                logger.info(f"[{session.request_id}] Turn {turn}: reflection triggered self-correction")
                self.audit.log_override(session.request_id, turn, ["reflection"], corrective)
                self._log_turn(session, turn, corrective, strategy, DecisionType.SEARCH_AGAIN.value,
                               "reflection flagged the draft answer", TurnType.SELF_CORRECTION, 0,
                               reflection.quality_score)
                session.metrics.self_correction_loops += 1
                session.pending.appendleft(corrective)
                return False

        session.final_answer = answer
        session.terminate(TERMINATION_FINAL_ITERATION if verdict.reasons else TERMINATION_ANSWER)
        return True

    async def _corrective_query(
        self,
        session: RagSession,
        planning: PlanningModule,
        decision: Decision,
        reflection: ReflectionResult,
    ) -> str:
        query = session.request.query
        if session.request.enable_corrective_rag:
            return await planning.generate_corrective_query(query, reflection, session.accumulated)
        if decision.next_codebase_query:
            return decision.next_codebase_query
        return f'Find more context to support answering: "{query}"'

    async def _handle_web_search(self, session: RagSession, decision: Decision):
        request = session.request
        fallback_query = f'Find codebase information for: "{request.query}"'

        if not request.enable_web_search or self.web_search is None:
            logger.info(f"[{session.request_id}] SEARCH_WEB with web search disabled; searching codebase")
            session.pending.appendleft(fallback_query)
            return

        web_query = decision.next_web_query or request.query
        session.metrics.web_searches_performed += 1
        try:
            results = await call_with_deadline(
                self.web_search.search(web_query, {
                    "search_depth": request.tavily_search_depth,
                    "max_results": request.tavily_max_results,
                }),
                self.config.web_search_timeout,
            )
        except Exception as e:
            logger.warning(f"[{session.request_id}] Web search failed ({e}); searching codebase")
            session.pending.appendleft(fallback_query)
            return

        if not results:
            logger.info(f"[{session.request_id}] No web results for '{web_query[:60]}'; searching codebase")
            session.pending.appendleft(fallback_query)
            return

        items = self._web_items(session, results)
        new_items = session.ingest(items, self.config.max_accumulated_context)
        session.web_items_pending_analysis = new_items
        session.last_web_query = web_query

    def _web_items(self, session: RagSession, results) -> List[RetrievedContext]:
        items = []
        for res in results:
            session.web_sources.append(WebSource(title=res.title, url=res.url))
            items.append(RetrievedContext(
                kind=ContextKind.DOCUMENTATION,
                source_path=res.url,
                entity_name=res.title or None,
                content=res.content,
                relevance_score=WEB_RELEVANCE,
                metadata={"search_channel": "web"},
            ))
        return items

    # ============================================
    # Answers and bookkeeping
    # ============================================

    def _format_flow(self, session: RagSession, flow: List[RetrievedContext]) -> str:
        return format_context_for_prompt(flow, session.tracker.id_for, self.config.prompt_item_char_limit)

    async def _generate_answer(self, session: RagSession, flow: List[RetrievedContext], focus: str) -> str:
        request = session.request
        if flow:
            prompt = build_answer_prompt(AnswerPromptFields(
                original_query=request.query,
                context=self._format_flow(session, flow),
                focus=focus,
            ))
        else:
            prompt = build_empty_context_answer_prompt(request.query, focus)

        response = await call_with_deadline(
            self.oracle.ask(
                prompt,
                model=request.model,
                system_instruction=request.system_instruction or ANSWER_SYSTEM_INSTRUCTION,
            ),
            self.config.oracle_timeout,
        )
        return response.content

    async def _force_final_answer(self, session: RagSession, focus: str):
        """One answer call from whatever has accumulated; failures leave no answer"""
        request = session.request
        try:
            if not session.accumulated and request.enable_web_search and self.web_search is not None:
                await self._web_fallback(session)

            flow = self.flow_builder.build(
                session.accumulated,
                recent_count=session.last_new_count,
                enable_long_rag=request.enable_long_rag,
                chunk_size=request.long_rag_chunk_size,
            )
            session.final_answer = await self._generate_answer(session, flow, focus)
        except (OracleError, asyncio.TimeoutError) as e:
            logger.warning(f"[{session.request_id}] Forced final answer failed: {e}")

    async def _web_fallback(self, session: RagSession):
        request = session.request
        session.metrics.web_searches_performed += 1
        try:
            results = await call_with_deadline(
                self.web_search.search(request.query, {
                    "search_depth": request.tavily_search_depth,
                    "max_results": request.tavily_max_results,
                }),
                self.config.web_search_timeout,
            )
        except Exception as e:
            logger.warning(f"[{session.request_id}] Web fallback failed: {e}")
            return
        new_items = session.ingest(self._web_items(session, results or []), self.config.max_accumulated_context)
        session.last_new_count = len(new_items)
        logger.info(f"[{session.request_id}] Web fallback added {len(new_items)} items")

    def _record_citation_metrics(self, session: RagSession):
        metrics = session.metrics
        metrics.total_citations_generated = len(session.tracker)
        if session.final_answer is None:
            return

        validation = session.tracker.validate(
            session.final_answer, session.request.citation_accuracy_threshold
        )
        metrics.citation_accuracy = round(validation.accuracy, 3)
        metrics.citation_coverage = round(validation.coverage, 3)
        metrics.total_citations_used = len(validation.valid_ids)
        if validation.invalid_ids:
            self.audit.log_citation_warning(session.request_id, validation.invalid_ids, len(session.tracker))

    def _log_turn(
        self,
        session: RagSession,
        turn: int,
        query: str,
        strategy: str,
        decision: str,
        reasoning: str,
        turn_type: TurnType,
        new_count: int,
        quality: float = 0.0,
    ):
        session.metrics.turn_log.append(TurnLogEntry(
            turn=turn,
            query=query,
            strategy=strategy,
            decision=decision,
            reasoning=reasoning,
            type=turn_type,
            quality=round(quality, 3),
            new_context_count=new_count,
            citations=len(session.tracker),
        ))
