"""
Pydantic models for the Iterative RAG Orchestrator

Defines the data structures that flow through the multi-turn retrieval loop:
retrieved context items, citations, oracle decisions, plans, reflection
results, per-invocation metrics and the request/response envelope.
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple
from pydantic import AliasGenerator, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ContextKind(str, Enum):
    """Kind of a retrieved context item"""
    FUNCTION = "function"
    METHOD = "method"
    CLASS = "class"
    FILE = "file"
    DOCUMENTATION = "documentation"
    GRAPH_NODE = "graph_node"
    GENERIC_CHUNK = "generic_chunk"

    @classmethod
    def coerce(cls, value: Any) -> "ContextKind":
        """Map provider-specific kind names onto the known kinds"""
        if isinstance(value, cls):
            return value
        name = str(value or "").strip().lower()
        aliases = {
            "kg_node_info": cls.GRAPH_NODE,
            "kg_node": cls.GRAPH_NODE,
            "node": cls.GRAPH_NODE,
            "generic_code_chunk": cls.GENERIC_CHUNK,
            "chunk": cls.GENERIC_CHUNK,
            "docs": cls.DOCUMENTATION,
        }
        if name in aliases:
            return aliases[name]
        try:
            return cls(name)
        except ValueError:
            return cls.GENERIC_CHUNK


class SourceType(str, Enum):
    """Where a citation's evidence came from"""
    CODE = "code"
    DOCUMENTATION = "documentation"
    WEB = "web"
    KNOWLEDGE_GRAPH = "knowledge_graph"


class DecisionType(str, Enum):
    """Actions the oracle may choose after inspecting the context"""
    ANSWER = "ANSWER"
    SEARCH_AGAIN = "SEARCH_AGAIN"
    SEARCH_WEB = "SEARCH_WEB"


class SearchStrategy(str, Enum):
    """Retrieval strategy recommended by the planning module"""
    VECTOR_SEARCH = "vector_search"
    GRAPH_TRAVERSAL = "graph_traversal"
    HYBRID_SEARCH = "hybrid_search"
    WEB_AUGMENTED = "web_augmented"
    CORRECTIVE_SEARCH = "corrective_search"

    @classmethod
    def coerce(cls, value: Any, default: "SearchStrategy") -> "SearchStrategy":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return default


class TurnType(str, Enum):
    """Classification of a turn log entry"""
    INITIAL = "initial"
    ITERATIVE = "iterative"
    SELF_CORRECTION = "self-correction"
    AGENTIC_PLAN = "agentic-plan"
    REFLECTION = "reflection"
    EARLY_TERMINATION = "early_termination"
    STABILITY_TERMINATION = "stability_termination"
    HYBRID_OVERRIDE = "hybrid_override"


# Context Models

class RetrievedContext(BaseModel):
    """A single unit of retrieved evidence"""
    kind: ContextKind = Field(default=ContextKind.GENERIC_CHUNK, description="Kind of code/doc entity")
    source_path: str = Field(..., description="File path, URL or graph node id")
    entity_name: Optional[str] = Field(None, description="Function/class/title of the entity")
    content: str = Field(default="", description="Retrieved text")
    relevance_score: float = Field(default=0.5, description="Provider relevance (0.5 when omitted)")
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        description="Line ranges, node type, search channel, fusion scores"
    )

    @field_validator("kind", mode="before")
    @classmethod
    def coerce_kind(cls, v):
        return ContextKind.coerce(v)

    @field_validator("relevance_score", mode="before")
    @classmethod
    def default_relevance(cls, v):
        return 0.5 if v is None else v

    @property
    def dedup_key(self) -> str:
        """Identity used for deduplication: source path plus entity name"""
        return f"{self.source_path}#{self.entity_name or ''}"


class ContextRetrievalOptions(BaseModel):
    """Options passed through to the knowledge store"""
    top_k_embeddings: Optional[int] = Field(None, ge=1, description="Vector results per query")
    kg_query_depth: Optional[int] = Field(None, ge=1, description="Graph traversal depth")
    top_k_kg_results: Optional[int] = Field(None, ge=1, description="Graph results per query")
    target_file_paths: Optional[List[str]] = Field(None, description="Restrict retrieval to these paths")
    embedding_score_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    use_hybrid_search: Optional[bool] = Field(None, description="Force the graph channel into hybrid search")
    enable_reranking: Optional[bool] = None
    channel: Optional[str] = Field(None, description="Retrieval channel (vector/keyword/graph)")

    def cache_fingerprint(self) -> Dict[str, Any]:
        """Normalized view used for cache keys; path order is irrelevant"""
        return {
            "top_k_embeddings": self.top_k_embeddings,
            "kg_query_depth": self.kg_query_depth,
            "top_k_kg_results": self.top_k_kg_results,
            "target_file_paths": sorted(self.target_file_paths) if self.target_file_paths else None,
            "embedding_score_threshold": self.embedding_score_threshold,
            "use_hybrid_search": self.use_hybrid_search,
            "enable_reranking": self.enable_reranking,
            "channel": self.channel,
        }


class Citation(BaseModel):
    """Numbered reference to one ingested context item"""
    id: int = Field(..., ge=1, description="1-based, monotonic per tracker")
    source: str
    source_type: SourceType
    title: str
    url: Optional[str] = None
    file_path: Optional[str] = None
    line_numbers: Optional[Tuple[int, int]] = None
    confidence: float = 0.5
    relevance_score: float = 0.5
    extracted_text: str = Field(default="", max_length=200)


class CitationValidation(BaseModel):
    """Outcome of checking [n] references in generated text"""
    accuracy: float
    coverage: float
    quality: float
    passed: bool
    total_references: int = 0
    valid_ids: List[int] = Field(default_factory=list)
    invalid_ids: List[int] = Field(default_factory=list)


# Oracle output models

class Decision(BaseModel):
    """The oracle's verdict for one turn"""
    model_config = ConfigDict(
        alias_generator=AliasGenerator(validation_alias=to_camel),
        populate_by_name=True,
    )

    decision: DecisionType
    reasoning: str = ""
    next_codebase_query: Optional[str] = None
    next_web_query: Optional[str] = None
    quality_score: Optional[float] = Field(None, ge=0.0, le=1.0)
    confidence_score: Optional[float] = Field(None, ge=0.0, le=1.0)

    @field_validator("decision", mode="before")
    @classmethod
    def normalize_decision(cls, v):
        if isinstance(v, str):
            return v.strip().strip("[]*`\"'").upper().replace(" ", "_").replace("-", "_")
        return v

    @field_validator("reasoning", mode="before")
    @classmethod
    def normalize_reasoning(cls, v):
        return "" if v is None else str(v).strip()

    @field_validator("next_codebase_query", "next_web_query", mode="before")
    @classmethod
    def blank_query_is_none(cls, v):
        if v is None:
            return None
        v = str(v).strip().strip('"').strip()
        if not v or v.upper() in ("N/A", "NONE", "NULL", "-"):
            return None
        return v


class ReflectionResult(BaseModel):
    """Self-critique of a draft answer"""
    has_hallucinations: bool = False
    missing_info: List[str] = Field(default_factory=list)
    quality_score: float = Field(default=0.5, ge=0.0, le=1.0)
    suggestions: List[str] = Field(default_factory=list)
    corrections: List[str] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)

    @classmethod
    def neutral(cls) -> "ReflectionResult":
        return cls()


class PlanStep(BaseModel):
    action: str
    target: str
    priority: int = 1
    reasoning: str = ""


class AgenticPlan(BaseModel):
    """Retrieval plan produced before the first turn"""
    strategy: SearchStrategy = SearchStrategy.VECTOR_SEARCH
    steps: List[PlanStep] = Field(default_factory=list)
    expected_outcome: str = "relevant context"
    fallback_strategy: Optional[SearchStrategy] = SearchStrategy.HYBRID_SEARCH


class WebSearchResult(BaseModel):
    title: str = ""
    url: str
    content: str = ""
    score: Optional[float] = None


class WebSource(BaseModel):
    title: str
    url: str


# Metrics

class TurnLogEntry(BaseModel):
    turn: int
    query: str
    strategy: str
    decision: str
    reasoning: str = ""
    type: TurnType = TurnType.ITERATIVE
    quality: float = 0.0
    new_context_count: int = 0
    citations: int = 0


class DmqrMetrics(BaseModel):
    """Diverse multi-query rewriting outcome"""
    enabled: bool = False
    query_count: Optional[int] = None
    generated_queries: List[str] = Field(default_factory=list)
    success: bool = False
    context_items_generated: int = 0
    error: Optional[str] = None


class SearchMetrics(BaseModel):
    """Mutable accumulator owned by one iterative search invocation"""
    total_iterations: int = 0
    context_items_added: int = 0
    web_searches_performed: int = 0
    hallucination_checks_performed: int = 0
    context_analyses_performed: int = 0
    self_correction_loops: int = 0
    graph_traversals: int = 0
    hybrid_searches: int = 0
    decision_calls: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    source_diversity: float = 0.0
    citation_accuracy: float = 0.0
    citation_coverage: float = 0.0
    total_citations_generated: int = 0
    total_citations_used: int = 0
    dmqr: DmqrMetrics = Field(default_factory=DmqrMetrics)
    turn_log: List[TurnLogEntry] = Field(default_factory=list)
    termination_reason: str = ""


# Request / Response Models

class IterativeRagRequest(BaseModel):
    """Request for an iterative RAG search"""
    agent_id: str = Field(..., min_length=1, description="Agent whose knowledge store is searched")
    query: str = Field(..., min_length=1, description="The question to answer")
    model: Optional[str] = Field(None, description="Oracle model override")
    system_instruction: Optional[str] = Field(None, description="System instruction for the final answer")
    context_options: ContextRetrievalOptions = Field(default_factory=ContextRetrievalOptions)
    focus_area: Optional[str] = Field(
        None,
        description="Named focus (code_review, code_explanation, bug_fixing, ...)"
    )
    analysis_focus_points: List[str] = Field(default_factory=list)
    enable_web_search: bool = False
    max_iterations: int = Field(default=5, ge=1, le=8, description="Hard ceiling on decision turns")
    tavily_search_depth: Literal["basic", "advanced"] = "basic"
    tavily_max_results: int = Field(default=5, ge=1, le=20)
    enable_dmqr: bool = Field(default=False, description="Seed turn 1 with diverse query variants")
    dmqr_query_count: int = Field(default=3, ge=1, le=10)
    enable_agentic_planning: bool = False
    enable_reflection: bool = False
    enable_hybrid_search: bool = True
    enable_long_rag: bool = Field(default=False, description="Chunk long items before prompting")
    enable_corrective_rag: bool = False
    enable_context_analysis: bool = Field(
        default=False,
        description="Re-score newly retrieved items with one oracle call per turn"
    )
    citation_accuracy_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    long_rag_chunk_size: int = Field(default=2000, ge=100)
    reflection_frequency: int = Field(default=2, ge=1)

    @field_validator("query")
    @classmethod
    def query_not_blank(cls, v):
        if not v.strip():
            raise ValueError("query must not be blank")
        return v.strip()


class IterativeRagResult(BaseModel):
    """Everything an iterative search produced, including partial results"""
    accumulated_context: List[RetrievedContext] = Field(default_factory=list)
    web_search_sources: List[WebSource] = Field(default_factory=list)
    final_answer: Optional[str] = None
    decision_log: List[Decision] = Field(default_factory=list)
    citations: List[Citation] = Field(default_factory=list)
    reflection_results: List[ReflectionResult] = Field(default_factory=list)
    agentic_plan: Optional[AgenticPlan] = None
    search_metrics: SearchMetrics = Field(default_factory=SearchMetrics)
