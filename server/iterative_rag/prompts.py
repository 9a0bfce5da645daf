"""
Prompt builders for every oracle call made by the iterative RAG loop.

Each prompt has a typed field struct and a builder that renders it with
f-strings; there is no placeholder substitution.
"""

import json
from dataclasses import dataclass, field
from typing import List, Optional

from .models import ReflectionResult, RetrievedContext

ANALYSIS_SYSTEM_INSTRUCTION = (
    "You are a highly precise search orchestrator. Your ONLY output must be a single JSON "
    "object in the exact format specified in the user's prompt. Do NOT include any "
    "conversational text or markdown."
)

ANSWER_SYSTEM_INSTRUCTION = (
    "You are a helpful AI assistant providing accurate answers based on the given context. "
    "Cite the evidence you rely on with its [n] marker."
)

JSON_ONLY_SYSTEM_INSTRUCTION = (
    "Respond only with a valid JSON object, without any conversational text or markdown."
)

FOCUS_PRESETS = {
    "code_review": (
        "Focus on all aspects including:\n1.  **Potential Bugs & Errors**\n"
        "2.  **Best Practices & Conventions**\n3.  **Performance**\n"
        "4.  **Security Vulnerabilities**\n5.  **Readability & Maintainability**"
    ),
    "code_explanation": "Focus on explaining the code clearly and concisely.",
    "enhancement_suggestions": "Focus on suggesting improvements and enhancements.",
    "bug_fixing": "Focus on identifying and suggesting fixes for bugs.",
    "refactoring": "Focus on suggesting refactoring opportunities.",
    "testing": "Focus on testing strategies and test case generation.",
    "documentation": "Focus on generating or improving documentation.",
    "code_modularization_orchestration": "Focus on modularity, architecture, and orchestration patterns.",
}


def build_focus_string(focus_area: Optional[str], focus_points: Optional[List[str]] = None) -> str:
    """Focus section prepended to analysis and answer prompts (empty when unset)"""
    if not focus_area:
        return ""
    if focus_points:
        body = "Focus on the following aspects for your analysis and response:\n" + "\n".join(
            f"{i + 1}.  **{point}**" for i, point in enumerate(focus_points)
        )
    else:
        body = FOCUS_PRESETS.get(focus_area, "")
    if not body:
        return ""
    return f"--- Focus Area ---\n{body}\n\n"


# ============================================
# Turn analysis (decision)
# ============================================

@dataclass
class AnalysisPromptFields:
    original_query: str
    current_turn: int
    max_iterations: int
    accumulated_context: str
    focus: str = ""
    enable_web_search: bool = False


def build_analysis_prompt(f: AnalysisPromptFields) -> str:
    actions = "ANSWER|SEARCH_AGAIN|SEARCH_WEB" if f.enable_web_search else "ANSWER|SEARCH_AGAIN"
    web_rule = (
        '- If the query requires external, real-time, or third-party library information not '
        'found in the code, set "decision" to "SEARCH_WEB" and provide "next_web_query".\n'
        if f.enable_web_search else ""
    )
    return f"""You are an intelligent search orchestrator. Your goal is to answer the user's original query by iteratively searching a codebase{' and, if necessary, the web' if f.enable_web_search else ''}.
Original Query: "{f.original_query}"
Current Search Turn: {f.current_turn} of {f.max_iterations}

{f.focus}---
Accumulated Context So Far (each item is numbered [n]):
{f.accumulated_context}
---

Based on the accumulated context, make a decision. Respond with one JSON object:
{{
  "decision": "{actions}",
  "reasoning": "Brief explanation citing the supporting items as [n]. If searching again, explain what is missing.",
  "next_codebase_query": "Only for SEARCH_AGAIN: a query to find the missing code information",
  "next_web_query": "Only for SEARCH_WEB: a concise web search engine query",
  "confidence_score": 0.0,
  "quality_score": 0.0
}}

Instructions:
- If the accumulated context is sufficient to fully answer the original query, set "decision" to "ANSWER".
- If more codebase information is needed, set "decision" to "SEARCH_AGAIN".
{web_rule}- "confidence_score" is your confidence (0.0-1.0) that the context answers the query; "quality_score" rates the context (0.0-1.0).
- If you have reached the last turn ({f.max_iterations}), you MUST set "decision" to "ANSWER".
"""


# ============================================
# Final answer
# ============================================

@dataclass
class AnswerPromptFields:
    original_query: str
    context: str
    focus: str = ""


def build_answer_prompt(f: AnswerPromptFields) -> str:
    return f"""{f.focus}Answer the following query using only the provided context.

Original Query: "{f.original_query}"

Context (each item is numbered [n]):
{f.context}

Instructions:
- Base every statement on the context and cite the supporting items inline as [n].
- If the context does not contain the information, say so explicitly instead of guessing.
- Include relevant code snippets and file paths where they help.
"""


def build_empty_context_answer_prompt(original_query: str, focus: str = "") -> str:
    return f"""{focus}No relevant context could be retrieved from the codebase for the following query.

Original Query: "{original_query}"

Give the most helpful answer you can from general knowledge. State clearly that it is not
grounded in the project's code, and list what information would be needed to answer it precisely.
"""


# ============================================
# Planning, reflection, correction
# ============================================

@dataclass
class PlanningPromptFields:
    original_query: str
    current_query: str
    iteration: int
    previous_strategy: str
    context_quality: float
    information_gaps: List[str] = field(default_factory=list)
    context_summary: str = ""


def build_planning_prompt(f: PlanningPromptFields) -> str:
    return f"""You are planning retrieval for a question about a codebase.

Original Query: "{f.original_query}"
Current Query: "{f.current_query}"
Iteration: {f.iteration}
Previous Strategy: {f.previous_strategy}
Context Quality: {f.context_quality}
Information Gaps: {', '.join(f.information_gaps) or 'none identified'}
Current Context:
{f.context_summary or '(none)'}

Choose the retrieval strategy and up to three concrete search actions. Strategies:
- vector_search: semantic similarity over code embeddings
- graph_traversal: follow relationships in the knowledge graph
- hybrid_search: vector, keyword and graph retrieval fused together
- web_augmented: codebase search supplemented with web search
- corrective_search: targeted searches to fix gaps in earlier results

Respond with one JSON object:
{{
  "recommended_strategy": {{"primary_modality": "vector_search|graph_traversal|hybrid_search|web_augmented|corrective_search"}},
  "execution_plan": {{
    "immediate_actions": [{{"action": "search", "target_query": "...", "reasoning": "..."}}],
    "query_formulation": "what the retrieved context should contain"
  }},
  "contingency_planning": {{"fallback_strategy": "vector_search|graph_traversal|hybrid_search"}}
}}
"""


@dataclass
class ReflectionPromptFields:
    original_query: str
    generated_response: str
    source_context: str
    search_strategy: str
    iteration_count: int


def build_reflection_prompt(f: ReflectionPromptFields) -> str:
    return f"""Critically review a generated answer against the sources it was based on.

Original Query: "{f.original_query}"
Search Strategy: {f.search_strategy}
Iterations So Far: {f.iteration_count}

Sources:
{f.source_context}

Generated Response:
{f.generated_response}

Respond with one JSON object:
{{
  "hallucination_analysis": {{"detected_hallucinations": ["claims not supported by the sources"]}},
  "completeness_analysis": {{"missing_aspects": ["parts of the query left unanswered"]}},
  "overall_assessment": {{"quality_score": 0.0, "overall_confidence": 0.0}},
  "improvement_recommendations": {{
    "immediate_fixes": ["corrections to apply"],
    "enhancement_suggestions": ["optional improvements"]
  }}
}}
"""


@dataclass
class CorrectivePromptFields:
    current_query: str
    reflection: ReflectionResult
    current_context: str


def build_corrective_prompt(f: CorrectivePromptFields) -> str:
    return f"""A retrieval round produced an answer with problems. Propose better search queries.

Current Query: "{f.current_query}"
Has Hallucinations: {str(f.reflection.has_hallucinations).lower()}
Missing Information: {', '.join(f.reflection.missing_info) or 'none'}
Quality Score: {f.reflection.quality_score}
Reflection: {json.dumps(f.reflection.model_dump())}
Current Context: {f.current_context or '(none)'}

Respond with one JSON object:
{{"improved_queries": [{{"query": "...", "rationale": "..."}}]}}
"""


@dataclass
class ContextAnalysisPromptFields:
    query: str
    turn: int
    contexts: List[RetrievedContext] = field(default_factory=list)
    preview_chars: int = 400


def build_context_analysis_prompt(f: ContextAnalysisPromptFields) -> str:
    summaries = "\n---\n\n".join(
        f"Context {idx}:\n"
        f"File: {c.source_path}\n"
        f"Entity: {c.entity_name or 'N/A'}\n"
        f"Type: {c.kind.value}\n"
        f"Content Preview: {c.content[:f.preview_chars]}...\n"
        f"Current Score: {c.relevance_score}\n"
        for idx, c in enumerate(f.contexts, 1)
    )
    return f"""Analyze all {len(f.contexts)} code contexts for relevance to the query: "{f.query}" (search turn {f.turn})

For each context, provide:
1. Relevance score (0.0-1.0): how well it matches the query
2. Key insights: what important information it contains
3. Query relationship: how it specifically relates to the query
4. Confidence (0.0-1.0): how confident you are in this assessment

Contexts to analyze:
{summaries}
Respond with one JSON object, one analysis per context, using the context numbers above:
{{
  "overall_analysis": "brief summary of the contexts and their collective relevance",
  "context_analyses": [
    {{"context_index": 1, "relevance_score": 0.85, "insights": "...", "query_relationship": "...", "confidence": 0.9}}
  ]
}}
"""


# ============================================
# Query rewriting
# ============================================

def build_keyword_extraction_prompt(query: str) -> str:
    return (
        "Extract the most important search keywords (identifiers, technical terms) from this "
        "query for a keyword search over source code. Respond with a comma-separated list only.\n\n"
        f'Query: "{query}"'
    )


def build_diverse_queries_prompt(query: str, count: int) -> str:
    return f"""Rewrite the following question into {count} diverse search queries for a codebase.
Each query should approach the question from a different angle (implementation, usage,
configuration, data flow, error handling, tests).

Original Query: "{query}"

Respond with one JSON object containing exactly {count} queries:
{{"strategic_queries": [{{"query": "...", "focus": "..."}}]}}
"""
