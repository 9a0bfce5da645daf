"""
Diverse Multi-Query Rewriter (DMQR)

Asks the oracle for N differently-angled variants of the user's query so the
first retrieval turn casts a wider net. The original query is always first;
any failure degrades to the original query alone.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from core.exceptions import OracleError, OracleNotInitializedError, OracleQuotaExceededError
from .decision_parser import parse_json_payload
from .prompts import JSON_ONLY_SYSTEM_INSTRUCTION, build_diverse_queries_prompt
from .protocols import Oracle, call_with_deadline

logger = logging.getLogger("iterative_rag.query_rewriter")


@dataclass
class RewriteResult:
    queries: List[str]
    success: bool
    error: Optional[str] = None
    generated: List[str] = field(default_factory=list)


class DiverseQueryRewriter:
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

    async def rewrite(self, query: str, count: int = 3) -> RewriteResult:
        """Original query first, followed by up to count distinct variants"""
        try:
            response = await call_with_deadline(
                self.oracle.ask(
                    build_diverse_queries_prompt(query, count),
                    model=self.model,
                    system_instruction=JSON_ONLY_SYSTEM_INSTRUCTION,
                ),
                self.timeout,
            )
        except (OracleNotInitializedError, OracleQuotaExceededError):
            raise
        except (OracleError, asyncio.TimeoutError) as e:
            logger.warning(f"[{self.request_id}] DMQR generation failed, using original query: {e}")
            return RewriteResult(queries=[query], success=False, error=str(e) or e.__class__.__name__)

        parsed = parse_json_payload(response.content)
        generated: List[str] = []
        if isinstance(parsed, dict) and isinstance(parsed.get("strategic_queries"), list):
            for item in parsed["strategic_queries"]:
                if isinstance(item, dict) and isinstance(item.get("query"), str):
                    generated.append(item["query"].strip())
                elif isinstance(item, str):
                    generated.append(item.strip())
        elif isinstance(parsed, list):
            generated = [q.strip() for q in parsed if isinstance(q, str)]

        generated = [q for q in generated if q][:count]
        if not generated:
            logger.warning(f"[{self.request_id}] DMQR returned no usable queries, using original query")
            return RewriteResult(queries=[query], success=False, error="no queries generated")

        queries = [query]
        seen = {query.strip().lower()}
        for q in generated:
            if q.lower() not in seen:
                seen.add(q.lower())
                queries.append(q)

        logger.info(f"[{self.request_id}] DMQR generated {len(queries) - 1} variants")
        return RewriteResult(queries=queries, success=True, generated=generated)
