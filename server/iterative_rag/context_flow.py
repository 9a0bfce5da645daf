"""
Context Flow Builder

Turns the accumulated context of a session into the bounded, ordered list of
items shown to the oracle each turn:

1. Optionally split long items into chunks (long-context mode)
2. Partition into items added this turn (recent) and everything before (older)
3. Sort each partition by relevance, breaking ties by entity-type priority
4. Trim a large older partition down to its few highly relevant items
5. Concatenate recent-then-older and drop duplicate keys
"""

import logging
from typing import Callable, List, Optional, Sequence, Tuple

from .models import ContextKind, RetrievedContext

logger = logging.getLogger("iterative_rag.context_flow")

# Higher sorts first when relevance ties
TYPE_PRIORITY = {
    ContextKind.GRAPH_NODE: 6,
    ContextKind.FUNCTION: 5,
    ContextKind.METHOD: 4,
    ContextKind.CLASS: 3,
    ContextKind.FILE: 2,
    ContextKind.DOCUMENTATION: 1,
    ContextKind.GENERIC_CHUNK: 0,
}


def type_priority(item: RetrievedContext) -> int:
    return TYPE_PRIORITY.get(item.kind, 0)


def chunk_item(item: RetrievedContext, chunk_size: int) -> List[RetrievedContext]:
    """
    Split one item into chunks of at most chunk_size characters.

    A chunk ends just after the last '.' or newline inside its window
    when that break point lies past half of chunk_size; otherwise it is cut hard.
    """
    content = item.content
    if len(content) <= chunk_size:
        return [item]

    chunks: List[RetrievedContext] = []
    start = 0
    while start < len(content):
        end = start + chunk_size
        if end < len(content):
            break_point = max(content.rfind(".", start, end), content.rfind("\n", start, end))
            if break_point > start + chunk_size * 0.5:
                end = break_point + 1

        chunks.append(item.model_copy(update={
            "content": content[start:end],
            "entity_name": f"{item.entity_name or 'chunk'}_{len(chunks) + 1}",
            "metadata": {
                **item.metadata,
                "is_chunk": True,
                "chunk_index": len(chunks),
                "original_length": len(content),
                "parent_key": item.dedup_key,
            },
        }))
        start = end

    return chunks


def sort_by_priority(items: Sequence[RetrievedContext]) -> List[RetrievedContext]:
    """Relevance descending, then type priority descending; stable otherwise"""
    return sorted(items, key=lambda c: (-c.relevance_score, -type_priority(c)))


class ContextFlowBuilder:
    """
    Builds the per-turn context flow.

    Usage:
        builder = ContextFlowBuilder(older_limit=10, older_keep=5, older_min_relevance=0.8)
        flow = builder.build(accumulated, recent_count=len(new_items))
    """

    def __init__(
        self,
        older_limit: int = 10,
        older_keep: int = 5,
        older_min_relevance: float = 0.8,
    ):
        self.older_limit = older_limit
        self.older_keep = older_keep
        self.older_min_relevance = older_min_relevance

    def build(
        self,
        accumulated: Sequence[RetrievedContext],
        recent_count: int,
        enable_long_rag: bool = False,
        chunk_size: int = 2000,
    ) -> List[RetrievedContext]:
        if not accumulated:
            return []

        recent_count = max(0, min(recent_count, len(accumulated)))
        split = len(accumulated) - recent_count
        older_source = list(accumulated[:split])
        recent_source = list(accumulated[split:])

        if enable_long_rag:
            older_source = [c for item in older_source for c in chunk_item(item, chunk_size)]
            recent_source = [c for item in recent_source for c in chunk_item(item, chunk_size)]

        recent = sort_by_priority(recent_source)
        older = sort_by_priority(older_source)

        if len(older) > self.older_limit:
            older = [c for c in older if c.relevance_score >= self.older_min_relevance][:self.older_keep]

        flow: List[RetrievedContext] = []
        seen = set()
        for item in recent + older:
            key = item.dedup_key
            if key in seen:
                continue
            seen.add(key)
            flow.append(item)

        logger.debug(
            f"Context flow: {len(flow)} items ({len(recent)} recent, {len(older)} older kept "
            f"of {split})"
        )
        return flow


def _line_range(item: RetrievedContext) -> Optional[Tuple[int, int]]:
    start = item.metadata.get("start_line")
    end = item.metadata.get("end_line")
    if isinstance(start, int) and isinstance(end, int):
        return start, end
    return None


def format_context_for_prompt(
    flow: Sequence[RetrievedContext],
    citation_lookup: Optional[Callable[[RetrievedContext], Optional[int]]] = None,
    item_char_limit: int = 1500,
) -> str:
    """Render the flow as numbered evidence blocks the oracle can cite with [n]"""
    if not flow:
        return "No context has been retrieved yet."

    blocks = []
    for item in flow:
        citation_id = citation_lookup(item) if citation_lookup else None
        marker = f"[{citation_id}] " if citation_id is not None else ""
        header = f"{marker}{item.kind.value}"
        if item.entity_name:
            header += f" `{item.entity_name}`"
        header += f" in {item.source_path}"
        lines = _line_range(item)
        if lines:
            header += f" (lines {lines[0]}-{lines[1]})"
        header += f" | relevance {item.relevance_score:.2f}"

        content = item.content
        if len(content) > item_char_limit:
            content = content[:item_char_limit] + "\n... [truncated]"
        blocks.append(f"{header}\n{content}")

    return "\n\n".join(blocks)
