"""
Session-scoped retrieval cache.

Memoizes knowledge-store results for the duration of one iterative search so
that re-issued (query, options) pairs inside the session skip the store.
Entries expire after a TTL; when the entry count passes the high-water mark
the oldest fraction is purged.
"""

import hashlib
import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .models import ContextRetrievalOptions, RetrievedContext

logger = logging.getLogger("iterative_rag.context_cache")


@dataclass
class CacheEntry:
    """Cached retrieval result"""
    context: List[RetrievedContext]
    timestamp: float
    query: str
    options: Dict[str, Any] = field(default_factory=dict)


class SessionContextCache:
    """
    TTL cache keyed by SHA-256 of (query, normalized options).

    Usage:
        cache = SessionContextCache(ttl_seconds=600, max_entries=50)
        hit = cache.get(query, options)
        if hit is None:
            cache.put(query, options, await store.retrieve_context(...))
    """

    def __init__(
        self,
        ttl_seconds: float = 600,
        max_entries: int = 50,
        evict_fraction: float = 0.3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.evict_fraction = evict_fraction
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

        self.stats = {
            "hits": 0,
            "misses": 0,
            "expired": 0,
            "evicted": 0,
        }

    @staticmethod
    def make_key(query: str, options: ContextRetrievalOptions) -> str:
        """Stable key: equal queries with equal normalized options collide"""
        payload = json.dumps(
            {"query": query, "options": options.cache_fingerprint()},
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def _is_valid(self, entry: CacheEntry) -> bool:
        return (self._clock() - entry.timestamp) < self.ttl_seconds

    def get(self, query: str, options: ContextRetrievalOptions) -> Optional[List[RetrievedContext]]:
        key = self.make_key(query, options)
        entry = self._entries.get(key)
        if entry is None:
            self.stats["misses"] += 1
            return None
        if not self._is_valid(entry):
            del self._entries[key]
            self.stats["expired"] += 1
            self.stats["misses"] += 1
            return None

        self.stats["hits"] += 1
        logger.debug(f"Session cache HIT for query: {query[:50]}")
        return list(entry.context)

    def put(self, query: str, options: ContextRetrievalOptions, context: List[RetrievedContext]):
        key = self.make_key(query, options)
        self._entries[key] = CacheEntry(
            context=list(context),
            timestamp=self._clock(),
            query=query,
            options=options.cache_fingerprint(),
        )
        self.cleanup()

    def cleanup(self) -> int:
        """Purge the oldest entries once the high-water mark is exceeded"""
        if len(self._entries) <= self.max_entries:
            return 0

        to_remove = max(1, math.floor(self.max_entries * self.evict_fraction))
        oldest = sorted(self._entries.items(), key=lambda kv: kv[1].timestamp)[:to_remove]
        for key, _ in oldest:
            del self._entries[key]

        self.stats["evicted"] += len(oldest)
        logger.debug(f"Session cache evicted {len(oldest)} oldest entries")
        return len(oldest)

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        total = self.stats["hits"] + self.stats["misses"]
        return {
            **self.stats,
            "size": len(self._entries),
            "hit_rate": round(self.stats["hits"] / total, 3) if total else 0.0,
        }
