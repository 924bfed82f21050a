"""
DERIVED METRICS CACHE

An injected TTL cache for read-side project metrics, keyed by
(project_id, role) so each role sees its own rendering. The transaction
coordinator invalidates every entry of a project after a commit.

One instance per service; there is no module-level cache.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


class DerivedMetricsCache:

    def __init__(self, ttl_seconds: float = 60, clock: Callable[[], datetime] = datetime.utcnow):
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[CacheKey, Tuple[datetime, Any]] = {}

    def get(self, project_id: str, role: str) -> Optional[Any]:
        key = (project_id, role)
        entry = self._entries.get(key)
        if entry is None:
            return None

        stored_at, value = entry
        if (self._clock() - stored_at).total_seconds() >= self._ttl_seconds:
            del self._entries[key]
            logger.debug(f"[CACHE] Expired {key}")
            return None
        return value

    def set(self, project_id: str, role: str, value: Any) -> None:
        self._entries[(project_id, role)] = (self._clock(), value)

    def invalidate(self, project_id: str) -> int:
        """Drop every role's entry for a project; returns how many were dropped."""
        stale = [key for key in self._entries if key[0] == project_id]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug(f"[CACHE] Invalidated {len(stale)} entries for project {project_id}")
        return len(stale)

    def __len__(self):
        return len(self._entries)
