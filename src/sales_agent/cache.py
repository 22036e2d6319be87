"""
Short-lived memoization of billed LLM / TTS results.

Entries expire after a fixed TTL and the cache holds at most a fixed number of
entries. When full, the oldest *inserted* entry is evicted; this is an
approximation of LRU (reads do not refresh an entry's position).
"""

from __future__ import annotations

import hashlib
import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)

CACHE_TTL_SECONDS = 5 * 60
CACHE_MAX_ENTRIES = 100

CacheKey = Tuple[str, str, str]


def options_digest(options: Optional[Mapping[str, Any]]) -> str:
    """Stable digest of an options mapping (key order does not matter)."""
    if not options:
        return ""
    encoded = json.dumps(options, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha1(encoded.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    value: Any
    timestamp: float


class ResponseCache:
    """TTL + capacity bounded cache keyed by (kind, input text, options digest)."""

    def __init__(
        self,
        *,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        max_entries: int = CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[CacheKey, CacheEntry]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(kind: str, input_text: str, options: Optional[Mapping[str, Any]] = None) -> CacheKey:
        return (kind, input_text, options_digest(options))

    def get(self, kind: str, input_text: str, options: Optional[Mapping[str, Any]] = None) -> Optional[Any]:
        key = self.make_key(kind, input_text, options)
        entry = self._entries.get(key)
        if entry is None or self._clock() - entry.timestamp >= self.ttl_seconds:
            self.misses += 1
            return None
        self.hits += 1
        logger.debug("Cache hit", kind=kind)
        return entry.value

    def put(self, kind: str, input_text: str, options: Optional[Mapping[str, Any]], value: Any) -> None:
        key = self.make_key(kind, input_text, options)
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Cache eviction", kind=evicted[0])
        self._entries[key] = CacheEntry(value=value, timestamp=self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> Dict[str, int]:
        return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}

    def __len__(self) -> int:
        return len(self._entries)
