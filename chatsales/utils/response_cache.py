# chatsales/utils/response_cache.py
"""
In-memory cache for extraction results.

Extraction runs at temperature 0, and on top of that this cache makes repeated
calls with identical inputs return the same candidate without going back to
the model. The key is a BLAKE2b digest of the transcript, the last messages
and the lead snapshot.
"""

import copy
import hashlib
import json
import time
from typing import Any, Dict, Optional, Tuple

from chatsales.utils.logger import logger


class ExtractionCache:
    """
    TTL cache keyed by a digest of the extraction inputs.

    Entries are deep-copied on the way in and out so callers can mutate
    what they get back.
    """

    def __init__(self, ttl_seconds: int = 900, max_entries: int = 2000):
        self.cache: Dict[str, Tuple[Dict[str, Any], float]] = {}
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(*parts: Any) -> str:
        hasher = hashlib.blake2b(digest_size=16)
        for part in parts:
            if not isinstance(part, str):
                part = json.dumps(part, sort_keys=True, default=str)
            hasher.update(part.encode("utf-8"))
            hasher.update(b"\x1f")
        return hasher.hexdigest()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self.cache.get(key)
        if entry is None:
            self.misses += 1
            return None

        value, stored_at = entry
        if time.time() - stored_at > self.ttl_seconds:
            del self.cache[key]
            self.misses += 1
            return None

        self.hits += 1
        logger.debug(f"[CACHE] Extraction hit: {key[:12]}")
        return copy.deepcopy(value)

    def set(self, key: str, value: Dict[str, Any]) -> None:
        if len(self.cache) >= self.max_entries:
            self._evict()
        self.cache[key] = (copy.deepcopy(value), time.time())

    def _evict(self) -> None:
        now = time.time()
        expired = [k for k, (_, ts) in self.cache.items() if now - ts > self.ttl_seconds]
        for k in expired:
            del self.cache[k]
        # still full: drop the oldest quarter
        if len(self.cache) >= self.max_entries:
            oldest = sorted(self.cache.items(), key=lambda item: item[1][1])
            for k, _ in oldest[: max(1, self.max_entries // 4)]:
                del self.cache[k]

    def get_stats(self) -> Dict:
        total = self.hits + self.misses
        hit_rate = (self.hits / total * 100) if total > 0 else 0
        return {
            "hits": self.hits,
            "misses": self.misses,
            "total": total,
            "hit_rate_percent": round(hit_rate, 2),
            "cache_size": len(self.cache),
        }

    def clear(self) -> None:
        self.cache.clear()
        self.hits = 0
        self.misses = 0
