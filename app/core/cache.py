"""
Composition cache.

Short-TTL, key-based memoization of composed prompts and merged tenant
configuration. Two key families are used:

    prompt:{tenant_id}:{flow_key}
    config:{tenant_id}

The cache is injected into the services that read or invalidate it. The
in-memory implementation is process-local: a write handled by one replica does
not evict entries held by another, so staleness across replicas is bounded by
the TTL.
"""

import logging
import time
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


def prompt_cache_key(tenant_id: str, flow_key: str) -> str:
    return f"prompt:{tenant_id}:{flow_key}"


def config_cache_key(tenant_id: str) -> str:
    return f"config:{tenant_id}"


ALL_PROMPTS_PATTERN = "prompt:*"


@runtime_checkable
class PromptCache(Protocol):
    """Protocol for the composition cache."""

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None if absent or expired."""
        ...

    def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: Optional[int] = None,
        generation: Optional[int] = None,
    ) -> bool:
        """
        Store a value. None TTL means no expiry; a TTL of zero or less
        stores nothing. When generation is given and the key has been
        invalidated since it was read, nothing is stored.

        Returns True if the value was stored.
        """
        ...

    def generation(self, key: str) -> int:
        """Invalidation counter for a key; changes on every delete that covers it."""
        ...

    def delete(self, key: str) -> bool:
        """Evict one key. Returns True if it was present."""
        ...

    def delete_pattern(self, pattern: str) -> int:
        self._global_generation += 1
        """Evict every key matching a glob pattern. Returns eviction count."""
        ...


@dataclass
class CacheEntry:
    """A cached value and its absolute expiry (clock seconds)."""
    key: str
    value: Any
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now > self.expires_at


class InMemoryPromptCache:
    """
    Dict-backed TTL cache.

    The clock is injectable so tests can advance time deterministically.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        # Bumped by delete() per key and by delete_pattern()/clear() globally
        self._key_generations: Dict[str, int] = {}
        self._global_generation = 0
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "evictions": 0, "stale_sets": 0}

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self.stats["misses"] += 1
            return None

        if entry.is_expired(self._clock()):
            del self._entries[key]
            self.stats["evictions"] += 1
            self.stats["misses"] += 1
            return None

        self.stats["hits"] += 1
        return entry.value

    def generation(self, key: str) -> int:
        return self._global_generation + self._key_generations.get(key, 0)

    def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: Optional[int] = None,
        generation: Optional[int] = None,
    ) -> bool:
        if generation is not None and generation != self.generation(key):
            self.stats["stale_sets"] += 1
            logger.debug(f"[CACHE] Skipped stale write for {key}")
            return False

        if ttl_seconds is None:
            expires_at = None
        elif ttl_seconds <= 0:
            self._entries.pop(key, None)
            return False
        else:
            expires_at = self._clock() + ttl_seconds

        self._entries[key] = CacheEntry(key=key, value=value, expires_at=expires_at)
        self.stats["sets"] += 1
        return True

    def delete(self, key: str) -> bool:
        self._key_generations[key] = self._key_generations.get(key, 0) + 1
        if self._entries.pop(key, None) is None:
            return False
        self.stats["evictions"] += 1
        return True

    def delete_pattern(self, pattern: str) -> int:
        self._global_generation += 1
        matched = [key for key in self._entries if fnmatchcase(key, pattern)]
        for key in matched:
            del self._entries[key]
        self.stats["evictions"] += len(matched)
        if matched:
            logger.debug(f"[CACHE] Evicted {len(matched)} entries matching '{pattern}'")
        return len(matched)

    def clear(self) -> None:
        self._global_generation += 1
        self.stats["evictions"] += len(self._entries)
        self._entries.clear()

    def cleanup(self) -> int:
        """Drop expired entries. Returns the number removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        self.stats["evictions"] += len(expired)
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        total = self.stats["hits"] + self.stats["misses"]
        hit_rate = round(self.stats["hits"] / total * 100, 2) if total else 0.0
        return {
            **self.stats,
            "hit_rate": hit_rate,
            "size": len(self._entries),
            "total_requests": total,
        }

    def __len__(self) -> int:
        return len(self._entries)
