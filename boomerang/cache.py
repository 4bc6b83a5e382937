"""
Boomerang Task Cache

Memoizes task analysis by a fingerprint of the normalized description and
project context. Entries expire after a TTL; when full, the least recently
used entry is evicted.
"""

import copy
import hashlib
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger("cache")

FINGERPRINT_LENGTH = 16


def normalize_context(context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Sort keys and strip/lower-case string values."""
    normalized: Dict[str, Any] = {}
    for key in sorted(context or {}):
        value = context[key]
        normalized[key] = value.strip().lower() if isinstance(value, str) else value
    return normalized


def fingerprint(description: str, context: Optional[Dict[str, Any]] = None) -> str:
    """Stable cache key for a (description, context) pair."""
    payload = {
        "description": description.strip().lower(),
        "context": normalize_context(context),
    }
    encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()[:FINGERPRINT_LENGTH]


def _iso(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()


@dataclass
class CacheEntry:
    value: Any
    created_at: float
    accessed_at: float
    expires_at: float


class TaskCache:
    """In-memory TTL + LRU memoization cache."""

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        max_size: int = 1000,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self.enabled = enabled
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, description: str, context: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """Return a copy of the cached value, or None on miss or expiry."""
        if not self.enabled:
            return None

        key = fingerprint(description, context)
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            logger.debug(f"Cache miss {key}")
            return None

        now = self._clock()
        if now > entry.expires_at:
            del self._entries[key]
            self._misses += 1
            self._evictions += 1
            logger.debug(f"Cache entry {key} expired")
            return None

        self._hits += 1
        entry.accessed_at = now
        self._entries.move_to_end(key)
        logger.debug(f"Cache hit {key}")
        return copy.deepcopy(entry.value)

    def set(self, description: str, context: Optional[Dict[str, Any]], value: Any) -> None:
        if not self.enabled:
            return

        key = fingerprint(description, context)
        now = self._clock()
        if key not in self._entries and len(self._entries) >= self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            self._evictions += 1
            logger.debug(f"Cache LRU eviction {evicted}")

        self._entries[key] = CacheEntry(
            value=copy.deepcopy(value),
            created_at=now,
            accessed_at=now,
            expires_at=now + self.ttl_seconds,
        )
        self._entries.move_to_end(key)

    async def get_or_compute(
        self,
        description: str,
        context: Optional[Dict[str, Any]],
        compute: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Return the cached value or await compute() and cache its result."""
        cached = self.get(description, context)
        if cached is not None:
            return cached
        value = await compute()
        if value is not None:
            self.set(description, context, value)
        return value

    def delete(self, description: str, context: Optional[Dict[str, Any]] = None) -> bool:
        key = fingerprint(description, context)
        if key in self._entries:
            del self._entries[key]
            self._evictions += 1
            return True
        return False

    def cleanup(self) -> int:
        """Drop expired entries; returns the number removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
        for key in expired:
            del self._entries[key]
        self._evictions += len(expired)
        if expired:
            logger.info(f"Cache cleanup removed {len(expired)} entries, {len(self._entries)} remaining")
        return len(expired)

    def clear(self) -> None:
        self._evictions += len(self._entries)
        self._entries.clear()

    def get_stats(self) -> Dict[str, Any]:
        lookups = self._hits + self._misses
        hit_rate = (self._hits / lookups) * 100 if lookups else 0.0
        return {
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "size": len(self._entries),
            "hit_rate": round(hit_rate, 2),
            "enabled": self.enabled,
            "ttl_seconds": self.ttl_seconds,
            "max_size": self.max_size,
        }

    def get_all_items(self) -> List[Dict[str, Any]]:
        """Describe every entry, most recently used first."""
        now = self._clock()
        items = []
        for key, entry in reversed(self._entries.items()):
            items.append({
                "key": key,
                "value": copy.deepcopy(entry.value),
                "created_at": _iso(entry.created_at),
                "accessed_at": _iso(entry.accessed_at),
                "expires_at": _iso(entry.expires_at),
                "ttl_remaining": max(0.0, entry.expires_at - now),
                "expired": now > entry.expires_at,
            })
        return items
