"""
Short-lived, tag-invalidated cache for aggregate counts.

Entries live for a fixed TTL and carry a set of tags ("status:processing",
"type:any", "account:<id>", "notify"). Writers invalidate by tag so a status
change only drops the counts it can affect. Max staleness of an entry is its
TTL; any write that changes a tagged field makes it stale immediately.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    expires_at: float
    tags: Set[str] = field(default_factory=set)


class TaggedTTLCache:
    """Process-wide key/value cache with TTL expiry and tag invalidation"""

    def __init__(self, ttl_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        # Bumped on every invalidation of a tag
        self._generations: Dict[str, int] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        if entry.expires_at <= self._clock():
            del self._entries[key]
            self.misses += 1
            return None

        self.hits += 1
        return entry.value

    def set(self, key: str, value: Any, tags: Iterable[str] = (), ttl_seconds: float = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl, tags=set(tags))

    async def get_or_compute(
        self,
        key: str,
        tags: Iterable[str],
        compute: Callable[[], Awaitable[Any]],
        ttl_seconds: float = None,
    ) -> Any:
        """
        Return the cached value for key, computing and storing it on a miss.

        If any of the entry's tags is invalidated while compute() is running,
        the computed value is returned but not stored.
        """
        cached = self.get(key)
        if cached is not None:
            return cached

        tag_set = set(tags)
        generations = self._generations_of(tag_set)
        value = await compute()

        if self._generations_of(tag_set) == generations:
            self.set(key, value, tag_set, ttl_seconds)
        else:
            logger.debug(f"Not caching {key}: its tags were invalidated during compute")
        return value

    def _generations_of(self, tags: Set[str]) -> Dict[str, int]:
        return {tag: self._generations.get(tag, 0) for tag in tags}

    def invalidate(self, tags: Iterable[str]) -> int:
        """Drop every entry carrying at least one of the given tags."""
        tag_set = set(tags)
        if not tag_set:
            return 0

        for tag in tag_set:
            self._generations[tag] = self._generations.get(tag, 0) + 1

        stale = [key for key, entry in self._entries.items() if entry.tags & tag_set]
        for key in stale:
            del self._entries[key]

        if stale:
            logger.debug(f"Invalidated {len(stale)} cached counts for tags {sorted(tag_set)}")
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# Shared count cache; only the enumeration service stores into it
count_cache = TaggedTTLCache()
