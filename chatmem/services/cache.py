"""In-process TTL + LRU caches and the registry that owns them."""

from __future__ import annotations

import hashlib
import inspect
import logging
import re
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING = object()

# name -> (max_size, ttl seconds)
DEFAULT_CACHE_SPECS: dict[str, tuple[int, float]] = {
    "memory": (500, 30 * 60),
    "ai": (100, 10 * 60),
    "profiles": (200, 2 * 60 * 60),
    "topics": (300, 60 * 60),
    "events": (100, 24 * 60 * 60),
}

GENERATION_TTL = 5 * 60
GENERATION_MAX_INPUT = 50


@dataclass
class CacheEntry(Generic[T]):
    value: T
    write_time: float
    ttl: float
    access_count: int = 0
    last_access: float = 0.0

    def expired(self, now: float) -> bool:
        return now > self.write_time + self.ttl


class SmartCache(Generic[T]):
    """Capacity-bounded cache with per-entry TTL and LRU eviction.

    Expiry is lazy on read; ``cleanup()`` removes expired entries regardless
    of access and is what the periodic sweep calls.
    """

    def __init__(
        self,
        name: str,
        max_size: int = 1000,
        default_ttl: float = 30 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.name = name
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry[T]] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0

    def get(self, key: str, default: Any = None) -> T | Any:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return default
        now = self._clock()
        if entry.expired(now):
            del self._entries[key]
            self.expirations += 1
            self.misses += 1
            return default
        entry.access_count += 1
        entry.last_access = now
        self.hits += 1
        return entry.value

    def set(self, key: str, value: T, ttl: float | None = None) -> None:
        now = self._clock()
        if key not in self._entries and len(self._entries) >= self.max_size:
            self._evict_lru()
        self._entries[key] = CacheEntry(
            value=value,
            write_time=now,
            ttl=self.default_ttl if ttl is None else ttl,
            last_access=now,
        )

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def has(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry.expired(self._clock()):
            del self._entries[key]
            self.expirations += 1
            return False
        return True

    async def get_or_compute(self, key: str, fallback: Callable[[], Any], ttl: float | None = None) -> T:
        """Return the cached value or compute, store and return it.

        ``fallback`` may be a plain callable or return an awaitable.
        """
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value
        result = fallback()
        if inspect.isawaitable(result):
            result = await result
        self.set(key, result, ttl)
        return result

    def invalidate_prefix(self, prefix: str) -> int:
        keys = [k for k in self._entries if k.startswith(prefix)]
        for k in keys:
            del self._entries[k]
        return len(keys)

    def cleanup(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.expired(now)]
        for k in expired:
            del self._entries[k]
        self.expirations += len(expired)
        if expired:
            logger.debug("Cache %s: swept %d expired entries", self.name, len(expired))
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def warmup(self, items: Iterable[tuple[str, T]], ttl: float | None = None) -> int:
        count = 0
        for key, value in items:
            self.set(key, value, ttl)
            count += 1
        return count

    def stats(self) -> dict:
        total = self.hits + self.misses
        return {
            "name": self.name,
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "hit_rate": self.hits / total if total else 0.0,
        }

    def __len__(self) -> int:
        return len(self._entries)

    def _evict_lru(self) -> None:
        victim = min(self._entries, key=lambda k: self._entries[k].last_access)
        del self._entries[victim]
        self.evictions += 1


class CacheRegistry:
    """Owns the named caches; constructed once by the orchestration root.

    Keys are ``"<chat_id>:<...>"`` so a chat's entries can be dropped as a
    group after a store mutation.
    """

    def __init__(
        self,
        specs: dict[str, tuple[int, float]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._caches: dict[str, SmartCache] = {
            name: SmartCache(name, max_size, ttl, clock)
            for name, (max_size, ttl) in (specs or DEFAULT_CACHE_SPECS).items()
        }

    def __getattr__(self, name: str) -> SmartCache:
        caches = self.__dict__.get("_caches", {})
        if name in caches:
            return caches[name]
        raise AttributeError(name)

    def get(self, name: str) -> SmartCache:
        return self._caches[name]

    def names(self) -> list[str]:
        return list(self._caches)

    def invalidate_chat(self, chat_id: str, names: Sequence[str] | None = None) -> int:
        prefix = f"{chat_id}:"
        targets = names or [n for n in self._caches if n != "ai"]
        return sum(self._caches[n].invalidate_prefix(prefix) for n in targets)

    def sweep(self) -> int:
        return sum(c.cleanup() for c in self._caches.values())

    def clear(self) -> None:
        for c in self._caches.values():
            c.clear()

    def stats(self) -> dict[str, dict]:
        return {name: c.stats() for name, c in self._caches.items()}


# ---------------------------------------------------------------------------
# Generated-content cache keys
# ---------------------------------------------------------------------------


def normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text.lower().strip())


def context_fingerprint(recent: Sequence[tuple[str, str]]) -> str:
    """Short hash of the last three (author, text) pairs."""
    joined = "|".join(f"{author}:{text[:20]}" for author, text in list(recent)[-3:])
    return hashlib.md5(joined.encode("utf-8")).hexdigest()[:16]


def generation_cache_key(chat_id: str, text: str, recent: Sequence[tuple[str, str]], model: str) -> str:
    return f"{chat_id}:{normalize_text(text)}:{context_fingerprint(recent)}:{model}"


def is_cacheable_input(text: str, patterns: Sequence[re.Pattern[str]]) -> bool:
    """Only short, greeting-like inputs get their generated reply reused."""
    normalized = normalize_text(text)
    if len(normalized) > GENERATION_MAX_INPUT:
        return False
    return any(p.search(normalized) for p in patterns)
