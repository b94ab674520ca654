"""Memoized async cache.

Wraps expensive idempotent reads (RPC batches, statistics API payloads) so
that concurrent callers asking for the same key share one in-flight
computation, successful results are kept for ``max_age_seconds`` after they
complete, and failures are never kept.

All bookkeeping runs on the event loop thread: the entry table is only
touched between awaits, so no locks are needed.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, Sequence, TypeVar

from llamalend.services.metrics import record_cache_eviction, record_cache_request

logger = logging.getLogger(__name__)

T = TypeVar("T")


def default_key(args: Sequence[Any]) -> str:
    """Comma-joined string form of the argument list."""
    return ",".join(str(arg) for arg in args)


@dataclass
class CacheEntry(Generic[T]):
    """A pending or resolved computation plus its expiry timer."""
    future: asyncio.Future
    created_at: float = field(default_factory=time.monotonic)
    expiry: Optional[asyncio.TimerHandle] = None

    def is_pending(self) -> bool:
        return not self.future.done()

    def is_failed(self) -> bool:
        if not self.future.done():
            return False
        return self.future.cancelled() or self.future.exception() is not None

    def cancel_expiry(self) -> None:
        if self.expiry is not None:
            self.expiry.cancel()
            self.expiry = None


class MemoizedCache(Generic[T]):
    """At-most-one-in-flight-per-key async cache with TTL eviction.

    Args:
        max_age_seconds: How long a successful result stays valid, measured
            from the moment the computation completed.
        create_key: Serializes an argument tuple into a cache key. Defaults
            to the comma-joined ``str`` of each argument.
        name: Label used in logs and metrics.
    """

    def __init__(
        self,
        max_age_seconds: float,
        create_key: Callable[[Sequence[Any]], str] | None = None,
        name: str = "memoized",
    ):
        self._entries: Dict[str, CacheEntry[T]] = {}
        self._max_age = max_age_seconds
        self._create_key = create_key or default_key
        self.name = name
        self._hits = 0
        self._misses = 0

    @property
    def max_age_seconds(self) -> float:
        return self._max_age

    def make_key(self, *args: Any) -> str:
        return self._create_key(args)

    async def get_or_compute(self, key: str, compute: Callable[[], Awaitable[T]]) -> T:
        """Return the cached value for ``key`` or start ``compute`` once.

        Every caller that arrives while the computation is pending awaits the
        same task and observes the same result or exception. Cancelling one
        waiter does not cancel the shared computation.
        """
        entry = self._entries.get(key)
        if entry is not None and not entry.is_failed():
            self._hits += 1
            record_cache_request(self.name, hit=True)
            return await asyncio.shield(entry.future)

        self._misses += 1
        record_cache_request(self.name, hit=False)

        task = asyncio.ensure_future(compute())
        entry = CacheEntry(future=task)
        self._replace(key, entry)
        task.add_done_callback(functools.partial(self._on_done, key, entry))
        return await asyncio.shield(task)

    def set(self, key: str, value: T) -> None:
        """Store an already-resolved value and restart its TTL.

        Any previous entry for the key, pending or resolved, stops being
        served; its timer is cancelled before the new one is armed.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        future.set_result(value)
        entry = CacheEntry(future=future)
        self._replace(key, entry)
        entry.expiry = loop.call_later(self._max_age, self._expire, key, entry)

    def get(self, key: str) -> Optional[T]:
        """Resolved value for ``key`` without computing, or None."""
        entry = self._entries.get(key)
        if entry is None or entry.is_pending() or entry.is_failed():
            return None
        return entry.future.result()

    def evict(self, key: str) -> bool:
        """Drop the entry for ``key``.

        Returns:
            True if an entry was removed
        """
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        entry.cancel_expiry()
        record_cache_eviction(self.name, "manual")
        return True

    def clear(self) -> int:
        """Drop every entry.

        Returns:
            Number of entries cleared
        """
        count = len(self._entries)
        for entry in self._entries.values():
            entry.cancel_expiry()
        self._entries.clear()
        return count

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        total = self._hits + self._misses
        hit_rate = (self._hits / total * 100) if total > 0 else 0

        return {
            "name": self.name,
            "entries": len(self._entries),
            "pending": sum(1 for e in self._entries.values() if e.is_pending()),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate_percent": hit_rate,
        }

    def _replace(self, key: str, entry: CacheEntry[T]) -> None:
        previous = self._entries.get(key)
        if previous is not None:
            previous.cancel_expiry()
            record_cache_eviction(self.name, "replaced")
        self._entries[key] = entry

    def _on_done(self, key: str, entry: CacheEntry[T], future: asyncio.Future) -> None:
        # A newer set() or recompute owns the key now
        if self._entries.get(key) is not entry:
            return
        if future.cancelled() or future.exception() is not None:
            del self._entries[key]
            record_cache_eviction(self.name, "failed")
            logger.debug(f"{self.name}: dropped failed entry {key!r}")
            return
        loop = asyncio.get_running_loop()
        entry.expiry = loop.call_later(self._max_age, self._expire, key, entry)

    def _expire(self, key: str, entry: CacheEntry[T]) -> None:
        if self._entries.get(key) is entry:
            del self._entries[key]
            record_cache_eviction(self.name, "expired")
            logger.debug(f"{self.name}: expired {key!r}")


class Memoized(Generic[T]):
    """An async function bound to its own ``MemoizedCache``.

    Calling it looks the arguments up in the cache; ``set`` primes the cache
    with a value for the same arguments, e.g. after a batched read already
    produced it.
    """

    def __init__(
        self,
        func: Callable[..., Awaitable[T]],
        max_age_seconds: float,
        create_key: Callable[[Sequence[Any]], str] | None = None,
        name: str | None = None,
    ):
        self._func = func
        self.cache: MemoizedCache[T] = MemoizedCache(
            max_age_seconds,
            create_key=create_key,
            name=name or getattr(func, "__qualname__", "memoized"),
        )

    async def __call__(self, *args: Any) -> T:
        key = self.cache.make_key(*args)
        return await self.cache.get_or_compute(key, lambda: self._func(*args))

    def set(self, value: T, *args: Any) -> None:
        self.cache.set(self.cache.make_key(*args), value)

    def delete(self, *args: Any) -> bool:
        return self.cache.evict(self.cache.make_key(*args))

    def clear(self) -> int:
        return self.cache.clear()


def memoize(
    func: Callable[..., Awaitable[T]],
    max_age_seconds: float,
    create_key: Callable[[Sequence[Any]], str] | None = None,
    name: str | None = None,
) -> Memoized[T]:
    """Wrap ``func`` in a fresh cache. Each call returns an independent cache."""
    return Memoized(func, max_age_seconds, create_key=create_key, name=name)
