"""
MemoryCache - Async-compatible cache with TTL expiry and LRU eviction.

Features:
- Hash map plus doubly linked recency list (most recently used at head)
- Per-entry TTL with lazy expiry on access and an optional background sweep
- Hit / miss / eviction statistics and a rough memory estimate
- Typed events fanned out to listeners; listener errors are logged and dropped
"""

import asyncio
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from loguru import logger


class CacheEvent(str, Enum):
    """Events fired by the cache."""

    HIT = "hit"
    MISS = "miss"
    SET = "set"
    DELETE = "delete"
    CLEAR = "clear"
    EXPIRED = "expired"
    EVICTED = "evicted"


CacheListener = Callable[[CacheEvent, str], None]


@dataclass
class CacheEntry:
    """A single cache entry with metadata. Times are epoch seconds."""

    value: Any
    ttl: float
    created_at: float
    expires_at: float
    access_count: int = 0
    last_accessed: float = 0.0

    def is_expired(self, now: float | None = None) -> bool:
        """Check if entry is past its TTL."""
        now = time.time() if now is None else now
        return now >= self.expires_at if self.ttl <= 0 else now > self.expires_at


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    size: int = 0
    max_size: int = 0
    memory_usage: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "size": self.size,
            "max_size": self.max_size,
            "memory_usage": self.memory_usage,
            "hit_rate": f"{self.hit_rate:.2%}",
        }


class CacheBackend(ABC):
    """
    Cache interface used by the facade.

    Every method is a coroutine so that out-of-process backends can be
    plugged in without changing callers.
    """

    @abstractmethod
    async def get(self, key: str) -> Any: ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float | None = None) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def clear(self) -> None: ...

    @abstractmethod
    async def has(self, key: str) -> bool: ...

    @abstractmethod
    async def get_stats(self) -> CacheStats: ...

    @abstractmethod
    async def close(self) -> None: ...


class _Node:
    __slots__ = ("key", "entry", "prev", "next")

    def __init__(self, key: str, entry: CacheEntry):
        self.key = key
        self.entry = entry
        self.prev: "_Node | None" = None
        self.next: "_Node | None" = None


class MemoryCache(CacheBackend):
    """
    In-process LRU cache with TTL.

    Usage:
        cache = MemoryCache(default_ttl=300, max_size=1000)

        value = await cache.get("v1:token:lovelace")
        if value is None:
            value = await fetch()
            await cache.set("v1:token:lovelace", value, ttl=60)

    A stored ``None`` round-trips; use ``has`` to tell it apart from a miss.
    """

    def __init__(
        self,
        default_ttl: float = 300,
        max_size: int = 1000,
        cleanup_interval: float = 60.0,
        auto_cleanup: bool = True,
        enable_stats: bool = True,
        debug: bool = False,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")

        self._map: dict[str, _Node] = {}
        self._head: _Node | None = None
        self._tail: _Node | None = None
        self._default_ttl = default_ttl
        self._max_size = max_size
        self._cleanup_interval = cleanup_interval
        self._enable_stats = enable_stats
        self._debug = debug
        self._lock = asyncio.Lock()
        self._stats = CacheStats(max_size=max_size)
        self._listeners: list[CacheListener] = []
        self._cleanup_task: asyncio.Task[None] | None = None
        self._auto_cleanup = auto_cleanup

        if auto_cleanup:
            self.start_cleanup()

    # Public API

    async def get(self, key: str) -> Any:
        """Return the cached value, or None on miss or expiry."""
        async with self._lock:
            node = self._map.get(key)

            if node is None:
                self._record_miss()
                self._log(f"MISS: {key[:50]}")
                self._emit(CacheEvent.MISS, key)
                return None

            now = time.time()
            if node.entry.is_expired(now):
                self._unlink(node)
                self._record_miss()
                self._log(f"EXPIRED: {key[:50]}")
                self._emit(CacheEvent.EXPIRED, key)
                return None

            node.entry.access_count += 1
            node.entry.last_accessed = now
            self._move_to_head(node)
            self._record_hit()
            self._log(f"HIT: {key[:50]}")
            self._emit(CacheEvent.HIT, key)
            return node.entry.value

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """
        Store a value.

        Args:
            key: Cache key
            value: Anything, including None
            ttl: Seconds to live (uses default if not specified, 0 expires at once)
        """
        ttl = self._default_ttl if ttl is None else ttl
        now = time.time()
        entry = CacheEntry(
            value=value,
            ttl=ttl,
            created_at=now,
            expires_at=now + ttl,
            last_accessed=now,
        )

        # Constructed outside a loop: begin sweeping on first use
        if self._auto_cleanup and self._cleanup_task is None:
            self.start_cleanup()

        async with self._lock:
            node = self._map.get(key)
            if node is not None:
                node.entry = entry
                self._move_to_head(node)
            else:
                if len(self._map) >= self._max_size:
                    self._evict_lru()
                node = _Node(key, entry)
                self._map[key] = node
                self._push_head(node)

            self._log(f"SET: {key[:50]} (TTL: {ttl}s)")
            self._emit(CacheEvent.SET, key)

    async def delete(self, key: str) -> bool:
        """Delete a specific key from cache."""
        async with self._lock:
            node = self._map.get(key)
            if node is None:
                return False
            self._unlink(node)
            self._log(f"DELETE: {key[:50]}")
            self._emit(CacheEvent.DELETE, key)
            return True

    async def clear(self) -> None:
        """Clear all cache entries."""
        async with self._lock:
            count = len(self._map)
            self._map.clear()
            self._head = None
            self._tail = None
            self._log(f"CLEAR: {count} entries removed")
            self._emit(CacheEvent.CLEAR, "")

    async def has(self, key: str) -> bool:
        """Check presence without touching hit/miss counters or recency."""
        async with self._lock:
            node = self._map.get(key)
            if node is None:
                return False
            if node.entry.is_expired():
                self._unlink(node)
                self._emit(CacheEvent.EXPIRED, key)
                return False
            return True

    async def get_stats(self) -> CacheStats:
        """Sweep expired entries, then return a snapshot of the statistics."""
        await self.cleanup_expired()
        return CacheStats(
            hits=self._stats.hits,
            misses=self._stats.misses,
            evictions=self._stats.evictions,
            size=len(self._map),
            max_size=self._max_size,
            memory_usage=self._estimate_memory() if self._enable_stats else 0,
        )

    async def close(self) -> None:
        """Stop the background sweep and drop all entries."""
        self._auto_cleanup = False
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        await self.clear()

    async def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns count of removed entries."""
        async with self._lock:
            now = time.time()
            expired = [n for n in self._map.values() if n.entry.is_expired(now)]
            for node in expired:
                self._unlink(node)
                self._emit(CacheEvent.EXPIRED, node.key)

            if expired:
                self._log(f"CLEANUP: {len(expired)} expired entries removed")

            return len(expired)

    def start_cleanup(self) -> bool:
        """Start the periodic sweep if an event loop is running."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return False
        self._cleanup_task = loop.create_task(self._cleanup_loop())
        return True

    def add_listener(self, listener: CacheListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: CacheListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def keys(self) -> list[str]:
        """Keys from most to least recently used."""
        result = []
        node = self._head
        while node is not None:
            result.append(node.key)
            node = node.next
        return result

    def __len__(self) -> int:
        return len(self._map)

    # Internals

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            try:
                await self.cleanup_expired()
            except Exception as e:
                logger.error(f"[MemoryCache] Cleanup failed: {e}")

    def _push_head(self, node: _Node) -> None:
        node.prev = None
        node.next = self._head
        if self._head is not None:
            self._head.prev = node
        self._head = node
        if self._tail is None:
            self._tail = node

    def _move_to_head(self, node: _Node) -> None:
        if node is self._head:
            return
        # detach
        if node.prev is not None:
            node.prev.next = node.next
        if node.next is not None:
            node.next.prev = node.prev
        else:
            self._tail = node.prev
        self._push_head(node)

    def _unlink(self, node: _Node) -> None:
        self._map.pop(node.key, None)
        if node.prev is not None:
            node.prev.next = node.next
        else:
            self._head = node.next
        if node.next is not None:
            node.next.prev = node.prev
        else:
            self._tail = node.prev
        node.prev = node.next = None

    def _evict_lru(self) -> None:
        lru = self._tail
        if lru is None:
            return
        self._unlink(lru)
        self._stats.evictions += 1
        self._log(f"EVICT: {lru.key[:50]}")
        self._emit(CacheEvent.EVICTED, lru.key)

    def _record_hit(self) -> None:
        if self._enable_stats:
            self._stats.hits += 1

    def _record_miss(self) -> None:
        if self._enable_stats:
            self._stats.misses += 1

    def _emit(self, event: CacheEvent, key: str) -> None:
        # listener errors are logged and dropped
        for listener in list(self._listeners):
            try:
                listener(event, key)
            except Exception as e:
                logger.warning(f"[MemoryCache] Listener error on {event.value}: {e}")

    def _estimate_memory(self) -> int:
        usage = 0
        for key, node in self._map.items():
            usage += sys.getsizeof(key) + _estimate_size(node.entry.value) + 96
        return usage

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[MemoryCache] {message}")


def _estimate_size(obj: Any) -> int:
    """Rough recursive size of plain containers; models are sized by their dump."""
    if hasattr(obj, "model_dump"):
        obj = obj.model_dump()
    if isinstance(obj, dict):
        return sys.getsizeof(obj) + sum(
            _estimate_size(k) + _estimate_size(v) for k, v in obj.items()
        )
    if isinstance(obj, (list, tuple, set, frozenset)):
        return sys.getsizeof(obj) + sum(_estimate_size(v) for v in obj)
    return sys.getsizeof(obj)
