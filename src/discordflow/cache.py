"""
Fetch-through entity cache keyed by id.

Entries are stored once and never refreshed or evicted. Callers always get a
deep copy bound to the owning client, so mutating a returned entity never
changes the cached one.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

from .models import DiscordModel

T = TypeVar("T", bound=DiscordModel)


class ResourceCache(Generic[T]):
    """Single-flight fetch-through store for one entity kind."""

    def __init__(
        self,
        name: str,
        fetch: Callable[[str], Awaitable[T]],
        client: Any = None,
    ):
        """
        Args:
            name: Entity kind, used in log lines ("channel", "guild").
            fetch: Coroutine loading one entity by id on a miss.
            client: Client bound to every returned copy.
        """
        self.name = name
        self._fetch = fetch
        self._client = client
        self._entries: Dict[str, T] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

        self._stats = {"hits": 0, "misses": 0, "fetch_errors": 0}
        self.logger = logging.getLogger(f"discordflow.cache.{name}")

    async def get(self, entity_id: str) -> T:
        """Return a bound copy, fetching on a miss.

        Concurrent misses for the same id share one fetch. A failed fetch is
        not cached and its error propagates to every waiter that triggers it.
        The per-id lock lives only while some caller is waiting on it.
        """
        entry = self._entries.get(entity_id)
        if entry is not None:
            self._stats["hits"] += 1
            return self._copy(entry)

        lock = self._locks.get(entity_id)
        if lock is None:
            lock = self._locks[entity_id] = asyncio.Lock()
        self._waiters[entity_id] = self._waiters.get(entity_id, 0) + 1
        try:
            async with lock:
                return await self._load(entity_id)
        finally:
            self._release(entity_id)

    def add(self, entity: T) -> bool:
        """Insert an entity seen elsewhere. Returns False if already cached."""
        if entity.id in self._entries:
            return False
        self._entries[entity.id] = self._stored(entity)
        return True

    def peek(self, entity_id: str) -> Optional[T]:
        """Bound copy if cached, without fetching."""
        entry = self._entries.get(entity_id)
        return self._copy(entry) if entry is not None else None

    def get_stats(self) -> Dict[str, int]:
        return {**self._stats, "size": len(self._entries)}

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def _stored(self, entity: T) -> T:
        stored = entity.snapshot()
        stored._client = None
        return stored

    def _copy(self, entry: T) -> T:
        copied = entry.snapshot()
        if self._client is not None:
            copied.bind(self._client)
        return copied

    async def _load(self, entity_id: str) -> T:
        # Filled while we waited on another fetch
        entry = self._entries.get(entity_id)
        if entry is not None:
            self._stats["hits"] += 1
            return self._copy(entry)

        self._stats["misses"] += 1
        try:
            fetched = await self._fetch(entity_id)
        except Exception:
            self._stats["fetch_errors"] += 1
            raise
        self._entries.setdefault(entity_id, self._stored(fetched))
        self.logger.debug(f"Cached {self.name} {entity_id}")
        return self._copy(self._entries[entity_id])

    def _release(self, entity_id: str) -> None:
        remaining = self._waiters[entity_id] - 1
        if remaining:
            self._waiters[entity_id] = remaining
        else:
            del self._waiters[entity_id]
            del self._locks[entity_id]
