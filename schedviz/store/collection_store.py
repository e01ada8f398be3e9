"""In-memory collection store with async-safe access and LRU eviction.

Design notes:
    - An asyncio.Lock guards all mutations so concurrent request handlers
      never corrupt state.
    - Capacity-bounded: inserting past capacity evicts the least recently
      used collection together with its memoized result.
    - Interpretation results are memoized per collection id.  Input is
      immutable, so a result never goes stale.
    - Interpretation runs in a worker thread outside the lock.  Two
      concurrent first requests may both interpret; results are identical.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict

from schedviz.core.engine import InterpretationResult, TraceInterpretationEngine
from schedviz.domain.collection import Collection

logger = logging.getLogger(__name__)


class CollectionNotFoundError(Exception):
    """Raised when a collection id is unknown or was evicted."""

    def __init__(self, collection_id: str) -> None:
        self.collection_id = collection_id
        super().__init__(f"Collection '{collection_id}' not found")


class CacheSummary:
    """Observability snapshot of the store."""

    __slots__ = ("capacity", "collections", "memoized", "hits", "misses", "evictions")

    def __init__(
        self,
        capacity: int = 0,
        collections: int = 0,
        memoized: int = 0,
        hits: int = 0,
        misses: int = 0,
        evictions: int = 0,
    ) -> None:
        self.capacity = capacity
        self.collections = collections
        self.memoized = memoized
        self.hits = hits
        self.misses = misses
        self.evictions = evictions

    def to_dict(self) -> dict:
        return {
            "capacity": self.capacity,
            "collections": self.collections,
            "memoized": self.memoized,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
        }


class CollectionStore:
    """Async-safe LRU store of collections and their interpretations.

    Args:
        engine: Interprets collections on first request.
        capacity: Maximum number of collections kept in memory.
    """

    def __init__(self, engine: TraceInterpretationEngine, capacity: int = 16) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._engine = engine
        self._capacity = capacity
        self._lock = asyncio.Lock()
        self._collections: OrderedDict[str, Collection] = OrderedDict()
        self._results: dict[str, InterpretationResult] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def engine(self) -> TraceInterpretationEngine:
        return self._engine

    # ── Public API ───────────────────────────────────────────────────────

    async def put(self, collection: Collection) -> str:
        """Store *collection*, evicting the least recently used if full."""
        async with self._lock:
            cid = collection.collection_id
            self._collections[cid] = collection
            self._collections.move_to_end(cid)
            self._results.pop(cid, None)
            while len(self._collections) > self._capacity:
                evicted, _ = self._collections.popitem(last=False)
                self._results.pop(evicted, None)
                self._evictions += 1
                logger.info("Evicted collection %s (capacity %d)", evicted, self._capacity)
            logger.info("Stored collection %s (%d record(s))", cid, collection.record_count)
            return cid

    async def get(self, collection_id: str) -> Collection | None:
        """Retrieve a collection by id, or None if unknown or evicted."""
        async with self._lock:
            collection = self._collections.get(collection_id)
            if collection is not None:
                self._collections.move_to_end(collection_id)
            return collection

    async def evict(self, collection_id: str) -> bool:
        """Drop a collection and its memoized result.  Returns True if present."""
        async with self._lock:
            self._results.pop(collection_id, None)
            removed = self._collections.pop(collection_id, None) is not None
            if removed:
                self._evictions += 1
                logger.info("Evicted collection %s on request", collection_id)
            return removed

    async def result(self, collection_id: str) -> InterpretationResult:
        """Interpretation of a stored collection, computed at most once per entry.

        Raises:
            CollectionNotFoundError: If the id is unknown or evicted.
            StructuralError: If the collection is malformed.
        """
        async with self._lock:
            collection = self._collections.get(collection_id)
            if collection is None:
                raise CollectionNotFoundError(collection_id)
            self._collections.move_to_end(collection_id)
            cached = self._results.get(collection_id)
            if cached is not None:
                self._hits += 1
                return cached
            self._misses += 1

        result = await asyncio.to_thread(self._engine.interpret, collection)

        async with self._lock:
            # Only memoize if the same collection is still stored.
            if self._collections.get(collection_id) is collection:
                self._results[collection_id] = result
        return result

    async def summaries(self) -> list[dict]:
        """Summaries of stored collections, most recently used last."""
        async with self._lock:
            return [c.summary() for c in self._collections.values()]

    async def count(self) -> int:
        async with self._lock:
            return len(self._collections)

    async def cache_summary(self) -> CacheSummary:
        async with self._lock:
            return CacheSummary(
                capacity=self._capacity,
                collections=len(self._collections),
                memoized=len(self._results),
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
            )
