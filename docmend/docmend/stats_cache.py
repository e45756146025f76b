from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Iterable, Optional, TypeVar

from .config import Settings
from .store import CollectionHandle

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CachedValue(Generic[T]):
    computed_at: float
    ttl: float
    value: T

    def expired(self, now: float) -> bool:
        return now >= self.computed_at + self.ttl


class StatisticsCache(Generic[T]):
    """Holds one computed value for ``ttl`` seconds, then recomputes on demand.

    Injected into the reporting collaborator instead of living at module level.
    A failing ``compute`` propagates and keeps the previous entry.
    """

    def __init__(self, compute: Callable[[], T], ttl: float = 600.0, clock: Callable[[], float] = time.time) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self._compute = compute
        self.ttl = ttl
        self._clock = clock
        self._entry: Optional[CachedValue[T]] = None

    @property
    def entry(self) -> Optional[CachedValue[T]]:
        return self._entry

    def get(self) -> CachedValue[T]:
        now = self._clock()
        if self._entry is not None and not self._entry.expired(now):
            return self._entry
        logger.debug("statistics cache miss, recomputing")
        value = self._compute()
        self._entry = CachedValue(computed_at=now, ttl=self.ttl, value=value)
        return self._entry

    def invalidate(self) -> None:
        self._entry = None


def collection_counts(collections: Iterable[CollectionHandle]) -> Dict[str, int]:
    """Document totals per collection; the usual ``compute`` for a ``StatisticsCache``."""
    return {collection.name: len(collection.find({})) for collection in collections}


class CollectionStatistics:
    """Reports document totals per collection through an injected ``StatisticsCache``.

    Without a cache one is built from ``settings.statistics_ttl_seconds``.
    """

    def __init__(
        self,
        collections: Iterable[CollectionHandle],
        cache: Optional[StatisticsCache[Dict[str, int]]] = None,
        *,
        settings: Optional[Settings] = None,
    ) -> None:
        self.collections = list(collections)
        if cache is None:
            ttl = (settings or Settings()).statistics_ttl_seconds
            cache = StatisticsCache(lambda: collection_counts(self.collections), ttl=ttl)
        self.cache = cache

    def report(self) -> Dict[str, Any]:
        entry = self.cache.get()
        return {
            "computed_at": entry.computed_at,
            "ttl": entry.ttl,
            "counts": dict(entry.value),
            "total": sum(entry.value.values()),
        }
