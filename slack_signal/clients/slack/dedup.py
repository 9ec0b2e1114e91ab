import time
from collections.abc import Callable

from cachetools import TTLCache
from loguru import logger

from ...shared.constants import DEDUP_CACHE_MAX, DEDUP_TTL

__all__ = ("Deduplicator",)


class Deduplicator:
    """Remembers envelope ids for ``ttl`` seconds to absorb redeliveries.

    ``maxsize`` caps memory: once that many ids are held inside one window,
    the oldest ones are evicted before their TTL runs out.
    """

    def __init__(
        self,
        *,
        ttl: float = DEDUP_TTL,
        maxsize: int = DEDUP_CACHE_MAX,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self._seen: TTLCache[str, float] = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)
        self._timer = timer

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, envelope_id: object) -> bool:
        return envelope_id in self._seen

    def is_duplicate(self, envelope_id: str | None) -> bool:
        if not envelope_id:
            return False
        if envelope_id in self._seen:
            logger.debug(f"Duplicate envelope detected; skipping - envelope_id={envelope_id}")
            return True
        self._seen[envelope_id] = self._timer()
        return False

    def sweep(self) -> int:
        removed = len(self._seen.expire())
        if removed:
            logger.debug(f"Dedup window swept: {removed} expired")
        return removed
