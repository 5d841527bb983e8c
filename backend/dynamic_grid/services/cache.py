"""Read-mostly cache shared by the procedure registry and column metadata resolver.

Readers never take a lock on a hit. A miss (or an expired entry) is loaded by
exactly one thread per key; other threads asking for the same key either get
the stale value immediately (when one exists) or wait for the loader. An
invalidation bumps the key's generation so a load that started earlier cannot
store its now-outdated result.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple

from dynamic_grid.utils.logger import logger


class MetadataCache:
    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds if ttl_seconds and ttl_seconds > 0 else None
        self._clock = clock
        # key -> (value, loaded_at)
        self._entries: Dict[Hashable, Tuple[Any, float]] = {}
        self._generations: Dict[Hashable, int] = {}
        # Bumped by a full invalidation; covers keys whose first load is in flight.
        self._epoch = 0
        # key -> [lock, threads using it]; dropped when the last user is done.
        self._key_locks: Dict[Hashable, List[Any]] = {}
        self._guard = threading.Lock()

    def _checkout_lock(self, key: Hashable) -> List[Any]:
        with self._guard:
            slot = self._key_locks.get(key)
            if slot is None:
                slot = [threading.Lock(), 0]
                self._key_locks[key] = slot
            slot[1] += 1
            return slot

    def _return_lock(self, key: Hashable, slot: List[Any]) -> None:
        with self._guard:
            slot[1] -= 1
            if slot[1] == 0:
                self._key_locks.pop(key, None)

    def _is_fresh(self, loaded_at: float) -> bool:
        return self._ttl is None or (self._clock() - loaded_at) < self._ttl

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None or not self._is_fresh(entry[1]):
            return None
        return entry[0]

    def get_or_load(self, key: Hashable, loader: Callable[[], Any], cache_none: bool = True) -> Any:
        """Cached value for ``key``, loading it once on a miss.

        With ``cache_none=False`` a None result is returned but not stored, so
        lookups of names that do not exist leave nothing behind.
        """
        entry = self._entries.get(key)
        if entry is not None and self._is_fresh(entry[1]):
            return entry[0]

        slot = self._checkout_lock(key)
        lock = slot[0]
        try:
            if entry is not None:
                # Stale: refresh if nobody else is, otherwise serve what we have.
                if not lock.acquire(blocking=False):
                    return entry[0]
            else:
                lock.acquire()

            try:
                # Another thread may have finished loading while we waited.
                current = self._entries.get(key)
                if current is not None and self._is_fresh(current[1]):
                    return current[0]

                generation = (self._epoch, self._generations.get(key, 0))
                value = loader()
                if value is None and not cache_none:
                    return value
                with self._guard:
                    if (self._epoch, self._generations.get(key, 0)) == generation:
                        self._entries[key] = (value, self._clock())
                    else:
                        logger.debug("metadata_cache.discard_stale_load key=%s", key)
                return value
            finally:
                lock.release()
        finally:
            self._return_lock(key, slot)

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        """Drop one key, or everything when ``key`` is None."""
        with self._guard:
            if key is None:
                self._epoch += 1
                self._entries.clear()
            else:
                self._generations[key] = self._generations.get(key, 0) + 1
                self._entries.pop(key, None)
        logger.info("metadata_cache.invalidate key=%s", key if key is not None else "*")

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)
