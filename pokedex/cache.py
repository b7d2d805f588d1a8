from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Hashable
from typing import Any

logger = logging.getLogger(__name__)

# Key under which the full collection is memoized
ALL_POKEMON = "__all_pokemon__"


class MemoryCache:
    """
    Process-local LRU memoization of read results.

    Every invalidation bumps a generation counter. A reader captures the
    generation before going to storage and passes it back to set(); the
    value is dropped if any invalidation happened in between, so a read
    that raced a write never repopulates the cache with pre-write data.

    The lock is only held for dictionary operations, never across I/O.
    """

    def __init__(self, max_entries: int = 1024) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")

        self.max_entries = max_entries
        self._entries: OrderedDict[Hashable, Any] = OrderedDict()
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, key: Hashable) -> Any | None:
        with self._lock:
            if key not in self._entries:
                logger.debug("memory_cache miss key=%s", key)
                return None
            self._entries.move_to_end(key)
            logger.debug("memory_cache hit key=%s", key)
            return self._entries[key]

    def set(self, key: Hashable, value: Any, generation: int | None = None) -> bool:
        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug("memory_cache skip key=%s reason=stale", key)
                return False

            self._entries[key] = value
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("memory_cache evict key=%s", evicted)
            return True

    def invalidate(self, *keys: Hashable) -> None:
        with self._lock:
            self._generation += 1
            for key in keys:
                self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries
