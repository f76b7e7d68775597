"""Bounded least-recently-used cache for decrypted records.

Owned exclusively by one RecordStore; it is never persisted and is rebuilt
lazily from the backend. Values are deep-copied on the way in and out so a
caller mutating a returned record cannot change what the store holds.
"""

import copy
import logging
from collections import OrderedDict
from typing import Callable, Generic, Hashable, Optional, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar('K', bound=Hashable)
V = TypeVar('V')


class LRUCache(Generic[K, V]):
    """Fixed-capacity LRU mapping.

    Parameters:
        capacity: Maximum number of entries (0 disables caching)
        on_evict: Optional callback invoked with each evicted key
    """

    def __init__(self, capacity: int, on_evict: Optional[Callable[[K], None]] = None):
        if capacity < 0:
            raise ValueError("capacity must be non-negative")
        self.capacity = capacity
        self._entries: "OrderedDict[K, V]" = OrderedDict()
        self._on_evict = on_evict
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: K) -> Optional[V]:
        """Return a copy of the cached value and mark it most recently used."""
        if key not in self._entries:
            self.misses += 1
            return None
        self.hits += 1
        self._entries.move_to_end(key)
        return copy.deepcopy(self._entries[key])

    def put(self, key: K, value: V) -> None:
        """Insert or replace ``key``, evicting the least recently used entry on overflow."""
        if self.capacity == 0:
            return
        self._entries[key] = copy.deepcopy(value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            self.evictions += 1
            logger.debug(f"Evicted {evicted} from record cache")
            if self._on_evict is not None:
                self._on_evict(evicted)

    def pop(self, key: K) -> Optional[V]:
        return self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> list[K]:
        """Keys ordered from least to most recently used."""
        return list(self._entries.keys())

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get_statistics(self) -> dict:
        return {
            'capacity': self.capacity,
            'size': len(self._entries),
            'hits': self.hits,
            'misses': self.misses,
            'evictions': self.evictions,
        }
