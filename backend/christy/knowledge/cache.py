"""Bounded cache of query embeddings for the lifetime of a process."""

import logging
from collections import OrderedDict
from threading import Lock

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 200
DEFAULT_MAX_KEY_CHARS = 5000


class QueryEmbeddingCache:
    """Maps normalized query text to its embedding vector.

    Eviction is by insertion order: once capacity is exceeded the oldest
    inserted key is dropped. Reads do not refresh an entry's position.
    A capacity of 0 disables caching.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        max_key_chars: int = DEFAULT_MAX_KEY_CHARS,
        casefold: bool = False,
    ) -> None:
        self.capacity = max(0, capacity)
        self.max_key_chars = max_key_chars
        self.casefold = casefold
        self._entries: OrderedDict[str, tuple[float, ...]] = OrderedDict()
        self._lock = Lock()
        self.hits = 0
        self.misses = 0

    def normalize(self, text: str) -> str:
        key = (text or "").strip()
        if self.casefold:
            key = key.casefold()
        return key[: self.max_key_chars]

    def get(self, text: str) -> list[float] | None:
        key = self.normalize(text)
        with self._lock:
            vector = self._entries.get(key)
            if vector is None:
                self.misses += 1
                return None
            self.hits += 1
            return list(vector)

    def put(self, text: str, vector: list[float]) -> None:
        if self.capacity == 0 or not vector:
            return

        key = self.normalize(text)
        with self._lock:
            if key in self._entries:
                self._entries[key] = tuple(vector)
                return
            self._entries[key] = tuple(vector)
            while len(self._entries) > self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Query cache evicted: {evicted[:50]}...")

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def __contains__(self, text: str) -> bool:
        with self._lock:
            return self.normalize(text) in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
