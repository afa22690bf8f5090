"""Thread-safe in-memory LRU cache with per-entry time-to-live.

Durations are given in seconds. Expiry times use the monotonic clock.
"""

from __future__ import annotations

import random
import threading
import time
import weakref
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable

from . import logger

NULL_PLACEHOLDER = "__NULL__"
DEFAULT_CAPACITY = 10000
DEFAULT_TTL_CLEANUP_INTERVAL = 60.0


@dataclass
class Entry:
    """A cached value and the monotonic time after which it is stale."""

    key: str
    value: Any
    expires_at: float

    def is_expired(self, now: float | None = None) -> bool:
        """True once `now` (default: the current monotonic time) is past expiry."""
        if now is None:
            now = time.monotonic()
        return now > self.expires_at


def _clean_periodically(
    cache_ref: Callable[[], "Cache | None"], stop: threading.Event, interval: float
) -> None:
    while not stop.wait(interval):
        cache = cache_ref()
        if cache is None:
            return
        cache.cleanup_expired()
        del cache


class Cache:
    """LRU cache: least recently used entries are evicted at capacity.

    A capacity of 0 (or less) means unlimited. Unless `cleanup_interval`
    is None or 0, a background thread drops expired entries periodically.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        cleanup_interval: float | None = DEFAULT_TTL_CLEANUP_INTERVAL,
        announce: bool = False,
    ) -> None:
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, Entry] = OrderedDict()
        self._capacity = capacity
        self._cleaner_stop: threading.Event | None = None
        if announce:
            logger.info(f"Cache initialized with capacity: {capacity}")
        if cleanup_interval:
            self.start_ttl_cleaner(cleanup_interval)

    # -- core operations ---------------------------------------------------

    def get(self, key: str) -> Any:
        """Return the value for `key`, marking it most recently used.

        Raises KeyError if the key is absent or has expired.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                raise KeyError(key)
            if entry.is_expired():
                del self._entries[key]
                raise KeyError(key)
            self._entries.move_to_end(key)
            return entry.value

    def set(self, key: str, value: Any, ttl: float) -> str | None:
        """Store `value` for `ttl` seconds; return the key evicted, if any."""
        entry = Entry(key, value, time.monotonic() + ttl)
        with self._lock:
            if key in self._entries:
                self._entries[key] = entry
                self._entries.move_to_end(key)
                return None
            evicted = None
            if self._capacity > 0 and len(self._entries) >= self._capacity:
                evicted, _ = self._entries.popitem(last=False)
            self._entries[key] = entry
            return evicted

    def delete(self, key: str) -> None:
        """Remove `key` if present."""
        with self._lock:
            self._entries.pop(key, None)

    def _delete_matching(self, predicate: Callable[[str], bool]) -> int:
        with self._lock:
            doomed = [key for key in self._entries if predicate(key)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def delete_prefix(self, prefix: str) -> int:
        """Remove every key starting with `prefix`; return how many went."""
        return self._delete_matching(lambda key: key.startswith(prefix))

    def delete_suffix(self, suffix: str) -> int:
        """Remove every key ending with `suffix`; return how many went."""
        return self._delete_matching(lambda key: key.endswith(suffix))

    # -- inspection --------------------------------------------------------

    def dump(self) -> dict[str, Any]:
        """Return a copy of all stored keys and values."""
        with self._lock:
            return {key: entry.value for key, entry in self._entries.items()}

    def count(self) -> int:
        """Number of stored entries."""
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.count()

    def capacity(self) -> int:
        """Maximum number of entries (0 means unlimited)."""
        return self._capacity

    # -- expiry ------------------------------------------------------------

    def start_ttl_cleaner(self, interval: float) -> None:
        """Run `cleanup_expired` every `interval` seconds in a daemon thread."""
        if interval <= 0:
            raise ValueError("cleanup interval must be positive")
        self.stop_ttl_cleaner()
        stop = threading.Event()
        self._cleaner_stop = stop
        weakref.finalize(self, stop.set)
        threading.Thread(
            target=_clean_periodically,
            args=(weakref.ref(self), stop, interval),
            name="cache-ttl-cleaner",
            daemon=True,
        ).start()

    def stop_ttl_cleaner(self) -> None:
        """Stop the background cleaner, if one is running."""
        if self._cleaner_stop is not None:
            self._cleaner_stop.set()
            self._cleaner_stop = None

    def cleanup_expired(self) -> int:
        """Drop all expired entries; return how many were removed."""
        now = time.monotonic()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info(f"TTL cleanup: removed {len(expired)} expired entries")
        return len(expired)

    # -- penetration and avalanche prevention ------------------------------

    def set_null(self, key: str, ttl: float) -> str | None:
        """Store the null placeholder for a key known not to exist."""
        return self.set(key, NULL_PLACEHOLDER, ttl)

    def is_null(self, value: Any) -> bool:
        """True if `value` is the null placeholder."""
        return isinstance(value, str) and value == NULL_PLACEHOLDER

    def set_with_jitter(
        self, key: str, value: Any, base_ttl: float, jitter_percent: int
    ) -> str | None:
        """Store with a TTL lengthened by a random 0..jitter_percent % of base."""
        jitter_max = base_ttl * jitter_percent / 100
        if jitter_max < 0:
            raise ValueError("jitter range must not be negative")
        return self.set(key, value, base_ttl + random.uniform(0, jitter_max))