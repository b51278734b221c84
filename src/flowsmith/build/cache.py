"""In-process response cache for stage outputs, keyed by fingerprint digest."""

from __future__ import annotations

import copy
import logging
import threading
import time
from collections.abc import Callable

from flowsmith.core.models import CacheEntry

logger = logging.getLogger(__name__)


class ResponseCache:
    """Thread-safe TTL cache shared by every in-flight request.

    Entries are immutable once written. An expired entry is treated exactly
    like a miss and dropped on read; ``sweep()`` is optional housekeeping.
    Concurrent writes for the same fingerprint resolve last-writer-wins.
    """

    def __init__(self, default_ttl: float = 3600.0, clock: Callable[[], float] = time.time):
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, fingerprint: str) -> dict | None:
        """Return a private copy of the cached output, or None on a miss."""
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is not None and entry.is_expired(self._clock()):
                del self._entries[fingerprint]
                entry = None
            if entry is None:
                self.misses += 1
                return None
            self.hits += 1
            output = entry.output
        return copy.deepcopy(output)

    def entry(self, fingerprint: str) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(fingerprint)
        if entry is None or entry.is_expired(self._clock()):
            return None
        return entry

    def put(self, fingerprint: str, output: dict, ttl: float | None = None, stage_name: str = "") -> CacheEntry:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        now = self._clock()
        entry = CacheEntry(
            fingerprint=fingerprint,
            stage_name=stage_name,
            output=copy.deepcopy(output),
            created_at=now,
            expires_at=now + ttl,
        )
        with self._lock:
            self._entries[fingerprint] = entry
        return entry

    def sweep(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [fp for fp, entry in self._entries.items() if entry.is_expired(now)]
            for fp in expired:
                del self._entries[fp]
        if expired:
            logger.debug("Swept %d expired cache entries", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict:
        with self._lock:
            return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}
