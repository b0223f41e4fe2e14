"""In-memory TTL cache used to suppress repeat opportunities.

Entries live only as long as the process.  The cache has no locking; it is
owned by a single poll loop and must not be shared across workers.
"""

from __future__ import annotations

import time
from typing import Callable, Dict

from arb_engine.models import DedupeEntry


def monotonic_ms() -> float:
    return time.monotonic() * 1000


class DedupeCache:
    def __init__(self, ttl_ms: float = 180_000, clock: Callable[[], float] = monotonic_ms) -> None:
        self._entries: Dict[str, DedupeEntry] = {}
        self._ttl_ms = ttl_ms
        self._clock = clock

    @property
    def ttl_ms(self) -> float:
        return self._ttl_ms

    def has(self, fingerprint: str) -> bool:
        entry = self._entries.get(fingerprint)
        if entry is None:
            return False
        if self._expired(entry, self._clock()):
            del self._entries[fingerprint]
            return False
        return True

    def add(self, fingerprint: str) -> None:
        self._entries[fingerprint] = DedupeEntry(fingerprint, self._clock())

    def check_and_add(self, fingerprint: str) -> bool:
        """Record the fingerprint and return ``True`` if it was not already live."""

        if self.has(fingerprint):
            return False
        self.add(fingerprint)
        return True

    def cleanup(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    def clear(self) -> None:
        self._entries.clear()

    def set_ttl(self, ttl_ms: float) -> None:
        self._ttl_ms = ttl_ms

    def _expired(self, entry: DedupeEntry, now: float) -> bool:
        return now - entry.timestamp > self._ttl_ms
