"""Bounded in-memory set of processed webhook fingerprints.

The cache is owned by a :class:`~voicegate_core.security.gate.WebhookSecurityGate`
instance rather than living in module state, so each gate (and each test)
gets its own replay window.  Entries are never persisted: a process restart
resets replay protection.  Anything implementing :class:`FingerprintStore`
(for example a Redis-backed set) can replace it when replay protection must
survive restarts.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Protocol

logger = logging.getLogger(__name__)


class FingerprintStore(Protocol):
    """Storage contract used by the security gate."""

    def __contains__(self, fingerprint: object) -> bool: ...

    def add_if_absent(self, fingerprint: str) -> bool: ...


class EvictionPolicy(Protocol):
    """Decides how many of the oldest entries to drop once capacity is exceeded."""

    def evict_count(self, size: int, capacity: int) -> int: ...


class TrimOldest:
    """Drop the oldest entries in one batch when the cache overflows.

    With ``batch=1000`` and ``capacity=10_000`` the cache is trimmed back to
    9 000 entries, so eviction work is amortised over many inserts.
    """

    def __init__(self, batch: int = 1000) -> None:
        if batch < 0:
            raise ValueError(f"batch must be >= 0, got {batch}")
        self._batch = batch

    def evict_count(self, size: int, capacity: int) -> int:
        if size <= capacity:
            return 0
        target = max(capacity - self._batch, 0)
        return size - target


class BoundedFingerprintCache:
    """Thread-safe insertion-ordered fingerprint set with bounded size.

    Parameters
    ----------
    capacity:
        Maximum number of fingerprints retained.
    eviction:
        Policy choosing how many oldest entries to drop on overflow.
        Defaults to :class:`TrimOldest` with a batch of 1000.
    """

    def __init__(self, capacity: int = 10_000, eviction: EvictionPolicy | None = None) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._eviction = eviction or TrimOldest()
        self._entries: OrderedDict[str, float] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, fingerprint: object) -> bool:
        with self._lock:
            return fingerprint in self._entries

    def add_if_absent(self, fingerprint: str) -> bool:
        """Insert *fingerprint*; return ``False`` if it was already present."""
        with self._lock:
            if fingerprint in self._entries:
                return False
            self._entries[fingerprint] = time.monotonic()
            evict = self._eviction.evict_count(len(self._entries), self._capacity)
            # The entry just inserted is always kept.
            for _ in range(min(evict, len(self._entries) - 1)):
                self._entries.popitem(last=False)
            if evict:
                logger.debug("Evicted %d webhook fingerprints (size=%d)", evict, len(self._entries))
            return True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
