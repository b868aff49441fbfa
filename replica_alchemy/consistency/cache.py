"""In-memory tracking of recent mutations for read-after-write consistency."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from replica_alchemy.config.routing import DEFAULT_CONSISTENCY_TTL

__all__ = (
    "DEFAULT_CLEANUP_INTERVAL",
    "CacheEntry",
    "MutationCache",
    "mutation_cache",
)

logger = logging.getLogger("replica_alchemy.consistency")

DEFAULT_CLEANUP_INTERVAL = 30.0
"""Seconds between background sweeps of expired entries."""


@dataclass(frozen=True)
class CacheEntry:
    """A recorded mutation.

    Attributes:
        key: Consistency key of the caller that mutated.
        created_at: Epoch seconds of the mutation.
        expires_at: Epoch seconds after which replicas may serve the caller again.
    """

    key: str
    created_at: float
    expires_at: float


class MutationCache:
    """Time-windowed record of which callers mutated recently.

    While an entry is live, reads for its key should go to the primary. Entries are
    overwritten on every new mutation, so the window always counts from the latest
    write. Expired entries are dropped when looked up, or by :meth:`cleanup`.

    The cache is shared by every request of the process; all access goes through
    one lock.

    Example:
        Recording a write and checking it on a later read::

            cache = MutationCache(ttl=5.0)
            cache.set("user:42")

            if cache.get("user:42") is not None:
                facade = facade.use_primary_only()
    """

    __slots__ = ("_clock", "_cleanup_stop", "_cleanup_thread", "_entries", "_lock", "_ttl")

    def __init__(self, ttl: float = DEFAULT_CONSISTENCY_TTL, clock: Callable[[], float] = time.time) -> None:
        """Initialize the cache.

        Args:
            ttl: Length of the consistency window, in seconds.
            clock: Returns the current time in epoch seconds.
        """
        if ttl <= 0:
            msg = "ttl must be positive"
            raise ValueError(msg)
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._cleanup_thread: Optional[threading.Thread] = None
        self._cleanup_stop = threading.Event()

    @property
    def ttl(self) -> float:
        return self._ttl

    def set(self, key: str) -> CacheEntry:
        """Record a mutation for ``key``, replacing any earlier one.

        Returns:
            The new entry.
        """
        now = self._clock()
        entry = CacheEntry(key=key, created_at=now, expires_at=now + self._ttl)
        with self._lock:
            self._entries[key] = entry
        return entry

    def get(self, key: str) -> Optional[float]:
        """Return the expiry of the live entry for ``key``.

        An expired entry is removed.

        Returns:
            The expiry in epoch seconds, or ``None`` if there is no live entry.
        """
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if now >= entry.expires_at:
                del self._entries[key]
                return None
            return entry.expires_at

    def remaining(self, key: str) -> Optional[float]:
        """Return the seconds left in the window for ``key``, or ``None``."""
        expires_at = self.get(key)
        if expires_at is None:
            return None
        return max(expires_at - self._clock(), 0.0)

    def cleanup(self) -> int:
        """Remove every expired entry.

        Returns:
            The number of entries removed.
        """
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Removed %d expired mutation entries", len(expired))
        return len(expired)

    def size(self) -> int:
        """Return the number of stored entries, expired ones included."""
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def start_cleanup(self, interval: float = DEFAULT_CLEANUP_INTERVAL) -> None:
        """Sweep expired entries every ``interval`` seconds on a daemon thread.

        Calling this while a sweeper is running does nothing.
        """
        if self._cleanup_thread is not None and self._cleanup_thread.is_alive():
            return
        self._cleanup_stop.clear()
        self._cleanup_thread = threading.Thread(
            target=self._run_cleanup,
            args=(interval,),
            name="replica-alchemy-mutation-cleanup",
            daemon=True,
        )
        self._cleanup_thread.start()

    def stop_cleanup(self, timeout: Optional[float] = None) -> None:
        """Stop the background sweeper started by :meth:`start_cleanup`."""
        self._cleanup_stop.set()
        thread, self._cleanup_thread = self._cleanup_thread, None
        if thread is not None:
            thread.join(timeout)

    def _run_cleanup(self, interval: float) -> None:
        while not self._cleanup_stop.wait(interval):
            self.cleanup()


mutation_cache = MutationCache()
"""Process-wide mutation cache used when no cache is passed explicitly."""
