"""In-memory resource cache keyed by (resource, owner, filter).

The cache is the single shared mutable structure of the sync layer. All reads
and writes are synchronous so that, on one event loop, each operation is
atomic with respect to every other. Collections are stored as tuples; callers
receive read-only snapshots and never mutate them in place.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from tripsync.cache.keys import CacheKey

Collection = tuple[Any, ...]
Updater = Callable[[Collection], Collection]
Listener = Callable[[CacheKey], None]


class FetchStatus(str, Enum):
    """Per-entry fetch state."""

    IDLE = "idle"
    FETCHING = "fetching"
    FRESH = "fresh"
    FAILED = "failed"


@dataclass
class CacheEntry:
    """Last-known collection for a key plus fetch metadata."""

    key: CacheKey
    collection: Collection | None = None
    status: FetchStatus = FetchStatus.IDLE
    fetched_at: datetime | None = None
    error: Exception | None = None
    retry_count: int = 0
    stale: bool = False
    auth_blocked: bool = False

    @property
    def in_flight(self) -> bool:
        return self.status == FetchStatus.FETCHING

    def is_stale(self, now: datetime, stale_after_seconds: float) -> bool:
        """Check whether the entry needs a re-fetch."""
        if self.stale or self.fetched_at is None:
            return True
        return (now - self.fetched_at).total_seconds() >= stale_after_seconds


class ResourceCache:
    """Keyed store of resource collections."""

    def __init__(self, now_fn: Callable[[], datetime] | None = None) -> None:
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._listeners: list[Listener] = []
        self._now = now_fn or datetime.now

    def get(self, key: CacheKey) -> CacheEntry | None:
        """Get the entry for a key, None if it was never created or was cleared."""
        return self._entries.get(key)

    def ensure(self, key: CacheKey) -> CacheEntry:
        """Get the entry for a key, creating an idle one on first access."""
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key)
            self._entries[key] = entry
        return entry

    def set(self, key: CacheKey, collection: Collection) -> CacheEntry:
        """Replace the collection wholesale and mark the entry fresh."""
        entry = self.ensure(key)
        entry.collection = tuple(collection)
        entry.status = FetchStatus.FRESH
        entry.fetched_at = self._now()
        entry.error = None
        entry.retry_count = 0
        entry.stale = False
        entry.auth_blocked = False
        self._notify(key)
        return entry

    def patch(self, key: CacheKey, updater: Updater) -> Collection:
        """Apply a pure old -> new function to the collection.

        Returns the previous collection so the caller can keep a snapshot.
        """
        entry = self.ensure(key)
        previous = entry.collection if entry.collection is not None else ()
        entry.collection = tuple(updater(previous))
        self._notify(key)
        return previous

    def mark_fetching(self, key: CacheKey) -> CacheEntry:
        entry = self.ensure(key)
        entry.status = FetchStatus.FETCHING
        self._notify(key)
        return entry

    def record_failure(
        self,
        key: CacheKey,
        error: Exception,
        retry_count: int,
        *,
        auth_blocked: bool = False,
    ) -> CacheEntry:
        """Record a failed fetch without touching the collection."""
        entry = self.ensure(key)
        entry.status = FetchStatus.FAILED
        entry.error = error
        entry.retry_count = retry_count
        entry.auth_blocked = entry.auth_blocked or auth_blocked
        self._notify(key)
        return entry

    def invalidate(self, prefix: tuple) -> list[CacheKey]:
        """Mark every entry whose key starts with prefix as stale."""
        invalidated = []
        for key, entry in self._entries.items():
            if key.matches(prefix):
                entry.stale = True
                invalidated.append(key)
        return invalidated

    def clear(self, owner_id: str) -> int:
        """Drop all entries of an owner. Safe to call repeatedly."""
        doomed = [key for key in self._entries if key.owner_id == owner_id]
        for key in doomed:
            del self._entries[key]
        for key in doomed:
            self._notify(key)
        return len(doomed)

    def keys(self, prefix: tuple = ()) -> list[CacheKey]:
        return [key for key in self._entries if key.matches(prefix)]

    def entries(self, prefix: tuple = ()) -> list[CacheEntry]:
        return [entry for key, entry in self._entries.items() if key.matches(prefix)]

    def is_fetching(self, owner_id: str) -> bool:
        """Aggregate in-flight state across an owner's entries."""
        return any(
            entry.in_flight for key, entry in self._entries.items() if key.owner_id == owner_id
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, key: CacheKey) -> None:
        for listener in list(self._listeners):
            listener(key)
