"""Reconciliation scheduler: periodic full re-fetch of tracked collections.

Each tracked key goes through Idle -> Fetching -> {Fresh, Failed(retry_count)}
on its cache entry. A successful fetch replaces the cached collection
wholesale and so supersedes any optimistic state still outstanding. Only one
read per key is in flight at a time; concurrent refresh requests share it.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Coroutine
from datetime import datetime
from typing import Any

from tripsync.cache.keys import CacheKey, ResourceType
from tripsync.cache.store import CacheEntry, ResourceCache
from tripsync.config import Settings, get_settings
from tripsync.models import SearchFilters, UserSession
from tripsync.remote.protocol import RemoteStore, ResourceStore
from tripsync.sync.classifier import backoff_seconds, classify, should_retry, to_sync_error
from tripsync.sync.errors import ErrorCategory, TransientFailure
from tripsync.sync.session import SessionBinding, SessionToken
from tripsync.utils.logging import SyncLogger
from tripsync.utils.metrics import SyncMetrics

logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    """Keeps tracked cache entries converging to server truth."""

    def __init__(
        self,
        cache: ResourceCache,
        remote: RemoteStore,
        session: SessionBinding,
        *,
        settings: Settings | None = None,
        metrics: SyncMetrics | None = None,
        sync_logger: SyncLogger | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize scheduler.

        Args:
            cache: Shared resource cache
            remote: Remote store collaborator
            session: Session binding guarding settles
            settings: Settings (defaults to get_settings())
            metrics: Metrics recorder (defaults to no-op)
            sync_logger: Structured logger (defaults to no-op)
            sleep_fn: Injectable sleep function (default: asyncio.sleep)
            now_fn: Injectable clock for staleness checks
        """
        self._cache = cache
        self._remote = remote
        self._session = session
        self._settings = settings or get_settings()
        self._metrics = metrics or SyncMetrics()
        self._logger = sync_logger or SyncLogger()
        self._sleep = sleep_fn or asyncio.sleep
        self._now = now_fn or datetime.now

        self._tracked: set[CacheKey] = set()
        self._filters: dict[CacheKey, SearchFilters | None] = {}
        self._loops: dict[CacheKey, asyncio.Task[None]] = {}
        self._inflight: dict[CacheKey, tuple[SessionToken, asyncio.Task[CacheEntry | None]]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        # Bumped on every invalidation; a read that started under an older
        # generation is re-issued instead of written to the cache
        self._generations: dict[CacheKey, int] = {}

        session.subscribe(self._on_session_change)

    @property
    def tracked_keys(self) -> list[CacheKey]:
        return sorted(self._tracked, key=str)

    def is_tracked(self, key: CacheKey) -> bool:
        return key in self._tracked

    def track(
        self, key: CacheKey, filters: SearchFilters | None = None
    ) -> asyncio.Task[CacheEntry | None] | None:
        """Mount a consumer of a key: start polling and issue the one-shot fetch.

        Must be called with a running event loop. Returns the initial fetch
        task when refetch on mount is enabled.
        """
        self._filters[key] = filters
        self._cache.ensure(key)
        first_mount = key not in self._tracked
        self._tracked.add(key)

        if first_mount and self._settings.poll_interval_seconds > 0:
            self._loops[key] = asyncio.create_task(self._poll(key))

        if self._settings.refetch_on_mount:
            return self._spawn(self.refresh(key))
        return None

    def untrack(self, key: CacheKey) -> None:
        """Stop polling a key. An in-flight read is left to settle."""
        self._tracked.discard(key)
        loop_task = self._loops.pop(key, None)
        if loop_task is not None:
            loop_task.cancel()

    def untrack_owner(self, owner_id: str) -> None:
        for key in [k for k in self._tracked if k.owner_id == owner_id]:
            self.untrack(key)
            self._filters.pop(key, None)
        for key in [k for k in self._generations if k.owner_id == owner_id]:
            del self._generations[key]

    async def refresh(self, key: CacheKey) -> CacheEntry | None:
        """Re-fetch one key, coalescing with a read already in flight.

        Returns the updated entry, or None when the result was discarded
        because the identity changed or the key was cleared.
        """
        if key.owner_id != self._session.owner_id:
            return None

        token = self._session.token()
        current = self._inflight.get(key)
        if current is not None and current[0] == token and not current[1].done():
            task = current[1]
        else:
            task = asyncio.create_task(self._fetch(key, token))
            self._inflight[key] = (token, task)
            task.add_done_callback(lambda done, k=key: self._forget_inflight(k, done))
        return await asyncio.shield(task)

    async def refresh_all(self, owner_id: str | None = None) -> list[CacheEntry | None]:
        """Refresh every tracked key of an owner (default: current owner) concurrently."""
        owner_id = owner_id or self._session.owner_id
        keys = [key for key in self.tracked_keys if key.owner_id == owner_id]
        return list(await asyncio.gather(*(self.refresh(key) for key in keys)))

    async def on_focus(self) -> list[CacheEntry | None]:
        """Refresh stale tracked keys after the app regains focus."""
        if not self._settings.refetch_on_focus:
            return []

        now = self._now()
        keys = []
        for key in self.tracked_keys:
            if key.owner_id != self._session.owner_id:
                continue
            entry = self._cache.get(key)
            if entry is not None and entry.auth_blocked:
                continue
            if entry is None or entry.is_stale(now, self._settings.stale_time_seconds):
                keys.append(key)
        return list(await asyncio.gather(*(self.refresh(key) for key in keys)))

    def request_refresh(self, prefix: tuple) -> list[CacheKey]:
        """Invalidate keys under prefix and refresh tracked ones in the background.

        A read already in flight for an invalidated key is not trusted: its
        result predates the change, so it is re-issued when it lands.
        """
        invalidated = self._cache.invalidate(prefix)
        for key in invalidated:
            self._generations[key] = self._generations.get(key, 0) + 1
        for key in self.tracked_keys:
            if not key.matches(prefix):
                continue
            entry = self._cache.get(key)
            if entry is not None and entry.auth_blocked:
                continue
            self._spawn(self.refresh(key))
        return invalidated

    async def stop(self) -> None:
        """Cancel polling loops and background work (process shutdown)."""
        tasks: list[asyncio.Task[Any]] = list(self._loops.values()) + list(self._background)
        tasks.extend(task for _, task in self._inflight.values())
        self._tracked.clear()
        self._loops.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        self._inflight.clear()

    async def _poll(self, key: CacheKey) -> None:
        while key in self._tracked:
            await self._sleep(self._settings.poll_interval_seconds)
            if key not in self._tracked:
                break
            entry = self._cache.get(key)
            if entry is not None and entry.auth_blocked:
                # Stays blocked until the identity changes
                continue
            await self.refresh(key)

    async def _fetch(self, key: CacheKey, token: SessionToken) -> CacheEntry | None:
        store = self._store_for(key.resource)
        filters = self._filters.get(key)
        resource = key.resource.value
        self._cache.mark_fetching(key)

        attempt = 0
        generation = self._generations.get(key, 0)
        while True:
            started = time.monotonic()
            try:
                items = await store.list_all(key.owner_id, filters)
                if not isinstance(items, (list, tuple)):
                    raise TransientFailure(f"Failed to load {resource}")
            except Exception as exc:
                latency_ms = (time.monotonic() - started) * 1000
                category = classify(exc)
                self._metrics.record_fetch(resource, "error", latency_ms)
                self._metrics.inc_fetch_error(resource, category.value)
                self._logger.log_fetch(
                    key, attempt + 1, "error", latency_ms, error_reason=category.value
                )

                if not self._is_relevant(key, token):
                    return None
                if should_retry(category, attempt, self._settings.read_retry_count, is_read=True):
                    await self._sleep(
                        backoff_seconds(
                            attempt,
                            self._settings.retry_backoff_base_ms,
                            self._settings.retry_backoff_max_ms,
                        )
                    )
                    attempt += 1
                    if not self._is_relevant(key, token):
                        return None
                    continue

                blocked = category == ErrorCategory.AUTHORIZATION
                entry = self._cache.record_failure(
                    key, to_sync_error(exc), attempt, auth_blocked=blocked
                )
                if blocked:
                    self._session.handle_authorization_failure()
                return entry

            latency_ms = (time.monotonic() - started) * 1000
            if not self._is_relevant(key, token):
                self._logger.log_fetch(key, attempt + 1, "discarded", latency_ms)
                return None

            if self._generations.get(key, 0) != generation:
                self._logger.log_fetch(key, attempt + 1, "superseded", latency_ms)
                generation = self._generations.get(key, 0)
                attempt = 0
                continue

            self._metrics.record_fetch(resource, "success", latency_ms)
            self._logger.log_fetch(key, attempt + 1, "success", latency_ms)
            return self._cache.set(key, tuple(items))

    def _is_relevant(self, key: CacheKey, token: SessionToken) -> bool:
        return self._session.is_current(token) and self._cache.get(key) is not None

    def _store_for(self, resource: ResourceType) -> ResourceStore[Any]:
        if resource == ResourceType.trips:
            return self._remote.trips
        if resource == ResourceType.destinations:
            return self._remote.destinations
        return self._remote.photos

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _forget_inflight(self, key: CacheKey, task: asyncio.Task[Any]) -> None:
        current = self._inflight.get(key)
        if current is not None and current[1] is task:
            del self._inflight[key]

    def _on_session_change(self, previous: UserSession | None, current: UserSession | None) -> None:
        if previous is not None:
            self.untrack_owner(previous.id)
