"""Travel data facade consumed by UI collaborators.

One TravelData is constructed at process start and handed to every consumer.
It owns the cache, session binding, reconciliation scheduler and mutation
pipeline, and exposes the current collections plus the mutation entry points.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from tripsync.cache.keys import CacheKey, ResourceType
from tripsync.cache.store import CacheEntry, ResourceCache
from tripsync.config import Settings, get_settings
from tripsync.models import (
    Destination,
    DestinationDraft,
    EntityId,
    ExternalDestinationDraft,
    ItineraryItem,
    Photo,
    PhotoDraft,
    SearchFilters,
    Trip,
    TripDraft,
    UserSession,
)
from tripsync.remote.protocol import RemoteStore
from tripsync.sync.notify import Notifier
from tripsync.sync.pipeline import MutationPipeline, MutationResult
from tripsync.sync.scheduler import ReconciliationScheduler
from tripsync.sync.session import SessionBinding
from tripsync.utils.logging import SyncLogger
from tripsync.utils.metrics import SyncMetrics

logger = logging.getLogger(__name__)


class TravelData:
    """Trips, destinations and photos of the active user, kept in sync with the remote store."""

    def __init__(
        self,
        remote: RemoteStore,
        *,
        settings: Settings | None = None,
        cache: ResourceCache | None = None,
        session: SessionBinding | None = None,
        notifier: Notifier | None = None,
        metrics: SyncMetrics | None = None,
        sync_logger: SyncLogger | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.cache = cache or ResourceCache()
        self.session = session or SessionBinding(
            self.cache,
            recent_login_grace_seconds=self._settings.recent_login_grace_seconds,
            logout_on_auth_failure=self._settings.logout_on_auth_failure,
        )
        self._search_filters: SearchFilters | None = None

        self.scheduler = ReconciliationScheduler(
            self.cache,
            remote,
            self.session,
            settings=self._settings,
            metrics=metrics,
            sync_logger=sync_logger,
            sleep_fn=sleep_fn,
        )
        self.pipeline = MutationPipeline(
            self.cache,
            self.session,
            remote,
            settings=self._settings,
            notifier=notifier,
            metrics=metrics,
            sync_logger=sync_logger,
            invalidate=self.scheduler.request_refresh,
            destination_filters=lambda: self._search_filters,
        )

    # Session

    def login(self, user: UserSession) -> None:
        if self.session.owner_id is not None and self.session.owner_id != user.id:
            self._search_filters = None
        self.session.login(user)

    def logout(self) -> None:
        self._search_filters = None
        self.session.logout()

    # Lifecycle

    async def mount(self) -> list[CacheEntry | None]:
        """Track the current user's collections and wait for the first fetch."""
        owner_id = self.session.owner_id
        if owner_id is None:
            logger.info("No current user, skipping data load")
            return []

        tasks = [
            self.scheduler.track(CacheKey.for_resource(ResourceType.trips, owner_id)),
            self.scheduler.track(self._destination_key(owner_id), self._search_filters),
            self.scheduler.track(CacheKey.for_resource(ResourceType.photos, owner_id)),
        ]
        pending = [task for task in tasks if task is not None]
        return list(await asyncio.gather(*pending))

    async def focus(self) -> list[CacheEntry | None]:
        """Window regained focus."""
        return await self.scheduler.on_focus()

    async def close(self) -> None:
        await self.scheduler.stop()

    # Reads

    @property
    def is_loading(self) -> bool:
        owner_id = self.session.owner_id
        return owner_id is not None and self.cache.is_fetching(owner_id)

    @property
    def trips(self) -> tuple[Trip, ...]:
        return self._collection(ResourceType.trips)

    @property
    def destinations(self) -> tuple[Destination, ...]:
        owner_id = self.session.owner_id
        if owner_id is None:
            return ()
        return self._read(self._destination_key(owner_id))

    @property
    def photos(self) -> tuple[Photo, ...]:
        return self._collection(ResourceType.photos)

    @property
    def search_filters(self) -> SearchFilters | None:
        return self._search_filters

    def set_search_filters(
        self, filters: SearchFilters | Mapping[str, Any] | None
    ) -> asyncio.Task[CacheEntry | None] | None:
        """Switch the destination view; filtered and unfiltered views are cached separately.

        Returns the fetch task for the newly tracked key when one was started.
        """
        if filters is not None and not isinstance(filters, SearchFilters):
            filters = SearchFilters.model_validate(filters)
        if filters is not None and filters.is_empty():
            filters = None

        owner_id = self.session.owner_id
        previous_key = self._destination_key(owner_id) if owner_id else None
        self._search_filters = filters
        if owner_id is None:
            return None

        new_key = self._destination_key(owner_id)
        if previous_key is not None and previous_key != new_key:
            self.scheduler.untrack(previous_key)
        return self.scheduler.track(new_key, filters)

    async def load_user_data(self) -> None:
        """Refresh trips, destinations and photos concurrently."""
        owner_id = self.session.owner_id
        if owner_id is None:
            logger.info("No current user, skipping data load")
            return

        await asyncio.gather(
            self.scheduler.refresh(CacheKey.for_resource(ResourceType.trips, owner_id)),
            self.scheduler.refresh(self._destination_key(owner_id)),
            self.scheduler.refresh(CacheKey.for_resource(ResourceType.photos, owner_id)),
        )

    async def refresh_trips(self) -> tuple[Trip, ...] | None:
        owner_id = self.session.owner_id
        if owner_id is None:
            logger.warning("Tried to refresh trips without a user session")
            return None

        entry = await self.scheduler.refresh(CacheKey.for_resource(ResourceType.trips, owner_id))
        if entry is None or entry.collection is None:
            return None
        return entry.collection

    # Mutations

    async def add_trip(self, draft: TripDraft | Mapping[str, Any]) -> MutationResult[Trip]:
        return await self.pipeline.create_trip(draft)

    async def update_trip(
        self, trip_id: EntityId, trip: Trip | Mapping[str, Any]
    ) -> MutationResult[Trip]:
        return await self.pipeline.update_trip(trip_id, trip)

    async def add_trip_activity(
        self, trip_id: EntityId, activity: ItineraryItem | Mapping[str, Any]
    ) -> MutationResult[Trip]:
        return await self.pipeline.append_trip_activity(trip_id, activity)

    async def delete_trip(self, trip_id: EntityId) -> MutationResult[None]:
        return await self.pipeline.delete_trip(trip_id)

    async def add_destination(
        self, draft: DestinationDraft | Mapping[str, Any]
    ) -> MutationResult[Destination]:
        return await self.pipeline.create_destination(draft)

    async def save_external_destination(
        self, draft: ExternalDestinationDraft | Mapping[str, Any]
    ) -> MutationResult[Destination]:
        return await self.pipeline.save_external_destination(draft)

    async def update_destination(
        self, destination_id: EntityId, destination: Destination | Mapping[str, Any]
    ) -> MutationResult[Destination]:
        return await self.pipeline.update_destination(destination_id, destination)

    async def delete_destination(self, destination_id: EntityId) -> MutationResult[None]:
        return await self.pipeline.delete_destination(destination_id)

    async def add_photo(self, draft: PhotoDraft | Mapping[str, Any]) -> MutationResult[Photo]:
        return await self.pipeline.create_photo(draft)

    async def update_photo(
        self, photo_id: EntityId, photo: Photo | Mapping[str, Any]
    ) -> MutationResult[Photo]:
        return await self.pipeline.update_photo(photo_id, photo)

    async def delete_photo(self, photo_id: EntityId) -> MutationResult[None]:
        return await self.pipeline.delete_photo(photo_id)

    # Helpers

    def _destination_key(self, owner_id: str) -> CacheKey:
        return CacheKey.for_resource(ResourceType.destinations, owner_id, self._search_filters)

    def _collection(self, resource: ResourceType) -> tuple[Any, ...]:
        owner_id = self.session.owner_id
        if owner_id is None:
            return ()
        return self._read(CacheKey.for_resource(resource, owner_id))

    def _read(self, key: CacheKey) -> tuple[Any, ...]:
        entry = self.cache.get(key)
        if entry is None or entry.collection is None:
            return ()
        return entry.collection
