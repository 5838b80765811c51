"""Optimistic mutation pipeline.

Every mutation runs the same four phases:

1. Validating - normalize caller input through a draft model; failures raise
   ValidationFailure before the cache or network is touched.
2. Patched - splice a provisional entity into the affected collections via
   ResourceCache.patch, keeping each pre-patch snapshot on the context.
3. Remote call - the only suspension point.
4. Settling - commit the authoritative entity (Committed) or undo this
   mutation's own delta and re-raise the classified error (RolledBack).

Mutations are never retried; retrying a create or delete is not safe
without a dedupe token.
"""

import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from tripsync.cache.keys import CacheKey, ResourceType
from tripsync.cache.store import Collection, ResourceCache
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
    TripStatus,
)
from tripsync.remote.protocol import ExternalSaveResult, RemoteStore
from tripsync.sync.classifier import to_sync_error
from tripsync.sync.errors import (
    ErrorCategory,
    RemoteStoreError,
    SyncError,
    ValidationFailure,
)
from tripsync.sync.notify import Notifier
from tripsync.sync.patches import (
    AppendActivityPatch,
    InsertPatch,
    OptimisticPatch,
    RemovePatch,
    ReplacePatch,
    remove_by_id,
    upsert_front,
)
from tripsync.sync.session import SessionBinding, SessionToken
from tripsync.utils.logging import SyncLogger
from tripsync.utils.metrics import SyncMetrics

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

_MODELS: dict[ResourceType, type[BaseModel]] = {
    ResourceType.trips: Trip,
    ResourceType.destinations: Destination,
    ResourceType.photos: Photo,
}


class MutationKind(str, Enum):
    """Kind of mutation."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    APPEND_ACTIVITY = "append_activity"
    SAVE_EXTERNAL = "save_external"


class MutationPhase(str, Enum):
    """Mutation lifecycle state."""

    VALIDATING = "validating"
    PATCHED = "patched"
    SETTLING = "settling"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class MutationContext:
    """Bookkeeping for one in-flight mutation."""

    mutation_id: str
    resource: ResourceType
    kind: MutationKind
    token: SessionToken
    patch: OptimisticPatch | None = None
    snapshots: dict[CacheKey, Collection] = field(default_factory=dict)
    phase: MutationPhase = MutationPhase.VALIDATING
    outcome: Any = None
    error: SyncError | None = None
    started_at: float = field(default_factory=time.monotonic)


@dataclass
class MutationResult(Generic[T]):
    """Settled mutation value. ``duplicate`` marks a create that matched an existing entity."""

    value: T | None
    duplicate: bool = False
    message: str = ""


@dataclass(frozen=True)
class _Messages:
    success: str
    failure: str
    description: str | None = None


class TempIdFactory:
    """Placeholder ids from the current time in milliseconds, strictly increasing."""

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.time
        self._last = 0

    def next_id(self) -> int:
        candidate = int(self._clock() * 1000)
        if candidate <= self._last:
            candidate = self._last + 1
        self._last = candidate
        return candidate


class MutationPipeline:
    """Runs create/update/delete operations with optimistic cache patches."""

    def __init__(
        self,
        cache: ResourceCache,
        session: SessionBinding,
        remote: RemoteStore,
        *,
        settings: Settings | None = None,
        notifier: Notifier | None = None,
        metrics: SyncMetrics | None = None,
        sync_logger: SyncLogger | None = None,
        id_factory: TempIdFactory | None = None,
        invalidate: Callable[[tuple], Any] | None = None,
        destination_filters: Callable[[], SearchFilters | None] | None = None,
    ) -> None:
        """Initialize pipeline.

        Args:
            cache: Shared resource cache
            session: Session binding used to scope keys and guard settles
            remote: Remote store collaborator
            settings: Settings (defaults to get_settings())
            notifier: User notification sink (defaults to no-op)
            metrics: Metrics recorder (defaults to no-op)
            sync_logger: Structured logger (defaults to no-op)
            id_factory: Temporary id source for provisional entities
            invalidate: Non-blocking invalidation hook called with a key prefix
                after a commit (defaults to ResourceCache.invalidate)
            destination_filters: Returns the active destination search filters
        """
        self._cache = cache
        self._session = session
        self._remote = remote
        self._settings = settings or get_settings()
        self._notifier = notifier or Notifier()
        self._metrics = metrics or SyncMetrics()
        self._logger = sync_logger or SyncLogger()
        self._ids = id_factory or TempIdFactory()
        self._invalidate = invalidate or cache.invalidate
        self._destination_filters = destination_filters or (lambda: None)
        # Unsettled mutations per key, in issue order
        self._pending: dict[CacheKey, list[MutationContext]] = {}

    # Trips

    async def create_trip(self, draft: TripDraft | Mapping[str, Any]) -> MutationResult[Trip]:
        ctx = self._begin(ResourceType.trips, MutationKind.CREATE)
        messages = _Messages("Trip created successfully!", "create trip")
        owner_id = self._owner(ctx, messages)
        data = self._validate(ctx, TripDraft, draft, messages)

        payload = {
            "title": data.title,
            "destination": data.destination,
            "start_date": data.start_date,
            "end_date": data.end_date,
            "budget": data.budget,
            "companions": data.companions,
            "status": TripStatus.upcoming.value,
            "image": data.image_url,
            "itinerary": [],
        }
        if data.notes:
            payload["notes"] = data.notes

        optimistic = Trip(
            id=self._ids.next_id(),
            title=data.title,
            destination=data.destination,
            start_date=data.start_date,
            end_date=data.end_date,
            budget=data.budget or "₱0",
            companions=data.companions,
            status=TripStatus.upcoming,
            image=data.image_url,
            itinerary=(),
            notes=data.notes or None,
            user_id=owner_id,
        )
        messages = _Messages(
            messages.success,
            messages.failure,
            f"{data.title or 'Trip'} has been added to your itinerary.",
        )
        return await self._execute(
            ctx,
            InsertPatch(optimistic),
            [self._key(ResourceType.trips, owner_id)],
            lambda: self._remote.trips.create(owner_id, payload),
            messages,
        )

    async def update_trip(
        self, trip_id: EntityId, trip: Trip | Mapping[str, Any]
    ) -> MutationResult[Trip]:
        ctx = self._begin(ResourceType.trips, MutationKind.UPDATE)
        messages = _Messages("Trip updated successfully!", "update trip")
        owner_id = self._owner(ctx, messages)
        entity = self._validate_entity(ctx, Trip, trip, trip_id, "image", messages)
        return await self._execute(
            ctx,
            ReplacePatch(entity),
            [self._key(ResourceType.trips, owner_id)],
            lambda: self._remote.trips.update(owner_id, trip_id, entity),
            messages,
        )

    async def append_trip_activity(
        self, trip_id: EntityId, activity: ItineraryItem | Mapping[str, Any]
    ) -> MutationResult[Trip]:
        ctx = self._begin(ResourceType.trips, MutationKind.APPEND_ACTIVITY)
        messages = _Messages("Activity added to itinerary!", "add activity")
        owner_id = self._owner(ctx, messages)
        item = self._validate(ctx, ItineraryItem, activity, messages)
        return await self._execute(
            ctx,
            AppendActivityPatch(trip_id, item),
            [self._key(ResourceType.trips, owner_id)],
            lambda: self._remote.trips.append_activity(owner_id, trip_id, item),
            messages,
        )

    async def delete_trip(self, trip_id: EntityId) -> MutationResult[None]:
        ctx = self._begin(ResourceType.trips, MutationKind.DELETE)
        messages = _Messages("Trip deleted successfully!", "delete trip")
        owner_id = self._owner(ctx, messages)
        return await self._execute(
            ctx,
            RemovePatch(trip_id),
            [self._key(ResourceType.trips, owner_id)],
            lambda: self._remote.trips.delete(owner_id, trip_id),
            messages,
        )

    # Destinations

    async def create_destination(
        self, draft: DestinationDraft | Mapping[str, Any]
    ) -> MutationResult[Destination]:
        ctx = self._begin(ResourceType.destinations, MutationKind.CREATE)
        messages = _Messages("Destination added successfully!", "add destination")
        owner_id = self._owner(ctx, messages)
        data = self._validate(ctx, DestinationDraft, draft, messages)

        payload = {
            "name": data.name,
            "location": data.location,
            "category": data.category,
            "description": data.description,
            "image": data.image_url,
            "rating": data.rating,
        }
        optimistic = Destination(
            id=self._ids.next_id(),
            name=data.name,
            location=data.location,
            category=data.category,
            description=data.description,
            image=data.image_url,
            rating=data.rating,
            visited=False,
            user_id=owner_id,
        )
        messages = _Messages(
            messages.success, messages.failure, f"{data.name} has been added to your destinations."
        )
        return await self._execute(
            ctx,
            InsertPatch(optimistic),
            self._destination_insert_keys(owner_id),
            lambda: self._remote.destinations.create(owner_id, payload),
            messages,
        )

    async def save_external_destination(
        self, draft: ExternalDestinationDraft | Mapping[str, Any]
    ) -> MutationResult[Destination]:
        ctx = self._begin(ResourceType.destinations, MutationKind.SAVE_EXTERNAL)
        messages = _Messages("Destination saved!", "save destination")
        owner_id = self._owner(ctx, messages)
        data = self._validate(ctx, ExternalDestinationDraft, draft, messages)

        payload = data.model_dump(exclude_none=True)
        payload["hashtags"] = list(data.hashtags)
        optimistic = Destination(
            id=self._ids.next_id(),
            name=data.name,
            location=data.location,
            category=data.category,
            description=data.description,
            image=data.image,
            rating=data.rating or 0,
            user_id=owner_id,
            is_external=True,
            external_source_id=data.external_source_id,
            external_source_platform=data.external_source_platform,
            external_source_url=data.external_source_url,
            hashtags=data.hashtags,
        )
        messages = _Messages(
            messages.success, messages.failure, f"{data.name} has been added to your destinations."
        )
        return await self._execute(
            ctx,
            InsertPatch(optimistic),
            self._destination_insert_keys(owner_id),
            lambda: self._remote.destinations.save_external(owner_id, payload),
            messages,
        )

    async def update_destination(
        self, destination_id: EntityId, destination: Destination | Mapping[str, Any]
    ) -> MutationResult[Destination]:
        ctx = self._begin(ResourceType.destinations, MutationKind.UPDATE)
        messages = _Messages("Destination updated successfully!", "update destination")
        owner_id = self._owner(ctx, messages)
        entity = self._validate_entity(
            ctx, Destination, destination, destination_id, "image", messages
        )
        return await self._execute(
            ctx,
            ReplacePatch(entity),
            self._destination_keys(owner_id),
            lambda: self._remote.destinations.update(owner_id, destination_id, entity),
            messages,
        )

    async def delete_destination(self, destination_id: EntityId) -> MutationResult[None]:
        ctx = self._begin(ResourceType.destinations, MutationKind.DELETE)
        messages = _Messages("Destination deleted successfully!", "delete destination")
        owner_id = self._owner(ctx, messages)
        return await self._execute(
            ctx,
            RemovePatch(destination_id),
            self._destination_keys(owner_id),
            lambda: self._remote.destinations.delete(owner_id, destination_id),
            messages,
        )

    # Photos

    async def create_photo(self, draft: PhotoDraft | Mapping[str, Any]) -> MutationResult[Photo]:
        ctx = self._begin(ResourceType.photos, MutationKind.CREATE)
        messages = _Messages(
            "Photo added successfully!",
            "add photo",
            "Your photo has been added to the gallery.",
        )
        owner_id = self._owner(ctx, messages)
        data = self._validate(ctx, PhotoDraft, draft, messages)

        payload = {
            "destination_id": data.destination_id,
            "url": data.url,
            "caption": data.caption,
            "rating": data.rating,
            "title": data.title,
        }
        optimistic = Photo(
            id=self._ids.next_id(),
            destination_id=data.destination_id,
            url=data.url,
            caption=data.caption,
            rating=data.rating,
            title=data.title,
            user_id=owner_id,
        )
        return await self._execute(
            ctx,
            InsertPatch(optimistic),
            [self._key(ResourceType.photos, owner_id)],
            lambda: self._remote.photos.create(owner_id, payload),
            messages,
        )

    async def update_photo(
        self, photo_id: EntityId, photo: Photo | Mapping[str, Any]
    ) -> MutationResult[Photo]:
        ctx = self._begin(ResourceType.photos, MutationKind.UPDATE)
        messages = _Messages("Photo updated successfully!", "update photo")
        owner_id = self._owner(ctx, messages)
        entity = self._validate_entity(ctx, Photo, photo, photo_id, "url", messages)
        return await self._execute(
            ctx,
            ReplacePatch(entity),
            [self._key(ResourceType.photos, owner_id)],
            lambda: self._remote.photos.update(owner_id, photo_id, entity),
            messages,
        )

    async def delete_photo(self, photo_id: EntityId) -> MutationResult[None]:
        ctx = self._begin(ResourceType.photos, MutationKind.DELETE)
        messages = _Messages("Photo deleted successfully!", "delete photo")
        owner_id = self._owner(ctx, messages)
        return await self._execute(
            ctx,
            RemovePatch(photo_id),
            [self._key(ResourceType.photos, owner_id)],
            lambda: self._remote.photos.delete(owner_id, photo_id),
            messages,
        )

    # Phases

    def _begin(self, resource: ResourceType, kind: MutationKind) -> MutationContext:
        return MutationContext(
            mutation_id=uuid.uuid4().hex[:12],
            resource=resource,
            kind=kind,
            token=self._session.token(),
        )

    def _owner(self, ctx: MutationContext, messages: _Messages) -> str:
        try:
            return self._session.require_owner()
        except SyncError as error:
            self._reject(ctx, error, messages)
            raise

    def _validate(
        self,
        ctx: MutationContext,
        model: type[M],
        raw: BaseModel | Mapping[str, Any],
        messages: _Messages,
    ) -> M:
        if isinstance(raw, BaseModel):
            raw = raw.model_dump()
        try:
            return model.model_validate(
                raw, context={"max_image_length": self._settings.max_image_length}
            )
        except ValidationError as exc:
            error = to_sync_error(exc)
            self._reject(ctx, error, messages)
            raise error from exc

    def _validate_entity(
        self,
        ctx: MutationContext,
        model: type[M],
        raw: BaseModel | Mapping[str, Any],
        entity_id: EntityId,
        image_field: str,
        messages: _Messages,
    ) -> M:
        if isinstance(raw, BaseModel):
            raw = raw.model_dump()
        entity = self._validate(ctx, model, {**raw, "id": entity_id}, messages)
        image = getattr(entity, image_field) or ""
        if len(image) > self._settings.max_image_length:
            error = ValidationFailure(
                "Image is too large. Please choose a smaller image.",
                field=image_field,
                max_length=self._settings.max_image_length,
                current_length=len(image),
            )
            self._reject(ctx, error, messages)
            raise error
        return entity

    def _apply(self, ctx: MutationContext, patch: OptimisticPatch, keys: list[CacheKey]) -> None:
        ctx.patch = patch
        for key in keys:
            ctx.snapshots[key] = self._cache.patch(key, patch.apply)
            self._pending.setdefault(key, []).append(ctx)
        ctx.phase = MutationPhase.PATCHED

    def _release(self, ctx: MutationContext) -> None:
        for key in ctx.snapshots:
            pending = [other for other in self._pending.get(key, []) if other is not ctx]
            if pending:
                self._pending[key] = pending
            else:
                self._pending.pop(key, None)

    def _reapply_pending(
        self, ctx: MutationContext, key: CacheKey, collection: Collection
    ) -> Collection:
        """Put back unsettled patches on the entity a commit just overwrote."""
        for other in self._pending.get(key, []):
            if other is ctx or other.patch.entity_id != ctx.patch.entity_id:
                continue
            collection = other.patch.reapply(collection)
        return collection

    async def _execute(
        self,
        ctx: MutationContext,
        patch: OptimisticPatch,
        keys: list[CacheKey],
        call: Callable[[], Awaitable[Any]],
        messages: _Messages,
    ) -> MutationResult[Any]:
        self._apply(ctx, patch, keys)
        try:
            return await self._settle(ctx, call, messages)
        finally:
            self._release(ctx)

    async def _settle(
        self,
        ctx: MutationContext,
        call: Callable[[], Awaitable[Any]],
        messages: _Messages,
    ) -> MutationResult[Any]:
        try:
            value = await call()
        except Exception as exc:
            ctx.phase = MutationPhase.SETTLING
            if self._is_duplicate(ctx, exc):
                existing = self._coerce(ctx.resource, exc.existing)
                return self._settle_duplicate(ctx, existing, exc.message, messages)
            error = self._rollback(ctx, exc, messages)
            if error is exc:
                raise
            raise error from exc

        ctx.phase = MutationPhase.SETTLING
        if isinstance(value, ExternalSaveResult):
            if value.is_duplicate:
                return self._settle_duplicate(ctx, value.destination, value.message, messages)
            value = value.destination

        return self._commit(ctx, value, messages)

    def _commit(self, ctx: MutationContext, value: Any, messages: _Messages) -> MutationResult[Any]:
        patch = ctx.patch
        for key in self._relevant_keys(ctx):
            self._cache.patch(
                key,
                lambda current, key=key: self._reapply_pending(
                    ctx, key, patch.commit(current, value)
                ),
            )

        ctx.phase = MutationPhase.COMMITTED
        ctx.outcome = value
        self._record(ctx, "committed")
        self._notifier.success(messages.success, messages.description)
        if self._session.is_current(ctx.token):
            self._invalidate((ctx.resource, ctx.token.owner_id))
        return MutationResult(value=value)

    def _settle_duplicate(
        self, ctx: MutationContext, existing: Any, message: str, messages: _Messages
    ) -> MutationResult[Any]:
        placeholder_id = ctx.patch.entity_id
        for key in self._relevant_keys(ctx):
            self._cache.patch(
                key, lambda current: upsert_front(remove_by_id(current, placeholder_id), existing)
            )

        ctx.phase = MutationPhase.COMMITTED
        ctx.outcome = existing
        message = message or "This destination is already saved."
        self._record(ctx, "duplicate")
        self._notifier.success(message)
        return MutationResult(value=existing, duplicate=True, message=message)

    def _is_duplicate(self, ctx: MutationContext, exc: Exception) -> bool:
        return (
            isinstance(exc, RemoteStoreError)
            and exc.status == 409
            and exc.existing is not None
            and ctx.kind in (MutationKind.CREATE, MutationKind.SAVE_EXTERNAL)
        )

    def _rollback(self, ctx: MutationContext, exc: Exception, messages: _Messages) -> SyncError:
        """Undo this mutation's own delta and return the classified error."""
        patch = ctx.patch
        for key in self._relevant_keys(ctx):
            snapshot = ctx.snapshots[key]
            self._cache.patch(key, lambda current: patch.revert(current, snapshot))

        error = to_sync_error(exc)
        ctx.phase = MutationPhase.ROLLED_BACK
        ctx.error = error
        self._metrics.inc_rollback(ctx.resource.value, ctx.kind.value)
        self._record(ctx, "rolled_back", error)
        self._notify_failure(error, messages)

        if error.category == ErrorCategory.AUTHORIZATION and self._session.is_current(ctx.token):
            self._session.handle_authorization_failure()

        return error

    def _reject(self, ctx: MutationContext, error: SyncError, messages: _Messages) -> None:
        """Fail before any optimistic patch was applied."""
        ctx.error = error
        self._record(ctx, "rejected", error)
        self._notify_failure(error, messages)

    # Helpers

    def _relevant_keys(self, ctx: MutationContext) -> list[CacheKey]:
        """Keys whose cache effects may still be applied at settle time."""
        if not self._session.is_current(ctx.token):
            logger.info(
                "Discarding settle for a previous session",
                extra={"structured": {"mutation_id": ctx.mutation_id}},
            )
            return []
        return [key for key in ctx.snapshots if self._cache.get(key) is not None]

    def _key(self, resource: ResourceType, owner_id: str) -> CacheKey:
        return CacheKey.for_resource(resource, owner_id)

    def _destination_insert_keys(self, owner_id: str) -> list[CacheKey]:
        active = CacheKey.for_resource(
            ResourceType.destinations, owner_id, self._destination_filters()
        )
        keys = [active]
        base = self._key(ResourceType.destinations, owner_id)
        if base != active and self._cache.get(base) is not None:
            keys.append(base)
        return keys

    def _destination_keys(self, owner_id: str) -> list[CacheKey]:
        keys = self._destination_insert_keys(owner_id)
        for key in self._cache.keys((ResourceType.destinations, owner_id)):
            if key not in keys:
                keys.append(key)
        return keys

    def _coerce(self, resource: ResourceType, value: Any) -> Any:
        if isinstance(value, Mapping):
            return _MODELS[resource].model_validate(value)
        return value

    def _notify_failure(self, error: SyncError, messages: _Messages) -> None:
        if error.field:
            self._notifier.error(f"Failed to {messages.failure}", error.describe())
        else:
            self._notifier.error(f"Failed to {messages.failure}: {error.describe()}")

    def _record(self, ctx: MutationContext, outcome: str, error: SyncError | None = None) -> None:
        latency_ms = (time.monotonic() - ctx.started_at) * 1000
        self._metrics.inc_mutation(ctx.resource.value, ctx.kind.value, outcome)
        self._logger.log_mutation(
            ctx.mutation_id,
            ctx.resource.value,
            ctx.kind.value,
            outcome,
            latency_ms,
            error_reason=error.category.value if error else None,
        )
