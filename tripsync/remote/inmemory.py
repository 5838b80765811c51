"""In-memory implementation of the remote store protocols.

Behaves like the REST backend the client talks to: server-assigned ids and
timestamps, per-owner tenancy (another owner's row reads as not found),
field length limits, derived trip budget fields, and duplicate detection for
external destination saves.
"""

import re
from collections.abc import Callable
from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from tripsync.models import (
    Destination,
    EntityId,
    ItineraryItem,
    Photo,
    SearchFilters,
    Trip,
)
from tripsync.remote.protocol import ExternalSaveResult, RemoteStore
from tripsync.sync.errors import RemoteStoreError

M = TypeVar("M", bound=BaseModel)

DESTINATION_FIELD_LIMITS = {
    "name": 255,
    "location": 255,
    "category": 100,
    "description": 10000,
    "image": 2000,
}

# Rating stored for external saves that arrive without a usable one
DEFAULT_EXTERNAL_RATING = 4.5


def parse_budget(budget: str) -> float | None:
    """Extract the numeric amount from a display budget such as '₱12,500'."""
    digits = re.sub(r"[^\d.]", "", budget or "")
    if not digits:
        return None
    try:
        return float(digits)
    except ValueError:
        return None


class _InMemoryResource(Generic[M]):
    """Rows of one resource type keyed by id, each tagged with its owner."""

    label = "Entity"

    def __init__(self, model: type[M], next_id: Callable[[], int], now_fn: Callable[[], datetime]):
        self._model = model
        self._next_id = next_id
        self._now = now_fn
        self._rows: dict[EntityId, tuple[str, M]] = {}

    def rows_for(self, owner_id: str) -> list[M]:
        """Rows of one owner, newest first."""
        rows = [entity for owner, entity in self._rows.values() if owner == owner_id]
        return list(reversed(rows))

    def find(self, entity_id: EntityId) -> M | None:
        """Look up a row by id regardless of owner."""
        row = self._rows.get(entity_id)
        return row[1] if row else None

    async def list_all(self, owner_id: str, filters: SearchFilters | None = None) -> list[M]:
        return self.rows_for(owner_id)

    async def create(self, owner_id: str, payload: dict[str, Any]) -> M:
        self._check(payload)
        now = self._now()
        entity = self._model.model_validate(
            {
                **payload,
                "id": self._next_id(),
                "user_id": owner_id,
                "created_at": now,
                "updated_at": now,
            }
        )
        return self._store(owner_id, self._derive(entity))

    async def update(self, owner_id: str, entity_id: EntityId, entity: M) -> M:
        original = self._get(owner_id, entity_id)
        self._check(entity.model_dump())
        updated = entity.model_copy(
            update={
                "id": original.id,
                "user_id": owner_id,
                "created_at": original.created_at,
                "updated_at": self._now(),
            }
        )
        return self._store(owner_id, self._derive(updated))

    async def delete(self, owner_id: str, entity_id: EntityId) -> None:
        self._get(owner_id, entity_id)
        del self._rows[entity_id]

    def _get(self, owner_id: str, entity_id: EntityId) -> M:
        row = self._rows.get(entity_id)
        # Enforce tenancy
        if row is None or row[0] != owner_id:
            raise RemoteStoreError(f"{self.label} not found", status=404)
        return row[1]

    def _store(self, owner_id: str, entity: M) -> M:
        self._rows[entity.id] = (owner_id, entity)
        return entity

    def _check(self, values: dict[str, Any]) -> None:
        pass

    def _derive(self, entity: M) -> M:
        return entity


class InMemoryTripStore(_InMemoryResource[Trip]):
    label = "Trip"

    async def append_activity(
        self, owner_id: str, trip_id: EntityId, activity: ItineraryItem
    ) -> Trip:
        trip = self._get(owner_id, trip_id)
        updated = trip.model_copy(
            update={"itinerary": (*trip.itinerary, activity), "updated_at": self._now()}
        )
        return self._store(owner_id, self._derive(updated))

    def _derive(self, entity: Trip) -> Trip:
        total_spent = sum(item.budget or 0 for item in entity.itinerary)
        budget = parse_budget(entity.budget)
        return entity.model_copy(
            update={
                "total_spent": total_spent,
                "remaining_budget": budget - total_spent if budget is not None else None,
                "dates": f"{entity.start_date} - {entity.end_date}",
            }
        )


class InMemoryDestinationStore(_InMemoryResource[Destination]):
    label = "Destination"

    async def list_all(
        self, owner_id: str, filters: SearchFilters | None = None
    ) -> list[Destination]:
        rows = self.rows_for(owner_id)
        if filters is None or filters.is_empty():
            return rows
        return [row for row in rows if _matches(row, filters)]

    async def create(self, owner_id: str, payload: dict[str, Any]) -> Destination:
        existing = self._find_same_place(
            owner_id, payload.get("name", ""), payload.get("location", "")
        )
        if existing is not None:
            raise RemoteStoreError("Destination already exists", status=409, existing=existing)
        return await super().create(owner_id, payload)

    async def save_external(self, owner_id: str, payload: dict[str, Any]) -> ExternalSaveResult:
        existing = None
        source_id = payload.get("external_source_id")
        if source_id:
            existing = next(
                (row for row in self.rows_for(owner_id) if row.external_source_id == source_id),
                None,
            )
        if existing is None:
            existing = self._find_same_place(
                owner_id, payload.get("name", ""), payload.get("location", "")
            )
        if existing is not None:
            return ExternalSaveResult(
                destination=existing, is_duplicate=True, message="Destination already saved"
            )

        rating = payload.get("rating")
        if not isinstance(rating, (int, float)) or not 0 <= rating <= 5:
            rating = DEFAULT_EXTERNAL_RATING
        created = await super().create(
            owner_id, {**payload, "rating": round(rating, 2), "is_external": True}
        )
        return ExternalSaveResult(
            destination=created, is_duplicate=False, message="Destination saved successfully"
        )

    def _find_same_place(self, owner_id: str, name: str, location: str) -> Destination | None:
        for row in self.rows_for(owner_id):
            if (
                row.name.strip().lower() == name.strip().lower()
                and row.location.strip().lower() == location.strip().lower()
            ):
                return row
        return None

    def _check(self, values: dict[str, Any]) -> None:
        for field, limit in DESTINATION_FIELD_LIMITS.items():
            value = values.get(field) or ""
            if isinstance(value, str) and len(value) > limit:
                raise RemoteStoreError(
                    f"Destination {field} is too long. Maximum {limit} characters allowed "
                    f"(current: {len(value)})",
                    status=400,
                    field=field,
                    max_length=limit,
                    current_length=len(value),
                )


class InMemoryPhotoStore(_InMemoryResource[Photo]):
    label = "Photo"

    def __init__(
        self,
        next_id: Callable[[], int],
        now_fn: Callable[[], datetime],
        destinations: InMemoryDestinationStore,
    ) -> None:
        super().__init__(Photo, next_id, now_fn)
        self._destinations = destinations

    def _derive(self, entity: Photo) -> Photo:
        name = None
        if entity.destination_id is not None:
            destination = self._destinations.find(entity.destination_id)
            name = destination.name if destination else None
        return entity.model_copy(
            update={"destination_name": name, "date_added": entity.date_added or entity.created_at}
        )


def _matches(destination: Destination, filters: SearchFilters) -> bool:
    if filters.category and destination.category.lower() != filters.category.lower():
        return False
    if (
        filters.location_contains
        and filters.location_contains.lower() not in destination.location.lower()
    ):
        return False
    if filters.min_rating is not None and destination.rating < filters.min_rating:
        return False
    if filters.tags:
        wanted = {tag.lstrip("#").lower() for tag in filters.tags}
        have = {tag.lstrip("#").lower() for tag in destination.hashtags}
        if not wanted & have:
            return False
    return True


class _Sequence:
    def __init__(self) -> None:
        self._value = 0

    def __call__(self) -> int:
        self._value += 1
        return self._value


def in_memory_remote_store(now_fn: Callable[[], datetime] | None = None) -> RemoteStore:
    """Build a RemoteStore backed by in-memory rows."""
    now = now_fn or datetime.now
    destinations = InMemoryDestinationStore(Destination, _Sequence(), now)
    return RemoteStore(
        trips=InMemoryTripStore(Trip, _Sequence(), now),
        destinations=destinations,
        photos=InMemoryPhotoStore(_Sequence(), now, destinations),
    )
