"""Optimistic patches over cached collections.

Each patch knows how to apply itself, how to undo only its own contribution
given the current collection and the pre-patch snapshot, and how to fold the
server's authoritative entity back in. ``reapply`` restores a still-pending
patch after another mutation's commit overwrote the same entity, and is a
no-op when the effect is already visible. All of them are pure functions of
tuples, suitable for ResourceCache.patch.
"""

from dataclasses import dataclass
from typing import Any

from tripsync.models import EntityId, ItineraryItem, Trip

Collection = tuple[Any, ...]


def index_of(collection: Collection, entity_id: EntityId) -> int | None:
    for i, item in enumerate(collection):
        if item.id == entity_id:
            return i
    return None


def find_by_id(collection: Collection, entity_id: EntityId) -> Any | None:
    i = index_of(collection, entity_id)
    return collection[i] if i is not None else None


def replace_by_id(collection: Collection, entity_id: EntityId, entity: Any) -> Collection:
    return tuple(entity if item.id == entity_id else item for item in collection)


def remove_by_id(collection: Collection, entity_id: EntityId) -> Collection:
    return tuple(item for item in collection if item.id != entity_id)


def upsert_front(collection: Collection, entity: Any) -> Collection:
    """Replace in place when the id is present, otherwise prepend."""
    if index_of(collection, entity.id) is not None:
        return replace_by_id(collection, entity.id, entity)
    return (entity, *collection)


@dataclass(frozen=True)
class InsertPatch:
    """Prepend a provisional entity carrying a temporary id."""

    entity: Any

    @property
    def entity_id(self) -> EntityId:
        return self.entity.id

    def apply(self, collection: Collection) -> Collection:
        return (self.entity, *collection)

    def reapply(self, collection: Collection) -> Collection:
        if index_of(collection, self.entity.id) is not None:
            return collection
        return self.apply(collection)

    def revert(self, current: Collection, snapshot: Collection) -> Collection:
        return remove_by_id(current, self.entity.id)

    def commit(self, current: Collection, authoritative: Any) -> Collection:
        if index_of(current, self.entity.id) is None:
            # A reconciliation already replaced the placeholder
            return upsert_front(current, authoritative)
        if authoritative.id == self.entity.id:
            return replace_by_id(current, self.entity.id, authoritative)
        without_placeholder = remove_by_id(current, authoritative.id)
        return replace_by_id(without_placeholder, self.entity.id, authoritative)


@dataclass(frozen=True)
class ReplacePatch:
    """Replace an entity wholesale by id."""

    entity: Any

    @property
    def entity_id(self) -> EntityId:
        return self.entity.id

    def apply(self, collection: Collection) -> Collection:
        return replace_by_id(collection, self.entity.id, self.entity)

    def reapply(self, collection: Collection) -> Collection:
        return self.apply(collection)

    def revert(self, current: Collection, snapshot: Collection) -> Collection:
        original = find_by_id(snapshot, self.entity.id)
        if original is None or find_by_id(current, self.entity.id) != self.entity:
            # Our value is no longer the visible one, nothing of ours to undo
            return current
        return replace_by_id(current, self.entity.id, original)

    def commit(self, current: Collection, authoritative: Any) -> Collection:
        return replace_by_id(current, self.entity.id, authoritative)


@dataclass(frozen=True)
class RemovePatch:
    """Remove an entity by id."""

    entity_id: EntityId

    def apply(self, collection: Collection) -> Collection:
        return remove_by_id(collection, self.entity_id)

    def reapply(self, collection: Collection) -> Collection:
        return self.apply(collection)

    def revert(self, current: Collection, snapshot: Collection) -> Collection:
        position = index_of(snapshot, self.entity_id)
        if position is None or index_of(current, self.entity_id) is not None:
            return current
        original = snapshot[position]
        position = min(position, len(current))
        return (*current[:position], original, *current[position:])

    def commit(self, current: Collection, authoritative: Any = None) -> Collection:
        return remove_by_id(current, self.entity_id)


@dataclass(frozen=True)
class AppendActivityPatch:
    """Append one itinerary activity to a trip, leaving other trips untouched."""

    trip_id: EntityId
    activity: ItineraryItem

    @property
    def entity_id(self) -> EntityId:
        return self.trip_id

    def apply(self, collection: Collection) -> Collection:
        return tuple(
            trip.model_copy(update={"itinerary": (*trip.itinerary, self.activity)})
            if trip.id == self.trip_id
            else trip
            for trip in collection
        )

    def reapply(self, collection: Collection) -> Collection:
        return tuple(
            trip.model_copy(update={"itinerary": (*trip.itinerary, self.activity)})
            if trip.id == self.trip_id and self.activity not in trip.itinerary
            else trip
            for trip in collection
        )

    def revert(self, current: Collection, snapshot: Collection) -> Collection:
        return tuple(
            self._without_activity(trip) if trip.id == self.trip_id else trip for trip in current
        )

    def commit(self, current: Collection, authoritative: Trip) -> Collection:
        return replace_by_id(current, self.trip_id, authoritative)

    def _without_activity(self, trip: Trip) -> Trip:
        itinerary = list(trip.itinerary)
        for i in range(len(itinerary) - 1, -1, -1):
            if itinerary[i] == self.activity:
                del itinerary[i]
                return trip.model_copy(update={"itinerary": tuple(itinerary)})
        return trip


OptimisticPatch = InsertPatch | ReplacePatch | RemovePatch | AppendActivityPatch
