"""Remote store protocol interfaces consumed by the sync layer."""

from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from tripsync.models import (
    Destination,
    EntityId,
    ItineraryItem,
    Photo,
    SearchFilters,
    Trip,
)

T = TypeVar("T")


@dataclass
class ExternalSaveResult:
    """Outcome of saving an externally sourced destination."""

    destination: Destination
    is_duplicate: bool
    message: str = ""


class ResourceStore(Protocol[T]):
    """CRUD operations for one resource type.

    Failures raise RemoteStoreError (or a transport error for network
    failures) so the error classifier can categorize them.
    """

    async def list_all(self, owner_id: str, filters: SearchFilters | None = None) -> list[T]:
        """List every entity of the owner, optionally narrowed by filters.

        Args:
            owner_id: Identity the collection belongs to
            filters: Optional search filters (destinations only)

        Returns:
            Authoritative collection
        """
        ...

    async def create(self, owner_id: str, payload: dict[str, Any]) -> T:
        """Create an entity from a normalized payload.

        Args:
            owner_id: Owning identity
            payload: Normalized field values (snake_case)

        Returns:
            The stored entity with its server-assigned id

        Raises:
            RemoteStoreError: status 409 with ``existing`` set when the
                payload matches an entity that already exists
        """
        ...

    async def update(self, owner_id: str, entity_id: EntityId, entity: T) -> T:
        """Replace an entity wholesale.

        Returns:
            The stored entity
        """
        ...

    async def delete(self, owner_id: str, entity_id: EntityId) -> None:
        """Delete an entity."""
        ...


class TripStore(ResourceStore[Trip], Protocol):
    """Trip operations including the nested itinerary append."""

    async def append_activity(
        self, owner_id: str, trip_id: EntityId, activity: ItineraryItem
    ) -> Trip:
        """Append an itinerary activity.

        Returns:
            The full updated trip, including server-derived fields
        """
        ...


class DestinationStore(ResourceStore[Destination], Protocol):
    """Destination operations including external saves."""

    async def save_external(self, owner_id: str, payload: dict[str, Any]) -> ExternalSaveResult:
        """Save a destination found through AI search, detecting duplicates."""
        ...


class PhotoStore(ResourceStore[Photo], Protocol):
    """Photo operations."""


@dataclass
class RemoteStore:
    """Bundle of per-resource stores."""

    trips: TripStore
    destinations: DestinationStore
    photos: PhotoStore
