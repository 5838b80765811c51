"""Models package - re-exports for convenience."""

from tripsync.models.common import (
    DEFAULT_MAX_IMAGE_LENGTH,
    EntityId,
    SearchFilters,
    UserSession,
    WireModel,
)
from tripsync.models.destination import Destination
from tripsync.models.drafts import (
    DestinationDraft,
    ExternalDestinationDraft,
    PhotoDraft,
    TripDraft,
)
from tripsync.models.photo import Photo
from tripsync.models.trip import ItineraryItem, Trip, TripStatus

__all__ = [
    # Common
    "DEFAULT_MAX_IMAGE_LENGTH",
    "EntityId",
    "SearchFilters",
    "UserSession",
    "WireModel",
    # Entities
    "Trip",
    "TripStatus",
    "ItineraryItem",
    "Destination",
    "Photo",
    # Drafts
    "TripDraft",
    "DestinationDraft",
    "ExternalDestinationDraft",
    "PhotoDraft",
]
