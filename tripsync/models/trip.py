"""Trip models."""

from enum import Enum
from typing import Any

from pydantic import Field, field_validator

from tripsync.models.common import EntityId, Timestamps, WireModel, strip_text


class TripStatus(str, Enum):
    """Trip lifecycle status."""

    upcoming = "upcoming"
    completed = "completed"


class ItineraryItem(WireModel):
    """Single itinerary activity within a trip."""

    day: int = Field(..., ge=1)
    time: str
    activity: str = Field(..., min_length=1)
    location: str = ""
    budget: float | None = Field(default=None, ge=0)

    @field_validator("time", "activity", "location", mode="before")
    @classmethod
    def _trim(cls, value: Any) -> Any:
        return strip_text(value)


class Trip(Timestamps):
    """A planned or completed trip with its ordered itinerary."""

    id: EntityId
    title: str
    destination: str
    start_date: str
    end_date: str
    dates: str | None = None
    notes: str | None = None
    image: str = ""
    budget: str = ""
    companions: int = 0
    status: TripStatus = TripStatus.upcoming
    itinerary: tuple[ItineraryItem, ...] = ()
    user_id: str | None = None
    remaining_budget: float | None = None
    total_spent: float | None = None
