"""Photo models."""

from datetime import datetime

from tripsync.models.common import EntityId, Timestamps


class Photo(Timestamps):
    """A gallery photo, optionally linked to a destination."""

    id: EntityId
    destination_id: EntityId | None = None
    url: str
    caption: str = ""
    rating: int = 0
    title: str = ""
    date_added: datetime | None = None
    destination_name: str | None = None
    user_id: str | None = None
