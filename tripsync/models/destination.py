"""Destination models."""

from pydantic import Field

from tripsync.models.common import EntityId, Timestamps


class Destination(Timestamps):
    """A saved place, either user-entered or imported from an external source."""

    id: EntityId
    name: str
    location: str
    category: str = ""
    image: str = ""
    visited: bool = False
    description: str = ""
    rating: float = Field(default=0, ge=0, le=5)
    user_id: str | None = None
    is_external: bool = False
    external_source_id: str | None = None
    external_source_platform: str | None = None
    external_source_url: str | None = None
    hashtags: tuple[str, ...] = ()
