"""Common types shared across all models."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo
from pydantic.alias_generators import to_camel
from pydantic_core import PydanticCustomError

# Entity identifiers are numeric for stored rows, strings for some external records
EntityId = int | str

DEFAULT_MAX_IMAGE_LENGTH = 150_000_000


class WireModel(BaseModel):
    """Frozen model with camelCase wire names and snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_wire(self) -> dict[str, Any]:
        """Dump using wire (camelCase) names, dropping unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class UserSession(WireModel):
    """Authenticated user identity."""

    id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    profile_photo: str | None = None


class SearchFilters(WireModel):
    """AI search filters narrowing the destination collection."""

    category: str | None = None
    location_contains: str | None = None
    min_rating: float | None = Field(default=None, ge=0, le=5)
    tags: tuple[str, ...] = ()

    def is_empty(self) -> bool:
        """True when no filter field is set."""
        return (
            not self.category
            and not self.location_contains
            and self.min_rating is None
            and not self.tags
        )


class Timestamps(WireModel):
    """Server-maintained timestamps."""

    created_at: datetime | None = None
    updated_at: datetime | None = None


def strip_text(value: Any) -> Any:
    """Trim surrounding whitespace from strings, leave anything else alone."""
    return value.strip() if isinstance(value, str) else value


def check_image_length(value: str, info: ValidationInfo, field: str = "image") -> str:
    """Enforce the encoded-image size limit passed in the validation context."""
    limit = DEFAULT_MAX_IMAGE_LENGTH
    if info.context and "max_image_length" in info.context:
        limit = info.context["max_image_length"]

    if value and len(value) > limit:
        raise PydanticCustomError(
            "image_too_large",
            "Image is too large. Please choose a smaller image.",
            {"field": field, "max_length": limit, "current_length": len(value)},
        )
    return value
