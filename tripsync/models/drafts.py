"""Caller input for create operations.

Drafts normalize what a form hands over (trimmed strings, coerced numbers,
clamped ratings) and enforce size limits. Validation runs before the cache
or the network is touched. The encoded-image limit is read from the
validation context key ``max_image_length``.
"""

import math
from typing import Any

from pydantic import Field, ValidationInfo, field_validator, model_validator
from pydantic_core import PydanticCustomError

from tripsync.models.common import EntityId, WireModel, check_image_length, strip_text


class TripDraft(WireModel):
    """Input for creating a trip."""

    title: str = Field(..., min_length=1)
    destination: str
    start_date: str
    end_date: str
    budget: str = ""
    companions: int = Field(default=0, ge=0)
    notes: str | None = None
    image_url: str = ""

    @field_validator("title", "destination", "budget", "notes", mode="before")
    @classmethod
    def _trim(cls, value: Any) -> Any:
        return strip_text(value)

    @field_validator("image_url", mode="before")
    @classmethod
    def _trim_image(cls, value: Any) -> Any:
        return strip_text(value) or ""

    @field_validator("image_url")
    @classmethod
    def _image_within_limit(cls, value: str, info: ValidationInfo) -> str:
        return check_image_length(value, info)


class DestinationDraft(WireModel):
    """Input for creating a destination."""

    name: str = Field(..., min_length=1)
    location: str
    category: str = ""
    description: str = ""
    image_url: str = ""
    rating: float = Field(default=0, ge=0, le=5)

    @field_validator("name", "location", "category", "description", "image_url", mode="before")
    @classmethod
    def _trim(cls, value: Any) -> Any:
        return strip_text(value)

    @field_validator("image_url")
    @classmethod
    def _image_within_limit(cls, value: str, info: ValidationInfo) -> str:
        return check_image_length(value, info)


class ExternalDestinationDraft(WireModel):
    """Input for saving a destination found through AI search."""

    name: str = Field(..., min_length=1)
    location: str
    category: str = ""
    description: str = ""
    image: str = ""
    rating: float | None = Field(default=None, ge=0, le=5)
    external_source_id: str | None = None
    external_source_platform: str | None = None
    external_source_url: str | None = None
    hashtags: tuple[str, ...] = ()

    @field_validator("name", "location", "category", "description", "image", mode="before")
    @classmethod
    def _trim(cls, value: Any) -> Any:
        return strip_text(value)

    @field_validator("image")
    @classmethod
    def _image_within_limit(cls, value: str, info: ValidationInfo) -> str:
        return check_image_length(value, info)


class PhotoDraft(WireModel):
    """Input for adding a photo to the gallery."""

    destination_id: EntityId | None = None
    url: str = ""
    caption: str = ""
    rating: int = 1

    @field_validator("url", "caption", mode="before")
    @classmethod
    def _trim(cls, value: Any) -> Any:
        return strip_text(value) or ""

    @field_validator("destination_id", mode="before")
    @classmethod
    def _finite_destination(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return None
        if isinstance(value, float) and not math.isfinite(value):
            return None
        if isinstance(value, (int, float, str)):
            return value
        return None

    @field_validator("rating", mode="before")
    @classmethod
    def _clamp_rating(cls, value: Any) -> int:
        try:
            number = float(value)
        except (TypeError, ValueError):
            number = 0.0
        if not math.isfinite(number):
            number = 0.0
        # Half-up rounding, then clamp to the 1..5 star range
        return min(5, max(1, math.floor(number + 0.5)))

    @field_validator("url")
    @classmethod
    def _image_within_limit(cls, value: str, info: ValidationInfo) -> str:
        return check_image_length(value, info, field="url")

    @model_validator(mode="after")
    def _require_photo_and_caption(self) -> "PhotoDraft":
        if not self.url or not self.caption:
            raise PydanticCustomError(
                "photo_incomplete", "Please provide both a photo and a caption."
            )
        return self

    @property
    def title(self) -> str:
        return self.caption or "Untitled Photo"
