"""Structural cache keys for tracked resource collections."""

import hashlib
import json
from dataclasses import dataclass
from enum import Enum

from tripsync.models.common import SearchFilters


class ResourceType(str, Enum):
    """Entity kinds managed by the sync layer."""

    trips = "trips"
    destinations = "destinations"
    photos = "photos"


def filter_fingerprint(filters: SearchFilters | None) -> str | None:
    """Generate a deterministic hash for search filters.

    Absent and empty filters both map to None so they share the unfiltered key.
    """
    if filters is None or filters.is_empty():
        return None

    data = filters.model_dump(mode="json", exclude_none=True)
    data["tags"] = sorted(data.get("tags", []))
    sorted_json = json.dumps(data, sort_keys=True)
    return hashlib.sha256(sorted_json.encode()).hexdigest()


@dataclass(frozen=True)
class CacheKey:
    """Identifies one tracked collection: resource type, owner, optional filter."""

    resource: ResourceType
    owner_id: str
    filter_hash: str | None = None

    @classmethod
    def for_resource(
        cls,
        resource: ResourceType,
        owner_id: str,
        filters: SearchFilters | None = None,
    ) -> "CacheKey":
        return cls(resource=resource, owner_id=owner_id, filter_hash=filter_fingerprint(filters))

    @property
    def parts(self) -> tuple[ResourceType, str, str | None]:
        return (self.resource, self.owner_id, self.filter_hash)

    @property
    def is_filtered(self) -> bool:
        return self.filter_hash is not None

    def matches(self, prefix: tuple) -> bool:
        """Check whether the key starts with the given leading parts."""
        return self.parts[: len(prefix)] == tuple(prefix)

    def __str__(self) -> str:
        suffix = f":{self.filter_hash[:12]}" if self.filter_hash else ""
        return f"{self.resource.value}:{self.owner_id}{suffix}"
