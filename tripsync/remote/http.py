"""HTTP adapter for the travel planner REST API."""

import logging
from typing import Any, Generic, TypeVar

import httpx
from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from tripsync.config import Settings, get_settings
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

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def to_wire_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Rename snake_case payload keys to the API's camelCase names."""
    return {to_camel(key): value for key, value in payload.items() if value is not None}


def filters_to_text_query(filters: SearchFilters) -> str:
    """Build the AI search text query for a set of destination filters."""
    parts = []
    if filters.category:
        parts.append(f"category: {filters.category}")
    if filters.location_contains:
        parts.append(f"location: {filters.location_contains}")
    if filters.min_rating is not None:
        parts.append(f"rating >= {filters.min_rating:g}")
    if filters.tags:
        parts.append(f"tags: {', '.join(filters.tags)}")
    return " ".join(parts)


class ApiClient:
    """Authenticated JSON client shared by the per-resource stores."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        token: str | None = None,
    ) -> None:
        """Initialize client.

        Args:
            settings: Settings (defaults to get_settings())
            client: Optional httpx client (for testing with mocks)
            token: Bearer token overriding settings.api_token
        """
        self._settings = settings or get_settings()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self._settings.api_base_url,
            timeout=self._settings.http_timeout_seconds,
        )
        self.token = token if token is not None else self._settings.api_token

    async def request(self, method: str, path: str, body: Any = None) -> Any:
        """Send a request and return the decoded JSON body (None when empty).

        Raises:
            RemoteStoreError: On a non-2xx response or a malformed body
            httpx.TransportError: On network failures and timeouts
        """
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        response = await self._client.request(method, self._url(path), json=body, headers=headers)
        data = self._decode(response)

        if response.is_error:
            raise self._error_for(response, data)
        return data

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _url(self, path: str) -> str:
        # Injected clients may not carry a base_url
        if self._client.base_url == httpx.URL(""):
            return f"{self._settings.api_base_url.rstrip('/')}{path}"
        return path

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            logger.error(
                "Malformed response body",
                extra={"structured": {"status": response.status_code, "url": str(response.url)}},
            )
            raise RemoteStoreError(
                "Received malformed response from server.", status=response.status_code
            ) from exc

    @staticmethod
    def _error_for(response: httpx.Response, data: Any) -> RemoteStoreError:
        message = response.reason_phrase or "Request failed"
        details: dict[str, Any] = {}
        if isinstance(data, dict):
            message = data.get("error") or message
            details = {
                "field": data.get("field"),
                "max_length": data.get("maxLength"),
                "current_length": data.get("currentLength"),
                # 409 bodies may echo the entity that already exists
                "existing": data.get("existing"),
            }
        return RemoteStoreError(message, status=response.status_code, **details)


class _HttpResource(Generic[M]):
    """CRUD against one collection endpoint."""

    path = ""

    def __init__(self, model: type[M], api: ApiClient) -> None:
        self._model = model
        self._api = api

    async def list_all(self, owner_id: str, filters: SearchFilters | None = None) -> list[M]:
        data = await self._api.request("GET", self.path)
        return self._parse_list(data)

    async def create(self, owner_id: str, payload: dict[str, Any]) -> M:
        try:
            data = await self._api.request("POST", self.path, to_wire_payload(payload))
        except RemoteStoreError as exc:
            if isinstance(exc.existing, dict):
                exc.existing = self._model.model_validate(exc.existing)
            raise
        return self._parse_one(data)

    async def update(self, owner_id: str, entity_id: EntityId, entity: M) -> M:
        body = entity.model_dump(mode="json", by_alias=True, exclude_none=True)
        data = await self._api.request("PUT", f"{self.path}/{entity_id}", body)
        return self._parse_one(data)

    async def delete(self, owner_id: str, entity_id: EntityId) -> None:
        await self._api.request("DELETE", f"{self.path}/{entity_id}")

    def _parse_list(self, data: Any) -> list[M]:
        if not isinstance(data, list):
            raise RemoteStoreError(f"Unexpected response listing {self.path}")
        return [self._model.model_validate(item) for item in data]

    def _parse_one(self, data: Any) -> M:
        if not isinstance(data, dict):
            raise RemoteStoreError(f"Unexpected response from {self.path}")
        return self._model.model_validate(data)


class HttpTripStore(_HttpResource[Trip]):
    # Trip responses are wrapped: {"trips": [...]} and {"trip": {...}}
    path = "/trips"

    def __init__(self, api: ApiClient) -> None:
        super().__init__(Trip, api)

    async def append_activity(
        self, owner_id: str, trip_id: EntityId, activity: ItineraryItem
    ) -> Trip:
        data = await self._api.request(
            "POST", f"{self.path}/{trip_id}/activities", activity.to_wire()
        )
        return self._parse_one(data)

    def _parse_list(self, data: Any) -> list[Trip]:
        if isinstance(data, dict):
            data = data.get("trips")
        return super()._parse_list(data)

    def _parse_one(self, data: Any) -> Trip:
        if isinstance(data, dict) and isinstance(data.get("trip"), dict):
            data = data["trip"]
        return super()._parse_one(data)


class HttpDestinationStore(_HttpResource[Destination]):
    path = "/destinations"

    def __init__(self, api: ApiClient) -> None:
        super().__init__(Destination, api)

    async def list_all(
        self, owner_id: str, filters: SearchFilters | None = None
    ) -> list[Destination]:
        if filters is None or filters.is_empty():
            return await super().list_all(owner_id)

        data = await self._api.request(
            "POST", "/ai-search", {"textQuery": filters_to_text_query(filters)}
        )
        results = data.get("results") if isinstance(data, dict) else None
        return self._parse_list(results)

    async def save_external(self, owner_id: str, payload: dict[str, Any]) -> ExternalSaveResult:
        data = await self._api.request("POST", f"{self.path}/external", to_wire_payload(payload))
        if not isinstance(data, dict):
            raise RemoteStoreError("Unexpected response saving external destination")
        return ExternalSaveResult(
            destination=self._parse_one(data.get("destination")),
            is_duplicate=bool(data.get("isDuplicate")),
            message=data.get("message") or "",
        )


class HttpPhotoStore(_HttpResource[Photo]):
    path = "/photos"

    def __init__(self, api: ApiClient) -> None:
        super().__init__(Photo, api)


class HttpRemoteStore(RemoteStore):
    """RemoteStore talking to the REST API over one shared httpx client."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        token: str | None = None,
    ) -> None:
        self.api = ApiClient(settings, client, token)
        super().__init__(
            trips=HttpTripStore(self.api),
            destinations=HttpDestinationStore(self.api),
            photos=HttpPhotoStore(self.api),
        )

    async def aclose(self) -> None:
        await self.api.aclose()
