"""Tests for the optimistic mutation pipeline."""

import asyncio
from typing import Any

import pytest

from tripsync.cache.keys import CacheKey, ResourceType
from tripsync.cache.store import ResourceCache
from tripsync.config import Settings
from tripsync.models import SearchFilters, Trip, UserSession
from tripsync.remote.protocol import RemoteStore
from tripsync.sync.errors import (
    AuthorizationFailure,
    ConflictFailure,
    RemoteStoreError,
    TransientFailure,
    ValidationFailure,
)
from tripsync.sync.notify import RecordingNotifier
from tripsync.sync.pipeline import MutationPipeline, TempIdFactory
from tripsync.sync.session import SessionBinding
from tripsync.utils.metrics import SyncMetrics

TRIPS = CacheKey.for_resource(ResourceType.trips, "user-1")
DESTINATIONS = CacheKey.for_resource(ResourceType.destinations, "user-1")
PHOTOS = CacheKey.for_resource(ResourceType.photos, "user-1")

BORACAY = {
    "title": "Boracay Trip",
    "destination": "Boracay",
    "start_date": "2025-07-01",
    "end_date": "2025-07-05",
    "budget": "₱20,000",
    "companions": 2,
}


class RecordingMetrics(SyncMetrics):
    def __init__(self) -> None:
        self.mutations: list[tuple[str, str, str]] = []
        self.rollbacks: list[tuple[str, str]] = []

    def inc_mutation(self, resource: str, kind: str, outcome: str) -> None:
        self.mutations.append((resource, kind, outcome))

    def inc_rollback(self, resource: str, kind: str) -> None:
        self.rollbacks.append((resource, kind))


@pytest.fixture
def metrics() -> RecordingMetrics:
    return RecordingMetrics()


@pytest.fixture
def pipeline(
    cache: ResourceCache,
    session: SessionBinding,
    gated: RemoteStore,
    settings: Settings,
    notifier: RecordingNotifier,
    metrics: RecordingMetrics,
    user: UserSession,
) -> MutationPipeline:
    session.login(user)
    return MutationPipeline(
        cache,
        session,
        gated,
        settings=settings,
        notifier=notifier,
        metrics=metrics,
    )


async def seed_trips(remote: RemoteStore, cache: ResourceCache, *titles: str) -> tuple[Any, ...]:
    for title in titles:
        await remote.trips.create("user-1", {**BORACAY, "title": title})
    return cache.set(TRIPS, await remote.trips.list_all("user-1")).collection


class TestCreate:
    @pytest.mark.asyncio
    async def test_commit_replaces_placeholder_with_server_entity(
        self,
        pipeline: MutationPipeline,
        cache: ResourceCache,
        notifier: RecordingNotifier,
        metrics: RecordingMetrics,
    ) -> None:
        cache.set(TRIPS, ())

        result = await pipeline.create_trip(BORACAY)

        assert result.value.id == 1
        assert not result.duplicate
        assert cache.get(TRIPS).collection == (result.value,)
        assert notifier.successes[0].message == "Trip created successfully!"
        assert notifier.successes[0].description == "Boracay Trip has been added to your itinerary."
        assert metrics.mutations == [("trips", "create", "committed")]

    @pytest.mark.asyncio
    async def test_notes_reach_placeholder_and_server_entity(
        self, pipeline: MutationPipeline, cache: ResourceCache, gated: RemoteStore
    ) -> None:
        gated.trips.held.add("create")
        cache.set(TRIPS, ())

        task = asyncio.create_task(pipeline.create_trip({**BORACAY, "notes": "  Bring fins "}))
        (call,) = await gated.trips.wait_for("create")
        assert cache.get(TRIPS).collection[0].notes == "Bring fins"

        call.release()
        result = await task
        assert result.value.notes == "Bring fins"

    @pytest.mark.asyncio
    async def test_commit_marks_collection_for_refresh(
        self, pipeline: MutationPipeline, cache: ResourceCache
    ) -> None:
        cache.set(TRIPS, ())

        await pipeline.create_trip(BORACAY)

        assert cache.get(TRIPS).stale

    @pytest.mark.asyncio
    async def test_placeholder_visible_before_remote_settles(
        self, pipeline: MutationPipeline, cache: ResourceCache, gated: RemoteStore
    ) -> None:
        gated.trips.held.add("create")
        cache.set(TRIPS, ())

        task = asyncio.create_task(pipeline.create_trip(BORACAY))
        (call,) = await gated.trips.wait_for("create")

        (placeholder,) = cache.get(TRIPS).collection
        assert placeholder.title == "Boracay Trip"
        assert placeholder.user_id == "user-1"
        assert isinstance(placeholder.id, int) and placeholder.id > 10**12

        call.release()
        result = await task
        assert cache.get(TRIPS).collection == (result.value,)

    @pytest.mark.asyncio
    async def test_transient_failure_rolls_back_and_reraises(
        self,
        pipeline: MutationPipeline,
        cache: ResourceCache,
        gated: RemoteStore,
        notifier: RecordingNotifier,
        metrics: RecordingMetrics,
    ) -> None:
        gated.trips.held.add("create")
        cache.set(TRIPS, ())
        cause = RemoteStoreError("Service unavailable", status=503)

        task = asyncio.create_task(pipeline.create_trip(BORACAY))
        (call,) = await gated.trips.wait_for("create")
        assert len(cache.get(TRIPS).collection) == 1
        call.fail(cause)

        with pytest.raises(TransientFailure) as exc_info:
            await task

        assert exc_info.value.__cause__ is cause
        assert cache.get(TRIPS).collection == ()
        assert notifier.errors[0].message == "Failed to create trip: Service unavailable"
        assert metrics.rollbacks == [("trips", "create")]
        assert metrics.mutations == [("trips", "create", "rolled_back")]

    @pytest.mark.asyncio
    async def test_local_validation_fails_before_touching_cache(
        self,
        pipeline: MutationPipeline,
        cache: ResourceCache,
        gated: RemoteStore,
        notifier: RecordingNotifier,
        metrics: RecordingMetrics,
    ) -> None:
        with pytest.raises(ValidationFailure):
            await pipeline.create_trip({**BORACAY, "title": "   "})

        assert cache.get(TRIPS) is None
        assert gated.trips.calls == []
        assert notifier.errors[0].message.startswith("Failed to create trip")
        assert metrics.mutations == [("trips", "create", "rejected")]

    @pytest.mark.asyncio
    async def test_oversized_image_reports_field_and_limit(
        self,
        cache: ResourceCache,
        session: SessionBinding,
        remote: RemoteStore,
        notifier: RecordingNotifier,
        user: UserSession,
    ) -> None:
        session.login(user)
        settings = Settings(_env_file=None, max_image_length=16)
        pipeline = MutationPipeline(cache, session, remote, settings=settings, notifier=notifier)

        with pytest.raises(ValidationFailure) as exc_info:
            await pipeline.create_trip({**BORACAY, "image_url": "data:image/png;base64,AAAA"})

        assert exc_info.value.field == "image"
        assert exc_info.value.max_length == 16
        assert notifier.errors[0].message == "Failed to create trip"
        assert notifier.errors[0].description == (
            "Image is too large. Please choose a smaller image. "
            "(Field: image, Limit: 16 characters)"
        )

    @pytest.mark.asyncio
    async def test_requires_active_session(
        self, cache: ResourceCache, session: SessionBinding, remote: RemoteStore
    ) -> None:
        pipeline = MutationPipeline(cache, session, remote)

        with pytest.raises(AuthorizationFailure):
            await pipeline.create_trip(BORACAY)

        assert cache.keys() == []

    @pytest.mark.asyncio
    async def test_photo_defaults(self, pipeline: MutationPipeline, cache: ResourceCache) -> None:
        result = await pipeline.create_photo(
            {"url": "https://img/1.jpg", "caption": "Sunset", "rating": 4.6}
        )

        assert result.value.title == "Sunset"
        assert result.value.rating == 5
        assert cache.get(PHOTOS).collection == (result.value,)


class TestDuplicates:
    @pytest.mark.asyncio
    async def test_duplicate_destination_is_not_an_error(
        self,
        pipeline: MutationPipeline,
        cache: ResourceCache,
        remote: RemoteStore,
        notifier: RecordingNotifier,
    ) -> None:
        existing = await remote.destinations.create(
            "user-1", {"name": "El Nido", "location": "Palawan"}
        )
        cache.set(DESTINATIONS, (existing,))

        result = await pipeline.create_destination({"name": "el nido ", "location": "Palawan"})

        assert result.duplicate
        assert result.value == existing
        assert cache.get(DESTINATIONS).collection == (existing,)
        assert notifier.errors == []

    @pytest.mark.asyncio
    async def test_duplicate_external_save(
        self, pipeline: MutationPipeline, cache: ResourceCache, remote: RemoteStore
    ) -> None:
        payload = {
            "name": "Siargao",
            "location": "Surigao del Norte",
            "external_source_id": "tt-123",
        }
        first = await pipeline.save_external_destination(payload)

        second = await pipeline.save_external_destination({**payload, "name": "Siargao Island"})

        assert second.duplicate
        assert second.value.id == first.value.id
        assert second.message == "Destination already saved"
        assert [d.id for d in cache.get(DESTINATIONS).collection] == [first.value.id]

    @pytest.mark.asyncio
    async def test_external_save_defaults_rating(
        self, pipeline: MutationPipeline, cache: ResourceCache
    ) -> None:
        result = await pipeline.save_external_destination(
            {"name": "Siargao", "location": "Surigao del Norte"}
        )

        assert result.value.rating == 4.5
        assert result.value.is_external

    @pytest.mark.asyncio
    async def test_conflict_without_existing_entity_raises(
        self, pipeline: MutationPipeline, cache: ResourceCache, gated: RemoteStore
    ) -> None:
        gated.destinations.held.add("create")
        cache.set(DESTINATIONS, ())

        task = asyncio.create_task(
            pipeline.create_destination({"name": "El Nido", "location": "Palawan"})
        )
        (call,) = await gated.destinations.wait_for("create")
        call.fail(RemoteStoreError("Conflict", status=409))

        with pytest.raises(ConflictFailure):
            await task
        assert cache.get(DESTINATIONS).collection == ()


class TestUpdateAndDelete:
    @pytest.mark.asyncio
    async def test_update_commits_server_entity(
        self, pipeline: MutationPipeline, cache: ResourceCache, remote: RemoteStore
    ) -> None:
        (trip,) = await seed_trips(remote, cache, "Boracay Trip")

        result = await pipeline.update_trip(trip.id, trip.model_copy(update={"title": "Boracay!"}))

        assert cache.get(TRIPS).collection[0].title == "Boracay!"
        assert cache.get(TRIPS).collection[0].updated_at == result.value.updated_at

    @pytest.mark.asyncio
    async def test_remote_validation_failure_restores_original(
        self,
        pipeline: MutationPipeline,
        cache: ResourceCache,
        remote: RemoteStore,
        notifier: RecordingNotifier,
    ) -> None:
        original = await remote.destinations.create(
            "user-1", {"name": "El Nido", "location": "Palawan"}
        )
        cache.set(DESTINATIONS, (original,))

        with pytest.raises(ValidationFailure) as exc_info:
            await pipeline.update_destination(
                original.id, original.model_copy(update={"name": "x" * 300})
            )

        assert exc_info.value.field == "name"
        assert cache.get(DESTINATIONS).collection == (original,)
        assert notifier.errors[0].message == "Failed to update destination"
        assert "(Field: name, Limit: 255 characters)" in notifier.errors[0].description

    @pytest.mark.asyncio
    async def test_failed_delete_puts_entity_back_in_place(
        self, pipeline: MutationPipeline, cache: ResourceCache, remote: RemoteStore, gated
    ) -> None:
        trips = await seed_trips(remote, cache, "A", "B", "C")
        middle = trips[1]
        gated.trips.held.add("delete")

        task = asyncio.create_task(pipeline.delete_trip(middle.id))
        (call,) = await gated.trips.wait_for("delete")
        assert middle not in cache.get(TRIPS).collection
        call.fail(RemoteStoreError("Server error", status=500))

        with pytest.raises(TransientFailure):
            await task
        assert cache.get(TRIPS).collection == trips

    @pytest.mark.asyncio
    async def test_delete_of_missing_entity_surfaces_not_found(
        self, pipeline: MutationPipeline, cache: ResourceCache
    ) -> None:
        cache.set(TRIPS, ())

        with pytest.raises(ValidationFailure, match="Trip not found"):
            await pipeline.delete_trip(999)

    @pytest.mark.asyncio
    async def test_append_activity_commits_full_trip(
        self, pipeline: MutationPipeline, cache: ResourceCache, remote: RemoteStore
    ) -> None:
        (trip,) = await seed_trips(remote, cache, "Boracay Trip")

        result = await pipeline.append_trip_activity(
            trip.id, {"day": 1, "time": "09:00", "activity": "Snorkeling", "budget": 1500}
        )

        assert cache.get(TRIPS).collection == (result.value,)
        assert result.value.total_spent == 1500
        assert result.value.remaining_budget == 18500

    @pytest.mark.asyncio
    async def test_update_takes_id_from_argument(
        self, pipeline: MutationPipeline, cache: ResourceCache, remote: RemoteStore
    ) -> None:
        (trip,) = await seed_trips(remote, cache, "Boracay Trip")
        fields = trip.model_dump(exclude={"id"})

        result = await pipeline.update_trip(trip.id, {**fields, "title": "Boracay!"})

        assert result.value.id == trip.id
        assert cache.get(TRIPS).collection[0].title == "Boracay!"


class TestConcurrentMutations:
    @pytest.mark.asyncio
    async def test_appends_keep_later_pending_activity_visible(
        self, pipeline: MutationPipeline, cache: ResourceCache, remote: RemoteStore, gated
    ) -> None:
        (trip,) = await seed_trips(remote, cache, "Boracay Trip")
        gated.trips.held.add("append_activity")

        first = asyncio.create_task(
            pipeline.append_trip_activity(trip.id, {"day": 1, "time": "09:00", "activity": "A"})
        )
        second = asyncio.create_task(
            pipeline.append_trip_activity(trip.id, {"day": 1, "time": "13:00", "activity": "B"})
        )
        call_a, call_b = await gated.trips.wait_for("append_activity", 2)

        call_a.release()
        await first
        (visible,) = cache.get(TRIPS).collection
        assert [item.activity for item in visible.itinerary] == ["A", "B"]

        call_b.release()
        result = await second
        assert cache.get(TRIPS).collection == (result.value,)
        assert [item.activity for item in result.value.itinerary] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_updates_compose_in_issue_order(
        self, pipeline: MutationPipeline, cache: ResourceCache, remote: RemoteStore, gated
    ) -> None:
        (trip,) = await seed_trips(remote, cache, "Boracay Trip")
        gated.trips.held.add("update")

        first = asyncio.create_task(
            pipeline.update_trip(trip.id, trip.model_copy(update={"title": "First"}))
        )
        second = asyncio.create_task(
            pipeline.update_trip(trip.id, trip.model_copy(update={"title": "Second"}))
        )
        call_first, call_second = await gated.trips.wait_for("update", 2)

        call_first.release()
        await first
        assert cache.get(TRIPS).collection[0].title == "Second"

        call_second.release()
        result = await second
        assert cache.get(TRIPS).collection == (result.value,)
        assert result.value.title == "Second"

    @pytest.mark.asyncio
    async def test_settled_mutations_are_not_reapplied(
        self, pipeline: MutationPipeline, cache: ResourceCache, remote: RemoteStore, gated
    ) -> None:
        (trip,) = await seed_trips(remote, cache, "Boracay Trip")
        gated.trips.held.add("update")

        failing = asyncio.create_task(
            pipeline.update_trip(trip.id, trip.model_copy(update={"title": "Rejected"}))
        )
        (call,) = await gated.trips.wait_for("update")
        call.fail(RemoteStoreError("Server error", status=500))
        with pytest.raises(TransientFailure):
            await failing

        gated.trips.held.clear()
        await pipeline.update_trip(trip.id, trip.model_copy(update={"title": "Accepted"}))

        assert cache.get(TRIPS).collection[0].title == "Accepted"


class TestSessionGuard:
    @pytest.mark.asyncio
    async def test_settle_after_logout_is_discarded(
        self,
        pipeline: MutationPipeline,
        cache: ResourceCache,
        session: SessionBinding,
        gated: RemoteStore,
    ) -> None:
        gated.trips.held.add("create")
        cache.set(TRIPS, ())

        task = asyncio.create_task(pipeline.create_trip(BORACAY))
        (call,) = await gated.trips.wait_for("create")
        session.logout()
        call.fail(RemoteStoreError("Service unavailable", status=503))

        with pytest.raises(TransientFailure):
            await task
        assert cache.get(TRIPS) is None

    @pytest.mark.asyncio
    async def test_commit_after_user_switch_leaves_new_user_alone(
        self,
        pipeline: MutationPipeline,
        cache: ResourceCache,
        session: SessionBinding,
        gated: RemoteStore,
        other_user: UserSession,
    ) -> None:
        gated.trips.held.add("create")
        cache.set(TRIPS, ())

        task = asyncio.create_task(pipeline.create_trip(BORACAY))
        (call,) = await gated.trips.wait_for("create")
        session.login(other_user)
        other_trips = CacheKey.for_resource(ResourceType.trips, "user-2")
        cache.set(other_trips, ())
        call.release()

        result = await task
        assert isinstance(result.value, Trip)
        assert cache.get(TRIPS) is None
        assert cache.get(other_trips).collection == ()
        assert not cache.get(other_trips).stale

    @pytest.mark.asyncio
    async def test_authorization_failure_ends_session_when_configured(
        self,
        cache: ResourceCache,
        clock,
        gated: RemoteStore,
        user: UserSession,
    ) -> None:
        session = SessionBinding(cache, logout_on_auth_failure=True, now_fn=clock.now)
        session.login(user)
        pipeline = MutationPipeline(cache, session, gated, settings=Settings(_env_file=None))
        gated.trips.held.add("create")
        clock.advance(30)

        task = asyncio.create_task(pipeline.create_trip(BORACAY))
        (call,) = await gated.trips.wait_for("create")
        call.fail(RemoteStoreError("Invalid token", status=401))

        with pytest.raises(AuthorizationFailure):
            await task
        assert session.current_user is None


class TestDestinationKeys:
    @pytest.mark.asyncio
    async def test_create_lands_in_active_filtered_view_and_base_view(
        self,
        cache: ResourceCache,
        session: SessionBinding,
        remote: RemoteStore,
        user: UserSession,
    ) -> None:
        session.login(user)
        beach = SearchFilters(category="Beach")
        filtered = CacheKey.for_resource(ResourceType.destinations, "user-1", beach)
        cache.set(DESTINATIONS, ())
        cache.set(filtered, ())
        pipeline = MutationPipeline(
            cache,
            session,
            remote,
            settings=Settings(_env_file=None),
            destination_filters=lambda: beach,
        )

        result = await pipeline.create_destination(
            {"name": "White Beach", "location": "Boracay", "category": "Beach"}
        )

        assert cache.get(filtered).collection == (result.value,)
        assert cache.get(DESTINATIONS).collection == (result.value,)

    @pytest.mark.asyncio
    async def test_delete_applies_to_every_cached_view(
        self,
        cache: ResourceCache,
        session: SessionBinding,
        remote: RemoteStore,
        user: UserSession,
    ) -> None:
        session.login(user)
        destination = await remote.destinations.create(
            "user-1", {"name": "White Beach", "location": "Boracay", "category": "Beach"}
        )
        filtered = CacheKey.for_resource(
            ResourceType.destinations, "user-1", SearchFilters(category="Beach")
        )
        cache.set(DESTINATIONS, (destination,))
        cache.set(filtered, (destination,))
        pipeline = MutationPipeline(cache, session, remote, settings=Settings(_env_file=None))

        await pipeline.delete_destination(destination.id)

        assert cache.get(DESTINATIONS).collection == ()
        assert cache.get(filtered).collection == ()


def test_temp_ids_strictly_increase() -> None:
    ids = TempIdFactory(clock=lambda: 1717000000.0)

    first, second, third = ids.next_id(), ids.next_id(), ids.next_id()

    assert first == 1717000000000
    assert first < second < third
