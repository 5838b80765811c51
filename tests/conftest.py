"""Shared pytest fixtures for all test suites."""

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio

from tripsync.cache.store import ResourceCache
from tripsync.config import Settings
from tripsync.models import UserSession
from tripsync.remote.inmemory import in_memory_remote_store
from tripsync.remote.protocol import RemoteStore
from tripsync.sync.data import TravelData
from tripsync.sync.notify import RecordingNotifier
from tripsync.sync.session import SessionBinding


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2025, 6, 1, 9, 0, 0)

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


_FORWARD = object()


@dataclass
class HeldCall:
    """A remote call parked until the test releases or fails it."""

    method: str
    args: tuple[Any, ...]
    future: asyncio.Future[Any]

    def release(self) -> None:
        self.future.set_result(_FORWARD)

    def respond(self, value: Any) -> None:
        """Settle with value without reaching the wrapped store."""
        self.future.set_result(value)

    def fail(self, exc: Exception) -> None:
        self.future.set_exception(exc)


@dataclass
class GatedStore:
    """Wraps a resource store so selected methods wait for the test.

    Calls to held methods are recorded in ``calls``. Releasing one forwards
    it to the wrapped store at that moment; responding settles it with a
    canned value and failing one raises the given exception instead.
    """

    inner: Any
    held: set[str] = field(default_factory=set)
    calls: list[HeldCall] = field(default_factory=list)

    def __getattr__(self, name: str) -> Any:
        target = getattr(self.inner, name)
        if name not in self.held:
            return target

        async def gated(*args: Any, **kwargs: Any) -> Any:
            call = HeldCall(name, args, asyncio.get_running_loop().create_future())
            self.calls.append(call)
            outcome = await call.future
            if outcome is _FORWARD:
                return await target(*args, **kwargs)
            return outcome

        return gated

    def pending(self, method: str | None = None) -> list[HeldCall]:
        return [
            call
            for call in self.calls
            if not call.future.done() and (method is None or call.method == method)
        ]

    async def wait_for(self, method: str, count: int = 1) -> list[HeldCall]:
        """Yield to the loop until ``count`` calls of ``method`` are parked."""
        for _ in range(200):
            parked = self.pending(method)
            if len(parked) >= count:
                return parked
            await asyncio.sleep(0)
        raise AssertionError(f"expected {count} pending {method} call(s)")


async def _settle() -> None:
    for _ in range(20):
        await asyncio.sleep(0)


@pytest.fixture
def settle() -> Callable[[], Awaitable[None]]:
    """Let spawned tasks run until the loop goes quiet."""
    return _settle


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    """Settings with polling off and instant retries."""
    return Settings(
        _env_file=None,
        poll_interval_seconds=0,
        stale_time_seconds=1.0,
        read_retry_count=2,
        retry_backoff_base_ms=0,
        retry_backoff_max_ms=0,
        logout_on_auth_failure=False,
    )


@pytest.fixture
def user() -> UserSession:
    return UserSession(id="user-1", email="ana@example.com", first_name="Ana")


@pytest.fixture
def other_user() -> UserSession:
    return UserSession(id="user-2", email="ben@example.com", first_name="Ben")


@pytest.fixture
def cache(clock: FakeClock) -> ResourceCache:
    return ResourceCache(now_fn=clock.now)


@pytest.fixture
def session(cache: ResourceCache, clock: FakeClock) -> SessionBinding:
    return SessionBinding(cache, now_fn=clock.now)


@pytest.fixture
def remote(clock: FakeClock) -> RemoteStore:
    return in_memory_remote_store(now_fn=clock.now)


@pytest.fixture
def gated(remote: RemoteStore) -> RemoteStore:
    """Remote store whose stores hold nothing until ``held`` is populated."""
    return RemoteStore(
        trips=GatedStore(remote.trips),
        destinations=GatedStore(remote.destinations),
        photos=GatedStore(remote.photos),
    )


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def travel_data(
    gated: RemoteStore,
    settings: Settings,
    cache: ResourceCache,
    session: SessionBinding,
    notifier: RecordingNotifier,
    user: UserSession,
) -> AsyncGenerator[TravelData, None]:
    """TravelData for a logged-in user, mounted against the gated store."""
    data = TravelData(
        gated,
        settings=settings,
        cache=cache,
        session=session,
        notifier=notifier,
    )
    data.login(user)
    await data.mount()
    yield data
    await data.close()
