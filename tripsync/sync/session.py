"""Session binding: scopes cached work to the active identity."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from tripsync.cache.store import ResourceCache
from tripsync.models import UserSession
from tripsync.sync.errors import AuthorizationFailure

logger = logging.getLogger(__name__)

SessionListener = Callable[[UserSession | None, UserSession | None], None]


@dataclass(frozen=True)
class SessionToken:
    """Identity and epoch a piece of async work was issued under."""

    owner_id: str | None
    epoch: int


class SessionBinding:
    """Tracks the logged-in user and guards settle handlers against identity changes.

    Every login and logout bumps the epoch. Work captures a token before its
    remote call and checks it with ``is_current`` when it settles; a stale
    token means the result must be discarded.
    """

    def __init__(
        self,
        cache: ResourceCache,
        *,
        recent_login_grace_seconds: float = 5.0,
        logout_on_auth_failure: bool = False,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self._cache = cache
        self._grace_seconds = recent_login_grace_seconds
        self._logout_on_auth_failure = logout_on_auth_failure
        self._now = now_fn or datetime.now
        self._user: UserSession | None = None
        self._epoch = 0
        self._logged_in_at: datetime | None = None
        self._listeners: list[SessionListener] = []

    @property
    def current_user(self) -> UserSession | None:
        return self._user

    @property
    def owner_id(self) -> str | None:
        return self._user.id if self._user else None

    @property
    def is_authenticated(self) -> bool:
        return self._user is not None

    @property
    def epoch(self) -> int:
        return self._epoch

    def token(self) -> SessionToken:
        return SessionToken(owner_id=self.owner_id, epoch=self._epoch)

    def is_current(self, token: SessionToken) -> bool:
        return token.epoch == self._epoch and token.owner_id == self.owner_id

    def require_owner(self) -> str:
        """Return the active owner id, raising when nobody is logged in."""
        if self._user is None:
            raise AuthorizationFailure("No active session", status=401)
        return self._user.id

    def login(self, user: UserSession) -> None:
        """Bind a user. Switching identity logs the previous one out first."""
        if self._user is not None:
            if self._user.id == user.id:
                # Profile refresh for the same identity keeps cached data
                self._user = user
                return
            self.logout(reason="switch_user")

        self._epoch += 1
        self._user = user
        self._logged_in_at = self._now()
        logger.info("Session started", extra={"structured": {"owner_id": user.id}})
        self._notify(None, user)

    def logout(self, reason: str = "user") -> None:
        """Drop the identity and its cached collections before anyone re-reads."""
        previous = self._user
        self._epoch += 1
        self._user = None
        self._logged_in_at = None

        if previous is None:
            return

        dropped = self._cache.clear(previous.id)
        logger.info(
            "Session ended",
            extra={"structured": {"owner_id": previous.id, "reason": reason, "dropped": dropped}},
        )
        self._notify(previous, None)

    def handle_authorization_failure(self) -> bool:
        """React to a 401/403 from the remote store.

        Logs out when configured to, unless the login is recent enough that
        the failure is likely a race with token issuance. Returns True when
        the session was ended.
        """
        if not self._logout_on_auth_failure or self._user is None:
            return False
        if self._logged_in_at is not None:
            elapsed = (self._now() - self._logged_in_at).total_seconds()
            if elapsed < self._grace_seconds:
                logger.warning("Ignoring authorization failure right after login")
                return False
        self.logout(reason="invalid_token")
        return True

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register an identity change listener (previous, current)."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, previous: UserSession | None, current: UserSession | None) -> None:
        for listener in list(self._listeners):
            listener(previous, current)
