"""
Session token coordinator.

Owns the refresh policy for the credential pair held in a CredentialStore and
tells the HTTP and realtime transports whenever the pair changes.

Only one refresh request is ever in flight. Callers that arrive while a
refresh is pending await the same future and see the same result, and the
refresh itself is shielded so that a cancelled waiter (for example a closed
conversation view) never aborts it for everybody else.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import jwt

from petnest.credentials import CredentialStore
from petnest.errors import RefreshDenied
from petnest.models.credentials import CredentialPair

logger = logging.getLogger(__name__)

RefreshCall = Callable[[Optional[str]], Awaitable[CredentialPair]]
CredentialListener = Callable[[CredentialPair], None]

USER_ID_CLAIMS = ("_id", "id", "sub")


class TokenCoordinator:
    def __init__(self, store: CredentialStore, refresh: RefreshCall, cookie_refresh: bool = False):
        self._store = store
        self._refresh = refresh
        self._cookie_refresh = cookie_refresh
        self._inflight: Optional["asyncio.Future[CredentialPair]"] = None
        self._listeners: list[CredentialListener] = []
        self._refresh_count = 0

    @property
    def refreshing(self) -> bool:
        return self._inflight is not None

    @property
    def refresh_count(self) -> int:
        """Number of refresh requests actually issued."""
        return self._refresh_count

    def current(self) -> CredentialPair:
        """The pair currently believed valid. It may have expired; a 401 says so."""
        return self._store.get()

    def user_id(self) -> Optional[str]:
        """Current user's id, read from the access token's (unverified) claims."""
        token = self.current().access_token
        if not token:
            return None
        try:
            claims: dict[str, Any] = jwt.decode(token, options={"verify_signature": False})
        except jwt.PyJWTError:
            return None
        for claim in USER_ID_CLAIMS:
            if claims.get(claim):
                return str(claims[claim])
        return None

    def subscribe(self, listener: CredentialListener) -> Callable[[], None]:
        """Register a credential-change listener. Returns a cleanup function."""
        self._listeners.append(listener)

        def remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass
        return remove

    def set_credentials(self, pair: CredentialPair) -> None:
        self._store.set(pair)
        self._notify(pair)

    def clear(self) -> None:
        self._store.clear()
        self._notify(CredentialPair())

    async def force_refresh(self) -> CredentialPair:
        """Exchange the refresh token for a new pair, sharing any refresh already in flight."""
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._run_refresh())
            self._inflight.add_done_callback(_consume_exception)
        return await asyncio.shield(self._inflight)

    async def _run_refresh(self) -> CredentialPair:
        try:
            current = self._store.get()
            if not current.refresh_token and not self._cookie_refresh:
                self.clear()
                raise RefreshDenied("No refresh token stored")

            self._refresh_count += 1
            try:
                fresh = await self._refresh(current.refresh_token)
            except Exception as e:
                logger.warning("Credential refresh failed: %s", e)
                self.clear()
                raise RefreshDenied(f"Credential refresh failed: {e}") from e

            if not fresh.access_token:
                self.clear()
                raise RefreshDenied("No access token in refresh response")
            if not fresh.refresh_token:
                fresh = fresh.model_copy(update={"refresh_token": current.refresh_token})

            logger.info("Credential refreshed")
            self.set_credentials(fresh)
            return fresh
        finally:
            self._inflight = None

    def _notify(self, pair: CredentialPair) -> None:
        for listener in list(self._listeners):
            try:
                listener(pair)
            except Exception:
                logger.exception("Credential listener failed")


def _consume_exception(fut: "asyncio.Future[Any]") -> None:
    # Waiters may all have gone away; retrieve the error so asyncio does not warn.
    if not fut.cancelled():
        fut.exception()
