"""
AsyncPetNest: the session service object.

Constructed once at app start and closed at exit. It owns the credential
store, the token coordinator and both transports, and hands them to the
conversation views it opens instead of letting anything reach for globals.
"""

import asyncio
from typing import Any, Callable, Optional
from urllib.parse import quote

import httpx

from petnest.auth import Auth
from petnest.chat import ConversationView, ViewState, validate_conversation_id
from petnest.config import Settings
from petnest.conversations import ConversationsAPI
from petnest.credentials import CredentialStore, MemoryCredentialStore
from petnest.errors import RefreshDenied, TransportDisconnected, Unauthenticated
from petnest.models.credentials import CredentialPair
from petnest.tokens import TokenCoordinator
from petnest.transport.http import HttpClient
from petnest.transport.socketio import RealtimeClient

SIGN_IN_PATH = "/login"


def sign_in_redirect(destination: str) -> str:
    return f"{SIGN_IN_PATH}?redirect={quote(destination, safe='')}"


class AsyncPetNest:
    """Async PetNest client (primary)."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[CredentialStore] = None,
        user_id: Optional[str] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        socket_factory: Optional[Callable[[], Any]] = None,
    ):
        self.settings = settings or Settings()
        self.store = store or MemoryCredentialStore()
        self._user_id = user_id

        self.tokens = TokenCoordinator(
            self.store, self._exchange_refresh_token, cookie_refresh=self.settings.cookie_refresh,
        )
        self.http = HttpClient(
            self.settings.api_url, self.tokens,
            timeout=self.settings.http_timeout,
            transport=http_transport,
        )
        self.auth = Auth(self.http, self.tokens, refresh_timeout=self.settings.refresh_timeout)
        self.conversations = ConversationsAPI(self.http)
        self.realtime = RealtimeClient(
            self.settings.realtime_url,
            self.tokens,
            socketio_path=self.settings.socketio_path,
            transports=self.settings.transports,
            connect_timeout=self.settings.connect_timeout,
            client_factory=socket_factory,
        )
        self._views: dict[str, ConversationView] = {}
        self._opening: dict[str, "asyncio.Future[ConversationView]"] = {}

    async def __aenter__(self) -> "AsyncPetNest":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def _exchange_refresh_token(self, refresh_token: Optional[str]) -> CredentialPair:
        return await self.auth.exchange_refresh_token(refresh_token)

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id or self.tokens.user_id()

    @property
    def connected(self) -> bool:
        return self.realtime.connected

    async def ensure_session(self, destination: str = "/") -> CredentialPair:
        """Make sure a usable credential exists, trying one silent refresh.

        Raises Unauthenticated with `redirect_to` pointing at sign-in, carrying
        `destination` so the app can come back after login.
        """
        current = self.tokens.current()
        if current.access_token:
            return current
        try:
            return await self.tokens.force_refresh()
        except RefreshDenied:
            raise Unauthenticated(redirect_to=sign_in_redirect(destination)) from None

    async def connect(self) -> bool:
        """Bring up the realtime connection. A failed handshake is logged, not raised."""
        try:
            return await self.realtime.connect()
        except TransportDisconnected:
            return False

    async def open_conversation(self, conversation_id: str) -> ConversationView:
        """Bootstrap the session, connect, then open (or reuse) the view for a conversation."""
        conversation_id = validate_conversation_id(conversation_id)
        pending = self._opening.get(conversation_id)
        if pending is None:
            view = self._views.get(conversation_id)
            if view is not None and view.state in (ViewState.LOADING, ViewState.READY):
                return view
            # Registered before the first await so overlapping callers share one view.
            pending = asyncio.ensure_future(self._open_conversation(conversation_id))
            self._opening[conversation_id] = pending
            pending.add_done_callback(lambda fut: self._opened(conversation_id, fut))
        return await asyncio.shield(pending)

    def _opened(self, conversation_id: str, fut: "asyncio.Future[ConversationView]") -> None:
        if self._opening.get(conversation_id) is fut:
            del self._opening[conversation_id]
        if not fut.cancelled():
            fut.exception()

    async def _open_conversation(self, conversation_id: str) -> ConversationView:
        await self.ensure_session(f"/chat/{conversation_id}")
        await self.connect()
        view = ConversationView(
            conversation_id,
            self.conversations,
            self.realtime,
            self.user_id,
            typing_idle_s=self.settings.typing_idle_seconds,
            typing_expiry_s=self.settings.typing_expiry_seconds,
        )
        self._views[conversation_id] = view
        try:
            await view.open()
        except Exception:
            if self._views.get(conversation_id) is view:
                del self._views[conversation_id]
            raise
        return view

    def close_conversation(self, conversation_id: str) -> None:
        view = self._views.pop(conversation_id, None)
        pending = self._opening.pop(conversation_id, None)
        if view is not None:
            # An open still loading returns the closed view to its callers.
            view.close()
        elif pending is not None:
            pending.cancel()

    async def close(self) -> None:
        for conversation_id in list(self._views) + list(self._opening):
            self.close_conversation(conversation_id)
        await self.realtime.close()
        await self.http.close()
