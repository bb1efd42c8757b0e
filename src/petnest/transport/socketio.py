"""
Socket.IO connection manager for the realtime chat broker.

One connection per process, authenticated with `auth={"token": <access token>}`.
The auth payload is a callable, so every handshake (first connect, automatic
reconnects, credential rotation) presents whatever credential the coordinator
holds at that moment.

Channel membership is connection-scoped on the broker, so the client keeps the
set of conversations it is interested in and re-joins all of them on every
successful (re)connect.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import socketio
from socketio.exceptions import ConnectionError as SocketIOConnectionError

from petnest.errors import TransportDisconnected
from petnest.models.credentials import CredentialPair
from petnest.models.events import C2SEvent, ConnectionEvent, S2CEvent, channel_payload, conversation_of
from petnest.tokens import TokenCoordinator

logger = logging.getLogger(__name__)

SOCKETIO_PATH = "/socket.io"

# Disconnect reasons after which socket.io does not reconnect by itself.
CLOSED_REASONS = frozenset({"server disconnect", "client disconnect"})

EventHandler = Callable[[str, dict[str, Any]], None]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


def _default_client() -> socketio.AsyncClient:
    return socketio.AsyncClient(reconnection=True, logger=False)


class RealtimeClient:
    def __init__(
        self,
        url: str,
        coordinator: TokenCoordinator,
        socketio_path: str = SOCKETIO_PATH,
        transports: Optional[list[str]] = None,
        connect_timeout: float = 10.0,
        client_factory: Optional[Callable[[], Any]] = None,
    ):
        self._url = url
        self._coordinator = coordinator
        self._socketio_path = socketio_path
        self._transports = transports or ["websocket"]
        self._connect_timeout = connect_timeout
        self._client_factory = client_factory or _default_client
        self._sio: Optional[Any] = None
        self._state = ConnectionState.DISCONNECTED
        self._joined: dict[str, None] = {}
        self._event_handlers: list[EventHandler] = []
        self._had_connection = False
        self._rotate_after_connect = False
        self._rotation: Optional["asyncio.Task[None]"] = None
        self._tasks: set["asyncio.Task[Any]"] = set()
        self._unsubscribe = coordinator.subscribe(self._on_credentials)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._sio is not None and self._sio.connected

    @property
    def joined(self) -> list[str]:
        """Conversation ids this session is interested in, in join order."""
        return list(self._joined)

    def add_event_handler(self, handler: EventHandler) -> Callable[[], None]:
        """Add an event handler. Returns a cleanup function. Supports multiple concurrent handlers."""
        self._event_handlers.append(handler)

        def remove() -> None:
            try:
                self._event_handlers.remove(handler)
            except ValueError:
                pass
        return remove

    async def connect(self) -> bool:
        """Open the connection. Returns False, without connecting, when there is no credential."""
        return await self._open(retry=False)

    async def _open(self, retry: bool) -> bool:
        if self._sio is not None:
            return self.connected
        if not self._coordinator.current().access_token:
            logger.info("No credential available, realtime connection stays down")
            return False

        sio = self._client_factory()
        self._sio = sio
        self._state = ConnectionState.RECONNECTING if retry else ConnectionState.CONNECTING
        self._bind(sio)
        try:
            await sio.connect(
                self._url,
                auth=self._auth_payload,
                transports=self._transports,
                socketio_path=self._socketio_path,
                wait_timeout=self._connect_timeout,
                retry=retry,
            )
        except SocketIOConnectionError as e:
            logger.error("Realtime connect to %s failed: %s", self._url, e)
            if self._sio is sio:
                self._sio = None
                self._state = ConnectionState.DISCONNECTED
            raise TransportDisconnected(f"Realtime connect failed: {e}") from e
        except asyncio.CancelledError:
            if self._sio is sio:
                self._sio = None
                self._state = ConnectionState.DISCONNECTED
                self._track(sio.disconnect())
            raise
        return self.connected

    def _auth_payload(self) -> dict[str, str]:
        # Raw token, not "Bearer ..."; evaluated on every handshake.
        return {"token": self._coordinator.current().access_token or ""}

    def _bind(self, sio: Any) -> None:
        """Register handlers on one client instance. Events from a replaced instance are ignored."""

        async def on_connect() -> None:
            if sio is not self._sio:
                return
            event = ConnectionEvent.RECONNECT if self._had_connection else ConnectionEvent.CONNECT
            self._had_connection = True
            self._state = ConnectionState.CONNECTED
            logger.info("Realtime %s, rejoining %d channel(s)", event, len(self._joined))
            for conversation_id in list(self._joined):
                await sio.emit(C2SEvent.JOIN, channel_payload(conversation_id))
            self._dispatch(event, {})
            if self._rotate_after_connect and not self._rotating():
                self._rotate_after_connect = False
                self._schedule_rotation()

        async def on_disconnect(reason: Any = "") -> None:
            if sio is not self._sio:
                return
            if str(reason) in CLOSED_REASONS:
                # No automatic reconnect follows; the next credential or connect() starts over.
                self._sio = None
                self._state = ConnectionState.DISCONNECTED
            else:
                # Transport loss: socket.io's own reconnection takes over from here.
                self._state = ConnectionState.RECONNECTING
            logger.warning("Realtime disconnected: %s", reason)
            self._dispatch(ConnectionEvent.DISCONNECT, {"reason": str(reason or "")})

        async def on_connect_error(data: Any = None) -> None:
            if sio is not self._sio:
                return
            logger.error("Realtime connect_error: %s", data)
            self._dispatch(ConnectionEvent.ERROR, {"message": str(data) if data is not None else ""})

        def inbound(event: str) -> Callable[[Any], Awaitable[None]]:
            async def handler(data: Any = None) -> None:
                if sio is not self._sio:
                    return
                self._deliver(event, data)
            return handler

        sio.on("connect", on_connect)
        sio.on("disconnect", on_disconnect)
        sio.on("connect_error", on_connect_error)
        for event in S2CEvent.ALL:
            sio.on(event, inbound(event))

    def _deliver(self, event: str, data: Any) -> None:
        if not isinstance(data, dict):
            logger.debug("Discarding malformed %s payload: %r", event, data)
            return
        conversation_id = conversation_of(data)
        if conversation_id not in self._joined:
            logger.debug("Discarding %s for non-member conversation %s", event, conversation_id)
            return
        self._dispatch(event, data)

    def _dispatch(self, event: str, data: dict[str, Any]) -> None:
        for handler in list(self._event_handlers):
            try:
                handler(event, data)
            except Exception:
                logger.exception("Realtime handler failed for %s", event)

    def join(self, conversation_id: str) -> None:
        """Join a conversation channel. Deferred until connected; replayed on every reconnect."""
        if conversation_id in self._joined:
            return
        self._joined[conversation_id] = None
        if self.connected:
            self._emit(C2SEvent.JOIN, channel_payload(conversation_id))

    def leave(self, conversation_id: str) -> None:
        if conversation_id not in self._joined:
            return
        del self._joined[conversation_id]
        if self.connected:
            self._emit(C2SEvent.LEAVE, channel_payload(conversation_id))

    def send(self, event: str, payload: dict[str, Any]) -> bool:
        """Fire-and-forget emit. Dropped (returns False) while not connected; nothing is queued."""
        if not self.connected:
            logger.debug("Dropping %s: realtime not connected", event)
            return False
        self._emit(event, payload)
        return True

    def _emit(self, event: str, payload: dict[str, Any]) -> None:
        sio = self._sio

        async def _do_emit() -> None:
            try:
                await sio.emit(event, payload)
            except Exception as e:
                logger.error("Emit failed for %s: %s", event, e)

        self._track(_do_emit())

    def _track(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_credentials(self, pair: CredentialPair) -> None:
        if not pair.access_token:
            if self._sio is not None:
                self._track(self.disconnect())
            return
        if self._state is ConnectionState.CONNECTING:
            # The handshake in progress already read the old token.
            self._rotate_after_connect = True
        elif self._state is not ConnectionState.DISCONNECTED or self._joined:
            self._schedule_rotation()

    def _rotating(self) -> bool:
        rotation = self._rotation
        return rotation is not None and not rotation.done() and rotation is not asyncio.current_task()

    def _schedule_rotation(self) -> None:
        """Drop the current client now and handshake again with the new credential."""
        if self._rotating():
            self._rotate_after_connect = True
            return
        logger.info("Credential changed, re-authenticating realtime connection")
        sio, self._sio = self._sio, None
        was_connected = self._state is ConnectionState.CONNECTED
        self._state = ConnectionState.RECONNECTING
        if sio is not None:
            # Also stops socket.io's own retry loop on the stale client.
            self._track(sio.disconnect())
        if was_connected:
            self._dispatch(ConnectionEvent.DISCONNECT, {"reason": "credential rotated"})
        self._rotation = asyncio.ensure_future(self._rotate())

    async def _rotate(self) -> None:
        # connect() may have opened a fresh client in the meantime.
        if self._sio is None:
            try:
                await self._open(retry=True)
            except TransportDisconnected:
                pass
            if self._sio is None:
                self._state = ConnectionState.DISCONNECTED
        if self._rotate_after_connect:
            self._rotate_after_connect = False
            self._schedule_rotation()

    async def disconnect(self) -> None:
        rotation = self._rotation
        if rotation is not None and not rotation.done() and rotation is not asyncio.current_task():
            rotation.cancel()
        self._rotate_after_connect = False
        self._had_connection = False
        sio, self._sio = self._sio, None
        was_live = self._state is not ConnectionState.DISCONNECTED
        self._state = ConnectionState.DISCONNECTED
        if sio is not None:
            await sio.disconnect()
        if was_live:
            self._dispatch(ConnectionEvent.DISCONNECT, {"reason": "client disconnect"})

    async def close(self) -> None:
        self._unsubscribe()
        await self.disconnect()
