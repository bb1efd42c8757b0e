"""Shared test fixtures: a fake Socket.IO client, an in-process broker and an HTTP router."""
from __future__ import annotations

import asyncio
import inspect
import json
from typing import Any, Callable, Optional

import httpx
import jwt
import pytest
from socketio.exceptions import ConnectionError as SocketIOConnectionError

from petnest.client import AsyncPetNest
from petnest.config import Settings
from petnest.credentials import MemoryCredentialStore
from petnest.models.credentials import CredentialPair


def make_token(user_id: str, **claims: Any) -> str:
    return jwt.encode({"_id": user_id, **claims}, "test-secret", algorithm="HS256")


def user_of(token: str) -> Optional[str]:
    try:
        return jwt.decode(token, options={"verify_signature": False}).get("_id")
    except jwt.PyJWTError:
        return None


async def settle(rounds: int = 10) -> None:
    """Let scheduled fire-and-forget tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeSocketClient:
    """Stands in for socketio.AsyncClient: same connect/on/emit/disconnect surface."""

    def __init__(self, broker: Optional["FakeBroker"] = None, fail_connect: bool = False):
        self.broker = broker
        self.fail_connect = fail_connect
        self.handlers: dict[str, Callable[..., Any]] = {}
        self.connected = False
        self.emitted: list[tuple[str, Any]] = []
        self.auth_payloads: list[dict[str, Any]] = []
        self.connect_kwargs: dict[str, Any] = {}
        self._auth: Any = None

    def on(self, event: str, handler: Optional[Callable[..., Any]] = None) -> None:
        self.handlers[event] = handler

    async def trigger(self, event: str, *args: Any) -> None:
        handler = self.handlers.get(event)
        if handler is None:
            return
        result = handler(*args)
        if inspect.isawaitable(result):
            await result

    async def connect(self, url: str, auth: Any = None, **kwargs: Any) -> None:
        self._auth = auth
        self.connect_kwargs = {"url": url, **kwargs}
        await self._handshake()

    async def _handshake(self) -> None:
        payload = self._auth() if callable(self._auth) else self._auth
        self.auth_payloads.append(payload)
        if self.fail_connect:
            raise SocketIOConnectionError("Connection refused by the server")
        self.connected = True
        if self.broker is not None:
            self.broker.attach(self, payload)
        await self.trigger("connect")

    async def disconnect(self) -> None:
        if not self.connected:
            return
        self.connected = False
        if self.broker is not None:
            self.broker.detach(self)
        await self.trigger("disconnect", "client disconnect")

    async def emit(self, event: str, data: Any = None) -> None:
        self.emitted.append((event, data))
        if self.broker is not None and self.connected:
            await self.broker.receive(self, event, data)

    # -- test helpers ------------------------------------------------------

    async def drop(self) -> None:
        """Transport loss; socket.io would start reconnecting on its own."""
        self.connected = False
        if self.broker is not None:
            self.broker.detach(self)
        await self.trigger("disconnect", "transport close")

    async def kick(self) -> None:
        """Server-side disconnect (e.g. expired token); socket.io does not reconnect after this."""
        self.connected = False
        if self.broker is not None:
            self.broker.detach(self)
        await self.trigger("disconnect", "server disconnect")

    async def restore(self) -> None:
        """Automatic reconnect: the auth callable is evaluated again."""
        await self._handshake()

    def emitted_events(self, name: str) -> list[Any]:
        return [data for event, data in self.emitted if event == name]


class SocketFactory:
    def __init__(self, broker: Optional["FakeBroker"] = None, fail_connect: bool = False):
        self.broker = broker
        self.fail_connect = fail_connect
        self.instances: list[FakeSocketClient] = []

    def __call__(self) -> FakeSocketClient:
        sock = FakeSocketClient(self.broker, self.fail_connect)
        self.instances.append(sock)
        return sock

    @property
    def last(self) -> FakeSocketClient:
        return self.instances[-1]


class FakeBroker:
    """Single logical channel broker: rooms per conversation, fan-out in emission order."""

    def __init__(self) -> None:
        self.rooms: dict[str, list[FakeSocketClient]] = {}
        self.users: dict[FakeSocketClient, Optional[str]] = {}
        self._seq = 0

    def attach(self, sock: FakeSocketClient, auth: dict[str, Any]) -> None:
        self.users[sock] = user_of(auth.get("token", ""))

    def detach(self, sock: FakeSocketClient) -> None:
        self.users.pop(sock, None)
        for members in self.rooms.values():
            if sock in members:
                members.remove(sock)

    async def receive(self, sock: FakeSocketClient, event: str, data: dict[str, Any]) -> None:
        cid = data["conversationId"]
        user = self.users.get(sock)
        members = self.rooms.setdefault(cid, [])
        if event == "chat:join":
            if sock not in members:
                members.append(sock)
        elif event == "chat:leave":
            if sock in members:
                members.remove(sock)
        elif event == "chat:message":
            self._seq += 1
            await self._fanout(cid, "chat:message", {
                "_id": f"m{self._seq}",
                "conversation": cid,
                "sender": {"_id": user, "username": user},
                "text": data["text"],
                "createdAt": data["timestamp"],
            })
        elif event == "chat:typing":
            await self._fanout(cid, "chat:typing", {"conversationId": cid, "userId": user, "isTyping": data["isTyping"]})
        elif event == "chat:read":
            await self._fanout(cid, "chat:read", {"conversationId": cid, "userId": user, "at": data["at"]})

    async def _fanout(self, cid: str, event: str, payload: dict[str, Any]) -> None:
        for member in list(self.rooms.get(cid, [])):
            await member.trigger(event, payload)


class Router:
    """httpx.MockTransport handler with per-route responses and a request log."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Any] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, response: Any) -> None:
        """`response` is an httpx.Response, a list of them (consumed in order) or a callable(request)."""
        self.routes[(method, path)] = response

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"success": False, "message": "Not found"})
        if isinstance(route, list):
            return route.pop(0) if len(route) > 1 else route[0]
        if callable(route):
            result = route(request)
            if inspect.isawaitable(result):
                result = await result
            return result
        return route

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def ok(data: Any = None, status: int = 200) -> httpx.Response:
    return httpx.Response(status, json={"success": True, "data": data})


def body_of(request: httpx.Request) -> Any:
    return json.loads(request.content) if request.content else None


def make_settings(**overrides: Any) -> Settings:
    values = {
        "base_url": "http://petnest.test",
        "typing_idle_seconds": 0.05,
        "typing_expiry_seconds": 0.08,
    }
    values.update(overrides)
    return Settings(**values)


def make_client(
    user_id: Optional[str],
    router: Router,
    sockets: SocketFactory,
    refresh_token: Optional[str] = "refresh-1",
    **settings: Any,
) -> AsyncPetNest:
    pair = CredentialPair(
        access_token=make_token(user_id) if user_id else None,
        refresh_token=refresh_token,
    )
    return AsyncPetNest(
        make_settings(**settings),
        store=MemoryCredentialStore(pair),
        http_transport=router.transport,
        socket_factory=sockets,
    )


@pytest.fixture
def router() -> Router:
    return Router()


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def sockets(broker: FakeBroker) -> SocketFactory:
    return SocketFactory(broker)
