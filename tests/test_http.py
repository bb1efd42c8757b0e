"""HTTP client: bearer attachment, 401 refresh-and-retry, response unwrapping."""

import asyncio

import httpx
import pytest

from petnest.credentials import MemoryCredentialStore
from petnest.errors import ApiError, HttpError
from petnest.models.credentials import CredentialPair
from petnest.tokens import TokenCoordinator
from petnest.transport.http import HttpClient, is_auth_endpoint

from conftest import Router, ok

API = "http://petnest.test/api"


class Refresher:
    def __init__(self, ok=True, delay=0.01):
        self.calls = 0
        self.ok = ok
        self.delay = delay

    async def __call__(self, refresh_token):
        self.calls += 1
        await asyncio.sleep(self.delay)
        if not self.ok:
            raise RuntimeError("refresh rejected")
        return CredentialPair(access_token="fresh", refresh_token="R2")


def build(router, refresher=None, pair=None):
    store = MemoryCredentialStore(pair or CredentialPair(access_token="stale", refresh_token="R1"))
    refresher = refresher or Refresher()
    tokens = TokenCoordinator(store, refresher)
    return HttpClient(API, tokens, transport=router.transport), tokens, refresher


def bearer_gate(request):
    if request.headers.get("authorization") == "Bearer fresh":
        return ok({"items": [1, 2]})
    return httpx.Response(401, json={"message": "expired"})


class TestRefreshAndRetry:
    @pytest.mark.asyncio
    async def test_401_refreshes_then_replays_once(self):
        router = Router()
        router.add("GET", "/api/items", bearer_gate)
        http, tokens, refresher = build(router)

        assert await http.get("/items") == {"items": [1, 2]}
        sent = router.calls("GET", "/api/items")
        assert [r.headers["authorization"] for r in sent] == ["Bearer stale", "Bearer fresh"]
        assert refresher.calls == 1
        assert http.default_headers["authorization"] == "Bearer fresh"
        await http.close()

    @pytest.mark.asyncio
    async def test_second_401_propagates(self):
        router = Router()
        router.add("GET", "/api/items", httpx.Response(401, json={"message": "no"}))
        http, _, refresher = build(router)

        with pytest.raises(HttpError) as exc:
            await http.get("/items")
        assert exc.value.status_code == 401
        assert len(router.calls("GET", "/api/items")) == 2
        assert refresher.calls == 1
        await http.close()

    @pytest.mark.asyncio
    async def test_denied_refresh_returns_original_401(self):
        router = Router()
        router.add("GET", "/api/items", httpx.Response(401, json={"message": "expired"}))
        http, tokens, _ = build(router, Refresher(ok=False))

        with pytest.raises(HttpError) as exc:
            await http.get("/items")
        assert exc.value.status_code == 401
        assert len(router.calls("GET", "/api/items")) == 1
        assert tokens.current() == CredentialPair()
        assert "authorization" not in http.default_headers
        await http.close()

    @pytest.mark.asyncio
    async def test_concurrent_401s_share_one_refresh(self):
        router = Router()
        router.add("GET", "/api/items", bearer_gate)
        http, _, refresher = build(router)

        results = await asyncio.gather(*(http.get("/items") for _ in range(4)))
        assert all(r == {"items": [1, 2]} for r in results)
        assert refresher.calls == 1
        assert len(router.calls("GET", "/api/items")) == 8
        await http.close()

    @pytest.mark.asyncio
    async def test_auth_endpoints_are_exempt(self):
        router = Router()
        router.add("POST", "/api/auth/login", httpx.Response(401, json={"success": False, "message": "bad"}))
        http, _, refresher = build(router)

        with pytest.raises(HttpError):
            await http.post("/auth/login", {"username": "a", "password": "b"}, authenticated=False)
        assert refresher.calls == 0
        assert len(router.calls("POST", "/api/auth/login")) == 1
        await http.close()

    @pytest.mark.asyncio
    async def test_other_failures_propagate_untouched(self):
        router = Router()
        router.add("GET", "/api/items", httpx.Response(500, text="oops"))
        http, _, refresher = build(router)

        with pytest.raises(HttpError) as exc:
            await http.get("/items")
        assert exc.value.status_code == 500
        assert refresher.calls == 0
        await http.close()

    @pytest.mark.asyncio
    async def test_network_error_propagates(self):
        def boom(request):
            raise httpx.ConnectError("unreachable", request=request)

        router = Router()
        router.add("GET", "/api/items", boom)
        http, _, refresher = build(router)
        with pytest.raises(httpx.ConnectError):
            await http.get("/items")
        assert refresher.calls == 0
        await http.close()


class TestHeaders:
    @pytest.mark.asyncio
    async def test_unauthenticated_call_sends_no_bearer(self):
        router = Router()
        router.add("POST", "/api/auth/refresh", ok({"accessToken": "x"}))
        http, _, _ = build(router)
        await http.post("/auth/refresh", {"refreshToken": "R1"}, authenticated=False)
        assert "authorization" not in router.calls("POST", "/api/auth/refresh")[0].headers
        await http.close()

    @pytest.mark.asyncio
    async def test_default_header_follows_credential_changes(self):
        router = Router()
        http, tokens, _ = build(router)
        assert http.default_headers["authorization"] == "Bearer stale"
        tokens.set_credentials(CredentialPair(access_token="next"))
        assert http.default_headers["authorization"] == "Bearer next"
        tokens.clear()
        assert "authorization" not in http.default_headers
        await http.close()


class TestUnwrap:
    @pytest.mark.asyncio
    async def test_envelope_and_plain_bodies(self):
        router = Router()
        router.add("GET", "/api/wrapped", ok([1]))
        router.add("GET", "/api/plain", httpx.Response(200, json={"a": 1}))
        router.add("GET", "/api/empty", httpx.Response(204))
        router.add("GET", "/api/failed", httpx.Response(200, json={"success": False, "message": "nope"}))
        http, _, _ = build(router)

        assert await http.get("/wrapped") == [1]
        assert await http.get("/plain") == {"a": 1}
        assert await http.get("/empty") is None
        with pytest.raises(ApiError, match="nope"):
            await http.get("/failed")
        await http.close()


def test_is_auth_endpoint():
    assert is_auth_endpoint("/auth/refresh")
    assert is_auth_endpoint("/auth/login/")
    assert is_auth_endpoint("/auth/password/reset")
    assert not is_auth_endpoint("/conversations/c1/messages")
    assert not is_auth_endpoint("/users/me")
