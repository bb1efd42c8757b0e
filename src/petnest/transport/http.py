"""
REST HTTP client for the PetNest API.

Attaches the coordinator's current bearer token to every request. A 401 on a
non-auth endpoint triggers one shared credential refresh and a single replay
of the request; anything else goes straight back to the caller.
"""

import logging
from typing import Any, Optional

import httpx

from petnest.errors import ApiError, HttpError, RefreshDenied
from petnest.models.credentials import CredentialPair
from petnest.tokens import TokenCoordinator

logger = logging.getLogger(__name__)

USER_AGENT = "petnest-sdk/0.1.0"

# Endpoints that must never trigger refresh-and-retry, or a failing refresh
# would loop on itself.
AUTH_ENDPOINT_SUFFIXES = (
    "/auth/login",
    "/auth/register",
    "/auth/refresh",
    "/auth/logout",
    "/password/forgot",
    "/password/reset",
)


def is_auth_endpoint(path: str) -> bool:
    p = httpx.URL(path).path.lower().rstrip("/")
    return p.endswith(AUTH_ENDPOINT_SUFFIXES)


class HttpClient:
    def __init__(
        self,
        api_url: str,
        coordinator: TokenCoordinator,
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._coordinator = coordinator
        self._client = httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )
        self._sync_default_header(coordinator.current())
        self._unsubscribe = coordinator.subscribe(self._sync_default_header)

    @property
    def default_headers(self) -> httpx.Headers:
        return self._client.headers

    def _sync_default_header(self, pair: CredentialPair) -> None:
        if pair.access_token:
            self._client.headers["Authorization"] = f"Bearer {pair.access_token}"
        else:
            self._client.headers.pop("Authorization", None)

    def _auth_headers(self, authenticated: bool) -> dict[str, str]:
        token = self._coordinator.current().access_token
        if authenticated and token:
            return {"Authorization": f"Bearer {token}"}
        return {}

    @staticmethod
    def _unwrap(resp: httpx.Response) -> Any:
        """Unwrap the standard API response: { "success": true, "data": <actual_data> }"""
        if not resp.content:
            return None
        json_data = resp.json()
        if isinstance(json_data, dict) and "success" in json_data:
            if not json_data["success"]:
                raise ApiError(
                    str(json_data.get("message") or json_data.get("error") or "Request failed"),
                    details=json_data,
                )
            if "data" in json_data:
                return json_data["data"]
        return json_data

    @staticmethod
    def _error(resp: httpx.Response) -> HttpError:
        try:
            body = resp.json()
        except ValueError:
            body = None
        details = body if isinstance(body, dict) else None
        return HttpError(resp.status_code, f"HTTP {resp.status_code}: {resp.text[:200]}", details)

    async def request(
        self,
        method: str,
        path: str,
        body: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        authenticated: bool = True,
        timeout: Optional[float] = None,
    ) -> Any:
        resp = await self._dispatch(method, path, body, params, authenticated, timeout, retried=False)
        if resp.status_code >= 400:
            raise self._error(resp)
        return self._unwrap(resp)

    async def _dispatch(
        self,
        method: str,
        path: str,
        body: Optional[dict[str, Any]],
        params: Optional[dict[str, Any]],
        authenticated: bool,
        timeout: Optional[float],
        retried: bool,
    ) -> httpx.Response:
        extra: dict[str, Any] = {}
        if timeout is not None:
            extra["timeout"] = timeout
        req = self._client.build_request(
            method, path,
            json=body, params=params,
            headers=self._auth_headers(authenticated),
            **extra,
        )
        if not authenticated:
            req.headers.pop("Authorization", None)
        resp = await self._client.send(req)
        if resp.status_code != 401 or retried or not authenticated or is_auth_endpoint(path):
            return resp

        logger.debug("401 on %s %s, refreshing credential", method, path)
        try:
            await self._coordinator.force_refresh()
        except RefreshDenied:
            return resp
        return await self._dispatch(method, path, body, params, authenticated, timeout, retried=True)

    async def get(self, path: str, params: Optional[dict[str, Any]] = None, authenticated: bool = True) -> Any:
        return await self.request("GET", path, params=params, authenticated=authenticated)

    async def post(
        self,
        path: str,
        body: Optional[dict[str, Any]] = None,
        authenticated: bool = True,
        timeout: Optional[float] = None,
    ) -> Any:
        return await self.request("POST", path, body, authenticated=authenticated, timeout=timeout)

    async def put(self, path: str, body: Optional[dict[str, Any]] = None, authenticated: bool = True) -> Any:
        return await self.request("PUT", path, body, authenticated=authenticated)

    async def delete(self, path: str, params: Optional[dict[str, Any]] = None, authenticated: bool = True) -> Any:
        return await self.request("DELETE", path, params=params, authenticated=authenticated)

    async def close(self) -> None:
        self._unsubscribe()
        await self._client.aclose()
