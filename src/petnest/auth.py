"""
Auth API: sign-in, registration, refresh exchange, sign-out and password reset.

All of these endpoints are exempt from the HTTP client's refresh-and-retry.
Successful sign-in/registration hands the new pair to the coordinator, which
persists it and rotates both transports.
"""

import logging
from typing import Any, Optional

from petnest.errors import AuthError, PetNestError
from petnest.models.credentials import CredentialPair
from petnest.tokens import TokenCoordinator
from petnest.transport.http import HttpClient

logger = logging.getLogger(__name__)


def credentials_from(data: Any) -> CredentialPair:
    """Read a pair from `accessToken | token | tokens.accessToken` and `refreshToken | tokens.refreshToken`."""
    if not isinstance(data, dict):
        return CredentialPair()
    tokens = data.get("tokens") if isinstance(data.get("tokens"), dict) else {}
    return CredentialPair(
        access_token=data.get("accessToken") or data.get("token") or tokens.get("accessToken"),
        refresh_token=data.get("refreshToken") or tokens.get("refreshToken"),
    )


def _message(e: Exception) -> str:
    if isinstance(e, PetNestError) and e.details:
        return str(e.details.get("message") or e.details.get("error") or e)
    return str(e)


class Auth:
    def __init__(self, http: HttpClient, coordinator: TokenCoordinator, refresh_timeout: float = 15.0):
        self._http = http
        self._coordinator = coordinator
        self._refresh_timeout = refresh_timeout

    async def login(self, identifier: str, password: str) -> dict[str, Any]:
        """Sign in with an email address or a username."""
        ident = identifier.strip()
        if "@" in ident:
            body = {"email": ident.lower(), "password": password}
        else:
            body = {"username": ident, "password": password}
        try:
            data = await self._http.post("/auth/login", body, authenticated=False)
        except PetNestError as e:
            raise AuthError(f"Login failed: {_message(e)}")
        return self._accept(data)

    async def register(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Register and sign in. Backend expects fullname, username, email, contactPhone, password."""
        try:
            data = await self._http.post("/auth/register", payload, authenticated=False)
        except PetNestError as e:
            raise AuthError(f"Registration failed: {_message(e)}")
        return self._accept(data)

    async def exchange_refresh_token(self, refresh_token: Optional[str]) -> CredentialPair:
        """POST /auth/refresh. With no refresh token the body is empty (cookie mode)."""
        body = {"refreshToken": refresh_token} if refresh_token else {}
        data = await self._http.post(
            "/auth/refresh", body, authenticated=False, timeout=self._refresh_timeout,
        )
        return credentials_from(data)

    async def logout(self) -> None:
        """Best-effort server sign-out; local credentials are always cleared."""
        try:
            await self._http.post("/auth/logout")
        except Exception as e:
            logger.debug("Server sign-out failed: %s", e)
        finally:
            self._coordinator.clear()

    async def me(self) -> dict[str, Any]:
        data = await self._http.get("/users/me")
        if isinstance(data, dict) and isinstance(data.get("user"), dict):
            return data["user"]
        return data

    async def forgot_password(self, email: str) -> None:
        try:
            await self._http.post("/auth/password/forgot", {"email": email}, authenticated=False)
        except PetNestError as e:
            raise AuthError(f"Password reset request failed: {_message(e)}")

    async def reset_password(self, token: str, password: str) -> bool:
        try:
            data = await self._http.post(
                "/auth/password/reset", {"token": token, "password": password}, authenticated=False,
            )
        except PetNestError as e:
            raise AuthError(f"Password reset failed: {_message(e)}")
        return data is None or bool(data)

    def _accept(self, data: Any) -> dict[str, Any]:
        pair = credentials_from(data)
        if not pair.access_token:
            raise AuthError("No access token in response")
        self._coordinator.set_credentials(pair)
        return data
