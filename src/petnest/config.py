from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BASE_URL = "http://localhost:8000"


class Settings(BaseSettings):
    """SDK settings, read from PETNEST_* environment variables or a .env file."""

    base_url: str = DEFAULT_BASE_URL
    api_path: str = "/api"
    socket_url: Optional[str] = None
    socketio_path: str = "/socket.io"
    transports: list[str] = ["websocket"]

    http_timeout: float = 20.0
    refresh_timeout: float = 15.0
    connect_timeout: float = 10.0

    typing_idle_seconds: float = 1.0
    typing_expiry_seconds: float = 1.5

    # Send refresh requests without a body and rely on the server's cookie.
    cookie_refresh: bool = False

    credentials_file: Path = Path.home() / ".petnest" / "credentials.json"

    model_config = SettingsConfigDict(
        env_prefix="PETNEST_",
        env_file=".env",
        extra="ignore",
    )

    @property
    def api_url(self) -> str:
        return self.base_url.rstrip("/") + "/" + self.api_path.strip("/")

    @property
    def realtime_url(self) -> str:
        return (self.socket_url or self.base_url).rstrip("/")
