"""
Conversations REST API: history, metadata and read markers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from urllib.parse import quote

from petnest.models.conversation import Conversation, Message
from petnest.models.events import isoformat
from petnest.transport.http import HttpClient


def _path(conversation_id: str, suffix: str = "") -> str:
    return f"/conversations/{quote(conversation_id, safe='')}{suffix}"


class ConversationsAPI:
    def __init__(self, http: HttpClient):
        self._http = http

    async def messages(self, conversation_id: str) -> list[Message]:
        """Message history, oldest first."""
        data = await self._http.get(_path(conversation_id, "/messages"))
        if isinstance(data, dict):
            data = data.get("messages") or []
        return [Message.model_validate(m) for m in data or []]

    async def get(self, conversation_id: str) -> Conversation | None:
        """Conversation metadata. Older backends do not implement this endpoint."""
        data = await self._http.get(_path(conversation_id))
        return Conversation.model_validate(data) if data else None

    async def mark_read(self, conversation_id: str, at: datetime) -> Any:
        return await self._http.post(_path(conversation_id, "/read"), {"at": isoformat(at)})
