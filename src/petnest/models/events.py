"""
Realtime event names and outbound payloads.
"""

from datetime import datetime, timezone
from typing import Any, Optional


class C2SEvent:
    """Client → broker."""
    JOIN = "chat:join"
    LEAVE = "chat:leave"
    MESSAGE = "chat:message"
    TYPING = "chat:typing"
    READ = "chat:read"


class S2CEvent:
    """Broker → client. All three are scoped to a conversation channel."""
    MESSAGE = "chat:message"
    TYPING = "chat:typing"
    READ = "chat:read"

    ALL = (MESSAGE, TYPING, READ)


class ConnectionEvent:
    """Transport lifecycle, delivered through the same handlers as S2C events."""
    CONNECT = "connect"
    RECONNECT = "reconnect"
    DISCONNECT = "disconnect"
    ERROR = "error"


def isoformat(at: Optional[datetime] = None) -> str:
    at = at or datetime.now(timezone.utc)
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    return at.isoformat().replace("+00:00", "Z")


def channel_payload(conversation_id: str) -> dict[str, Any]:
    return {"conversationId": conversation_id}


def message_payload(conversation_id: str, text: str, at: Optional[datetime] = None) -> dict[str, Any]:
    return {"conversationId": conversation_id, "text": text, "timestamp": isoformat(at)}


def typing_payload(conversation_id: str, is_typing: bool) -> dict[str, Any]:
    return {"conversationId": conversation_id, "isTyping": is_typing}


def read_payload(conversation_id: str, at: datetime) -> dict[str, Any]:
    return {"conversationId": conversation_id, "at": isoformat(at)}


def conversation_of(data: Any) -> Optional[str]:
    """Conversation id carried by an inbound payload (`conversationId` or `conversation`)."""
    if not isinstance(data, dict):
        return None
    cid = data.get("conversationId") or data.get("conversation")
    if isinstance(cid, dict):
        cid = cid.get("_id") or cid.get("id")
    return str(cid) if cid else None
