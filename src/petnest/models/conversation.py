"""
Conversation, message, typing and read-marker models.

The marketplace backend is loose about shapes: references arrive either as a
bare id string or as a populated object with `_id`, and timestamps as
`createdAt` or `timestamp`. The validators below fold those variants into one
model so the rest of the SDK never has to look at raw payloads.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def ref_id(value: Any) -> Optional[str]:
    """Id of a reference that may be a plain id or a populated `{_id, ...}` object."""
    if isinstance(value, dict):
        value = value.get("_id") or value.get("id")
    return str(value) if value else None


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Participant(BaseModel):
    id: str
    username: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _from_wire(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"id": data}
        if isinstance(data, dict) and "id" not in data and "_id" in data:
            return {**data, "id": str(data["_id"])}
        return data


class Conversation(BaseModel):
    id: str
    participants: list[Participant] = []

    @model_validator(mode="before")
    @classmethod
    def _from_wire(cls, data: Any) -> Any:
        if isinstance(data, dict) and "id" not in data and "_id" in data:
            return {**data, "id": str(data["_id"])}
        return data

    @property
    def participant_ids(self) -> set[str]:
        return {p.id for p in self.participants}


class Message(BaseModel):
    id: Optional[str] = None
    conversation_id: Optional[str] = None
    sender_id: Optional[str] = None
    sender: Optional[Participant] = None
    recipient_id: Optional[str] = None
    recipient: Optional[Participant] = None
    text: str = ""
    created_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _from_wire(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        out = dict(data)
        if "id" not in out and "_id" in out:
            out["id"] = ref_id(out["_id"])
        if "conversation_id" not in out:
            out["conversation_id"] = ref_id(out.get("conversationId") or out.get("conversation"))
        for role in ("sender", "recipient"):
            raw = out.get(role)
            if f"{role}_id" not in out:
                out[f"{role}_id"] = ref_id(raw)
            if isinstance(raw, str):
                out[role] = {"id": raw}
        if "created_at" not in out:
            out["created_at"] = out.get("createdAt") or out.get("timestamp")
        return out

    @field_validator("created_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class TypingSignal(BaseModel):
    """Inbound chat:typing payload."""
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    is_typing: bool = Field(default=False, alias="isTyping")


class ReadMarker(BaseModel):
    """Inbound chat:read payload: `user_id` has seen everything up to `at`."""
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    at: Optional[datetime] = None

    @field_validator("at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)
