"""Domain records exchanged between the durable store and the pipeline."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import TypeAdapter


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Sender(str, Enum):
    USER = "user"
    CHARACTER = "character"


class MessageType(str, Enum):
    TEXT = "text"
    VOICE = "voice"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


@dataclass(slots=True)
class Character:
    """Persona definition, owned by the CRUD layer."""

    id: str
    name: str
    system_prompt: str
    voice_type: Optional[str] = None


@dataclass(slots=True)
class Scene:
    """Optional setting appended to the persona prompt."""

    id: str
    name: str
    background_prompt: str


@dataclass(slots=True)
class ChatSession:
    id: str
    user_id: str
    character_id: str
    scene_id: Optional[str] = None
    message_count: int = 0
    last_message_at: Optional[datetime] = None
    status: SessionStatus = SessionStatus.ACTIVE


@dataclass(slots=True)
class ChatMessage:
    """A single persisted turn unit. Messages are append-only."""

    session_id: str
    sender: str
    content: str
    message_type: str = MessageType.TEXT.value
    audio_url: Optional[str] = None
    original_text: Optional[str] = None
    voice_type: Optional[str] = None
    id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_row(self) -> dict[str, Any]:
        """Serialize into the column layout used by the ``chat_messages`` table."""

        return {
            "id": self.id,
            "session_id": self.session_id,
            "sender": self.sender,
            "content": self.content,
            "message_type": self.message_type,
            "audio_url": self.audio_url,
            "original_text": self.original_text,
            "voice_type": self.voice_type,
            "created_at": self.created_at.isoformat(),
        }


_timestamp_adapter: TypeAdapter[datetime] = TypeAdapter(datetime)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse PostgREST timestamps, which trim trailing zeros from the fraction."""

    if value is None or isinstance(value, datetime):
        return value
    return _timestamp_adapter.validate_python(value)


def message_from_row(row: dict[str, Any]) -> ChatMessage:
    return ChatMessage(
        id=row.get("id"),
        session_id=row.get("session_id") or "",
        sender=row.get("sender") or "",
        content=row.get("content") or "",
        message_type=row.get("message_type") or MessageType.TEXT.value,
        audio_url=row.get("audio_url"),
        original_text=row.get("original_text"),
        voice_type=row.get("voice_type"),
        created_at=_parse_timestamp(row.get("created_at")) or utcnow(),
    )


def session_from_row(row: dict[str, Any]) -> ChatSession:
    return ChatSession(
        id=row["id"],
        user_id=row.get("user_id") or "",
        character_id=row.get("character_id") or "",
        scene_id=row.get("scene_id"),
        message_count=int(row.get("message_count") or 0),
        last_message_at=_parse_timestamp(row.get("last_message_at")),
        status=SessionStatus(row.get("status") or SessionStatus.ACTIVE.value),
    )


def character_from_row(row: dict[str, Any]) -> Character:
    return Character(
        id=row["id"],
        name=row.get("name") or "",
        system_prompt=row.get("system_prompt") or "",
        voice_type=row.get("voice_type"),
    )


def scene_from_row(row: dict[str, Any]) -> Scene:
    return Scene(
        id=row["id"],
        name=row.get("name") or "",
        background_prompt=row.get("background_prompt") or "",
    )
