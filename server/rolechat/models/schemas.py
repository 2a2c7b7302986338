"""Pydantic models describing the envelope protocol and HTTP payloads."""
from __future__ import annotations

import random
import string
import time
from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_message_id() -> str:
    """Mint a server-side envelope id (``msg_<millis>_<random>``)."""

    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"msg_{now_ms()}_{suffix}"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Client -> server
# ---------------------------------------------------------------------------


class EnvelopeHeader(_CamelModel):
    """Structural fields every inbound envelope must carry."""

    type: str = Field(..., min_length=1)
    timestamp: int = Field(..., gt=0, description="Client clock in milliseconds")
    message_id: str = Field(..., alias="messageId", min_length=1)


class AudioPayload(_CamelModel):
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    audio_data: Optional[str] = Field(default=None, alias="audioData")
    format: Optional[str] = None
    voice_type: Optional[str] = Field(default=None, alias="voiceType")


class TextPayload(_CamelModel):
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    text: Optional[str] = None
    character_id: Optional[str] = Field(default=None, alias="characterId")
    voice_type: Optional[str] = Field(default=None, alias="voiceType")


class AudioEnvelope(EnvelopeHeader):
    type: Literal["audio"]
    data: AudioPayload = Field(default_factory=AudioPayload)


class TextEnvelope(EnvelopeHeader):
    type: Literal["text"]
    data: TextPayload = Field(default_factory=TextPayload)


class ConnectionAckEnvelope(EnvelopeHeader):
    type: Literal["connection_ack"]
    data: Optional[dict[str, Any]] = None


ClientEnvelope = Annotated[
    Union[AudioEnvelope, TextEnvelope, ConnectionAckEnvelope],
    Field(discriminator="type"),
]
client_envelope_adapter: TypeAdapter[ClientEnvelope] = TypeAdapter(ClientEnvelope)

CLIENT_TYPES = frozenset({"audio", "text", "connection_ack"})


# ---------------------------------------------------------------------------
# Server -> client
# ---------------------------------------------------------------------------


class ProcessingData(_CamelModel):
    step: str
    message: Optional[str] = None
    recognized_text: Optional[str] = Field(default=None, alias="recognizedText")
    audio_url: Optional[str] = Field(default=None, alias="audioUrl")


class ResponseData(_CamelModel):
    text: str
    audio_data: Optional[str] = Field(default=None, alias="audioData")
    audio_url: Optional[str] = Field(default=None, alias="audioUrl")
    original_text: Optional[str] = Field(default=None, alias="originalText")
    emotion: str = "neutral"


class ErrorData(_CamelModel):
    error: str
    step: str
    details: Optional[str] = None


class ServerEnvelope(_CamelModel):
    type: Literal["connection", "processing", "response", "error", "connection_ack_response"]
    data: Any = None
    timestamp: int = Field(default_factory=now_ms)
    message_id: str = Field(default_factory=generate_message_id, alias="messageId")

    def to_wire(self) -> dict[str, Any]:
        data = self.data
        if isinstance(data, BaseModel):
            data = data.model_dump(by_alias=True, exclude_none=True)
        return {
            "type": self.type,
            "data": data,
            "timestamp": self.timestamp,
            "messageId": self.message_id,
        }


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


class SessionStatusResponse(BaseModel):
    """Represents the current state of a chat session."""

    session_id: str
    character_id: str
    scene_id: Optional[str] = None
    status: str
    message_count: int = 0
    last_message_at: Optional[datetime] = None


class MessageView(BaseModel):
    id: Optional[str] = None
    sender: str
    content: str
    message_type: str
    audio_url: Optional[str] = None
    original_text: Optional[str] = None
    voice_type: Optional[str] = None
    created_at: datetime


class MessageListResponse(BaseModel):
    session: SessionStatusResponse
    messages: list[MessageView] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str = "ok"
    store: str
    object_store: str
    active_connections: int = 0
