"""Durable store contract consumed by the pipeline, plus an in-process implementation."""
from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from typing import Optional, Protocol

from ..models.records import Character, ChatMessage, ChatSession, Scene, utcnow

logger = logging.getLogger(__name__)


class DurableStore(Protocol):
    """Reads and writes the turn pipeline performs against persistent storage."""

    async def get_character_by_id(self, character_id: str) -> Optional[Character]: ...

    async def get_scene_by_id(self, scene_id: str) -> Optional[Scene]: ...

    async def get_chat_session(self, session_id: str) -> Optional[ChatSession]: ...

    async def get_recent_messages(self, session_id: str, limit: int) -> list[ChatMessage]: ...

    async def list_messages(self, session_id: str, limit: int = 50, offset: int = 0) -> list[ChatMessage]: ...

    async def append_message(self, message: ChatMessage) -> str: ...

    async def touch_session(self, session_id: str, added: int) -> None: ...

    async def bump_usage_count(self, character_id: str) -> None: ...


class InMemoryStore:
    """Process-local store used for development and tests.

    Messages are kept per session in insertion order, which is also their
    chronological order.
    """

    def __init__(self) -> None:
        self.characters: dict[str, Character] = {}
        self.scenes: dict[str, Scene] = {}
        self.sessions: dict[str, ChatSession] = {}
        self.messages: dict[str, list[ChatMessage]] = {}
        self.usage_counts: dict[str, int] = {}

    def add_character(self, character: Character) -> Character:
        self.characters[character.id] = character
        return character

    def add_scene(self, scene: Scene) -> Scene:
        self.scenes[scene.id] = scene
        return scene

    def add_session(self, session: ChatSession) -> ChatSession:
        self.sessions[session.id] = session
        self.messages.setdefault(session.id, [])
        return session

    async def get_character_by_id(self, character_id: str) -> Optional[Character]:
        return self.characters.get(character_id)

    async def get_scene_by_id(self, scene_id: str) -> Optional[Scene]:
        return self.scenes.get(scene_id)

    async def get_chat_session(self, session_id: str) -> Optional[ChatSession]:
        session = self.sessions.get(session_id)
        return replace(session) if session else None

    async def get_recent_messages(self, session_id: str, limit: int) -> list[ChatMessage]:
        if limit <= 0:
            return []
        return list(self.messages.get(session_id, [])[-limit:])

    async def list_messages(self, session_id: str, limit: int = 50, offset: int = 0) -> list[ChatMessage]:
        return list(self.messages.get(session_id, [])[offset : offset + limit])

    async def append_message(self, message: ChatMessage) -> str:
        stored = replace(message, id=message.id or str(uuid.uuid4()))
        self.messages.setdefault(stored.session_id, []).append(stored)
        logger.debug("Stored %s message %s for session %s", stored.sender, stored.id, stored.session_id)
        return stored.id

    async def touch_session(self, session_id: str, added: int) -> None:
        session = self.sessions.get(session_id)
        if session is None:
            return
        session.message_count += added
        session.last_message_at = utcnow()

    async def bump_usage_count(self, character_id: str) -> None:
        self.usage_counts[character_id] = self.usage_counts.get(character_id, 0) + 1
