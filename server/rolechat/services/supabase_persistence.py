"""Supabase persistence for sessions, messages and persona lookups."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import replace
from typing import Any, Callable, Optional, TypeVar

from supabase import Client, create_client

from ..errors import PersistenceError
from ..models.records import (
    Character,
    ChatMessage,
    ChatSession,
    Scene,
    character_from_row,
    message_from_row,
    scene_from_row,
    session_from_row,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MESSAGE_COLUMNS = "id,session_id,sender,content,message_type,audio_url,original_text,voice_type,created_at"


class SupabasePersistence:
    """Thin async wrapper around the Supabase client.

    The synchronous client runs in worker threads. Atomic counters go through
    the ``increment_character_usage`` and ``touch_chat_session`` database
    functions.
    """

    def __init__(
        self,
        client: Optional[Client] = None,
        *,
        url: Optional[str] = None,
        service_role_key: Optional[str] = None,
    ) -> None:
        self._client = client
        self._url = url
        self._key = service_role_key
        if client is None and not (url and service_role_key):
            raise RuntimeError("Supabase credentials missing; set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")

    def _ensure_client(self) -> Client:
        if self._client is None:
            self._client = create_client(self._url, self._key)
        return self._client

    @property
    def client(self) -> Client:
        return self._ensure_client()

    async def _execute(self, operation: str, fn: Callable[[Client], Any]) -> Any:
        try:
            return await asyncio.to_thread(lambda: fn(self._ensure_client()))
        except Exception as exc:
            logger.exception("Supabase operation %s failed", operation)
            raise PersistenceError(f"{operation} failed: {exc}") from exc

    @staticmethod
    def _convert(operation: str, convert: Callable[[dict[str, Any]], T], rows: list[dict[str, Any]]) -> list[T]:
        try:
            return [convert(row) for row in rows]
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Supabase operation %s returned an unreadable row: %s", operation, exc)
            raise PersistenceError(f"{operation} returned an unreadable row: {exc}") from exc

    @staticmethod
    def _filter_none(data: dict[str, Any]) -> dict[str, Any]:
        return {key: value for key, value in data.items() if value is not None}

    @staticmethod
    def _rows(result: Any) -> list[dict[str, Any]]:
        data = getattr(result, "data", None)
        if isinstance(data, list):
            return [row for row in data if isinstance(row, dict)]
        return []

    async def _first(self, operation: str, table: str, row_id: str) -> Optional[dict[str, Any]]:
        result = await self._execute(
            operation,
            lambda client: client.table(table).select("*").eq("id", row_id).limit(1).execute(),
        )
        rows = self._rows(result)
        return rows[0] if rows else None

    async def get_character_by_id(self, character_id: str) -> Optional[Character]:
        row = await self._first("get_character_by_id", "characters", character_id)
        return self._convert("get_character_by_id", character_from_row, [row])[0] if row else None

    async def get_scene_by_id(self, scene_id: str) -> Optional[Scene]:
        row = await self._first("get_scene_by_id", "scenes", scene_id)
        return self._convert("get_scene_by_id", scene_from_row, [row])[0] if row else None

    async def get_chat_session(self, session_id: str) -> Optional[ChatSession]:
        row = await self._first("get_chat_session", "chat_sessions", session_id)
        return self._convert("get_chat_session", session_from_row, [row])[0] if row else None

    async def get_recent_messages(self, session_id: str, limit: int) -> list[ChatMessage]:
        """Return up to ``limit`` latest messages, oldest first."""

        if limit <= 0:
            return []
        result = await self._execute(
            "get_recent_messages",
            lambda client: client.table("chat_messages")
            .select(MESSAGE_COLUMNS)
            .eq("session_id", session_id)
            .order("created_at", desc=True)
            .limit(limit)
            .execute(),
        )
        rows = self._rows(result)
        rows.reverse()
        return self._convert("get_recent_messages", message_from_row, rows)

    async def list_messages(self, session_id: str, limit: int = 50, offset: int = 0) -> list[ChatMessage]:
        result = await self._execute(
            "list_messages",
            lambda client: client.table("chat_messages")
            .select(MESSAGE_COLUMNS)
            .eq("session_id", session_id)
            .order("created_at")
            .range(offset, offset + limit - 1)
            .execute(),
        )
        return self._convert("list_messages", message_from_row, self._rows(result))

    async def append_message(self, message: ChatMessage) -> str:
        """Insert a message row and return its id."""

        stored = replace(message, id=message.id or str(uuid.uuid4()))
        payload = self._filter_none(stored.to_row())
        await self._execute(
            "append_message",
            lambda client: client.table("chat_messages").insert(payload).execute(),
        )
        logger.info("Saved %s message %s for session %s", stored.sender, stored.id, stored.session_id)
        return stored.id

    async def touch_session(self, session_id: str, added: int) -> None:
        await self._execute(
            "touch_session",
            lambda client: client.rpc("touch_chat_session", {"session_id": session_id, "added": added}).execute(),
        )

    async def bump_usage_count(self, character_id: str) -> None:
        await self._execute(
            "bump_usage_count",
            lambda client: client.rpc("increment_character_usage", {"character_id": character_id}).execute(),
        )
