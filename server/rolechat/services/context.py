"""Assemble the ordered prompt context for a turn."""
from __future__ import annotations

import logging
from typing import Optional

from ..errors import NotFoundError
from ..models.records import Sender
from .store import DurableStore

logger = logging.getLogger(__name__)

_ROLE_FOR_SENDER = {
    Sender.USER.value: "user",
    Sender.CHARACTER.value: "assistant",
}


class ContextAssembler:
    """Builds ``[system, *history, current user turn]`` role/content pairs."""

    def __init__(self, store: DurableStore, *, history_limit: int = 4) -> None:
        self._store = store
        self._history_limit = history_limit

    async def system_prompt(self, character_id: str, scene_id: Optional[str]) -> str:
        character = await self._store.get_character_by_id(character_id)
        if character is None:
            raise NotFoundError("character", character_id)

        prompt = character.system_prompt
        if scene_id:
            scene = await self._store.get_scene_by_id(scene_id)
            if scene is None:
                raise NotFoundError("scene", scene_id)
            prompt += f"\n\nScene: {scene.background_prompt}"
        return prompt

    async def history(self, session_id: str) -> list[dict[str, str]]:
        messages = await self._store.get_recent_messages(session_id, self._history_limit)
        entries = []
        for message in messages:
            role = _ROLE_FOR_SENDER.get(message.sender)
            if role is None or not message.content:
                logger.debug("Skipping history message %s (sender=%r)", message.id, message.sender)
                continue
            entries.append({"role": role, "content": message.content})
        return entries

    async def build_context(
        self,
        character_id: str,
        scene_id: Optional[str],
        session_id: Optional[str],
        current_text: str,
    ) -> list[dict[str, str]]:
        context = [{"role": "system", "content": await self.system_prompt(character_id, scene_id)}]
        if session_id:
            context.extend(await self.history(session_id))
        context.append({"role": "user", "content": current_text})
        logger.info("Built context with %d entries for session %s", len(context), session_id)
        return context
