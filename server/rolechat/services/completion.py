"""Reply generation through an OpenAI-compatible chat completions API."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "Sorry, I can't answer that right now. Please try again in a moment."


@dataclass(slots=True)
class CompletionResult:
    text: str
    degraded: bool = False


class CompletionAdapter:
    """Calls the completion service and degrades to ``FALLBACK_REPLY`` on any failure."""

    def __init__(
        self,
        *,
        model: str = "deepseek-chat",
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        max_tokens: int = 800,
        temperature: float = 0.7,
        timeout: float = 30.0,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._base_url = base_url
        self._client = client
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._timeout = timeout

    def _ensure_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self._api_key:
                # AsyncOpenAI would otherwise pick up OPENAI_API_KEY for any base URL.
                raise RuntimeError("completion API key is not configured")
            self._client = AsyncOpenAI(
                api_key=self._api_key,
                base_url=self._base_url,
                timeout=self._timeout,
                max_retries=1,
            )
        return self._client

    async def complete(self, context: list[dict[str, str]]) -> CompletionResult:
        try:
            client = self._ensure_client()
            completion = await client.chat.completions.create(
                model=self._model,
                messages=context,
                max_tokens=self._max_tokens,
                temperature=self._temperature,
                stream=False,
            )
            text = self._extract_text(completion)
        except Exception as exc:
            logger.warning("Completion call failed; using fallback reply: %s", exc)
            return CompletionResult(FALLBACK_REPLY, degraded=True)

        if not text:
            logger.warning("Completion returned no usable choice; using fallback reply")
            return CompletionResult(FALLBACK_REPLY, degraded=True)
        logger.info("Completion reply: %r", text[:200])
        return CompletionResult(text)

    @staticmethod
    def _extract_text(completion: Any) -> str:
        choices = getattr(completion, "choices", None) or []
        if not choices:
            return ""
        message = getattr(choices[0], "message", None)
        content = getattr(message, "content", None) or ""
        return content.strip() if isinstance(content, str) else ""
