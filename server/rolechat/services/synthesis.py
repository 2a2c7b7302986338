"""Best-effort text-to-speech adapter."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SynthesisResult:
    audio: Optional[str]  # base64 encoded mp3

    @property
    def degraded(self) -> bool:
        return self.audio is None


def truncate_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


class SynthesisAdapter:
    """Wraps the TTS service (``POST {base_url}/voice/tts``). Never retries, never raises."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: Optional[str],
        client: Optional[httpx.AsyncClient] = None,
        max_chars: int = 500,
        timeout: float = 30.0,
        encoding: str = "mp3",
        speed_ratio: float = 1.0,
    ) -> None:
        self._endpoint = f"{base_url.rstrip('/')}/voice/tts"
        self._api_key = api_key
        self._client = client
        self._max_chars = max_chars
        self._timeout = timeout
        self._encoding = encoding
        self._speed_ratio = speed_ratio

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        if self._client is not None:
            return await self._client.post(self._endpoint, json=payload, headers=headers, timeout=self._timeout)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(self._endpoint, json=payload, headers=headers)

    async def synthesize(self, text: str, voice_id: str) -> SynthesisResult:
        if not text or not text.strip():
            logger.info("Skipping synthesis for empty text")
            return SynthesisResult(None)

        payload = {
            "audio": {"voice_type": voice_id, "encoding": self._encoding, "speed_ratio": self._speed_ratio},
            "request": {"text": truncate_text(text, self._max_chars)},
        }
        try:
            response = await self._post(payload)
            response.raise_for_status()
            audio = response.json().get("data")
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.warning("Speech synthesis failed for voice %s: %s", voice_id, exc)
            return SynthesisResult(None)

        if not isinstance(audio, str) or not audio:
            logger.warning("Speech synthesis response carried no audio")
            return SynthesisResult(None)
        logger.info("Synthesized %d chars of base64 audio with voice %s", len(audio), voice_id)
        return SynthesisResult(audio)
