"""Speech-to-text adapter with format negotiation and retry policy."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from ..errors import PermanentServiceError, TransientServiceError, ValidationError

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = frozenset({"wav", "mp3", "ogg", "raw"})


def normalize_format(fmt: Optional[str]) -> str:
    """Map a container name onto the subset the ASR service accepts.

    Unsupported containers (webm, flac, m4a, ...) are labelled ``wav``; the
    underlying bytes are not re-encoded.
    """

    candidate = (fmt or "").strip().lower()
    return candidate if candidate in SUPPORTED_FORMATS else "wav"


def _service_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("message", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, dict) and isinstance(value.get("message"), str):
                return value["message"]
    return f"HTTP {response.status_code}"


def _extract_text(body: Any) -> str:
    result = body["data"]["result"]
    text = result.get("text") or ""
    if not isinstance(text, str):
        raise TypeError("transcript text is not a string")
    return text.strip()


class TranscriptionAdapter:
    """Wraps the ASR service (``POST {base_url}/voice/asr`` with an audio URL)."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: Optional[str],
        client: Optional[httpx.AsyncClient] = None,
        retries: int = 3,
        base_delay: float = 2.0,
        timeout: float = 60.0,
        model: str = "asr",
    ) -> None:
        self._endpoint = f"{base_url.rstrip('/')}/voice/asr"
        self._api_key = api_key
        self._client = client
        self._retries = max(1, retries)
        self._base_delay = base_delay
        self._timeout = timeout
        self._model = model

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        if self._client is not None:
            return await self._client.post(self._endpoint, json=payload, headers=headers, timeout=self._timeout)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(self._endpoint, json=payload, headers=headers)

    async def transcribe(self, url: str, fmt: Optional[str] = "wav") -> str:
        service_format = normalize_format(fmt)
        payload = {"model": self._model, "audio": {"format": service_format, "url": url}}
        logger.info("Transcribing %s as %s (declared %s)", url, service_format, fmt)

        last_error = "no attempt made"
        last_was_empty = False
        for attempt in range(1, self._retries + 1):
            last_was_empty = False
            try:
                response = await self._post(payload)
            except httpx.HTTPError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning("Transcription attempt %d/%d failed: %s", attempt, self._retries, last_error)
            else:
                status = response.status_code
                if 400 <= status < 500:
                    message = _service_message(response)
                    logger.error("Transcription rejected with %d: %s", status, message)
                    raise PermanentServiceError(f"speech recognition failed: {message}", status_code=status)
                if status >= 500:
                    last_error = f"HTTP {status}: {_service_message(response)}"
                    logger.warning("Transcription attempt %d/%d failed: %s", attempt, self._retries, last_error)
                else:
                    try:
                        text = _extract_text(response.json())
                    except (ValueError, KeyError, TypeError, AttributeError) as exc:
                        last_error = f"malformed response: {exc}"
                        logger.warning("Transcription attempt %d/%d returned %s", attempt, self._retries, last_error)
                    else:
                        if text:
                            logger.info("Transcription succeeded: %r", text[:100])
                            return text
                        last_was_empty = True
                        last_error = "empty transcript"
                        logger.warning("Transcription attempt %d/%d returned no text", attempt, self._retries)

            if attempt < self._retries:
                await asyncio.sleep(attempt * self._base_delay)

        if last_was_empty:
            raise ValidationError("no speech recognized")
        raise TransientServiceError(
            f"speech recognition unavailable after {self._retries} attempts: {last_error}"
        )
