from __future__ import annotations

import json

import httpx
import pytest

from conftest import run
from rolechat.errors import PermanentServiceError, TransientServiceError, ValidationError
from rolechat.services.transcription import TranscriptionAdapter, normalize_format


class ScriptedService:
    """Replays canned ASR responses and records each request body."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


def _ok(text: str) -> httpx.Response:
    return httpx.Response(200, json={"data": {"result": {"text": text}}})


def _adapter(service: ScriptedService, retries: int = 3) -> tuple[TranscriptionAdapter, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(service))
    adapter = TranscriptionAdapter(
        base_url="https://asr.example.com/v1/",
        api_key="secret",
        client=client,
        retries=retries,
        base_delay=0,
    )
    return adapter, client


def _transcribe(service: ScriptedService, fmt: str = "wav", retries: int = 3) -> str:
    async def _go() -> str:
        adapter, client = _adapter(service, retries)
        async with client:
            return await adapter.transcribe("https://objects.example.com/audio/1.wav", fmt)

    return run(_go())


@pytest.mark.parametrize(
    ("declared", "expected"),
    [("wav", "wav"), ("MP3", "mp3"), ("ogg", "ogg"), ("raw", "raw"), ("webm", "wav"), ("flac", "wav"), ("m4a", "wav"), (None, "wav")],
)
def test_normalize_format(declared, expected: str) -> None:  # noqa: ANN001
    assert normalize_format(declared) == expected


def test_transcribe_success_sends_normalized_format() -> None:
    service = ScriptedService(_ok("  hello there  "))

    assert _transcribe(service, fmt="webm") == "hello there"
    assert service.requests == [
        {"model": "asr", "audio": {"format": "wav", "url": "https://objects.example.com/audio/1.wav"}}
    ]


def test_client_error_aborts_after_one_attempt() -> None:
    service = ScriptedService(httpx.Response(400, json={"message": "unsupported audio url"}))

    with pytest.raises(PermanentServiceError, match="unsupported audio url") as excinfo:
        _transcribe(service)

    assert len(service.requests) == 1
    assert excinfo.value.status_code == 400


def test_server_error_retries_up_to_ceiling() -> None:
    service = ScriptedService(httpx.Response(503, json={"error": "overloaded"}))

    with pytest.raises(TransientServiceError):
        _transcribe(service, retries=3)

    assert len(service.requests) == 3


def test_server_error_then_success_recovers() -> None:
    service = ScriptedService(httpx.Response(502), _ok("recovered"))

    assert _transcribe(service) == "recovered"
    assert len(service.requests) == 2


def test_empty_transcript_after_retries_is_validation_error() -> None:
    service = ScriptedService(_ok(""))

    with pytest.raises(ValidationError, match="no speech recognized"):
        _transcribe(service, retries=2)

    assert len(service.requests) == 2


def test_malformed_response_is_transient() -> None:
    service = ScriptedService(httpx.Response(200, json={"unexpected": True}))

    with pytest.raises(TransientServiceError, match="malformed"):
        _transcribe(service, retries=2)


def test_network_failure_is_transient() -> None:
    def _boom(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def _go() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(_boom)) as client:
            adapter = TranscriptionAdapter(base_url="https://asr.example.com", api_key=None, client=client, base_delay=0)
            await adapter.transcribe("https://objects.example.com/a.wav", "wav")

    with pytest.raises(TransientServiceError, match="ConnectError"):
        run(_go())
