from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import pytest

from rolechat.models.records import Character, ChatSession, Scene
from rolechat.models.schemas import ServerEnvelope
from rolechat.services.completion import FALLBACK_REPLY, CompletionResult
from rolechat.services.context import ContextAssembler
from rolechat.services.orchestration import TurnOrchestrator
from rolechat.services.storage import StorageUploader
from rolechat.services.store import InMemoryStore
from rolechat.services.synthesis import SynthesisResult

WAV_BYTES = b"RIFF" + b"\x24\x00\x00\x00" + b"WAVE" + b"fmt " + b"\x00" * 40


def run(coro):  # noqa: ANN001
    return asyncio.run(coro)


class RecordingEmitter:
    """Collects every envelope the orchestrator emits."""

    def __init__(self) -> None:
        self.envelopes: list[ServerEnvelope] = []

    async def __call__(self, envelope: ServerEnvelope) -> None:
        self.envelopes.append(envelope)

    @property
    def types(self) -> list[str]:
        return [envelope.type for envelope in self.envelopes]

    def of_type(self, kind: str) -> list[dict]:
        return [envelope.to_wire()["data"] for envelope in self.envelopes if envelope.type == kind]


class FakeCompleter:
    def __init__(self, reply: Optional[str] = None, degraded: bool = False) -> None:
        self.reply = reply
        self.degraded = degraded
        self.contexts: list[list[dict[str, str]]] = []

    async def complete(self, context: list[dict[str, str]]) -> CompletionResult:
        self.contexts.append(context)
        if self.degraded:
            return CompletionResult(FALLBACK_REPLY, degraded=True)
        return CompletionResult(self.reply or f"reply to {context[-1]['content']}")


class FakeTranscriber:
    def __init__(self, text: str = "hello from audio", error: Optional[Exception] = None) -> None:
        self.text = text
        self.error = error
        self.calls: list[tuple[str, Optional[str]]] = []

    async def transcribe(self, url: str, fmt: Optional[str] = "wav") -> str:
        self.calls.append((url, fmt))
        if self.error is not None:
            raise self.error
        return self.text


class FakeSynthesizer:
    def __init__(self, audio: Optional[str] = "bXAzZGF0YQ==") -> None:
        self.audio = audio
        self.calls: list[tuple[str, str]] = []

    async def synthesize(self, text: str, voice_id: str) -> SynthesisResult:
        self.calls.append((text, voice_id))
        return SynthesisResult(self.audio)


class FakeObjectStore:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.objects: dict[str, bytes] = {}
        self.put_calls = 0
        self.deleted: list[str] = []

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        self.put_calls += 1
        if self.put_calls <= self.failures:
            raise ConnectionError("object store unreachable")
        self.objects[key] = data
        return f"https://objects.example.com/{key}"

    async def head(self, key: str) -> dict:
        return {"size": len(self.objects[key])}

    async def list(self, prefix: str) -> list[str]:
        return [key for key in self.objects if key.startswith(prefix)]

    async def delete(self, key: str) -> None:
        self.objects.pop(key, None)
        self.deleted.append(key)


@pytest.fixture
def store() -> InMemoryStore:
    memory = InMemoryStore()
    memory.add_character(
        Character(id="char-1", name="Sherlock", system_prompt="You are Sherlock Holmes.", voice_type="voice-a")
    )
    memory.add_character(Character(id="char-2", name="Watson", system_prompt="You are Dr. Watson."))
    memory.add_scene(Scene(id="scene-1", name="Baker Street", background_prompt="A foggy evening at 221B."))
    memory.add_session(ChatSession(id="sess-1", user_id="user-1", character_id="char-1"))
    memory.add_session(ChatSession(id="sess-2", user_id="user-1", character_id="char-1", scene_id="scene-1"))
    return memory


@pytest.fixture
def uploader(tmp_path: Path) -> StorageUploader:
    return StorageUploader(
        FakeObjectStore(),
        scratch_dir=tmp_path / "scratch",
        public_base_url="http://localhost:8082",
        retries=3,
        base_delay=0,
    )


@pytest.fixture
def completer() -> FakeCompleter:
    return FakeCompleter()


@pytest.fixture
def transcriber() -> FakeTranscriber:
    return FakeTranscriber()


@pytest.fixture
def synthesizer() -> FakeSynthesizer:
    return FakeSynthesizer()


@pytest.fixture
def orchestrator(store, uploader, transcriber, completer, synthesizer) -> TurnOrchestrator:  # noqa: ANN001
    return TurnOrchestrator(
        store=store,
        uploader=uploader,
        transcriber=transcriber,
        assembler=ContextAssembler(store, history_limit=4),
        completer=completer,
        synthesizer=synthesizer,
    )

