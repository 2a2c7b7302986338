"""Turn orchestration: drives one inbound envelope through the conversational pipeline."""
from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from ..errors import NotFoundError, PipelineError, ValidationError
from ..models.records import ChatMessage, ChatSession, MessageType, Sender, SessionStatus
from ..models.schemas import (
    AudioEnvelope,
    ErrorData,
    ProcessingData,
    ResponseData,
    ServerEnvelope,
    TextEnvelope,
)
from . import audio_ingestion
from .completion import CompletionAdapter
from .context import ContextAssembler
from .storage import StorageUploader
from .store import DurableStore
from .synthesis import SynthesisAdapter
from .transcription import TranscriptionAdapter

logger = logging.getLogger(__name__)

Emit = Callable[[ServerEnvelope], Awaitable[None]]
TurnEnvelope = Union[AudioEnvelope, TextEnvelope]


class TurnState(Enum):
    """States a turn moves through; FAILED is reachable from any non-terminal state."""

    INGESTING = "ingesting"
    UPLOADING = "uploading"
    TRANSCRIBING = "transcribing"
    CONTEXT_BUILDING = "context_building"
    COMPLETING = "completing"
    PERSISTING_USER = "persisting_user"
    PERSISTING_REPLY = "persisting_reply"
    SYNTHESIZING = "synthesizing"
    RESPONDING = "responding"
    DONE = "done"
    FAILED = "failed"


class TurnOrigin(Enum):
    TEXT = "text"
    AUDIO = "audio"


# States that announce themselves to the client with a ``processing`` envelope.
PROGRESS_MESSAGES = {
    TurnState.INGESTING: "Checking your message...",
    TurnState.UPLOADING: "Saving audio...",
    TurnState.TRANSCRIBING: "Recognizing speech...",
    TurnState.CONTEXT_BUILDING: "Recalling the conversation...",
    TurnState.COMPLETING: "Thinking of a reply...",
    TurnState.SYNTHESIZING: "Generating voice...",
}


@dataclass
class Turn:
    """In-flight unit of work for one inbound envelope. Never persisted."""

    message_id: str
    origin: TurnOrigin
    session_id: Optional[str] = None
    voice_type: Optional[str] = None
    character_override: Optional[str] = None
    raw_input: Optional[str] = None
    audio: Optional[bytes] = None
    detected_format: Optional[audio_ingestion.FormatTag] = None
    audio_format: Optional[str] = None
    audio_url: Optional[str] = None
    transcript: Optional[str] = None
    user_text: Optional[str] = None
    session: Optional[ChatSession] = None
    context: list[dict[str, str]] = field(default_factory=list)
    reply: Optional[str] = None
    reply_degraded: bool = False
    speech_audio: Optional[str] = None
    speech_degraded: bool = False
    state: TurnState = TurnState.INGESTING
    error: Optional[BaseException] = None

    @property
    def failed(self) -> bool:
        return self.state is TurnState.FAILED


class TurnOrchestrator:
    """Sequences ingestion, transcription, context, completion, persistence and synthesis.

    Upload, completion and synthesis failures are degraded; every other failure
    aborts the turn with exactly one ``error`` envelope and no ``response``.
    """

    def __init__(
        self,
        *,
        store: DurableStore,
        uploader: StorageUploader,
        transcriber: TranscriptionAdapter,
        assembler: ContextAssembler,
        completer: CompletionAdapter,
        synthesizer: SynthesisAdapter,
        debug: bool = False,
    ) -> None:
        self._store = store
        self._uploader = uploader
        self._transcriber = transcriber
        self._assembler = assembler
        self._completer = completer
        self._synthesizer = synthesizer
        self._debug = debug

    async def handle(self, envelope: TurnEnvelope, emit: Emit) -> Turn:
        if isinstance(envelope, AudioEnvelope):
            turn = Turn(
                message_id=envelope.message_id,
                origin=TurnOrigin.AUDIO,
                session_id=envelope.data.session_id,
                voice_type=envelope.data.voice_type,
                raw_input=envelope.data.audio_data,
                audio_format=envelope.data.format,
            )
        else:
            turn = Turn(
                message_id=envelope.message_id,
                origin=TurnOrigin.TEXT,
                session_id=envelope.data.session_id,
                voice_type=envelope.data.voice_type,
                character_override=envelope.data.character_id,
                raw_input=envelope.data.text,
            )
        return await self.run(turn, emit)

    async def run(self, turn: Turn, emit: Emit) -> Turn:
        logger.info(f"[Turn {turn.message_id}] Starting {turn.origin.value} turn for session {turn.session_id}")
        try:
            await self._enter(turn, TurnState.INGESTING, emit)
            self._ingest(turn)

            if turn.origin is TurnOrigin.AUDIO:
                await self._enter(turn, TurnState.UPLOADING, emit)
                await self._upload(turn)
                await self._enter(turn, TurnState.TRANSCRIBING, emit)
                await self._transcribe(turn, emit)

            await self._enter(turn, TurnState.CONTEXT_BUILDING, emit)
            await self._build_context(turn)

            await self._enter(turn, TurnState.COMPLETING, emit)
            await self._complete(turn)

            await self._enter(turn, TurnState.PERSISTING_USER, emit)
            await self._persist_user(turn)

            await self._enter(turn, TurnState.PERSISTING_REPLY, emit)
            await self._persist_reply(turn)

            if turn.voice_type:
                await self._enter(turn, TurnState.SYNTHESIZING, emit)
                await self._synthesize(turn)

            await self._enter(turn, TurnState.RESPONDING, emit)
            await emit(self._response_envelope(turn))
        except Exception as exc:
            await self._fail(turn, exc, emit)
            return turn

        self._set_state(turn, TurnState.DONE)
        return turn

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------

    def _set_state(self, turn: Turn, state: TurnState) -> None:
        old_state = turn.state
        turn.state = state
        logger.debug(f"[Turn {turn.message_id}] State: {old_state.value} -> {state.value}")

    async def _enter(self, turn: Turn, state: TurnState, emit: Emit) -> None:
        self._set_state(turn, state)
        message = PROGRESS_MESSAGES.get(state)
        if message:
            await emit(
                ServerEnvelope(
                    type="processing",
                    data=ProcessingData(step=state.value, message=message),
                    message_id=turn.message_id,
                )
            )

    async def _fail(self, turn: Turn, exc: Exception, emit: Emit) -> None:
        step = turn.state.value
        turn.error = exc
        if isinstance(exc, PipelineError):
            logger.warning(f"[Turn {turn.message_id}] Failed at {step}: {exc.message}")
            message = exc.message
            details = exc.details
        else:
            logger.exception(f"[Turn {turn.message_id}] Unexpected failure at {step}")
            message = str(exc) or type(exc).__name__
            details = None
        if self._debug and details is None:
            details = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        self._set_state(turn, TurnState.FAILED)
        await emit(
            ServerEnvelope(
                type="error",
                data=ErrorData(error=message, step=step, details=details),
                message_id=turn.message_id,
            )
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _ingest(self, turn: Turn) -> None:
        if not turn.session_id or not turn.session_id.strip():
            raise ValidationError("missing session id")
        turn.session_id = turn.session_id.strip()

        if turn.origin is TurnOrigin.TEXT:
            text = (turn.raw_input or "").strip()
            if not text:
                raise ValidationError("message text is empty")
            turn.user_text = text
            return

        if not turn.raw_input:
            raise ValidationError("missing audio data")
        turn.audio = audio_ingestion.decode(turn.raw_input)
        turn.detected_format = audio_ingestion.detect_format(turn.audio)
        turn.audio_format = audio_ingestion.resolve_format(turn.detected_format, turn.audio_format)
        logger.info(
            f"[Turn {turn.message_id}] Decoded {len(turn.audio)} bytes "
            f"(detected={turn.detected_format.value}, using={turn.audio_format})"
        )

    async def _upload(self, turn: Turn) -> None:
        turn.audio_url = await self._uploader.upload(turn.audio, f"audio.{turn.audio_format}")

    async def _transcribe(self, turn: Turn, emit: Emit) -> None:
        transcript = await self._transcriber.transcribe(turn.audio_url, turn.audio_format)
        if not transcript or not transcript.strip():
            raise ValidationError("no speech recognized")
        turn.transcript = transcript.strip()
        turn.user_text = turn.transcript
        await emit(
            ServerEnvelope(
                type="processing",
                data=ProcessingData(
                    step="text_recognized",
                    recognized_text=turn.transcript,
                    audio_url=turn.audio_url,
                ),
                message_id=turn.message_id,
            )
        )

    async def _build_context(self, turn: Turn) -> None:
        session = await self._store.get_chat_session(turn.session_id)
        if session is None or session.status is SessionStatus.DELETED:
            raise NotFoundError("session", turn.session_id)
        turn.session = session
        character_id = turn.character_override or session.character_id
        turn.context = await self._assembler.build_context(
            character_id, session.scene_id, session.id, turn.user_text
        )

    async def _complete(self, turn: Turn) -> None:
        result = await self._completer.complete(turn.context)
        turn.reply = result.text
        turn.reply_degraded = result.degraded
        if result.degraded:
            logger.warning(f"[Turn {turn.message_id}] Reply degraded to fallback text")

    async def _persist_user(self, turn: Turn) -> None:
        if turn.origin is TurnOrigin.AUDIO:
            message = ChatMessage(
                session_id=turn.session.id,
                sender=Sender.USER.value,
                content=turn.transcript,
                message_type=MessageType.VOICE.value,
                audio_url=turn.audio_url,
                original_text=turn.transcript,
            )
        else:
            message = ChatMessage(
                session_id=turn.session.id,
                sender=Sender.USER.value,
                content=turn.user_text,
                message_type=MessageType.TEXT.value,
            )
        await self._store.append_message(message)

    async def _persist_reply(self, turn: Turn) -> None:
        session = turn.session
        await self._store.append_message(
            ChatMessage(
                session_id=session.id,
                sender=Sender.CHARACTER.value,
                content=turn.reply,
                message_type=MessageType.TEXT.value,
                voice_type=turn.voice_type,
            )
        )
        # Both sides of the exchange are stored; counter updates are bookkeeping only.
        try:
            await self._store.touch_session(session.id, 2)
            if session.message_count == 0:
                await self._store.bump_usage_count(turn.character_override or session.character_id)
        except PipelineError as exc:
            logger.warning(f"[Turn {turn.message_id}] Session bookkeeping failed: {exc.message}")

    async def _synthesize(self, turn: Turn) -> None:
        result = await self._synthesizer.synthesize(turn.reply, turn.voice_type)
        turn.speech_audio = result.audio
        turn.speech_degraded = result.degraded
        if result.degraded:
            logger.warning(f"[Turn {turn.message_id}] Synthesis unavailable; responding without audio")

    def _response_envelope(self, turn: Turn) -> ServerEnvelope:
        data = ResponseData(text=turn.reply, audio_data=turn.speech_audio)
        if turn.origin is TurnOrigin.AUDIO:
            data.audio_url = turn.audio_url
            data.original_text = turn.transcript
        return ServerEnvelope(type="response", data=data, message_id=turn.message_id)
