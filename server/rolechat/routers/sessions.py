"""Read-only session endpoints backed by the durable store."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request

from ..errors import PersistenceError
from ..models import schemas
from ..models.records import ChatSession, SessionStatus
from ..services.store import DurableStore

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


def _store(request: Request) -> DurableStore:
    return request.app.state.store


def _status(session: ChatSession) -> schemas.SessionStatusResponse:
    return schemas.SessionStatusResponse(
        session_id=session.id,
        character_id=session.character_id,
        scene_id=session.scene_id,
        status=session.status.value,
        message_count=session.message_count,
        last_message_at=session.last_message_at,
    )


async def _load_session(store: DurableStore, session_id: str) -> ChatSession:
    try:
        session = await store.get_chat_session(session_id)
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail=exc.message) from exc
    if session is None or session.status is SessionStatus.DELETED:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@router.get("/{session_id}", response_model=schemas.SessionStatusResponse)
async def get_session_status(session_id: str, request: Request) -> schemas.SessionStatusResponse:
    """Return the current status for the requested session."""

    return _status(await _load_session(_store(request), session_id))


@router.get("/{session_id}/messages", response_model=schemas.MessageListResponse)
async def get_session_messages(
    session_id: str,
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
) -> schemas.MessageListResponse:
    """Return the session transcript, oldest first, one page at a time."""

    store = _store(request)
    session = await _load_session(store, session_id)
    try:
        messages = await store.list_messages(session_id, limit=limit, offset=(page - 1) * limit)
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail=exc.message) from exc
    return schemas.MessageListResponse(
        session=_status(session),
        messages=[
            schemas.MessageView(
                id=message.id,
                sender=message.sender,
                content=message.content,
                message_type=message.message_type,
                audio_url=message.audio_url,
                original_text=message.original_text,
                voice_type=message.voice_type,
                created_at=message.created_at,
            )
            for message in messages
        ],
    )
