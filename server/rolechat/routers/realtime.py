"""Realtime chat websocket endpoints."""
from __future__ import annotations

from fastapi import APIRouter, WebSocket

router = APIRouter(tags=["realtime"])


@router.websocket("/ws/chat")
@router.websocket("/ws")
async def chat_gateway(websocket: WebSocket) -> None:
    """Hand the connection to the channel gateway for its whole lifetime.

    Clients exchange ``{type, data, timestamp, messageId}`` envelopes; see
    ``rolechat.models.schemas`` for the payload shapes.
    """

    await websocket.app.state.gateway.serve(websocket)
