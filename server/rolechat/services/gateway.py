"""Websocket channel gateway: envelope parsing and per-connection turn queues."""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Optional, Union

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError

from ..models.schemas import (
    CLIENT_TYPES,
    ConnectionAckEnvelope,
    EnvelopeHeader,
    ErrorData,
    ServerEnvelope,
    client_envelope_adapter,
)
from .orchestration import TurnEnvelope, TurnOrchestrator

logger = logging.getLogger(__name__)

# A rejected envelope travels the turn queue as its prebuilt error so it keeps arrival order.
InboundItem = Union[TurnEnvelope, ServerEnvelope]


class ClientConnection:
    """One websocket plus its ordered inbound turn queue and outbound envelope queue."""

    def __init__(self, connection_id: str, websocket: WebSocket) -> None:
        self.connection_id = connection_id
        self.websocket = websocket
        self.inbound: asyncio.Queue[Optional[InboundItem]] = asyncio.Queue()
        self.outbound: asyncio.Queue[Optional[ServerEnvelope]] = asyncio.Queue()
        self.closed = False
        self.writer_task: Optional[asyncio.Task[None]] = None
        self.worker_task: Optional[asyncio.Task[None]] = None

    async def emit(self, envelope: ServerEnvelope) -> None:
        if self.closed:
            logger.debug(
                f"[Session {self.connection_id}] Dropping {envelope.type} envelope for closed connection"
            )
            return
        self.outbound.put_nowait(envelope)

    def discard_pending(self) -> int:
        dropped = 0
        while True:
            try:
                item = self.inbound.get_nowait()
            except asyncio.QueueEmpty:
                return dropped
            if item is not None:
                dropped += 1


class ChannelGateway:
    """Owns live connections and feeds their turns to the orchestrator one at a time."""

    def __init__(self, orchestrator: TurnOrchestrator) -> None:
        self._orchestrator = orchestrator
        self.connections: dict[str, ClientConnection] = {}

    @property
    def active_connections(self) -> int:
        return len(self.connections)

    async def connect(self, websocket: WebSocket) -> ClientConnection:
        await websocket.accept()
        connection = ClientConnection(uuid.uuid4().hex[:12], websocket)
        self.connections[connection.connection_id] = connection
        connection.writer_task = asyncio.create_task(self._write_loop(connection))
        connection.worker_task = asyncio.create_task(self._turn_loop(connection))
        await connection.emit(ServerEnvelope(type="connection", data={"status": "connected"}))
        logger.info(f"[Session {connection.connection_id}] Client connected")
        return connection

    async def disconnect(self, connection: ClientConnection) -> None:
        if self.connections.pop(connection.connection_id, None) is None:
            return
        connection.closed = True
        dropped = connection.discard_pending()
        # The in-flight turn (if any) runs to completion; its envelopes are dropped.
        connection.inbound.put_nowait(None)
        if connection.writer_task is not None:
            connection.writer_task.cancel()
        logger.info(f"[Session {connection.connection_id}] Client disconnected; discarded {dropped} queued turns")

    async def serve(self, websocket: WebSocket) -> None:
        """Run one websocket connection until the transport closes."""

        connection = await self.connect(websocket)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    logger.info(f"[Session {connection.connection_id}] Ignoring binary frame")
                    continue
                await self.dispatch(connection, raw)
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception(f"[Session {connection.connection_id}] Websocket transport error")
        finally:
            await self.disconnect(connection)

    async def dispatch(self, connection: ClientConnection, raw: str) -> None:
        """Validate one inbound frame and route it."""

        try:
            payload: Any = json.loads(raw)
        except ValueError:
            logger.warning(f"[Session {connection.connection_id}] Dropping non-JSON frame")
            return
        if not isinstance(payload, dict):
            logger.warning(f"[Session {connection.connection_id}] Dropping non-object frame")
            return

        try:
            header = EnvelopeHeader.model_validate(payload)
        except PydanticValidationError as exc:
            logger.warning(
                f"[Session {connection.connection_id}] Dropping malformed envelope: {exc.error_count()} errors"
            )
            return

        logger.info(
            f"[Session {connection.connection_id}] Received {header.type} envelope {header.message_id}"
        )
        if header.type not in CLIENT_TYPES:
            logger.warning(f"[Session {connection.connection_id}] Dropping unknown envelope type {header.type!r}")
            return

        try:
            envelope = client_envelope_adapter.validate_python(payload)
        except PydanticValidationError as exc:
            connection.inbound.put_nowait(
                ServerEnvelope(
                    type="error",
                    data=ErrorData(
                        error=f"invalid {header.type} payload",
                        step="ingesting",
                        details=str(exc),
                    ),
                    message_id=header.message_id,
                )
            )
            return

        if isinstance(envelope, ConnectionAckEnvelope):
            await connection.emit(
                ServerEnvelope(type="connection_ack_response", data={"status": "acknowledged"})
            )
            return

        connection.inbound.put_nowait(envelope)

    async def _turn_loop(self, connection: ClientConnection) -> None:
        while True:
            envelope = await connection.inbound.get()
            if envelope is None:
                return
            if isinstance(envelope, ServerEnvelope):
                await connection.emit(envelope)
                continue
            try:
                await self._orchestrator.handle(envelope, connection.emit)
            except Exception:
                logger.exception(
                    f"[Session {connection.connection_id}] Turn {envelope.message_id} crashed outside the pipeline"
                )

    async def _write_loop(self, connection: ClientConnection) -> None:
        websocket = connection.websocket
        while True:
            envelope = await connection.outbound.get()
            if envelope is None:
                return
            try:
                await websocket.send_text(json.dumps(envelope.to_wire(), ensure_ascii=False))
            except Exception as exc:
                logger.warning(f"[Session {connection.connection_id}] Send failed, closing: {exc}")
                connection.closed = True
                return
