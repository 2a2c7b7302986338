"""FastAPI application entrypoint for the persona chat server."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from supabase import create_client

from .config import Settings, settings
from .models.schemas import HealthResponse
from .routers import realtime, sessions
from .services.completion import CompletionAdapter
from .services.context import ContextAssembler
from .services.gateway import ChannelGateway
from .services.orchestration import TurnOrchestrator
from .services.storage import (
    OBJECT_MAX_AGE_SECONDS,
    ObjectStore,
    StorageUploader,
    SupabaseObjectStore,
)
from .services.store import DurableStore, InMemoryStore
from .services.supabase_persistence import SupabasePersistence
from .services.synthesis import SynthesisAdapter
from .services.transcription import TranscriptionAdapter

logger = logging.getLogger(__name__)

SCRATCH_SWEEP_INTERVAL_SECONDS = 30 * 60
OBJECT_SWEEP_INTERVAL_SECONDS = OBJECT_MAX_AGE_SECONDS


@dataclass
class Services:
    """Process-scoped collaborators shared by every connection."""

    store: DurableStore
    uploader: StorageUploader
    orchestrator: TurnOrchestrator
    gateway: ChannelGateway
    store_backend: str = "memory"
    object_backend: str = "local"


def build_services(cfg: Settings, http_client: Optional[httpx.AsyncClient] = None) -> Services:
    """Wire the pipeline from configuration, falling back to local backends without Supabase."""

    object_store: Optional[ObjectStore] = None
    if cfg.supabase_enabled:
        client = create_client(cfg.supabase_url, cfg.supabase_service_role_key)
        store: DurableStore = SupabasePersistence(client)
        object_store = SupabaseObjectStore(client, cfg.supabase_audio_bucket)
        store_backend, object_backend = "supabase", "supabase"
    else:
        logger.warning("Supabase credentials missing; using in-memory store and local audio storage")
        store = InMemoryStore()
        store_backend, object_backend = "memory", "local"

    uploader = StorageUploader(
        object_store,
        scratch_dir=Path(cfg.scratch_dir),
        public_base_url=cfg.server_public_url,
        retries=cfg.upload_retries,
        base_delay=cfg.upload_base_delay,
    )
    orchestrator = TurnOrchestrator(
        store=store,
        uploader=uploader,
        transcriber=TranscriptionAdapter(
            base_url=cfg.asr_base_url,
            api_key=cfg.voice_api_key,
            client=http_client,
            retries=cfg.transcribe_retries,
            base_delay=cfg.transcribe_base_delay,
        ),
        assembler=ContextAssembler(store, history_limit=cfg.history_limit),
        completer=CompletionAdapter(
            model=cfg.completion_model,
            api_key=cfg.completion_api_key,
            base_url=cfg.completion_base_url,
        ),
        synthesizer=SynthesisAdapter(
            base_url=cfg.tts_base_url,
            api_key=cfg.voice_api_key,
            client=http_client,
            max_chars=cfg.tts_max_chars,
        ),
        debug=cfg.debug,
    )
    return Services(
        store=store,
        uploader=uploader,
        orchestrator=orchestrator,
        gateway=ChannelGateway(orchestrator),
        store_backend=store_backend,
        object_backend=object_backend,
    )


async def _run_periodically(name: str, interval: float, job: Callable[[], Awaitable[Any]]) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await job()
        except Exception:
            logger.exception("Housekeeping job %s failed", name)


def create_app(cfg: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """Instantiate and configure the FastAPI application."""

    cfg = cfg or settings
    scratch_dir = Path(cfg.scratch_dir)
    scratch_dir.mkdir(parents=True, exist_ok=True)

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        http_client: Optional[httpx.AsyncClient] = None
        wired = services
        if wired is None:
            http_client = httpx.AsyncClient(timeout=60.0)
            wired = build_services(cfg, http_client)

        application.state.services = wired
        application.state.store = wired.store
        application.state.gateway = wired.gateway

        uploader = wired.uploader
        housekeeping = [
            asyncio.create_task(
                _run_periodically(
                    "scratch_sweep",
                    SCRATCH_SWEEP_INTERVAL_SECONDS,
                    lambda: asyncio.to_thread(uploader.sweep_scratch),
                )
            ),
            asyncio.create_task(
                _run_periodically("object_sweep", OBJECT_SWEEP_INTERVAL_SECONDS, uploader.sweep_expired_objects)
            ),
        ]
        logger.info(
            "Persona chat server ready (store=%s, objects=%s, scratch=%s, public=%s)",
            wired.store_backend,
            wired.object_backend,
            scratch_dir,
            cfg.server_public_url,
        )
        try:
            yield
        finally:
            for task in housekeeping:
                task.cancel()
            await asyncio.gather(*housekeeping, return_exceptions=True)
            if http_client is not None:
                await http_client.aclose()
            logger.info("Persona chat server stopped")

    application = FastAPI(
        title="Persona Chat Server",
        description="Voice and text turns with scripted personas over a websocket channel.",
        version="0.1.0",
        lifespan=lifespan,
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    )
    application.mount("/temp", StaticFiles(directory=scratch_dir, check_dir=False), name="temp")
    application.include_router(realtime.router)
    application.include_router(sessions.router)

    @application.get("/api/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Lightweight health endpoint for process managers."""

        wired: Services = application.state.services
        return HealthResponse(
            store=wired.store_backend,
            object_store=wired.object_backend,
            active_connections=wired.gateway.active_connections,
        )

    @application.get("/")
    async def root() -> dict[str, str]:
        return {"service": "persona-chat", "status": "ok"}

    return application


logging.basicConfig(level=settings.log_level)

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=settings.port,
        # Base64 audio envelopes can be several megabytes.
        ws_max_size=16 * 1024 * 1024,
    )
