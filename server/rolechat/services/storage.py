"""Durable audio uploads with retry, local fallback and housekeeping."""
from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from pathlib import Path
from typing import Any, Optional, Protocol

from .audio_ingestion import content_type_for

logger = logging.getLogger(__name__)

AUDIO_PREFIX = "audio"
OBJECT_MAX_AGE_SECONDS = 24 * 60 * 60
SCRATCH_MAX_AGE_SECONDS = 60 * 60

_TIMESTAMP_PREFIX = re.compile(r"^(\d+)_")


class ObjectStore(Protocol):
    """Contract for remote blob storage used by the uploader."""

    async def put(self, key: str, data: bytes, content_type: str) -> str: ...

    async def head(self, key: str) -> dict[str, Any]: ...

    async def list(self, prefix: str) -> list[str]: ...

    async def delete(self, key: str) -> None: ...


class SupabaseObjectStore:
    """Object store backed by a public Supabase Storage bucket."""

    def __init__(self, client: Any, bucket: str) -> None:
        self._client = client
        self._bucket = bucket

    def _files(self) -> Any:
        return self._client.storage.from_(self._bucket)

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        def _upload() -> str:
            files = self._files()
            files.upload(
                key,
                data,
                file_options={"content-type": content_type, "cache-control": "3600", "upsert": "false"},
            )
            return files.get_public_url(key)

        return await asyncio.to_thread(_upload)

    async def head(self, key: str) -> dict[str, Any]:
        return await asyncio.to_thread(lambda: self._files().info(key))

    async def list(self, prefix: str) -> list[str]:
        folder = prefix.strip("/")
        entries = await asyncio.to_thread(lambda: self._files().list(folder, {"limit": 1000}))
        return [f"{folder}/{entry['name']}" for entry in entries or [] if entry.get("name")]

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(lambda: self._files().remove([key]))


def mint_object_key(logical_name: str, prefix: str = AUDIO_PREFIX) -> str:
    """Build a unique ``<prefix>/<millis>_<8 hex><ext>`` key."""

    extension = Path(logical_name).suffix or ".wav"
    return f"{prefix}/{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}{extension}"


def object_timestamp_ms(key: str) -> Optional[int]:
    match = _TIMESTAMP_PREFIX.match(Path(key).name)
    return int(match.group(1)) if match else None


class StorageUploader:
    """Upload audio durably, degrading to the local scratch area on failure.

    ``upload`` never raises: after ``retries`` failed attempts the buffer is
    written under ``scratch_dir`` and served by this process at
    ``<public_base_url>/temp/<file>``.
    """

    def __init__(
        self,
        object_store: Optional[ObjectStore],
        *,
        scratch_dir: Path,
        public_base_url: str,
        retries: int = 3,
        base_delay: float = 1.0,
    ) -> None:
        self._store = object_store
        self._scratch_dir = Path(scratch_dir)
        self._public_base_url = public_base_url.rstrip("/")
        self._retries = max(1, retries)
        self._base_delay = base_delay

    @property
    def scratch_dir(self) -> Path:
        return self._scratch_dir

    async def upload(self, data: bytes, logical_name: str) -> str:
        logger.info("Uploading %d bytes as %s", len(data), logical_name)
        if self._store is None:
            logger.info("No object store configured; keeping audio locally")
            return await self._save_locally(data, logical_name)

        for attempt in range(1, self._retries + 1):
            key = mint_object_key(logical_name)
            try:
                url = await self._store.put(key, data, content_type_for(Path(key).suffix))
            except Exception as exc:
                logger.warning("Upload attempt %d/%d for %s failed: %s", attempt, self._retries, key, exc)
                if attempt < self._retries:
                    await asyncio.sleep(attempt * self._base_delay)
                continue

            await self._verify(key)
            logger.info("Uploaded audio to %s", url)
            return url

        logger.error("Object store upload failed after %d attempts; using local fallback", self._retries)
        return await self._save_locally(data, logical_name)

    async def _verify(self, key: str) -> None:
        try:
            info = await self._store.head(key)
        except Exception as exc:
            logger.warning("Uploaded object %s could not be verified: %s", key, exc)
            return
        logger.debug("Verified uploaded object %s: %s", key, info)

    async def _save_locally(self, data: bytes, logical_name: str) -> str:
        filename = Path(mint_object_key(logical_name)).name

        def _write() -> None:
            self._scratch_dir.mkdir(parents=True, exist_ok=True)
            (self._scratch_dir / filename).write_bytes(data)

        await asyncio.to_thread(_write)
        url = f"{self._public_base_url}/temp/{filename}"
        logger.info("Saved audio locally at %s", url)
        return url

    async def sweep_expired_objects(
        self, max_age_seconds: float = OBJECT_MAX_AGE_SECONDS, *, now: Optional[float] = None
    ) -> int:
        """Delete uploaded audio older than ``max_age_seconds``. Returns the count removed."""

        if self._store is None:
            return 0
        current_ms = (now if now is not None else time.time()) * 1000
        try:
            keys = await self._store.list(AUDIO_PREFIX)
        except Exception as exc:
            logger.warning("Listing objects for cleanup failed: %s", exc)
            return 0

        removed = 0
        for key in keys:
            stamp = object_timestamp_ms(key)
            if stamp is None or current_ms - stamp <= max_age_seconds * 1000:
                continue
            try:
                await self._store.delete(key)
            except Exception as exc:
                logger.warning("Deleting expired object %s failed: %s", key, exc)
                continue
            removed += 1
        logger.info("Object cleanup removed %d expired files", removed)
        return removed

    def sweep_scratch(self, max_age_seconds: float = SCRATCH_MAX_AGE_SECONDS, *, now: Optional[float] = None) -> int:
        """Delete local fallback files whose mtime is older than ``max_age_seconds``."""

        if not self._scratch_dir.exists():
            return 0
        current = now if now is not None else time.time()
        removed = 0
        for path in self._scratch_dir.iterdir():
            if not path.is_file():
                continue
            try:
                if current - path.stat().st_mtime > max_age_seconds:
                    path.unlink()
                    removed += 1
            except OSError as exc:
                logger.warning("Removing scratch file %s failed: %s", path, exc)
        if removed:
            logger.info("Scratch cleanup removed %d files", removed)
        return removed
