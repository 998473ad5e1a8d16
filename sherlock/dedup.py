import asyncio
import hashlib
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from .activation import ActivationWaiter, StatusCallback, check_stop, emit_status
from .errors import ConflictError
from .gemini import GeminiFilesClient
from .schemas import RemoteAssetHandle
from .uploader import AssetUploader


logger = logging.getLogger("uvicorn.error")

RESOURCE_ID_MAX_LEN = 40
_PLACEHOLDER_SUFFIXES = ("/undefined", "/null", "/none")

BytesProvider = Callable[[], Awaitable[bytes]]


def resource_id_for(source_id: str) -> str:
    """Deterministic remote file id for a source identity (lowercase hex, 40 chars)."""
    return hashlib.sha256(source_id.encode("utf-8")).hexdigest()[:RESOURCE_ID_MAX_LEN]


def resource_name_for(source_id: str) -> str:
    return f"files/{resource_id_for(source_id)}"


def is_stale_descriptor(descriptor: Dict[str, Any]) -> bool:
    name = str(descriptor.get("name") or "").strip().lower()
    if not name or name.endswith(_PLACEHOLDER_SUFFIXES):
        return True
    if str(descriptor.get("state") or "").upper() == "FAILED":
        return True
    return not descriptor.get("uri")


class AssetDeduplicator:
    """Resolves source evidence to a remote file, reusing what is already there.

    Remote names are derived from the source id, so repeated analyses of the
    same evidence find the earlier upload instead of transferring it again.
    """

    def __init__(
        self,
        files_client: GeminiFilesClient,
        uploader: AssetUploader,
        waiter: ActivationWaiter,
        *,
        enabled: bool = True,
        cleanup_enabled: bool = True,
        cleanup_max_deletes: int = 10,
        cleanup_interval_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.files = files_client
        self.uploader = uploader
        self.waiter = waiter
        self.enabled = enabled
        self.cleanup_enabled = cleanup_enabled
        self.cleanup_max_deletes = cleanup_max_deletes
        self.cleanup_interval_s = cleanup_interval_s
        self._clock = clock
        self._last_sweep_at: Optional[float] = None

    async def sweep(self) -> int:
        """Delete failed or malformed remote files. Never raises."""
        if not self.cleanup_enabled or self.cleanup_max_deletes <= 0:
            return 0
        now = self._clock()
        if self._last_sweep_at is not None and now - self._last_sweep_at < self.cleanup_interval_s:
            return 0
        self._last_sweep_at = now
        try:
            files, _ = await self.files.list_files()
        except Exception as exc:
            logger.warning("Stale file sweep skipped: %s", exc)
            return 0
        deleted = 0
        for descriptor in files:
            if deleted >= self.cleanup_max_deletes:
                break
            name = descriptor.get("name")
            if not name or not is_stale_descriptor(descriptor):
                continue
            try:
                if await self.files.delete_file(name):
                    deleted += 1
            except Exception as exc:
                logger.warning("Could not delete stale file %s: %s", name, exc)
        if deleted:
            logger.info("Stale file sweep removed %d file(s)", deleted)
        return deleted

    async def resolve(
        self,
        source_id: str,
        mime_type: str,
        bytes_provider: BytesProvider,
        display_name: str,
        *,
        stop_event: Optional[asyncio.Event] = None,
        on_status: StatusCallback = None,
    ) -> RemoteAssetHandle:
        if not self.enabled:
            payload = await bytes_provider()
            check_stop(stop_event, f"uploading {display_name}")
            emit_status(on_status, f"Uploading {display_name}")
            handle = await self.uploader.upload(payload, mime_type, display_name)
            return await self._settle(handle, stop_event, on_status)

        resource_name = resource_name_for(source_id)
        await self.sweep()
        check_stop(stop_event, f"resolving {display_name}")

        existing = await self._lookup(resource_name)
        if existing is not None:
            if existing.state != "FAILED":
                logger.info("Reusing remote file %s for %s (state=%s)", resource_name, display_name, existing.state)
                return await self._settle(existing, stop_event, on_status)
            logger.info("Remote file %s failed earlier; replacing it", resource_name)
            await self.files.delete_file(resource_name)

        payload = await bytes_provider()
        check_stop(stop_event, f"uploading {display_name}")
        emit_status(on_status, f"Uploading {display_name}")
        try:
            handle = await self.uploader.upload(payload, mime_type, display_name, resource_name)
        except ConflictError:
            logger.info("Upload of %s raced with another writer; checking %s", display_name, resource_name)
            existing = await self._lookup(resource_name)
            if existing is not None and existing.state != "FAILED":
                return await self._settle(existing, stop_event, on_status)
            await self.files.delete_file(resource_name)
            handle = await self.uploader.upload(payload, mime_type, display_name, resource_name)
        return await self._settle(handle, stop_event, on_status)

    async def _lookup(self, resource_name: str) -> Optional[RemoteAssetHandle]:
        descriptor = await self.files.get_file(resource_name)
        if descriptor is None:
            return None
        return RemoteAssetHandle.from_api(descriptor)

    async def _settle(
        self,
        handle: RemoteAssetHandle,
        stop_event: Optional[asyncio.Event],
        on_status: StatusCallback,
    ) -> RemoteAssetHandle:
        if handle.is_active:
            return handle
        return await self.waiter.await_active(handle.resource_name, stop_event=stop_event, on_status=on_status)
