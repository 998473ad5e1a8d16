import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .errors import ConflictError, UploadError
from .gemini import GeminiFilesClient, extract_error_detail, normalize_resource_name
from .schemas import RemoteAssetHandle


logger = logging.getLogger("uvicorn.error")

SESSION_URL_HEADER = "X-Goog-Upload-URL"


def _plan_chunks(size: int) -> List[Tuple[int, int, str]]:
    """Return (offset, end, command) triples for the transfer phase.

    The whole payload currently goes out as one finalize chunk.
    """
    return [(0, size, "upload, finalize")]


class AssetUploader:
    """Two-phase resumable upload to the Gemini Files API."""

    def __init__(self, files_client: GeminiFilesClient):
        self.files = files_client

    async def upload(
        self,
        data: bytes,
        mime_type: str,
        display_name: str,
        resource_name: Optional[str] = None,
    ) -> RemoteAssetHandle:
        session_url = await self._initiate(len(data), mime_type, display_name, resource_name)
        descriptor = await self._transfer(session_url, data)
        handle = RemoteAssetHandle.from_api(descriptor)
        if not handle.resource_name:
            raise UploadError("transfer", 200, str(descriptor), message="Upload response did not include a file name")
        logger.info(
            "Uploaded %s as %s (%d bytes, state=%s)",
            display_name,
            handle.resource_name,
            len(data),
            handle.state,
        )
        return handle

    async def _initiate(
        self,
        size: int,
        mime_type: str,
        display_name: str,
        resource_name: Optional[str],
    ) -> str:
        file_meta: Dict[str, Any] = {"displayName": display_name}
        if resource_name:
            file_meta["name"] = normalize_resource_name(resource_name)
        headers = {
            "X-Goog-Upload-Protocol": "resumable",
            "X-Goog-Upload-Command": "start",
            "X-Goog-Upload-Header-Content-Length": str(size),
            "X-Goog-Upload-Header-Content-Type": mime_type,
            "Content-Type": "application/json",
        }
        try:
            resp = await self.files.client.post(
                self.files.upload_url,
                params=self.files.auth_params(),
                headers=headers,
                json={"file": file_meta},
            )
        except httpx.RequestError as exc:
            raise UploadError("initiate", None, str(exc)) from exc
        if resp.status_code == 409:
            raise ConflictError(file_meta.get("name"), extract_error_detail(resp))
        if resp.status_code >= 400:
            raise UploadError("initiate", resp.status_code, extract_error_detail(resp))
        session_url = resp.headers.get(SESSION_URL_HEADER)
        if not session_url:
            raise UploadError("initiate", resp.status_code, "", message="Upload session URL missing from response")
        return session_url

    async def _transfer(self, session_url: str, data: bytes) -> Dict[str, Any]:
        resp: Optional[httpx.Response] = None
        for offset, end, command in _plan_chunks(len(data)):
            chunk = data[offset:end]
            headers = {
                "Content-Length": str(len(chunk)),
                "X-Goog-Upload-Offset": str(offset),
                "X-Goog-Upload-Command": command,
            }
            try:
                resp = await self.files.client.post(
                    session_url,
                    headers=headers,
                    content=chunk,
                    timeout=self.files.upload_timeout,
                )
            except httpx.RequestError as exc:
                raise UploadError("transfer", None, str(exc)) from exc
            if resp.status_code >= 400:
                raise UploadError("transfer", resp.status_code, extract_error_detail(resp))
        if resp is None:
            raise UploadError("transfer", None, "", message="Nothing was transferred")
        try:
            body = resp.json()
        except ValueError as exc:
            raise UploadError("transfer", resp.status_code, resp.text) from exc
        descriptor = body.get("file") if isinstance(body, dict) else None
        if not isinstance(descriptor, dict):
            raise UploadError("transfer", resp.status_code, str(body), message="Upload response did not include a file")
        return descriptor
