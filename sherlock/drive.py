from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from .errors import InvalidRequestError, UploadError
from .gemini import extract_error_detail
from .schemas import EvidenceAsset


class DriveClient:
    """Downloads picked Google Drive files with the user's OAuth access token."""

    def __init__(self, base_url: str = "https://www.googleapis.com", timeout: float = 300.0):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def download(self, file_id: str, access_token: str) -> bytes:
        url = f"{self.base_url}/drive/v3/files/{quote(file_id, safe='')}"
        try:
            resp = await self.client.get(
                url,
                params={"alt": "media"},
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.RequestError as exc:
            raise UploadError("download", None, str(exc)) from exc
        if resp.status_code >= 400:
            raise UploadError("download", resp.status_code, extract_error_detail(resp))
        return resp.content

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


def drive_evidence(descriptor: Dict[str, Any], access_token: Optional[str], client: DriveClient) -> EvidenceAsset:
    """Evidence for a picked Drive file; bytes are fetched only if an upload is needed."""
    file_id = str(descriptor.get("id") or "").strip()
    if not file_id:
        raise InvalidRequestError("Drive file descriptor is missing an id")
    if not access_token:
        raise InvalidRequestError("A Drive access token is required")

    async def _load() -> bytes:
        return await client.download(file_id, access_token)

    size = descriptor.get("sizeBytes") or descriptor.get("size")
    return EvidenceAsset(
        source_id=f"drive:{file_id}",
        display_name=str(descriptor.get("name") or file_id),
        mime_type=str(descriptor.get("mimeType") or "application/octet-stream"),
        byte_length=int(size) if str(size or "").isdigit() else None,
        loader=_load,
    )
