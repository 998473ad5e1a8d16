import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .errors import GenerationError, UploadError


logger = logging.getLogger("uvicorn.error")

DEFAULT_API_BASE = "https://generativelanguage.googleapis.com"
DEFAULT_API_VERSION = "v1beta"
# The Files API answers 403 for names that were never created under this key.
_MISSING_STATUSES = {403, 404}


def extract_error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
        if isinstance(data, dict):
            return json.dumps(data, ensure_ascii=True)
    except Exception:
        pass
    try:
        return response.text
    except Exception:
        return ""


def _json_object(response: httpx.Response, phase: str) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError as exc:
        raise UploadError(phase, response.status_code, response.text) from exc
    if not isinstance(data, dict):
        raise UploadError(phase, response.status_code, "unexpected response shape")
    return data


def normalize_resource_name(resource_name: str) -> str:
    name = (resource_name or "").strip().strip("/")
    return name if name.startswith("files/") else f"files/{name}"


class GeminiFilesClient:
    """Thin async wrapper over the Gemini Files API (lookup, listing, deletion).

    The same pooled client is shared by the uploader, so a single instance
    should be created per process and closed on shutdown.
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = DEFAULT_API_BASE,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 60.0,
        upload_timeout: float = 600.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.upload_timeout = upload_timeout
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    @property
    def upload_url(self) -> str:
        return f"{self.base_url}/upload/{self.api_version}/files"

    def file_url(self, resource_name: str) -> str:
        return f"{self.base_url}/{self.api_version}/{normalize_resource_name(resource_name)}"

    def auth_params(self) -> Dict[str, str]:
        return {"key": self.api_key} if self.api_key else {}

    async def get_file(self, resource_name: str) -> Optional[Dict[str, Any]]:
        """Return the file descriptor, or None when the name does not exist."""
        try:
            resp = await self.client.get(self.file_url(resource_name), params=self.auth_params())
        except httpx.RequestError as exc:
            raise UploadError("lookup", None, str(exc)) from exc
        if resp.status_code in _MISSING_STATUSES:
            return None
        if resp.status_code >= 400:
            raise UploadError("lookup", resp.status_code, extract_error_detail(resp))
        return _json_object(resp, "lookup")

    async def list_files(
        self,
        page_size: int = 100,
        page_token: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        params: Dict[str, Any] = {**self.auth_params(), "pageSize": page_size}
        if page_token:
            params["pageToken"] = page_token
        try:
            resp = await self.client.get(f"{self.base_url}/{self.api_version}/files", params=params)
        except httpx.RequestError as exc:
            raise UploadError("list", None, str(exc)) from exc
        if resp.status_code >= 400:
            raise UploadError("list", resp.status_code, extract_error_detail(resp))
        data = _json_object(resp, "list")
        files = [f for f in data.get("files") or [] if isinstance(f, dict)]
        return files, data.get("nextPageToken") or None

    async def delete_file(self, resource_name: str) -> bool:
        """Delete a remote file. Returns False when it was already gone."""
        try:
            resp = await self.client.delete(self.file_url(resource_name), params=self.auth_params())
        except httpx.RequestError as exc:
            raise UploadError("delete", None, str(exc)) from exc
        if resp.status_code in _MISSING_STATUSES:
            return False
        if resp.status_code >= 400:
            raise UploadError("delete", resp.status_code, extract_error_detail(resp))
        logger.info("Deleted remote file %s", resource_name)
        return True

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


class GeminiClient:
    """generateContent caller. Returns the raw response body."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gemini-2.5-pro",
        base_url: str = DEFAULT_API_BASE,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 300.0,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.client = httpx.AsyncClient(timeout=timeout)

    def generate_url(self, model: Optional[str] = None) -> str:
        model_id = (model or self.model).strip()
        if model_id.startswith("models/"):
            model_id = model_id[len("models/"):]
        return f"{self.base_url}/{self.api_version}/models/{model_id}:generateContent"

    async def generate_content(
        self,
        parts: List[Dict[str, Any]],
        system_instruction: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"contents": [{"role": "user", "parts": parts}]}
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        params = {"key": self.api_key} if self.api_key else {}
        try:
            resp = await self.client.post(self.generate_url(model), params=params, json=payload)
        except httpx.RequestError as exc:
            raise GenerationError(None, str(exc)) from exc
        if resp.status_code >= 400:
            raise GenerationError(resp.status_code, extract_error_detail(resp))
        try:
            data = resp.json()
        except ValueError as exc:
            raise GenerationError(resp.status_code, "response body is not JSON") from exc
        if not isinstance(data, dict):
            raise GenerationError(resp.status_code, "unexpected response shape")
        return data

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


def response_text(data: Dict[str, Any]) -> str:
    """Concatenate the visible text parts of the first candidate."""
    candidates = data.get("candidates") or []
    if not candidates or not isinstance(candidates[0], dict):
        return ""
    content = candidates[0].get("content") or {}
    chunks: List[str] = []
    for part in content.get("parts") or []:
        if not isinstance(part, dict) or part.get("thought"):
            continue
        text = part.get("text")
        if isinstance(text, str):
            chunks.append(text)
    return "".join(chunks)


def block_reason(data: Dict[str, Any]) -> Optional[str]:
    feedback = data.get("promptFeedback") or {}
    reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
    if reason:
        return str(reason)
    candidates = data.get("candidates") or []
    if candidates and isinstance(candidates[0], dict):
        finish = candidates[0].get("finishReason")
        if finish in ("SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT"):
            return str(finish)
    return None
