import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from .activation import ActivationWaiter, StatusCallback, check_stop, emit_status
from .config import AppSettings
from .dedup import AssetDeduplicator
from .errors import GenerationError, InvalidRequestError
from .extractor import extract_results, normalize_results
from .gemini import GeminiClient, GeminiFilesClient, block_reason, response_text
from .media import is_image
from .schemas import (
    AnalysisRequest,
    AnalysisResponse,
    EvidenceAsset,
    HeuristicCriterion,
    InlineAssetPart,
    PreparedAsset,
    RemoteAssetHandle,
    UsageStats,
)
from .uploader import AssetUploader


logger = logging.getLogger("uvicorn.error")

DEFAULT_SYSTEM_PROMPT = """You are a senior UX researcher auditing a digital product against a heuristic checklist.
You receive the heuristics to evaluate as JSON, optional context about the flow being tested,
and one or more screenshots or screen recordings as evidence.

For every heuristic, judge only what the evidence shows.
- If the evidence is enough, give an integer score from 1 (severe violation) to 5 (fully satisfied)
  and a concise justification that cites what is visible (timestamps for video).
- If the evidence does not show what the heuristic needs, reject it and say why.

Answer with JSON only, no prose, in this shape:
{"results": [
  {"heuristicNumber": "3.16", "name": "...", "score": 4, "justification": "..."},
  {"heuristicNumber": "3.17", "name": "...", "rejected": true, "rejectionReason": "..."}
]}"""


def build_prompt_text(criteria: Iterable[HeuristicCriterion], context_text: str) -> str:
    payload = [c.to_prompt_dict() for c in criteria]
    context = (context_text or "").strip() or "Not provided."
    return (
        f"Additional context:\n{context}\n\n"
        f"Heuristics JSON:\n{json.dumps(payload, indent=2, ensure_ascii=False)}"
    )


EvidenceItem = Union[EvidenceAsset, RemoteAssetHandle, InlineAssetPart]


class AnalysisOrchestrator:
    """Turns evidence + heuristics into a normalised critique.

    Each evidence item is made referenceable first (images inline, everything
    else uploaded or reused through the deduplicator), then a single
    generateContent call is issued. A failure on any item aborts the request.
    """

    def __init__(
        self,
        settings: AppSettings,
        *,
        files_client: Optional[GeminiFilesClient] = None,
        gemini_client: Optional[GeminiClient] = None,
        uploader: Optional[AssetUploader] = None,
        waiter: Optional[ActivationWaiter] = None,
        deduplicator: Optional[AssetDeduplicator] = None,
    ):
        self.settings = settings
        self.files = files_client or GeminiFilesClient(
            settings.gemini_api_key,
            base_url=settings.gemini_api_base,
            api_version=settings.gemini_api_version,
            timeout=settings.http_timeout_s,
            upload_timeout=settings.upload_timeout_s,
        )
        self.gemini = gemini_client or GeminiClient(
            settings.gemini_api_key,
            model=settings.model_id,
            base_url=settings.gemini_api_base,
            api_version=settings.gemini_api_version,
            timeout=settings.generation_timeout_s,
        )
        self.uploader = uploader or AssetUploader(self.files)
        self.waiter = waiter or ActivationWaiter(
            self.files,
            poll_interval_s=settings.poll_interval_s,
            max_wait_s=settings.activation_timeout_s,
        )
        self.deduplicator = deduplicator or AssetDeduplicator(
            self.files,
            self.uploader,
            self.waiter,
            enabled=settings.dedup_enabled,
            cleanup_enabled=settings.cleanup_enabled,
            cleanup_max_deletes=settings.cleanup_max_deletes,
            cleanup_interval_s=settings.cleanup_interval_s,
        )

    def _require_credentials(self) -> None:
        if not self.settings.gemini_api_key:
            raise InvalidRequestError("GEMINI_API_KEY is not configured")

    async def prepare_asset(
        self,
        evidence: EvidenceAsset,
        *,
        on_status: StatusCallback = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> PreparedAsset:
        check_stop(stop_event, f"preparing {evidence.display_name}")
        if is_image(evidence.mime_type):
            data = await evidence.read()
            if len(data) <= self.settings.inline_max_bytes:
                return InlineAssetPart(mime_type=evidence.mime_type, data=data)

            async def _cached() -> bytes:
                return data

            provider = _cached
        else:
            provider = evidence.read
        self._require_credentials()
        return await self.deduplicator.resolve(
            evidence.source_id,
            evidence.mime_type,
            provider,
            evidence.display_name,
            stop_event=stop_event,
            on_status=on_status,
        )

    async def analyze(
        self,
        request: AnalysisRequest,
        *,
        system_prompt: Optional[str] = None,
        on_status: StatusCallback = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> AnalysisResponse:
        if not request.criteria:
            raise InvalidRequestError("Select at least one heuristic")
        if not request.evidence:
            raise InvalidRequestError("No media evidence was provided")
        self._require_credentials()

        parts: List[Dict[str, Any]] = [{"text": build_prompt_text(request.criteria, request.context_text)}]
        for item in request.evidence:
            prepared = await self._prepared(item, on_status, stop_event)
            parts.append(prepared.to_part())

        check_stop(stop_event, "waiting to analyze")
        emit_status(on_status, "Analyzing")
        instruction = system_prompt or self.settings.system_prompt or DEFAULT_SYSTEM_PROMPT
        data = await self.gemini.generate_content(parts, system_instruction=instruction)
        text = response_text(data)
        if not text.strip():
            reason = block_reason(data)
            raise GenerationError(200, f"response blocked: {reason}" if reason else "model returned no text")

        parsed = extract_results(text)
        if parsed is None:
            logger.warning("Model response had no structured results; returning raw text")
        results = normalize_results(parsed, text)
        usage = UsageStats.from_metadata(data.get("usageMetadata"))
        logger.info(
            "Analysis finished: %d criteria, %d evidence item(s), %d result(s)",
            len(request.criteria),
            len(request.evidence),
            len(results),
        )
        return AnalysisResponse(results=results, usage=usage)

    async def _prepared(
        self,
        item: EvidenceItem,
        on_status: StatusCallback,
        stop_event: Optional[asyncio.Event],
    ) -> PreparedAsset:
        if isinstance(item, InlineAssetPart):
            return item
        if isinstance(item, RemoteAssetHandle):
            if not item.uri:
                raise InvalidRequestError(f"Remote file {item.resource_name or '?'} has no URI")
            return item
        return await self.prepare_asset(item, on_status=on_status, stop_event=stop_event)

    async def close(self) -> None:
        await self.files.close()
        await self.gemini.close()
