import base64
import binascii
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .errors import InvalidRequestError


AssetState = Literal["PROCESSING", "ACTIVE", "FAILED", "STATE_UNSPECIFIED"]
KNOWN_STATES = {"PROCESSING", "ACTIVE", "FAILED"}


class EvidenceAsset(BaseModel):
    """Source media selected by the caller, not yet known to the remote service."""

    source_id: str
    display_name: str
    mime_type: str
    byte_length: Optional[int] = None
    data: Optional[bytes] = Field(default=None, exclude=True, repr=False)
    loader: Optional[Callable[[], Awaitable[bytes]]] = Field(default=None, exclude=True, repr=False)

    async def read(self) -> bytes:
        if self.data is not None:
            return self.data
        if self.loader is not None:
            return await self.loader()
        raise InvalidRequestError(f"No media bytes available for {self.display_name}")


class RemoteAssetHandle(BaseModel):
    resource_name: str
    uri: str = ""
    mime_type: str = ""
    state: AssetState = "STATE_UNSPECIFIED"
    display_name: str = ""

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "RemoteAssetHandle":
        state = str(payload.get("state") or "").upper()
        return cls(
            resource_name=str(payload.get("name") or ""),
            uri=str(payload.get("uri") or ""),
            mime_type=str(payload.get("mimeType") or ""),
            state=state if state in KNOWN_STATES else "STATE_UNSPECIFIED",
            display_name=str(payload.get("displayName") or ""),
        )

    @property
    def is_active(self) -> bool:
        return self.state == "ACTIVE"

    def to_part(self) -> Dict[str, Any]:
        return {"fileData": {"fileUri": self.uri, "mimeType": self.mime_type}}

    def to_public(self) -> Dict[str, Any]:
        return {
            "fileUri": self.uri,
            "mimeType": self.mime_type,
            "name": self.resource_name,
            "state": self.state,
        }


class InlineAssetPart(BaseModel):
    mime_type: str
    data: bytes = Field(repr=False)

    def to_part(self) -> Dict[str, Any]:
        encoded = base64.b64encode(self.data).decode("ascii")
        return {"inlineData": {"mimeType": self.mime_type, "data": encoded}}

    def to_public(self) -> Dict[str, Any]:
        return {"mimeType": self.mime_type, "inline": True, "size": len(self.data)}


PreparedAsset = Union[RemoteAssetHandle, InlineAssetPart]


class HeuristicCriterion(BaseModel):
    id: str
    heuristic_number: str
    name: str
    description: str = ""
    group: str = ""
    group_number: Optional[int] = None

    model_config = {"frozen": True}

    @classmethod
    def from_catalog(cls, item: Dict[str, Any]) -> "HeuristicCriterion":
        group = item.get("group")
        group_number = None
        if isinstance(group, dict):
            group_number = group.get("groupNumber")
            group = group.get("name")
        try:
            group_number = int(group_number) if group_number is not None else None
        except (TypeError, ValueError):
            group_number = None
        number = item.get("heuristicNumber") or item.get("heuristic_number") or item.get("numberLabel") or ""
        return cls(
            id=str(item.get("id") or number),
            heuristic_number=str(number),
            name=str(item.get("name") or ""),
            description=str(item.get("description") or ""),
            group=str(group or ""),
            group_number=group_number,
        )

    def to_prompt_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "heuristicNumber": self.heuristic_number,
            "description": self.description,
            "group": self.group,
        }


class AnalysisRequest(BaseModel):
    criteria: List[HeuristicCriterion] = Field(default_factory=list)
    evidence: List[Union[EvidenceAsset, RemoteAssetHandle, InlineAssetPart]] = Field(default_factory=list)
    context_text: str = ""


# Result entries keep the field names the model is asked to emit.
class ScoredResult(BaseModel):
    heuristicNumber: str
    name: str = ""
    score: int = Field(ge=1, le=5)
    justification: str = ""

    model_config = {"extra": "allow"}


class RejectedResult(BaseModel):
    heuristicNumber: str
    name: str = ""
    rejected: Literal[True] = True
    rejectionReason: str = ""

    model_config = {"extra": "allow"}


class RawResult(BaseModel):
    raw: str

    model_config = {"extra": "allow"}


AnalysisResult = Union[ScoredResult, RejectedResult, RawResult]


class UsageStats(BaseModel):
    promptTokenCount: int = Field(default=0, ge=0)
    candidatesTokenCount: int = Field(default=0, ge=0)
    totalTokenCount: int = Field(default=0, ge=0)

    @classmethod
    def from_metadata(cls, metadata: Optional[Dict[str, Any]]) -> Optional["UsageStats"]:
        if not isinstance(metadata, dict):
            return None
        counts: Dict[str, int] = {}
        for key in ("promptTokenCount", "candidatesTokenCount", "totalTokenCount"):
            try:
                counts[key] = max(0, int(metadata.get(key) or 0))
            except (TypeError, ValueError):
                counts[key] = 0
        return cls(**counts)


class MediaPart(BaseModel):
    fileUri: Optional[str] = None
    mimeType: str
    name: Optional[str] = None
    data: Optional[str] = None  # base64, for inline images

    def to_prepared(self) -> PreparedAsset:
        if self.fileUri:
            return RemoteAssetHandle(
                resource_name=self.name or "",
                uri=self.fileUri,
                mime_type=self.mimeType,
                state="ACTIVE",
            )
        if self.data:
            try:
                raw = base64.b64decode(self.data, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise InvalidRequestError("Inline media data is not valid base64") from exc
            return InlineAssetPart(mime_type=self.mimeType, data=raw)
        raise InvalidRequestError("Each media part needs a fileUri or inline data")


class AnalyzeRequestBody(BaseModel):
    heuristics: List[Dict[str, Any]] = Field(default_factory=list)
    mediaParts: List[MediaPart] = Field(default_factory=list)
    context: Optional[str] = ""
    project: Optional[str] = None


class AnalysisResponse(BaseModel):
    results: List[AnalysisResult] = Field(default_factory=list)
    usage: Optional[UsageStats] = None

    def to_public(self) -> Dict[str, Any]:
        return {
            "results": [r.model_dump(exclude_none=True) for r in self.results],
            "usage": self.usage.model_dump() if self.usage else None,
        }


class DriveAssetBody(BaseModel):
    file: Dict[str, Any]
    accessToken: Optional[str] = None
