import hashlib
from pathlib import Path
from typing import List, Optional

from .errors import InvalidRequestError
from .schemas import EvidenceAsset


MIME_TYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".mov": "video/quicktime",
    ".avi": "video/x-msvideo",
    ".mkv": "video/x-matroska",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}
DEFAULT_MIME = "application/octet-stream"


def mime_type_for(path: Path) -> str:
    return MIME_TYPES.get(Path(path).suffix.lower(), DEFAULT_MIME)


def is_image(mime_type: str) -> bool:
    return (mime_type or "").lower().startswith("image/")


def is_video(mime_type: str) -> bool:
    return (mime_type or "").lower().startswith("video/")


def resolve_media_path(value: str, cwd: Optional[Path] = None) -> Path:
    """Exact path first, then a unique prefix match among media files in that directory."""
    base = Path(cwd or Path.cwd())
    candidate = Path(value)
    if not candidate.is_absolute():
        candidate = base / candidate
    if candidate.is_file():
        return candidate
    directory = candidate.parent
    if not directory.is_dir():
        raise InvalidRequestError(f"Directory not found: {directory}")
    prefix = candidate.name.lower()
    matches: List[Path] = sorted(
        p for p in directory.iterdir()
        if p.is_file() and p.suffix.lower() in MIME_TYPES and p.name.lower().startswith(prefix)
    )
    if not matches:
        raise InvalidRequestError(f'No media file matches "{value}"')
    if len(matches) > 1:
        names = ", ".join(p.name for p in matches)
        raise InvalidRequestError(f'Several files match "{value}": {names}')
    return matches[0]


def local_evidence(path: Path) -> EvidenceAsset:
    """Evidence for a local file, identified by the digest of its contents."""
    return memory_evidence(Path(path).read_bytes(), mime_type_for(path), Path(path).name)


def memory_evidence(data: bytes, mime_type: str, display_name: str, source_id: Optional[str] = None) -> EvidenceAsset:
    return EvidenceAsset(
        source_id=source_id or f"local:{hashlib.sha256(data).hexdigest()}",
        display_name=display_name,
        mime_type=mime_type or DEFAULT_MIME,
        byte_length=len(data),
        data=data,
    )
