import json
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .schemas import AnalysisResult, RawResult, RejectedResult, ScoredResult


_FENCE_RE = re.compile(r"```[\w+-]*[ \t]*\n?([\s\S]*?)\n?```")
_MAX_SPAN_STARTS = 200
_TRUE_STRINGS = {"true", "yes", "1"}


def _load_results_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(text)
    except Exception:
        return None
    if isinstance(data, list) and all(isinstance(item, dict) for item in data) and data:
        return {"results": data}
    if isinstance(data, dict) and isinstance(data.get("results"), list):
        return data
    return None


def _balanced_object_spans(text: str) -> Iterable[str]:
    """Yield balanced {...} spans that mention a results key, outermost first."""
    starts = [i for i, ch in enumerate(text) if ch == "{"][:_MAX_SPAN_STARTS]
    for start in starts:
        depth = 0
        in_string = False
        escape = False
        for idx in range(start, len(text)):
            ch = text[idx]
            if in_string:
                if escape:
                    escape = False
                elif ch == "\\":
                    escape = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    span = text[start : idx + 1]
                    if '"results"' in span:
                        yield span
                    break


def extract_results(text: Any) -> Optional[Dict[str, Any]]:
    """Pull the ``{"results": [...]}`` object out of free-form model output.

    Tried in order: the whole text, the first fenced code block, then the
    balanced ``{...}`` spans that mention ``"results"``, scanning from at most
    200 opening braces. Returns None when nothing parses; never raises.
    """
    try:
        raw = text if isinstance(text, str) else ("" if text is None else str(text))
    except Exception:
        return None
    cleaned = raw.strip()
    if not cleaned:
        return None

    parsed = _load_results_object(cleaned)
    if parsed is not None:
        return parsed

    fence = _FENCE_RE.search(cleaned)
    if fence:
        parsed = _load_results_object(fence.group(1).strip())
        if parsed is not None:
            return parsed

    if '"results"' not in cleaned:
        return None
    try:
        for candidate in _balanced_object_spans(cleaned):
            parsed = _load_results_object(candidate)
            if parsed is not None:
                return parsed
    except Exception:
        return None
    return None


def _coerce_score(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    if isinstance(value, int) and 1 <= value <= 5:
        return value
    return None


def _is_rejected(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return False


def _raw_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except Exception:
        return str(value)


def _extras(entry: Dict[str, Any], known: Tuple[str, ...]) -> Dict[str, Any]:
    return {
        k: v for k, v in entry.items()
        if isinstance(k, str) and not k.startswith("_") and k not in known
    }


def normalize_entry(entry: Any) -> AnalysisResult:
    if not isinstance(entry, dict):
        return RawResult(raw=_raw_text(entry))
    number = entry.get("heuristicNumber") or entry.get("heuristic_number") or entry.get("number")
    name = entry.get("name") or ""
    if number is not None and _is_rejected(entry.get("rejected")):
        extras = _extras(entry, ("heuristicNumber", "name", "rejected", "rejectionReason"))
        reason = entry.get("rejectionReason") or entry.get("reason") or ""
        return RejectedResult(heuristicNumber=str(number), name=str(name), rejectionReason=str(reason), **extras)
    score = _coerce_score(entry.get("score"))
    if number is not None and score is not None:
        extras = _extras(entry, ("heuristicNumber", "name", "score", "justification"))
        justification = entry.get("justification") or ""
        return ScoredResult(
            heuristicNumber=str(number),
            name=str(name),
            score=score,
            justification=str(justification),
            **extras,
        )
    return RawResult(raw=_raw_text(entry))


def normalize_results(parsed: Optional[Dict[str, Any]], raw_text: str) -> List[AnalysisResult]:
    """Typed results for a parsed response, or a single raw entry when unusable."""
    entries = parsed.get("results") if isinstance(parsed, dict) else None
    if not isinstance(entries, list) or not entries:
        return [RawResult(raw=raw_text)]
    return [normalize_entry(entry) for entry in entries]
