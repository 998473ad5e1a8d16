import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Tuple

from .errors import InvalidRequestError
from .schemas import HeuristicCriterion


UNGROUPED = "Ungrouped"


def parse_catalog(data: Any) -> List[HeuristicCriterion]:
    """Accepts ``{"data": {"heuristics": [...]}}``, ``{"heuristics": [...]}`` or a bare list."""
    items: Any = data
    if isinstance(items, dict) and "data" in items:
        inner = items.get("data")
        items = inner.get("heuristics") if isinstance(inner, dict) else None
    elif isinstance(items, dict):
        items = items.get("heuristics")
    if not isinstance(items, list):
        raise InvalidRequestError("Heuristic catalogue has no heuristics list")
    return [HeuristicCriterion.from_catalog(item) for item in items if isinstance(item, dict)]


def load_heuristics(path: Path) -> List[HeuristicCriterion]:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise InvalidRequestError(f"Heuristic catalogue not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise InvalidRequestError(f"Heuristic catalogue is not valid JSON: {path}") from exc
    return parse_catalog(data)


def number_sort_key(number: str) -> Tuple:
    """Orders "3.2" before "3.16"; non-numeric segments sort after numeric ones."""
    key = []
    for segment in str(number).split("."):
        if segment.isdigit():
            key.append((0, int(segment), ""))
        else:
            key.append((1, 0, segment))
    return tuple(key)


def group_heuristics(criteria: Iterable[HeuristicCriterion]) -> List[Dict[str, Any]]:
    groups: Dict[str, List[Dict[str, Any]]] = {}
    for item in criteria:
        title = item.group or UNGROUPED
        groups.setdefault(title, []).append(
            {
                "id": item.id,
                "name": item.name,
                "heuristicNumber": item.heuristic_number,
                "description": item.description,
                "group": title,
            }
        )
    return [{"title": title, "items": items} for title, items in groups.items()]


def parse_number_list(value: str) -> List[str]:
    return [part.strip() for part in str(value or "").split(",") if part.strip()]


def filter_by_numbers(criteria: Iterable[HeuristicCriterion], numbers: Iterable[str]) -> List[HeuristicCriterion]:
    wanted = {str(n).strip() for n in numbers}
    return [item for item in criteria if item.heuristic_number in wanted]
