import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import InvalidRequestError
from .heuristics import load_heuristics
from .schemas import HeuristicCriterion


LOCAL_CONFIG_NAME = ".sherlock.json"
HEURISTICS_FILE = "heuristics.json"
SYSTEM_PROMPT_FILE = "system_prompt.txt"
META_FILE = "meta.json"


def unwrap_prompt(content: str) -> str:
    """Prompt files may wrap the prompt in backticks; keep only what is inside."""
    first = content.find("`")
    last = content.rfind("`")
    if first == -1 or last <= first:
        return content.strip()
    return content[first + 1 : last].strip("`").strip()


class Project:
    def __init__(self, name: str, path: Path):
        self.name = name
        self.path = path

    def load_heuristics(self) -> List[HeuristicCriterion]:
        return load_heuristics(self.path / HEURISTICS_FILE)

    def load_system_prompt(self) -> str:
        prompt_path = self.path / SYSTEM_PROMPT_FILE
        if not prompt_path.exists():
            return ""
        return unwrap_prompt(prompt_path.read_text(encoding="utf-8"))

    def meta(self) -> Dict[str, Any]:
        try:
            data = json.loads((self.path / META_FILE).read_text(encoding="utf-8"))
        except Exception:
            data = {}
        return data if isinstance(data, dict) else {}


class ProjectStore:
    """Project directories living under ``projects_dir``."""

    def __init__(self, projects_dir: Path, default_project: str = "retail6"):
        self.projects_dir = Path(projects_dir)
        self.default_project = default_project

    def names(self) -> List[str]:
        if not self.projects_dir.is_dir():
            return []
        return sorted(p.name for p in self.projects_dir.iterdir() if p.is_dir())

    def load(self, name: str) -> Project:
        path = self.projects_dir / name
        if not name or Path(name).name != name or not path.is_dir():
            available = ", ".join(self.names()) or "none"
            raise InvalidRequestError(f'Project "{name}" not found. Available projects: {available}')
        return Project(name, path)

    def resolve(self, name: Optional[str] = None, cwd: Optional[Path] = None) -> Project:
        """Explicit name, then ``.sherlock.json`` in cwd, then the default project."""
        if name:
            return self.load(name)
        local_config = Path(cwd or Path.cwd()) / LOCAL_CONFIG_NAME
        if local_config.exists():
            try:
                configured = json.loads(local_config.read_text(encoding="utf-8")).get("project")
            except Exception:
                configured = None
            if configured:
                return self.load(str(configured))
        return self.load(self.default_project)

    def list_projects(self) -> List[Dict[str, Any]]:
        projects: List[Dict[str, Any]] = []
        for name in self.names():
            project = Project(name, self.projects_dir / name)
            meta = project.meta()
            try:
                count = len(project.load_heuristics())
            except InvalidRequestError:
                count = 0
            projects.append(
                {
                    "name": name,
                    "description": meta.get("description") or "No description",
                    "version": meta.get("version") or "1.0",
                    "heuristicsCount": count,
                }
            )
        return projects

    def init_local(self, name: str, cwd: Optional[Path] = None) -> Path:
        self.load(name)
        target = Path(cwd or Path.cwd()) / LOCAL_CONFIG_NAME
        target.write_text(json.dumps({"project": name}, indent=2))
        return target
