import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "SHERLOCK_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class AppSettings(BaseModel):
    gemini_api_key: Optional[str] = None
    gemini_api_base: str = "https://generativelanguage.googleapis.com"
    gemini_api_version: str = "v1beta"
    model_id: str = "gemini-2.5-pro"
    http_timeout_s: float = 60.0
    upload_timeout_s: float = 600.0
    generation_timeout_s: float = 300.0

    # Remote file activation
    poll_interval_s: float = 3.0
    activation_timeout_s: float = 180.0

    # Content-addressed reuse and stale-file cleanup
    dedup_enabled: bool = True
    cleanup_enabled: bool = True
    cleanup_max_deletes: int = 10
    cleanup_interval_s: float = 300.0

    # Images up to this size are sent inline instead of uploaded
    inline_max_mb: int = 20

    projects_dir: str = "projects"
    default_project: str = "retail6"
    system_prompt: Optional[str] = None
    drive_api_base: str = "https://www.googleapis.com"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("gemini_api_key"):
            data["gemini_api_key"] = "********"
        return data

    @property
    def inline_max_bytes(self) -> int:
        return self.inline_max_mb * 1024 * 1024

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "gemini_api_key": os.getenv("GEMINI_API_KEY"),
        "gemini_api_base": os.getenv("GEMINI_API_BASE"),
        "model_id": os.getenv("SHERLOCK_MODEL"),
        "poll_interval_s": os.getenv("SHERLOCK_POLL_INTERVAL_S"),
        "activation_timeout_s": os.getenv("SHERLOCK_ACTIVATION_TIMEOUT_S"),
        "dedup_enabled": os.getenv("SHERLOCK_DEDUP"),
        "cleanup_enabled": os.getenv("SHERLOCK_CLEANUP"),
        "inline_max_mb": os.getenv("SHERLOCK_INLINE_MAX_MB"),
        "projects_dir": os.getenv("SHERLOCK_PROJECTS_DIR"),
        "default_project": os.getenv("SHERLOCK_DEFAULT_PROJECT"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "log_level": os.getenv("SHERLOCK_LOG_LEVEL"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("poll_interval_s", "activation_timeout_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    for key in ("inline_max_mb", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("dedup_enabled", "cleanup_enabled"):
        if key in cleaned:
            cleaned[key] = str(cleaned[key]).lower() in ENV_OVERRIDE_TRUE
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    if not merged.get("gemini_api_key") and env_data.get("gemini_api_key"):
        merged["gemini_api_key"] = env_data["gemini_api_key"]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
