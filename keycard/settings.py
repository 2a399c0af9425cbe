import json
import os
from pathlib import Path
from typing import Dict, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from keycard.runtime_paths import resolve_ledger_db_path, resolve_user_settings_path, resolve_workspace_path

SETTINGS_FILE = resolve_user_settings_path()
ENV_FILE = Path(".env")
_SETTINGS_CACHE: Optional[Dict[str, Any]] = None


def load_env():
    """Simple .env loader to avoid extra dependencies."""
    # Keep tests hermetic: avoid re-injecting host .env values after monkeypatch.delenv.
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return
    if ENV_FILE.exists():
        for line in ENV_FILE.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if line and not line.startswith("#"):
                key, _, value = line.partition("=")
                os.environ.setdefault(key.strip(), value.strip())


def load_user_settings() -> Dict[str, Any]:
    """Loads settings from the durable config directory with caching."""
    global _SETTINGS_CACHE
    if _SETTINGS_CACHE is not None:
        return _SETTINGS_CACHE

    if SETTINGS_FILE.exists():
        try:
            with SETTINGS_FILE.open("r", encoding="utf-8") as f:
                payload = json.load(f)
        except (json.JSONDecodeError, OSError):
            return {}
        if isinstance(payload, dict):
            _SETTINGS_CACHE = payload
            return _SETTINGS_CACHE
    return {}


def save_user_settings(settings: Dict[str, Any]):
    """Saves settings and updates cache."""
    global _SETTINGS_CACHE
    SETTINGS_FILE.parent.mkdir(parents=True, exist_ok=True)
    with SETTINGS_FILE.open("w", encoding="utf-8") as f:
        json.dump(settings, f, indent=4)
    _SETTINGS_CACHE = settings


def get_setting(key: str, default: Any = None) -> Any:
    # Check environment first (UPPERCASE)
    env_val = os.environ.get(key.upper())
    if env_val is not None:
        return env_val

    settings = load_user_settings()
    return settings.get(key, default)


def update_setting(key: str, value: Any):
    settings = load_user_settings().copy()
    settings[key] = value
    save_user_settings(settings)


class KeycardConfig(BaseModel):
    """Timeouts, pacing and identities for one key-card installation."""
    model_config = ConfigDict(extra="ignore")

    bridge_url: str = "http://localhost:3001"
    health_check_timeout: float = 3.0
    card_detection_timeout: float = 5.0
    card_programming_timeout: float = 30.0
    sequence_timeout: float = 180.0
    delay_between_cards: float = 1.0
    waiting_delay: float = 0.5
    max_retries: int = 3
    facility_id: str = "KABINDA_LODGE"
    clock_timezone: str = "UTC"
    reader_id: Optional[str] = None
    agent_id: str = "local-bridge"
    db_path: Optional[str] = None
    workspace: Optional[str] = None
    bridge_port: int = 3001
    api_port: int = 8082
    simulate_detect_delay: float = Field(default=1.0, ge=0.0)

    @field_validator("bridge_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return str(v or "").rstrip("/") or "http://localhost:3001"

    def resolved_db_path(self) -> str:
        return resolve_ledger_db_path(self.db_path)

    def resolved_workspace(self) -> Path:
        return resolve_workspace_path(self.workspace)


def load_keycard_config(overrides: Optional[Dict[str, Any]] = None) -> KeycardConfig:
    """
    Resolve KeycardConfig from KEYCARD_<FIELD> env vars, then user settings,
    then model defaults. Explicit overrides win over everything.
    """
    load_env()
    values: Dict[str, Any] = {}
    for name in KeycardConfig.model_fields:
        value = get_setting(f"keycard_{name}")
        if value is not None and value != "":
            values[name] = value
    for key, value in (overrides or {}).items():
        if value is not None:
            values[key] = value
    return KeycardConfig.model_validate(values)
