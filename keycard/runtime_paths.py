from __future__ import annotations

import os
import shutil
from pathlib import Path


def durable_root() -> Path:
    raw = os.getenv("KEYCARD_DURABLE_ROOT", "").strip()
    return Path(raw) if raw else (Path.cwd() / ".keycard" / "durable")


def _migrate_legacy_file(*, legacy: Path, target: Path) -> None:
    if not legacy.exists() or target.exists():
        return
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(legacy), str(target))


def resolve_ledger_db_path(db_path: str | None = None) -> str:
    if db_path:
        return db_path
    target = durable_root() / "db" / "card_issues.db"
    _migrate_legacy_file(legacy=Path.cwd() / "card_issues.db", target=target)
    target.parent.mkdir(parents=True, exist_ok=True)
    return str(target)


def resolve_user_settings_path(path: Path | None = None) -> Path:
    if path is not None:
        return path
    target = durable_root() / "config" / "user_settings.json"
    _migrate_legacy_file(legacy=Path.cwd() / "user_settings.json", target=target)
    target.parent.mkdir(parents=True, exist_ok=True)
    return target


def resolve_workspace_path(path: str | Path | None = None) -> Path:
    if path:
        return Path(path)
    raw = os.getenv("KEYCARD_WORKSPACE", "").strip()
    return Path(raw) if raw else Path("workspace/default")
