import json
import logging
import logging.handlers
from pathlib import Path
from typing import Any, Dict, List, Callable, Optional

from keycard.runtime_paths import resolve_workspace_path
from keycard.time_utils import now_local

# Initialize system logger
_logger = logging.getLogger("keycard")
_logger.setLevel(logging.INFO)

def setup_logging(workspace: Path):
    """Configures rotating file handlers for the workspace."""
    log_file = workspace / "keycard.log"
    workspace.mkdir(parents=True, exist_ok=True)

    # Rotating handler: 10MB per file, keep 5 backups
    handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=10*1024*1024, backupCount=5, encoding="utf-8"
    )
    # One JSON record per line
    formatter = logging.Formatter('%(message)s')
    handler.setFormatter(formatter)

    if not any(isinstance(h, logging.handlers.RotatingFileHandler) and h.baseFilename == str(log_file.resolve()) for h in _logger.handlers):
        _logger.addHandler(handler)

# Global list of event subscribers (API progress streams, tests)
_subscribers: List[Callable[[Dict[str, Any]], None]] = []

def subscribe_to_events(callback: Callable[[Dict[str, Any]], None]):
    _subscribers.append(callback)

def unsubscribe_from_events(callback: Callable[[Dict[str, Any]], None]):
    if callback in _subscribers:
        _subscribers.remove(callback)


def log_event(event: str, data: Dict[str, Any] = None, workspace: Optional[Path] = None, role: str = None, **kwargs) -> None:
    """
    Unified structured log router.

    - log_event("card_state_changed", {"card_type": "clock", ...}, workspace, role="controller")
    - log_event("bridge_started", port=3001)

    Extra keyword arguments are merged into the data payload.
    """
    if data is None: data = {}
    workspace = resolve_workspace_path(workspace)

    full_data = {**data, **kwargs}
    role_name = role or full_data.get("role") or "system"

    record = {
        "timestamp": now_local().isoformat(),
        "role": role_name,
        "event": event,
        "data": full_data,
    }

    # 1. Ensure logging is set up for this workspace
    setup_logging(workspace)

    # 2. Emit JSON record
    level = str(full_data.get("level") or "info").lower()
    _logger.log(
        logging.WARNING if level in {"warn", "warning"} else logging.ERROR if level in {"error", "critical"} else logging.INFO,
        json.dumps(record, ensure_ascii=False, default=str),
    )

    # 3. Notify subscribers
    for subscriber in _subscribers:
        try:
            subscriber(record)
        except (RuntimeError, ValueError, TypeError, OSError) as e:
            failure_record = {
                "timestamp": now_local().isoformat(),
                "role": "system",
                "event": "logging_subscriber_failed",
                "data": {"error": str(e)},
            }
            _logger.error(json.dumps(failure_record, ensure_ascii=False))


def get_run_summary(workspace: Path, run_id: str) -> Dict[str, Any]:
    """
    Rebuilds per-card progress for one sequence run from workspace/keycard.log.
    """
    log_path = workspace / "keycard.log"
    if not log_path.exists():
        return {}

    cards: Dict[str, Dict[str, Any]] = {}
    outcome = None
    with log_path.open("r", encoding="utf-8") as f:
        for line in f:
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            data = record.get("data", {})
            if data.get("run_id") != run_id:
                continue
            event = record.get("event")
            if event == "card_state_changed":
                cards[data.get("card_type")] = {
                    "status": data.get("status"),
                    "card_issue_id": data.get("card_issue_id"),
                    "error": data.get("error"),
                }
            elif event == "sequence_completed":
                outcome = data.get("status")
    return {"run_id": run_id, "cards": cards, "outcome": outcome}

def log_crash(exception: Exception, traceback_str: str, workspace: Optional[Path] = None):
    """
    Safely logs a crash to a rotating file.
    """
    workspace = resolve_workspace_path(workspace)
    workspace.mkdir(parents=True, exist_ok=True)
    crash_log = workspace / "keycard_crash.log"

    # Dedicated logger so crash output never interleaves with event records
    crash_logger = logging.getLogger("keycard_crash")
    crash_logger.setLevel(logging.ERROR)

    if not crash_logger.handlers:
        handler = logging.handlers.RotatingFileHandler(
            crash_log, maxBytes=5*1024*1024, backupCount=5, encoding="utf-8"
        )
        formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
        handler.setFormatter(formatter)
        crash_logger.addHandler(handler)

    crash_logger.error(f"CRITICAL CRASH: {type(exception).__name__}\n{traceback_str}")
