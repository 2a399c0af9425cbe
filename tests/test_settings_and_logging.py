import json

from keycard import settings
from keycard.logging import get_run_summary, log_event, subscribe_to_events, unsubscribe_from_events
from keycard.settings import KeycardConfig, load_keycard_config


def _isolate_settings(monkeypatch, tmp_path, payload=None):
    path = tmp_path / "user_settings.json"
    if payload is not None:
        path.write_text(json.dumps(payload), encoding="utf-8")
    monkeypatch.setattr(settings, "SETTINGS_FILE", path)
    monkeypatch.setattr(settings, "_SETTINGS_CACHE", None)
    return path


def test_defaults(monkeypatch, tmp_path):
    _isolate_settings(monkeypatch, tmp_path)
    config = load_keycard_config()
    assert config.bridge_url == "http://localhost:3001"
    assert config.card_detection_timeout == 5.0
    assert config.card_programming_timeout == 30.0
    assert config.sequence_timeout == 180.0
    assert config.delay_between_cards == 1.0
    assert config.max_retries == 3


def test_env_beats_user_settings_and_overrides_beat_env(monkeypatch, tmp_path):
    _isolate_settings(monkeypatch, tmp_path, {"keycard_bridge_url": "http://desk-7:3001/", "keycard_max_retries": 5})
    monkeypatch.setenv("KEYCARD_SEQUENCE_TIMEOUT", "90")
    monkeypatch.setenv("KEYCARD_MAX_RETRIES", "4")

    config = load_keycard_config({"delay_between_cards": 0, "facility_id": None})
    assert config.bridge_url == "http://desk-7:3001"
    assert config.sequence_timeout == 90.0
    assert config.max_retries == 4
    assert config.delay_between_cards == 0
    assert config.facility_id == "KABINDA_LODGE"


def test_update_setting_persists(monkeypatch, tmp_path):
    path = _isolate_settings(monkeypatch, tmp_path)
    settings.update_setting("keycard_agent_id", "desk-9")
    assert json.loads(path.read_text(encoding="utf-8")) == {"keycard_agent_id": "desk-9"}
    assert load_keycard_config().agent_id == "desk-9"


def test_resolved_paths(tmp_path):
    config = KeycardConfig(db_path=str(tmp_path / "ledger.db"), workspace=str(tmp_path / "ws"))
    assert config.resolved_db_path() == str(tmp_path / "ledger.db")
    assert config.resolved_workspace() == tmp_path / "ws"


def test_log_event_writes_json_and_notifies(workspace):
    seen = []
    subscribe_to_events(seen.append)
    try:
        log_event("bridge_started", {"driver": "simulated"}, workspace, role="bridge", port=3001)
    finally:
        unsubscribe_from_events(seen.append)

    assert seen[0]["event"] == "bridge_started"
    assert seen[0]["role"] == "bridge"
    assert seen[0]["data"] == {"driver": "simulated", "port": 3001}
    lines = (workspace / "keycard.log").read_text(encoding="utf-8").splitlines()
    assert any(json.loads(line)["event"] == "bridge_started" for line in lines)


def test_failing_subscriber_does_not_break_logging(workspace):
    def broken(record):
        raise RuntimeError("subscriber down")

    subscribe_to_events(broken)
    try:
        log_event("reader_connected", {"driver": "simulated"}, workspace, role="bridge")
    finally:
        unsubscribe_from_events(broken)

    events = [json.loads(line)["event"] for line in (workspace / "keycard.log").read_text(encoding="utf-8").splitlines()]
    assert "logging_subscriber_failed" in events


def test_run_summary_tracks_latest_card_state(workspace):
    for status in ("waiting", "programming", "error"):
        log_event(
            "card_state_changed",
            {"run_id": "run-1", "card_type": "clock", "status": status, "error": "verify mismatch" if status == "error" else None},
            workspace,
            role="controller",
        )
    log_event("card_state_changed", {"run_id": "run-2", "card_type": "clock", "status": "success"}, workspace)
    log_event("sequence_completed", {"run_id": "run-1", "status": "partial_success"}, workspace)

    summary = get_run_summary(workspace, "run-1")
    assert summary["cards"] == {"clock": {"status": "error", "card_issue_id": None, "error": "verify mismatch"}}
    assert summary["outcome"] == "partial_success"
    assert get_run_summary(workspace / "empty", "run-1") == {}
