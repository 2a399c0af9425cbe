import argparse
import asyncio
import json
import sys
import traceback
from pathlib import Path
from typing import Any, Dict, List, Optional

from keycard.adapters.agent.bridge_client import AgentClient
from keycard.adapters.storage.async_card_issue_repository import AsyncCardIssueRepository
from keycard.adapters.storage.ledger_http_client import LedgerHTTPClient
from keycard.application.services.retry_service import RetryService
from keycard.application.services.sequence_controller import SequenceController
from keycard.core.types import CardType, IssueStatus
from keycard.domain.messages import CARD_INSTRUCTIONS
from keycard.exceptions import KeycardError
from keycard.logging import log_crash, subscribe_to_events, unsubscribe_from_events
from keycard.repositories import CardIssueRepository
from keycard.settings import KeycardConfig, load_keycard_config


def parse_args(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(prog="keycard", description="Hotel key-card programming pipeline.")
    parser.add_argument("--workspace", type=str, default=None, help="Workspace directory for logs.")
    parser.add_argument("--bridge-url", type=str, default=None, help="Card reader bridge URL override.")
    parser.add_argument("--db-path", type=str, default=None, help="Local ledger database path.")
    parser.add_argument("--ledger-url", type=str, default=None, help="Use a remote Ledger API instead of the local database.")
    sub = parser.add_subparsers(dest="command", required=True)

    bridge = sub.add_parser("serve-bridge", help="Run the card reader bridge.")
    bridge.add_argument("--host", default="127.0.0.1")
    bridge.add_argument("--port", type=int, default=None)
    bridge.add_argument("--driver", choices=["simulated", "pcsc"], default="simulated")

    api = sub.add_parser("serve-api", help="Run the card issue Ledger API.")
    api.add_argument("--host", default="127.0.0.1")
    api.add_argument("--port", type=int, default=None)

    program = sub.add_parser("program", help="Program the full card sequence for a booking.")
    program.add_argument("booking", type=str, help="Path to a booking JSON file.")
    program.add_argument("--hotel", required=True)
    program.add_argument("--room", default=None)

    retry = sub.add_parser("retry", help="Re-queue failed cards of a booking.")
    retry.add_argument("booking_id")
    retry.add_argument("--hotel", required=True)

    replay = sub.add_parser("replay", help="Encode pending cards through the bridge.")
    replay.add_argument("--hotel", required=True)
    replay.add_argument("--limit", type=int, default=50)

    issues = sub.add_parser("issues", help="List card issues.")
    issues.add_argument("--hotel", required=True)
    issues.add_argument("--status", choices=[status.value for status in IssueStatus], default=None)
    issues.add_argument("--booking", default=None)
    issues.add_argument("--limit", type=int, default=50)

    sub.add_parser("health", help="Check the card reader bridge.")
    return parser.parse_args(argv)


def _config_from_args(args) -> KeycardConfig:
    return load_keycard_config(
        {
            "workspace": args.workspace,
            "bridge_url": args.bridge_url,
            "db_path": args.db_path,
        }
    )


def build_ledger(config: KeycardConfig, ledger_url: Optional[str] = None) -> CardIssueRepository:
    if ledger_url:
        return LedgerHTTPClient(ledger_url)
    return AsyncCardIssueRepository(config.resolved_db_path(), max_retries=config.max_retries)


def build_agent(config: KeycardConfig) -> AgentClient:
    return AgentClient(
        config.bridge_url,
        timeout_seconds=config.card_programming_timeout,
        health_timeout_seconds=config.health_check_timeout,
    )


def _load_booking(path: str) -> Dict[str, Any]:
    with Path(path).open("r", encoding="utf-8") as f:
        payload = json.load(f)
    if not isinstance(payload, dict):
        raise ValueError(f"Booking file '{path}' must contain a JSON object.")
    return payload


def _print_progress(record: Dict[str, Any]) -> None:
    if record.get("event") != "card_state_changed":
        return
    data = record.get("data", {})
    status = data.get("status")
    if status == "waiting":
        print(f"  -> {CARD_INSTRUCTIONS[CardType(data['card_type'])]}")
    elif status in {"success", "error"}:
        detail = data.get("card_uid") if status == "success" else data.get("error")
        marker = "OK " if status == "success" else "ERR"
        print(f"  [{marker}] {data.get('card_type')}: {detail}")


async def _program(args, config: KeycardConfig) -> int:
    controller = SequenceController(
        build_ledger(config, args.ledger_url),
        build_agent(config),
        config,
        workspace=config.resolved_workspace(),
    )
    subscribe_to_events(_print_progress)
    try:
        outcome = await controller.run_sequence(_load_booking(args.booking), args.hotel, args.room)
    finally:
        unsubscribe_from_events(_print_progress)
    print(f"\n{outcome.message}")
    for warning in outcome.ledger_failures:
        print(f"  [LEDGER] {warning}")
    return 0 if outcome.succeeded == len(outcome.card_states) else 2


async def _retry(args, config: KeycardConfig) -> int:
    service = RetryService(build_ledger(config, args.ledger_url), build_agent(config), config)
    requeued = await service.retry_failed(args.hotel, args.booking_id)
    for issue in requeued:
        print(f"- {issue.card_type.value}: pending (retry #{issue.retry_count})")
    print(f"Re-queued {len(requeued)} card(s).")
    return 0


async def _replay(args, config: KeycardConfig) -> int:
    service = RetryService(build_ledger(config, args.ledger_url), build_agent(config), config)
    counts = await service.replay_pending(args.hotel, limit=args.limit)
    print(f"Replayed {counts['total']} card(s): {counts['success']} programmed, {counts['failed']} failed.")
    return 0 if counts["failed"] == 0 else 2


async def _issues(args, config: KeycardConfig) -> int:
    ledger = build_ledger(config, args.ledger_url)
    issues = await ledger.get_card_issues(
        args.hotel,
        status=IssueStatus(args.status) if args.status else None,
        booking_id=args.booking,
        limit=args.limit,
    )
    if not issues:
        print("No card issues.")
        return 0
    for issue in issues:
        detail = (issue.result or {}).get("cardUID") or issue.error_message or ""
        print(f"[{issue.id}] {issue.booking_id} {issue.card_type.value:<16} {issue.status.value:<12} retries={issue.retry_count} {detail}")
    return 0


async def _health(config: KeycardConfig) -> int:
    availability = await build_agent(config).check_availability()
    print(json.dumps({"bridge_url": config.bridge_url, **availability}))
    return 0 if availability["available"] and availability["reader_connected"] else 1


async def run_cli(args) -> int:
    config = _config_from_args(args)
    if args.command == "program":
        return await _program(args, config)
    if args.command == "retry":
        return await _retry(args, config)
    if args.command == "replay":
        return await _replay(args, config)
    if args.command == "issues":
        return await _issues(args, config)
    if args.command == "health":
        return await _health(config)
    raise ValueError(f"Unsupported command '{args.command}'.")


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        if args.command == "serve-bridge":
            from keycard.bridge.server import start_server

            start_server(host=args.host, port=args.port, driver=args.driver)
            return 0
        if args.command == "serve-api":
            import uvicorn

            from keycard.interfaces.api import create_api_app

            config = _config_from_args(args)
            app = create_api_app(build_ledger(config, args.ledger_url), build_agent(config), config)
            uvicorn.run(app, host=args.host, port=args.port or config.api_port, log_level="info")
            return 0
        return asyncio.run(run_cli(args))
    except KeyboardInterrupt:
        print("\n[HALT] Interrupted by user. Exiting...")
        return 130
    except (KeycardError, ValueError, OSError) as e:
        print(f"[ERROR] {e}")
        return 1
    except RuntimeError as e:
        log_crash(e, traceback.format_exc())
        print(f"\n[FATAL] {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
