"""
Sequencing controller.

Drives the five lock-programming cards for one booking through the ledger and
the card-reader bridge, strictly in order. A failed card is recorded and the
next card is still attempted; the run ends as full success, partial success,
total failure or cancelled.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from keycard.adapters.agent.bridge_errors import AgentClientError, AgentClientNetworkError, AgentClientTimeoutError
from keycard.core.domain.sequence import (
    CardFailed,
    CardProgramming,
    CardSucceeded,
    CardWaiting,
    Completed,
    RunCancelled,
    RunFinished,
    RunStarted,
    SequenceState,
    initial_state,
    transition,
)
from keycard.core.types import CARD_SEQUENCE, CardType, FailureKind, IssueStatus
from keycard.domain.messages import CARD_READER_MESSAGES, outcome_message
from keycard.domain.payloads import build_card_payload, calculate_nights, coerce_booking
from keycard.domain.records import Booking, CardIssueRecord, SequenceOutcome
from keycard.exceptions import (
    AgentUnavailable,
    CardDetectionTimeout,
    KeycardError,
    ReaderNotConnected,
)
from keycard.logging import log_event
from keycard.repositories import LEDGER_ERRORS, CardIssueRepository, DeviceLogRepository
from keycard.settings import KeycardConfig
from keycard.state import RunRegistry, runtime_state
from keycard.time_utils import utc_timestamp

from .cancellation import CancellationToken
from .reader_locks import ReaderLockRegistry


class CardAgent(Protocol):
    async def check_availability(self) -> Dict[str, bool]: ...

    async def encode(
        self,
        issue_id: str,
        payload: Dict[str, Any],
        hotel_id: str,
        room_id: Optional[str] = None,
    ) -> Dict[str, Any]: ...


def classify_failure(exc: BaseException) -> FailureKind:
    if isinstance(exc, CardDetectionTimeout):
        return FailureKind.DETECTION_TIMEOUT
    if isinstance(exc, ReaderNotConnected):
        return FailureKind.READER_NOT_CONNECTED
    if isinstance(exc, (AgentUnavailable, AgentClientNetworkError, AgentClientTimeoutError)):
        return FailureKind.AGENT_UNAVAILABLE
    return FailureKind.ENCODE_FAILURE


def classify_failure_text(error: str) -> FailureKind:
    """Failure kind for an ``ok = false`` answer, where only the error text survives."""
    text = error.lower()
    if "detection timeout" in text:
        return FailureKind.DETECTION_TIMEOUT
    if "not connected" in text:
        return FailureKind.READER_NOT_CONNECTED
    return FailureKind.ENCODE_FAILURE


@dataclass
class _RunContext:
    run_id: str
    booking: Booking
    hotel_id: str
    room_id: Optional[str]
    user_id: Optional[str]
    issues: Dict[CardType, CardIssueRecord]
    ledger_failures: List[str]


class SequenceController:
    def __init__(
        self,
        ledger: CardIssueRepository,
        agent: CardAgent,
        config: Optional[KeycardConfig] = None,
        *,
        locks: Optional[ReaderLockRegistry] = None,
        registry: Optional[RunRegistry] = None,
        device_logs: Optional[DeviceLogRepository] = None,
        workspace: Optional[Path] = None,
    ) -> None:
        self.ledger = ledger
        self.agent = agent
        self.config = config or KeycardConfig()
        self.locks = locks or ReaderLockRegistry()
        self.registry = registry or runtime_state
        if device_logs is None and isinstance(ledger, DeviceLogRepository):
            device_logs = ledger
        self.device_logs = device_logs
        self.workspace = workspace

    def reader_key(self, hotel_id: str) -> str:
        return self.config.reader_id or hotel_id

    async def run_sequence(
        self,
        booking: Booking | Dict[str, Any],
        hotel_id: str,
        room_id: Optional[str] = None,
        *,
        token: Optional[CancellationToken] = None,
        run_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> SequenceOutcome:
        booking = coerce_booking(booking)
        calculate_nights(booking.check_in_date, booking.check_out_date)
        run_id = run_id or uuid.uuid4().hex
        token = token or CancellationToken()

        async with self.locks.hold(self.reader_key(hotel_id)):
            await self._require_agent(run_id, booking)
            await self.registry.add_run(run_id, token, booking.booking_id)
            try:
                ctx = _RunContext(
                    run_id=run_id,
                    booking=booking,
                    hotel_id=hotel_id,
                    room_id=room_id,
                    user_id=user_id,
                    issues={},
                    ledger_failures=[],
                )
                completed = await self._drive(ctx, token)
            finally:
                await self.registry.remove_run(run_id)

        return self._outcome(ctx, completed)

    async def _require_agent(self, run_id: str, booking: Booking) -> None:
        availability = await self.agent.check_availability()
        if not availability.get("available"):
            log_event(
                "sequence_rejected",
                {"run_id": run_id, "booking_id": booking.booking_id, "reason": "agent_unavailable", "level": "error"},
                self.workspace,
                role="controller",
            )
            raise AgentUnavailable(CARD_READER_MESSAGES["service_unavailable"])
        if not availability.get("reader_connected"):
            log_event(
                "sequence_rejected",
                {"run_id": run_id, "booking_id": booking.booking_id, "reason": "reader_not_connected", "level": "error"},
                self.workspace,
                role="controller",
            )
            raise ReaderNotConnected(CARD_READER_MESSAGES["reader_not_connected"])

    async def _load_done(self, ctx: _RunContext) -> Dict[CardType, CardIssueRecord]:
        try:
            existing = await self.ledger.get_card_issues(
                ctx.hotel_id,
                booking_id=ctx.booking.booking_id,
                limit=len(CARD_SEQUENCE),
            )
        except LEDGER_ERRORS as exc:
            ctx.ledger_failures.append(f"Could not read existing card issues: {exc}")
            return {}
        return {issue.card_type: issue for issue in existing if issue.status == IssueStatus.DONE}

    async def _drive(self, ctx: _RunContext, token: CancellationToken) -> Completed:
        done = await self._load_done(ctx)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.sequence_timeout
        state: SequenceState = transition(initial_state(CARD_SEQUENCE), RunStarted())
        log_event(
            "sequence_started",
            {"run_id": ctx.run_id, "booking_id": ctx.booking.booking_id, "hotel_id": ctx.hotel_id, "resumed": len(done)},
            self.workspace,
            role="controller",
        )

        last_index = len(CARD_SEQUENCE) - 1
        for index, card_type in enumerate(CARD_SEQUENCE):
            if not token.cancelled and loop.time() >= deadline:
                token.cancel("timeout")
            if token.cancelled:
                state = transition(state, RunCancelled(reason=token.reason or "cancelled"))
                break

            previous = done.get(card_type)
            if previous is not None:
                ctx.issues[card_type] = previous
                state = transition(state, self._skipped(index, previous))
                self._emit(ctx, state, index)
                continue

            state = transition(state, CardWaiting(index))
            self._emit(ctx, state, index)
            await token.sleep(self.config.waiting_delay)

            state = transition(state, CardProgramming(index))
            self._emit(ctx, state, index)
            state = transition(state, await self._program_card(ctx, index, card_type))
            self._emit(ctx, state, index)

            if index < last_index:
                await token.sleep(self.config.delay_between_cards)
        else:
            state = transition(state, RunFinished())

        return state

    def _skipped(self, index: int, issue: CardIssueRecord) -> CardSucceeded:
        result = issue.result or {}
        return CardSucceeded(
            index=index,
            card_uid=result.get("cardUID"),
            timestamp=result.get("timestamp") or issue.completed_at,
            card_issue_id=issue.id,
            skipped=True,
        )

    async def _program_card(self, ctx: _RunContext, index: int, card_type: CardType):
        payload = build_card_payload(
            card_type,
            ctx.booking,
            facility=self.config.facility_id,
            timezone=self.config.clock_timezone,
        )

        # No physical write without an open audit record.
        try:
            issue = await self.ledger.create_card_issue(
                ctx.hotel_id,
                ctx.room_id,
                ctx.booking.booking_id,
                card_type,
                payload,
                user_id=ctx.user_id,
            )
        except LEDGER_ERRORS as exc:
            ctx.ledger_failures.append(f"{card_type.value}: card issue not created: {exc}")
            return CardFailed(index, f"Ledger write failed: {exc}", FailureKind.LEDGER_WRITE_FAILURE)

        ctx.issues[card_type] = issue
        if issue.status == IssueStatus.DONE:
            return self._skipped(index, issue)

        try:
            issue = await self.ledger.update_card_issue_status(
                issue.id, IssueStatus.IN_PROGRESS, agent_id=self.config.agent_id
            )
        except LEDGER_ERRORS as exc:
            ctx.ledger_failures.append(f"{card_type.value}: card issue not marked in progress: {exc}")
            return CardFailed(index, f"Ledger write failed: {exc}", FailureKind.LEDGER_WRITE_FAILURE, issue.id)
        ctx.issues[card_type] = issue

        try:
            response = await asyncio.wait_for(
                self.agent.encode(issue.id, payload, ctx.hotel_id, ctx.room_id),
                timeout=self.config.card_programming_timeout,
            )
        except asyncio.TimeoutError:
            return await self._fail(ctx, index, issue, "Card programming timed out", FailureKind.ENCODE_FAILURE)
        except (AgentClientError, KeycardError) as exc:
            return await self._fail(ctx, index, issue, str(exc) or type(exc).__name__, classify_failure(exc))
        except Exception as exc:
            log_event(
                "card_encode_crashed",
                {"run_id": ctx.run_id, "card_type": card_type.value, "error": repr(exc), "level": "error"},
                self.workspace,
                role="controller",
            )
            return await self._fail(ctx, index, issue, str(exc) or type(exc).__name__, FailureKind.ENCODE_FAILURE)

        if not response.get("ok"):
            error = str(response.get("error") or CARD_READER_MESSAGES["programming_failed"])
            return await self._fail(ctx, index, issue, error, classify_failure_text(error))

        result = dict(response.get("result") or {})
        card_uid = result.get("cardUID")
        timestamp = result.get("timestamp") or utc_timestamp()
        result.update({"cardUID": card_uid, "timestamp": timestamp})
        try:
            issue = await self.ledger.update_card_issue_status(
                issue.id, IssueStatus.DONE, result=result, agent_id=self.config.agent_id
            )
            ctx.issues[card_type] = issue
        except LEDGER_ERRORS as exc:
            ctx.ledger_failures.append(f"{card_type.value}: {CARD_READER_MESSAGES['ledger_write_failed']} ({exc})")
        await self._log_device(ctx, "card_programmed", {"cardType": card_type.value, "cardUID": card_uid}, issue.id)
        return CardSucceeded(index, card_uid, timestamp, issue.id)

    async def _fail(
        self,
        ctx: _RunContext,
        index: int,
        issue: CardIssueRecord,
        error: str,
        kind: FailureKind,
    ) -> CardFailed:
        try:
            ctx.issues[issue.card_type] = await self.ledger.update_card_issue_status(
                issue.id, IssueStatus.FAILED, error_message=error, agent_id=self.config.agent_id
            )
        except LEDGER_ERRORS as exc:
            ctx.ledger_failures.append(f"{issue.card_type.value}: failure not recorded: {exc}")
        await self._log_device(ctx, "error", {"cardType": issue.card_type.value, "error": error}, issue.id)
        return CardFailed(index, error, kind, issue.id)

    async def _log_device(self, ctx: _RunContext, event_type: str, payload: Dict[str, Any], issue_id: str) -> None:
        if self.device_logs is None:
            return
        try:
            await self.device_logs.log_device_event(
                self.config.agent_id,
                event_type,
                {**payload, "runId": ctx.run_id},
                device_id=self.config.reader_id,
                card_issue_id=issue_id,
            )
        except LEDGER_ERRORS as exc:
            log_event(
                "device_log_failed",
                {"run_id": ctx.run_id, "event_type": event_type, "error": str(exc), "level": "warning"},
                self.workspace,
                role="controller",
            )

    def _emit(self, ctx: _RunContext, state: SequenceState, index: int) -> None:
        card = state.card_states[index]
        log_event(
            "card_state_changed",
            {
                "run_id": ctx.run_id,
                "booking_id": ctx.booking.booking_id,
                "index": index,
                "card_type": card.card_type.value,
                "status": card.status.value,
                "card_issue_id": card.card_issue_id,
                "card_uid": card.card_uid,
                "error": card.error,
                "error_kind": card.error_kind.value if card.error_kind else None,
                "skipped": card.skipped,
            },
            self.workspace,
            role="controller",
        )

    def _outcome(self, ctx: _RunContext, completed: Completed) -> SequenceOutcome:
        message = outcome_message(completed.status, completed.failed_card_types)
        if ctx.ledger_failures:
            message = f"{message} {CARD_READER_MESSAGES['ledger_write_failed']}"
        outcome = SequenceOutcome(
            run_id=ctx.run_id,
            booking_id=ctx.booking.booking_id,
            hotel_id=ctx.hotel_id,
            status=completed.status,
            message=message,
            card_states=list(completed.card_states),
            issues=[ctx.issues[card_type] for card_type in CARD_SEQUENCE if card_type in ctx.issues],
            failed_card_types=list(completed.failed_card_types),
            ledger_failures=list(ctx.ledger_failures),
            cancel_reason=completed.cancel_reason,
        )
        log_event(
            "sequence_completed",
            {
                "run_id": ctx.run_id,
                "booking_id": ctx.booking.booking_id,
                "status": outcome.status.value,
                "succeeded": outcome.succeeded,
                "failed_card_types": [card_type.value for card_type in outcome.failed_card_types],
                "ledger_failures": len(outcome.ledger_failures),
                "level": "info" if not outcome.ledger_failures else "warning",
            },
            self.workspace,
            role="controller",
        )
        return outcome
