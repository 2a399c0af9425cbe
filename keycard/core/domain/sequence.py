"""
Card-programming sequence state machine.

The run is a tagged union of three states and a pure ``transition`` function:

    Idle --RunStarted--> Running(current_index, card_states) --RunFinished--> Completed(outcome)
                                          \\--RunCancelled--> Completed(cancelled)

A card failure advances ``current_index`` exactly like a success does, so the
continue-on-failure policy lives here rather than in the controller's control flow.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterable, Optional, Sequence, Tuple, Union

from keycard.core.types import CARD_SEQUENCE, CardStateStatus, CardType, FailureKind, OutcomeStatus
from keycard.domain.records import CardState
from keycard.exceptions import StateConflict


@dataclass(frozen=True)
class Idle:
    card_types: Tuple[CardType, ...] = CARD_SEQUENCE


@dataclass(frozen=True)
class Running:
    current_index: int
    card_states: Tuple[CardState, ...]

    @property
    def exhausted(self) -> bool:
        return self.current_index >= len(self.card_states)

    @property
    def current(self) -> CardState:
        return self.card_states[self.current_index]


@dataclass(frozen=True)
class Completed:
    status: OutcomeStatus
    card_states: Tuple[CardState, ...]
    failed_card_types: Tuple[CardType, ...] = ()
    cancel_reason: Optional[str] = None


SequenceState = Union[Idle, Running, Completed]


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class RunStarted:
    pass


@dataclass(frozen=True)
class CardWaiting:
    index: int


@dataclass(frozen=True)
class CardProgramming:
    index: int
    card_issue_id: Optional[str] = None


@dataclass(frozen=True)
class CardSucceeded:
    index: int
    card_uid: Optional[str]
    timestamp: Optional[str]
    card_issue_id: Optional[str] = None
    skipped: bool = False


@dataclass(frozen=True)
class CardFailed:
    index: int
    error: str
    kind: FailureKind = FailureKind.ENCODE_FAILURE
    card_issue_id: Optional[str] = None


@dataclass(frozen=True)
class RunCancelled:
    reason: str = "cancelled"


@dataclass(frozen=True)
class RunFinished:
    pass


SequenceEvent = Union[RunStarted, CardWaiting, CardProgramming, CardSucceeded, CardFailed, RunCancelled, RunFinished]


def initial_state(card_types: Sequence[CardType] = CARD_SEQUENCE) -> Idle:
    return Idle(card_types=tuple(CardType(card_type) for card_type in card_types))


def classify(card_states: Iterable[CardState]) -> OutcomeStatus:
    return classify_results(state.status == CardStateStatus.SUCCESS for state in card_states)


def classify_results(success_flags: Iterable[bool]) -> OutcomeStatus:
    """Aggregation rule shared by the controller and the bridge's sequence endpoint."""
    flags = list(success_flags)
    succeeded = sum(1 for ok in flags if ok)
    if flags and succeeded == len(flags):
        return OutcomeStatus.FULL_SUCCESS
    if succeeded == 0:
        return OutcomeStatus.TOTAL_FAILURE
    return OutcomeStatus.PARTIAL_SUCCESS


def _require_running(state: SequenceState, event: SequenceEvent) -> Running:
    if not isinstance(state, Running):
        raise StateConflict(f"{type(event).__name__} is not valid in state {type(state).__name__}.")
    return state


def _require_current(state: Running, index: int, event: SequenceEvent) -> CardState:
    if state.exhausted or index != state.current_index:
        raise StateConflict(
            f"{type(event).__name__} targets card {index} but the run is at card {state.current_index}."
        )
    return state.current


def _replace_current(state: Running, card: CardState, *, advance: bool) -> Running:
    states = list(state.card_states)
    states[state.current_index] = card
    return replace(
        state,
        card_states=tuple(states),
        current_index=state.current_index + (1 if advance else 0),
    )


def transition(state: SequenceState, event: SequenceEvent) -> SequenceState:
    """Pure transition function; never mutates ``state``."""
    if isinstance(event, RunStarted):
        if not isinstance(state, Idle):
            raise StateConflict(f"RunStarted is not valid in state {type(state).__name__}.")
        return Running(
            current_index=0,
            card_states=tuple(CardState(card_type=card_type) for card_type in state.card_types),
        )

    if isinstance(event, CardWaiting):
        running = _require_running(state, event)
        card = _require_current(running, event.index, event)
        return _replace_current(running, card.model_copy(update={"status": CardStateStatus.WAITING}), advance=False)

    if isinstance(event, CardProgramming):
        running = _require_running(state, event)
        card = _require_current(running, event.index, event)
        update = {"status": CardStateStatus.PROGRAMMING}
        if event.card_issue_id:
            update["card_issue_id"] = event.card_issue_id
        return _replace_current(running, card.model_copy(update=update), advance=False)

    if isinstance(event, CardSucceeded):
        running = _require_running(state, event)
        card = _require_current(running, event.index, event)
        card = card.model_copy(
            update={
                "status": CardStateStatus.SUCCESS,
                "card_uid": event.card_uid,
                "timestamp": event.timestamp,
                "card_issue_id": event.card_issue_id or card.card_issue_id,
                "skipped": event.skipped,
                "error": None,
                "error_kind": None,
            }
        )
        return _replace_current(running, card, advance=True)

    if isinstance(event, CardFailed):
        running = _require_running(state, event)
        card = _require_current(running, event.index, event)
        card = card.model_copy(
            update={
                "status": CardStateStatus.ERROR,
                "error": event.error,
                "error_kind": event.kind,
                "card_issue_id": event.card_issue_id or card.card_issue_id,
            }
        )
        # Continue-on-failure: the next card is attempted regardless.
        return _replace_current(running, card, advance=True)

    if isinstance(event, RunCancelled):
        running = _require_running(state, event)
        return Completed(
            status=OutcomeStatus.CANCELLED,
            card_states=running.card_states,
            failed_card_types=_failed_types(running.card_states),
            cancel_reason=event.reason,
        )

    if isinstance(event, RunFinished):
        running = _require_running(state, event)
        if not running.exhausted:
            raise StateConflict(
                f"RunFinished before all cards were attempted ({running.current_index}/{len(running.card_states)})."
            )
        return Completed(
            status=classify(running.card_states),
            card_states=running.card_states,
            failed_card_types=_failed_types(running.card_states),
        )

    raise StateConflict(f"Unknown sequence event: {event!r}")


def _failed_types(card_states: Iterable[CardState]) -> Tuple[CardType, ...]:
    return tuple(state.card_type for state in card_states if state.status == CardStateStatus.ERROR)
