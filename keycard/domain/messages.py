from __future__ import annotations

from typing import Iterable

from keycard.core.types import CardType, OutcomeStatus

CARD_READER_MESSAGES = {
    "service_unavailable": "Card reader service is not running. Please start the bridge service on your desktop.",
    "reader_not_connected": "Card reader is not connected. Please check the USB connection.",
    "reader_busy": "Another card programming run is using this reader. Wait for it to finish or cancel it.",
    "card_not_detected": "No card detected. Please place a card on the reader.",
    "programming_success": "Card programmed successfully!",
    "programming_failed": "Failed to program card. Please try again.",
    "sequence_complete": "All cards programmed successfully!",
    "sequence_partial_success": "Some cards failed to program. Please retry failed cards.",
    "sequence_failed": "Card programming sequence failed.",
    "sequence_cancelled": "Card programming was cancelled.",
    "ledger_write_failed": "Card may have been written but not recorded. Check the card issue log.",
    "timeout": "Operation timed out. Please try again.",
}

CARD_INSTRUCTIONS = {
    CardType.AUTHORIZATION_1: "Place the first Authorization Card on the reader",
    CardType.INSTALLATION: "Place the Installation Card on the reader",
    CardType.AUTHORIZATION_2: "Place the second Authorization Card on the reader",
    CardType.CLOCK: "Place the Clock Card on the reader",
    CardType.ROOM: "Place the Room Access Card on the reader (this will be given to the guest)",
}


def outcome_message(status: OutcomeStatus, failed: Iterable[CardType] = ()) -> str:
    failed = [CardType(card_type).value for card_type in failed]
    if status == OutcomeStatus.FULL_SUCCESS:
        return CARD_READER_MESSAGES["sequence_complete"]
    if status == OutcomeStatus.PARTIAL_SUCCESS:
        return f"{CARD_READER_MESSAGES['sequence_partial_success']} Failed: {', '.join(failed)}."
    if status == OutcomeStatus.CANCELLED:
        return CARD_READER_MESSAGES["sequence_cancelled"]
    return CARD_READER_MESSAGES["sequence_failed"]


def describe_card(card_type: CardType, payload: dict) -> str:
    card_type = CardType(card_type)
    if card_type in {CardType.AUTHORIZATION_1, CardType.AUTHORIZATION_2}:
        return f"Authorization card for {payload.get('facility') or 'facility'}"
    if card_type == CardType.INSTALLATION:
        return f"Installation for Room {payload.get('roomNumber')}"
    if card_type == CardType.CLOCK:
        return f"Clock sync at {payload.get('timestamp')}"
    return f"Room {payload.get('roomNumber')} access: {payload.get('nights')} night(s)"
