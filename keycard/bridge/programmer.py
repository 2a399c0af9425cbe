from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

from keycard.core.domain.sequence import classify_results
from keycard.core.types import CARD_SEQUENCE, CardType, OutcomeStatus
from keycard.domain.payloads import build_card_payload, calculate_nights, coerce_booking
from keycard.domain.records import Booking
from keycard.exceptions import KeycardError, ReaderNotConnected
from keycard.logging import log_event
from keycard.settings import KeycardConfig
from keycard.time_utils import utc_timestamp

from .reader import ReaderConnectionManager
from .session import CardSession


class CardProgrammer:
    """Bridge-side card writing: detect a card, write the payload, report the UID."""

    def __init__(
        self,
        manager: ReaderConnectionManager,
        config: Optional[KeycardConfig] = None,
        *,
        poll_interval: float = 0.1,
        workspace: Optional[Path] = None,
    ) -> None:
        self.manager = manager
        self.config = config or KeycardConfig()
        self.poll_interval = poll_interval
        self.workspace = workspace

    async def detect(self) -> Dict[str, Any]:
        async with self.manager.acquire() as handle:
            session = self._session(handle)
            uid = await self._guarded(session.detect())
            return {"uid": uid, "detected": True}

    async def encode(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with self.manager.acquire() as handle:
            session = self._session(handle)
            uid = await self._guarded(session.detect())
            await self._guarded(session.write(payload))
        log_event("card_written", {"card_uid": uid, "payload_type": payload.get("type")}, self.workspace, role="bridge")
        return {"cardUID": uid, "timestamp": utc_timestamp(), "data": payload}

    async def program_card(self, card_type: CardType | str, booking: Booking | Dict[str, Any]) -> Dict[str, Any]:
        card_type = CardType(card_type)
        payload = build_card_payload(
            card_type,
            booking,
            facility=self.config.facility_id,
            timezone=self.config.clock_timezone,
        )
        encoded = await self.encode(payload)
        return {
            "success": True,
            "cardType": card_type.value,
            "cardUID": encoded["cardUID"],
            "data": payload,
            "timestamp": encoded["timestamp"],
        }

    async def program_sequence(self, booking: Booking | Dict[str, Any]) -> Dict[str, Any]:
        booking = coerce_booking(booking)
        calculate_nights(booking.check_in_date, booking.check_out_date)
        results = []
        for card_type in CARD_SEQUENCE:
            try:
                results.append(await self.program_card(card_type, booking))
            except KeycardError as exc:
                results.append(
                    {
                        "success": False,
                        "cardType": card_type.value,
                        "error": str(exc),
                        "timestamp": utc_timestamp(),
                    }
                )
                log_event(
                    "card_program_failed",
                    {"card_type": card_type.value, "booking_id": booking.booking_id, "error": str(exc), "level": "warning"},
                    self.workspace,
                    role="bridge",
                )
        status = classify_results(result["success"] for result in results)
        return {
            "success": status == OutcomeStatus.FULL_SUCCESS,
            "status": status.value,
            "results": results,
            "completedCards": sum(1 for result in results if result["success"]),
            "totalCards": len(CARD_SEQUENCE),
        }

    def _session(self, handle: Any) -> CardSession:
        return CardSession(
            self.manager.driver,
            handle,
            detection_timeout=self.config.card_detection_timeout,
            poll_interval=self.poll_interval,
        )

    async def _guarded(self, step):
        try:
            return await step
        except ReaderNotConnected as exc:
            self.manager.mark_disconnected(str(exc))
            raise
