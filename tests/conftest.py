import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest

from keycard.adapters.storage.async_card_issue_repository import AsyncCardIssueRepository
from keycard.core.types import CardType, IssueStatus
from keycard.domain.records import CardIssueRecord
from keycard.exceptions import LedgerWriteFailure
from keycard.settings import KeycardConfig


class BookingBuilder:
    def __init__(self, booking_id: str = "BK-1001"):
        self.data = {
            "bookingId": booking_id,
            "roomNumber": "12",
            "guestId": "G-77",
            "checkInDate": "2025-03-01",
            "checkOutDate": "2025-03-04",
        }

    def with_dates(self, check_in: str, check_out: str):
        self.data["checkInDate"] = check_in
        self.data["checkOutDate"] = check_out
        return self

    def with_facility(self, facility_id: str):
        self.data["facilityId"] = facility_id
        return self

    def with_room(self, room_number: Any):
        self.data["roomNumber"] = room_number
        return self

    def build(self) -> Dict[str, Any]:
        return dict(self.data)


class FakeAgent:
    """
    Scriptable stand-in for the bridge client. ``failures`` maps a payload type
    to an ``ok = false`` error, ``raise_on`` maps a payload type to an exception
    and ``delays`` maps a payload type to seconds spent encoding.
    """

    def __init__(
        self,
        *,
        available: bool = True,
        reader_connected: bool = True,
        failures: Optional[Dict[str, str]] = None,
        raise_on: Optional[Dict[str, Exception]] = None,
        delays: Optional[Dict[str, float]] = None,
        on_encode=None,
    ):
        self.available = available
        self.reader_connected = reader_connected
        self.failures = dict(failures or {})
        self.raise_on = dict(raise_on or {})
        self.delays = dict(delays or {})
        self.on_encode = on_encode
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.availability_checks = 0

    async def check_availability(self) -> Dict[str, bool]:
        self.availability_checks += 1
        return {"available": self.available, "reader_connected": self.available and self.reader_connected}

    async def encode(self, issue_id: str, payload: Dict[str, Any], hotel_id: str, room_id: Optional[str] = None):
        self.calls.append((issue_id, payload))
        payload_type = payload.get("type")
        if self.on_encode is not None:
            self.on_encode(payload)
        if payload_type in self.delays:
            await asyncio.sleep(self.delays[payload_type])
        if payload_type in self.raise_on:
            raise self.raise_on[payload_type]
        if payload_type in self.failures:
            return {"ok": False, "result": None, "error": self.failures[payload_type]}
        n = len(self.calls)
        return {
            "ok": True,
            "result": {
                "cardUID": f"04:A2:{n:02X}:1F:9C:00:7E:{n * 17 % 256:02X}",
                "timestamp": f"2025-03-01T10:00:0{n % 10}.000Z",
                "data": payload,
            },
            "error": None,
        }

    @property
    def encoded_types(self) -> List[str]:
        return [payload["type"] for _, payload in self.calls]


class RecordingLedger(AsyncCardIssueRepository):
    """aiosqlite ledger that records creations and can be told to fail writes."""

    def __init__(self, db_path: str, **kwargs):
        super().__init__(db_path, **kwargs)
        self.created: List[CardType] = []
        self.fail_create_for: set = set()
        self.fail_status_for: set = set()

    async def create_card_issue(self, hotel_id, room_id, booking_id, card_type, payload, *, user_id=None) -> CardIssueRecord:
        card_type = CardType(card_type)
        self.created.append(card_type)
        if card_type in self.fail_create_for:
            raise LedgerWriteFailure("ledger offline")
        return await super().create_card_issue(hotel_id, room_id, booking_id, card_type, payload, user_id=user_id)

    async def update_card_issue_status(self, issue_id, status, **kwargs) -> CardIssueRecord:
        if self.fail_status_for:
            current = await self.get_card_issue(issue_id)
            if current is not None and (current.card_type, IssueStatus(status)) in self.fail_status_for:
                raise LedgerWriteFailure("ledger offline")
        return await super().update_card_issue_status(issue_id, status, **kwargs)


@pytest.fixture(autouse=True)
def isolated_runtime(tmp_path, monkeypatch):
    monkeypatch.setenv("KEYCARD_WORKSPACE", str(tmp_path / "workspace"))
    monkeypatch.setenv("KEYCARD_DURABLE_ROOT", str(tmp_path / "durable"))


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "workspace"
    ws.mkdir(exist_ok=True)
    return ws


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "keycard_test.db")


@pytest.fixture
def booking():
    return BookingBuilder().build()


@pytest.fixture
def fast_config(db_path, workspace):
    return KeycardConfig(
        delay_between_cards=0,
        waiting_delay=0,
        card_detection_timeout=0.2,
        card_programming_timeout=5,
        sequence_timeout=60,
        db_path=db_path,
        workspace=str(workspace),
    )


@pytest.fixture
def ledger(db_path):
    return RecordingLedger(db_path)


@pytest.fixture
def booking_builder():
    return BookingBuilder


@pytest.fixture
def make_agent():
    return FakeAgent
