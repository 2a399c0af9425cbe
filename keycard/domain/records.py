from __future__ import annotations
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator
from keycard.core.types import CardType, CardStateStatus, FailureKind, IssueStatus, OutcomeStatus


class CardIssueRecord(BaseModel):
    """
    A type-safe representation of one card issue in the ledger.
    Used to prevent storage shape leakage from repositories.
    """
    id: str
    hotel_id: str
    booking_id: Optional[str] = None
    room_id: Optional[str] = None
    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    device_id: Optional[str] = None
    card_type: CardType
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: IssueStatus = IssueStatus.PENDING
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    max_retries: Optional[int] = 3
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None


class IssueEventRecord(BaseModel):
    issue_id: str
    actor: str
    action: str
    timestamp: str


class DeviceLogRecord(BaseModel):
    id: int
    agent_id: str
    device_id: Optional[str] = None
    card_issue_id: Optional[str] = None
    event_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: str


class Booking(BaseModel):
    """
    Booking data needed to program a set of cards. Accepts both the
    camelCase keys the front desk sends and snake_case.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    booking_id: str = Field(validation_alias=AliasChoices("booking_id", "bookingId", "id"))
    room_number: str = Field(validation_alias=AliasChoices("room_number", "roomNumber"))
    guest_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("guest_id", "guestId"))
    check_in_date: str = Field(validation_alias=AliasChoices("check_in_date", "checkInDate", "check_in"))
    check_out_date: str = Field(validation_alias=AliasChoices("check_out_date", "checkOutDate", "check_out"))
    facility_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("facility_id", "facilityId"))

    @field_validator("booking_id", "room_number", "guest_id", mode="before")
    @classmethod
    def coerce_identifier(cls, v):
        """Room numbers and ids arrive as ints from some front-desk screens."""
        if v is None:
            return v
        return str(v)


class CardState(BaseModel):
    """Ephemeral per-run mirror of one card issue."""
    model_config = ConfigDict(frozen=True)

    card_type: CardType
    status: CardStateStatus = CardStateStatus.PENDING
    card_issue_id: Optional[str] = None
    card_uid: Optional[str] = None
    timestamp: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[FailureKind] = None
    skipped: bool = False


class SequenceOutcome(BaseModel):
    run_id: str
    booking_id: str
    hotel_id: str
    status: OutcomeStatus
    message: str
    card_states: List[CardState] = Field(default_factory=list)
    issues: List[CardIssueRecord] = Field(default_factory=list)
    failed_card_types: List[CardType] = Field(default_factory=list)
    ledger_failures: List[str] = Field(default_factory=list)
    cancel_reason: Optional[str] = None

    @property
    def succeeded(self) -> int:
        return sum(1 for state in self.card_states if state.status == CardStateStatus.SUCCESS)
