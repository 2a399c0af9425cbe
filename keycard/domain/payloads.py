"""Card payload construction.

Each card type writes a different payload derived from the same booking. The
controller treats payloads as opaque and passes them straight to the bridge.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from keycard.core.types import CardType
from keycard.domain.records import Booking
from keycard.exceptions import InvalidBooking
from keycard.time_utils import utc_timestamp

DEFAULT_FACILITY = "KABINDA_LODGE"
DEFAULT_CLOCK_TIMEZONE = "UTC"


def parse_booking_date(value: Any) -> date:
    """Calendar date of a booking boundary; any time-of-day part is dropped."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value or "").strip()
    if not raw:
        raise InvalidBooking("Booking date is missing.")
    try:
        return date.fromisoformat(raw[:10])
    except ValueError as exc:
        raise InvalidBooking(f"Unrecognized booking date: '{raw}'.") from exc


def coerce_booking(booking: Booking | Dict[str, Any]) -> Booking:
    if isinstance(booking, Booking):
        return booking
    try:
        return Booking.model_validate(booking)
    except ValidationError as exc:
        raise InvalidBooking(f"Invalid booking data: {exc.error_count()} field error(s).") from exc


def calculate_nights(check_in: Any, check_out: Any) -> int:
    start = parse_booking_date(check_in)
    end = parse_booking_date(check_out)
    nights = (end - start).days
    if nights < 1:
        raise InvalidBooking(f"Check-out ({end.isoformat()}) must be after check-in ({start.isoformat()}).")
    return nights


def _authorization(booking: Booking, *, facility: str, timestamp: str, **_: Any) -> Dict[str, Any]:
    return {
        "type": "authorization",
        "timestamp": timestamp,
        "facility": booking.facility_id or facility,
    }


def _installation(booking: Booking, *, timestamp: str, **_: Any) -> Dict[str, Any]:
    return {
        "type": "installation",
        "roomNumber": booking.room_number,
        "timestamp": timestamp,
    }


def _clock(booking: Booking, *, timestamp: str, timezone: str, **_: Any) -> Dict[str, Any]:
    return {
        "type": "clock",
        "timestamp": timestamp,
        "timezone": timezone,
    }


def _room(booking: Booking, **_: Any) -> Dict[str, Any]:
    start = parse_booking_date(booking.check_in_date)
    end = parse_booking_date(booking.check_out_date)
    return {
        "type": "room_access",
        "roomNumber": booking.room_number,
        "guestId": booking.guest_id,
        "startDate": start.isoformat(),
        "endDate": end.isoformat(),
        "nights": calculate_nights(start, end),
        "bookingId": booking.booking_id,
    }


_BUILDERS: Dict[CardType, Callable[..., Dict[str, Any]]] = {
    CardType.AUTHORIZATION_1: _authorization,
    CardType.AUTHORIZATION_2: _authorization,
    CardType.INSTALLATION: _installation,
    CardType.CLOCK: _clock,
    CardType.ROOM: _room,
}


def build_card_payload(
    card_type: CardType | str,
    booking: Booking | Dict[str, Any],
    *,
    facility: str = DEFAULT_FACILITY,
    timezone: str = DEFAULT_CLOCK_TIMEZONE,
    timestamp: Optional[str] = None,
) -> Dict[str, Any]:
    try:
        card_type = CardType(card_type)
    except ValueError as exc:
        raise InvalidBooking(f"Unknown card type: {card_type}") from exc
    booking = coerce_booking(booking)
    builder = _BUILDERS[card_type]
    return builder(
        booking,
        facility=facility,
        timezone=timezone,
        timestamp=timestamp or utc_timestamp(),
    )
