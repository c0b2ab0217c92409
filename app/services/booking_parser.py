"""
Square Booking Parser

Turns a decoded webhook event (or a booking from the Bookings API) into a
ParsedBooking plus the action the ingest pipeline should take.

Unknown event types are always "skip", never an error, so new Square
event types cannot break ingestion.
"""

import logging
import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from ..schemas.square import SquareBooking, WebhookEnvelope
from .errors import MalformedBookingError

logger = logging.getLogger(__name__)

DEFAULT_BOOKING_STATUS = "PENDING"

CANCELLED_STATUSES = {
    "CANCELLED",
    "CANCELLED_BY_CUSTOMER",
    "CANCELLED_BY_SELLER",
    "DECLINED",
    "NO_SHOW",
}


class BookingAction(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"


ACTION_BY_EVENT_TYPE = {
    "booking.created": BookingAction.CREATE,
    "booking.updated": BookingAction.UPDATE,
}


@dataclass
class ParsedBooking:
    """Normalized projection of a Square booking (never persisted as-is)"""
    booking_id: str
    status: str
    customer_id: Optional[str] = None
    service_type: Optional[str] = None  # raw service variation id
    appointment_time: Optional[str] = None
    location_id: Optional[str] = None
    notes: Optional[str] = None
    seller_id: Optional[str] = None
    version: Optional[int] = None


def determine_booking_action(event_type: Optional[str]) -> BookingAction:
    return ACTION_BY_EVENT_TYPE.get(event_type or "", BookingAction.SKIP)


def parse_square_booking(booking: Union[SquareBooking, Dict[str, Any]]) -> ParsedBooking:
    """Project a Square booking onto ParsedBooking"""
    if isinstance(booking, dict):
        booking = SquareBooking.model_validate(booking)

    segments = booking.appointment_segments or []
    service_type = segments[0].service_variation_id if segments else None

    return ParsedBooking(
        booking_id=booking.id or "",
        status=booking.status or DEFAULT_BOOKING_STATUS,
        customer_id=booking.customer_id,
        service_type=service_type,
        appointment_time=booking.start_at,
        location_id=booking.location_id,
        notes=booking.customer_note,
        seller_id=booking.seller_id,
        version=booking.version,
    )


def parse_booking_event(event: WebhookEnvelope) -> ParsedBooking:
    """
    Extract the booking from a webhook event.

    Raises MalformedBookingError only when the booking object is absent.
    """
    booking = event.booking
    if booking is None:
        raise MalformedBookingError(
            "Invalid booking webhook: missing booking object",
            details={"event_id": event.event_id, "type": event.type}
        )
    return parse_square_booking(booking)


def is_valid_booking(parsed: ParsedBooking) -> bool:
    return bool(parsed.booking_id and parsed.appointment_time and parsed.status)


def is_cancelled_status(status: Optional[str]) -> bool:
    return bool(status) and status.upper() in CANCELLED_STATUSES
