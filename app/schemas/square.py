"""
Square webhook and Bookings API shapes.

The raw webhook body is decoded once at the boundary into one of
BookingCreated | BookingUpdated | OtherEvent so the parser works on a
validated shape instead of probing dicts.
"""

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from typing import Optional, List, Dict, Any, Literal, Union

from ..services.errors import MalformedPayload


class AppointmentSegment(BaseModel):
    service_variation_id: Optional[str] = None
    service_variation_version: Optional[int] = None
    duration_minutes: Optional[int] = None
    team_member_id: Optional[str] = None


class SquareBooking(BaseModel):
    """Booking as returned by Square (webhook object or Bookings API)"""
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    version: Optional[int] = None
    status: Optional[str] = None
    created_at: Optional[str] = None
    start_at: Optional[str] = None
    location_id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_note: Optional[str] = None
    seller_note: Optional[str] = None
    seller_id: Optional[str] = None
    appointment_segments: List[AppointmentSegment] = []


class WebhookObject(BaseModel):
    booking: Optional[SquareBooking] = None


class WebhookData(BaseModel):
    type: Optional[str] = None
    id: Optional[str] = None
    object: Optional[WebhookObject] = None


class WebhookEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = ""
    event_id: Optional[str] = None
    merchant_id: Optional[str] = None
    created_at: Optional[str] = None
    data: Optional[WebhookData] = None

    @property
    def booking(self) -> Optional[SquareBooking]:
        if self.data and self.data.object:
            return self.data.object.booking
        return None


class BookingCreated(WebhookEnvelope):
    type: Literal["booking.created"]


class BookingUpdated(WebhookEnvelope):
    type: Literal["booking.updated"]


class OtherEvent(WebhookEnvelope):
    """Any event type this service does not act on"""


WebhookEvent = Union[BookingCreated, BookingUpdated, OtherEvent]

EVENT_MODELS = {
    "booking.created": BookingCreated,
    "booking.updated": BookingUpdated,
}


def decode_webhook_event(payload: Any) -> WebhookEvent:
    """Validate a parsed JSON body into the tagged event union"""
    if not isinstance(payload, dict):
        raise MalformedPayload("Webhook body must be a JSON object")

    event_type = payload.get("type")
    model = EVENT_MODELS.get(event_type, OtherEvent)
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise MalformedPayload(
            f"Invalid {event_type or 'webhook'} payload",
            details={"errors": [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ]}
        )


# ==================
# Responses
# ==================

class WebhookResponse(BaseModel):
    """Body returned to Square for every acknowledged delivery"""
    model_config = ConfigDict(populate_by_name=True)

    processed: bool
    action: str
    booking_id: Optional[str] = Field(None, alias="bookingId")
    job_id: Optional[str] = Field(None, alias="jobId")
    event_id: Optional[str] = Field(None, alias="eventId")


class ReconciliationError(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    booking_id: str = Field(..., alias="bookingId")
    error: str


class ReconciliationSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    scanned: int = 0
    created: int = 0
    updated: int = 0
    cancelled: int = 0
    skipped: int = 0
    errors: List[ReconciliationError] = []
    start_time: str = Field("", alias="startTime")
    end_time: str = Field("", alias="endTime")
    duration_ms: int = Field(0, alias="durationMs")
    dry_run: bool = Field(False, alias="dryRun")

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)
