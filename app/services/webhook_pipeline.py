"""
Square Booking Webhook Ingest Pipeline

Single pass per delivery, no internal retries:
1. Verify signature (policy depends on strict mode)
2. Decode + classify the event (unsupported types are acknowledged)
3. Parse + validate the booking (invalid -> 5xx so Square redelivers)
4. Optional single-location filter
5. Idempotent create-or-update via JobSyncService

Errors propagate as JobSyncError subclasses; the router/app turn them
into HTTP responses (4xx for caller faults, 5xx to solicit a retry).
"""

import json
import logging
import enum
from typing import Mapping, Optional, Union

from ..models.job import CreatedBy
from ..schemas.square import WebhookResponse, decode_webhook_event
from .booking_parser import (
    BookingAction,
    determine_booking_action,
    parse_booking_event,
    is_valid_booking,
    is_cancelled_status,
)
from .errors import InvalidBooking, MalformedPayload, SignatureInvalid, SignatureMissing
from .job_sync import JobSyncService
from .square_signature import SignatureCheck, check_signature, extract_signature

logger = logging.getLogger(__name__)


class WebhookOutcome(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    CANCELLED = "cancelled"
    SKIPPED_UNSUPPORTED_EVENT = "skipped-unsupported-event"
    SKIPPED_FILTERED = "skipped-filtered"
    SKIPPED_CANCELLED = "skipped-cancelled"


class WebhookIngestPipeline:
    def __init__(
        self,
        sync_service: JobSyncService,
        signature_key: Optional[str],
        strict_signatures: bool = False,
        location_id: Optional[str] = None,
        request_id: Optional[str] = None
    ):
        self.sync_service = sync_service
        self.signature_key = signature_key
        self.strict_signatures = strict_signatures
        self.location_id = location_id or None
        self.request_id = request_id or "no-request-id"

    def verify(self, body: bytes, headers: Mapping[str, str], url: str) -> SignatureCheck:
        """Apply signature policy. Raises SignatureInvalid / SignatureMissing."""
        signature = extract_signature(headers)
        result = check_signature(body, signature, self.signature_key, url)

        if result == SignatureCheck.INVALID:
            logger.warning(f"[{self.request_id}] Webhook signature invalid for {url}")
            raise SignatureInvalid("Webhook signature validation failed")

        if result == SignatureCheck.MISSING:
            if self.strict_signatures:
                logger.warning(
                    f"[{self.request_id}] Rejecting unsigned webhook "
                    f"(signature={'present' if signature else 'absent'}, "
                    f"key={'configured' if self.signature_key else 'missing'})"
                )
                raise SignatureMissing("Webhook signature required")
            logger.warning(
                f"[{self.request_id}] Webhook signature check skipped "
                f"(signature={'present' if signature else 'absent'}, "
                f"key={'configured' if self.signature_key else 'missing'})"
            )

        return result

    def process(
        self,
        body: Union[bytes, str],
        headers: Mapping[str, str],
        url: str
    ) -> WebhookResponse:
        if isinstance(body, str):
            body = body.encode("utf-8")

        # 1. Signature
        self.verify(body, headers, url)

        # 2. Decode + classify
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise MalformedPayload(f"Invalid JSON in webhook body: {e}")

        event = decode_webhook_event(payload)
        action = determine_booking_action(event.type)

        if action == BookingAction.SKIP:
            logger.info(
                f"[{self.request_id}] Skipping unsupported event {event.type!r} "
                f"event_id={event.event_id}",
                extra={"event_id": event.event_id}
            )
            return WebhookResponse(
                processed=False,
                action=WebhookOutcome.SKIPPED_UNSUPPORTED_EVENT.value,
                event_id=event.event_id
            )

        # 3. Parse + validate
        parsed = parse_booking_event(event)
        if not is_valid_booking(parsed):
            logger.error(
                f"[{self.request_id}] Booking validation failed event_id={event.event_id} "
                f"booking_id={parsed.booking_id!r}",
                extra={"event_id": event.event_id, "booking_id": parsed.booking_id}
            )
            raise InvalidBooking(
                "Booking validation failed: missing required fields",
                details={
                    "event_id": event.event_id,
                    "booking_id": parsed.booking_id or None,
                    "has_start_at": bool(parsed.appointment_time),
                }
            )

        # 4. Location filter
        if self.location_id and parsed.location_id and parsed.location_id != self.location_id:
            logger.info(
                f"[{self.request_id}] Filtered booking {parsed.booking_id} "
                f"from location {parsed.location_id}",
                extra={"event_id": event.event_id, "booking_id": parsed.booking_id}
            )
            return WebhookResponse(
                processed=False,
                action=WebhookOutcome.SKIPPED_FILTERED.value,
                booking_id=parsed.booking_id,
                event_id=event.event_id
            )

        source = CreatedBy.SQUARE_WEBHOOK.value
        store = self.sync_service.store

        # Cancelled upstream: never create, flag an existing job
        if is_cancelled_status(parsed.status):
            existing = store.get_job_by_booking_id(parsed.booking_id)
            if existing is None:
                logger.info(
                    f"[{self.request_id}] Cancelled booking {parsed.booking_id} has no job, skipping",
                    extra={"event_id": event.event_id, "booking_id": parsed.booking_id}
                )
                return WebhookResponse(
                    processed=False,
                    action=WebhookOutcome.SKIPPED_CANCELLED.value,
                    booking_id=parsed.booking_id,
                    event_id=event.event_id
                )
            result = self.sync_service.sync_booking(parsed, source)
            if self.sync_service.mark_cancelled_upstream(existing, source):
                outcome = WebhookOutcome.CANCELLED
            else:
                outcome = WebhookOutcome(result.action.value)
        else:
            # 5. Create-or-update (both event types upsert)
            result = self.sync_service.sync_booking(parsed, source)
            outcome = WebhookOutcome(result.action.value)

        logger.info(
            f"[{self.request_id}] Webhook {event.type} booking={parsed.booking_id} "
            f"job={result.job_id} action={outcome.value}",
            extra={"event_id": event.event_id, "booking_id": parsed.booking_id, "job_id": result.job_id}
        )
        return WebhookResponse(
            processed=True,
            action=outcome.value,
            booking_id=parsed.booking_id,
            job_id=result.job_id,
            event_id=event.event_id
        )
