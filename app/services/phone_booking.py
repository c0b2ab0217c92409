"""
Manager Phone Bookings

A manager on the phone with a customer books the slot in Square and gets
the job back in one call, without waiting for the webhook:

1. Find the caller's Square customer by phone (or create one)
2. Create the Square booking
3. Sync it through JobSyncService, the same create-or-update the webhook
   and reconciliation paths use, so their later deliveries converge
4. Record who booked it (and the vehicle) in the job's history
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from ..models.job import CreatedBy, Job
from ..schemas.job import Actor, PhoneBookingRequest, VehicleInfo
from .booking_parser import is_valid_booking, parse_square_booking
from .errors import ConfigurationError, Forbidden, InvalidBooking, PreconditionFailed
from .job_state_machine import JobStateMachine
from .job_sync import JobSyncService, SyncAction
from .square_client import SquareClients

logger = logging.getLogger(__name__)


def vehicle_note(vehicle: Optional[VehicleInfo]) -> Optional[str]:
    """Seller note shown in Square, e.g. "Vehicle: 2021 Honda Pilot" """
    if vehicle is None:
        return None
    parts = [str(vehicle.year) if vehicle.year else None, vehicle.make, vehicle.model]
    description = " ".join(p for p in parts if p)
    return f"Vehicle: {description}" if description else None


def _rfc3339(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class PhoneBookingResult:
    job: Job
    booking_id: str
    created: bool


class PhoneBookingService:
    def __init__(
        self,
        clients: SquareClients,
        sync_service: JobSyncService,
        machine: JobStateMachine,
        location_id: Optional[str],
        team_member_id: Optional[str] = None,
        request_id: Optional[str] = None
    ):
        self.clients = clients
        self.sync_service = sync_service
        self.machine = machine
        self.location_id = location_id or None
        self.team_member_id = team_member_id or None
        self.request_id = request_id or "no-request-id"

    def _variation_version(self, request: PhoneBookingRequest) -> int:
        if request.service.service_variation_version:
            return request.service.service_variation_version

        variation = self.clients.catalog.fetch_catalog_object(request.service.service_variation_id)
        if not variation or not variation.get("version"):
            raise PreconditionFailed(
                f"Service variation {request.service.service_variation_id} not found in the catalog",
                details={"service_variation_id": request.service.service_variation_id}
            )
        return variation["version"]

    def create(self, request: PhoneBookingRequest, actor: Actor) -> PhoneBookingResult:
        if not actor.is_manager:
            raise Forbidden("Only MANAGER can create phone bookings", details={"role": actor.role.value})
        if not self.location_id:
            raise ConfigurationError("Square location ID not configured")

        version = self._variation_version(request)
        key = request.idempotency_key
        customer = self.clients.customers.find_or_create_customer(
            request.customer.name,
            request.customer.phone,
            email=request.customer.email,
            idempotency_key=f"{key}-customer" if key else None
        )

        booking = self.clients.bookings.create_booking(
            customer_id=customer["id"],
            location_id=self.location_id,
            start_at=_rfc3339(request.start_at),
            service_variation_id=request.service.service_variation_id,
            service_variation_version=version,
            duration_minutes=request.service.duration_minutes,
            team_member_id=request.service.team_member_id or self.team_member_id,
            customer_note=request.notes,
            seller_note=vehicle_note(request.vehicle),
            idempotency_key=key
        )

        parsed = parse_square_booking(booking)
        if not is_valid_booking(parsed):
            raise InvalidBooking(
                "Square returned an incomplete booking",
                details={"booking_id": parsed.booking_id or None}
            )

        source = f"{CreatedBy.MANAGER_PHONE.value}:{actor.user_id}"
        result = self.sync_service.sync_booking(parsed, source)
        created = result.action == SyncAction.CREATED

        if created:
            job = self.machine.record_phone_booking(result.job_id, actor, request.vehicle)
        else:
            # Replayed request, or the webhook got there first
            job = self.sync_service.store.get_job(result.job_id)

        logger.info(
            f"[{self.request_id}] Phone booking {parsed.booking_id} by {actor.user_id}: "
            f"job={result.job_id} action={result.action.value}",
            extra={"job_id": result.job_id, "booking_id": parsed.booking_id}
        )
        return PhoneBookingResult(job=job, booking_id=parsed.booking_id, created=created)
