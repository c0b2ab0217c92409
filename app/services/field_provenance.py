"""
Field Provenance Merger

Decides what a booking observation (webhook or reconciliation) may write
to a job. Output is always an allow-listed partial built field by field
from BOOKING_DERIVED_FIELDS; staff-derived fields are never produced.

Rules for an existing job, in order:
1. appointment_time differs -> include
2. customer id present and cache missing or older than 24h -> refresh
   customer_cached/name/email/phone (best-effort, failures are logged)
3. resolved service name differs -> include (falls back to the raw
   variation id when the catalog lookup fails)

For a booking with no job yet, build_creation_record returns the full
insert record with defaulted staff fields.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from ..models.job import Job, WorkStatus, BOOKING_DERIVED_FIELDS, new_job_id
from .booking_parser import ParsedBooking
from .square_client import CatalogClient, CustomerClient, DEFAULT_SERVICE_NAME, UNKNOWN_CUSTOMER

logger = logging.getLogger(__name__)

CUSTOMER_CACHE_HOURS = 24


@dataclass
class SyncUpdate:
    updates: Dict[str, Any] = field(default_factory=dict)
    has_changes: bool = False


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_cache_stale(
    cached_at: Optional[str],
    now: Optional[datetime] = None,
    max_age_hours: int = CUSTOMER_CACHE_HOURS
) -> bool:
    cached_time = parse_timestamp(cached_at)
    if cached_time is None:
        return True
    now = now or utc_now()
    return now - cached_time > timedelta(hours=max_age_hours)


def placeholder_customer_name(customer_id: Optional[str]) -> str:
    if customer_id:
        return f"Customer {customer_id[:8]}"
    return UNKNOWN_CUSTOMER


def _allow_listed(updates: Dict[str, Any]) -> Dict[str, Any]:
    leaked = set(updates) - set(BOOKING_DERIVED_FIELDS)
    if leaked:
        raise ValueError(f"Sync update touches non-booking fields: {sorted(leaked)}")
    return updates


class FieldProvenanceMerger:
    def __init__(
        self,
        customer_client: CustomerClient,
        catalog_client: CatalogClient,
        clock: Callable[[], datetime] = utc_now,
        customer_cache_hours: int = CUSTOMER_CACHE_HOURS
    ):
        self.customer_client = customer_client
        self.catalog_client = catalog_client
        self.clock = clock
        self.customer_cache_hours = customer_cache_hours

    def resolve_service_name(self, parsed: ParsedBooking) -> str:
        variation_id = parsed.service_type
        if not variation_id:
            return DEFAULT_SERVICE_NAME
        try:
            return self.catalog_client.fetch_service_name(variation_id) or variation_id
        except Exception as e:
            logger.warning(f"Service name lookup failed for {variation_id}: {e}")
            return variation_id

    def fetch_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """CustomerCache dict, or None. Never raises."""
        try:
            return self.customer_client.fetch_customer_with_retry(
                customer_id, retries=1, now=self.clock()
            )
        except Exception as e:
            logger.warning(f"Customer enrichment failed for {customer_id}: {e}")
            return None

    def build_sync_update(self, existing: Job, parsed: ParsedBooking) -> SyncUpdate:
        updates: Dict[str, Any] = {}

        # 1. Appointment time
        if parsed.appointment_time and parsed.appointment_time != existing.appointment_time:
            updates["appointment_time"] = parsed.appointment_time

        # 2. Customer cache
        if parsed.customer_id:
            customer_changed = parsed.customer_id != existing.customer_id
            if customer_changed:
                updates["customer_id"] = parsed.customer_id

            cached = existing.customer_cached or {}
            needs_refresh = (
                customer_changed
                or not existing.customer_cached
                or is_cache_stale(cached.get("cached_at"), self.clock(), self.customer_cache_hours)
            )
            if needs_refresh:
                customer = self.fetch_customer(parsed.customer_id)
                if customer:
                    updates["customer_cached"] = customer
                    updates["customer_name"] = customer["name"]
                    updates["customer_email"] = customer.get("email")
                    updates["customer_phone"] = customer.get("phone")

        # 3. Service name
        service_name = self.resolve_service_name(parsed)
        if service_name and service_name != existing.service_type:
            updates["service_type"] = service_name

        return SyncUpdate(updates=_allow_listed(updates), has_changes=bool(updates))

    def build_creation_record(
        self,
        parsed: ParsedBooking,
        created_by: str,
        enrich: bool = True
    ) -> Dict[str, Any]:
        """Full insert record for a booking that has no job yet"""
        customer = None
        if enrich and parsed.customer_id:
            customer = self.fetch_customer(parsed.customer_id)

        service_type = self.resolve_service_name(parsed) if enrich else (
            parsed.service_type or DEFAULT_SERVICE_NAME
        )
        now = self.clock()

        return {
            "job_id": new_job_id(),
            # Booking-derived
            "booking_id": parsed.booking_id,
            "appointment_time": parsed.appointment_time or now.isoformat(),
            "service_type": service_type,
            "customer_id": parsed.customer_id,
            "customer_name": customer["name"] if customer else placeholder_customer_name(parsed.customer_id),
            "customer_email": customer.get("email") if customer else None,
            "customer_phone": customer.get("phone") if customer else None,
            "customer_cached": customer,
            # Staff-derived defaults
            "work_status": WorkStatus.SCHEDULED.value,
            "checklist": {"tech": [], "qc": []},
            "photos_meta": [],
            "receipt_photos": [],
            "post_completion_issue": None,
            "payment": {"status": "UNPAID"},
            "vehicle_info": {},
            "notes": parsed.notes,
            "status_history": [],
            "no_show": None,
            "created_by": created_by,
            "updated_by": created_by,
            "created_at": now,
            "updated_at": now,
        }
