"""
Booking Reconciliation Engine

Pull-based safety net for missed or out-of-order webhooks. Scans every
Square booking in a time window and converges jobs onto it using the
same create-or-update logic as the webhook path.

SAFETY RULES:
- Only booking-derived fields are written (FieldProvenanceMerger)
- Cancelled bookings never delete or reset a job; staff work is preserved
- booking_id is the unique key, so re-running converges to no changes
- One bad booking is recorded and skipped, never aborts the run
- Only a failure to list bookings aborts (surfaced as UpstreamError)
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from ..models.job import CreatedBy
from ..schemas.square import ReconciliationError, ReconciliationSummary
from .booking_parser import parse_square_booking, is_cancelled_status, is_valid_booking
from .errors import InvalidBooking, JobSyncError
from .field_provenance import utc_now
from .job_sync import JobSyncService, SyncAction
from .square_client import BookingsClient

logger = logging.getLogger(__name__)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _raw_booking_id(booking: Any) -> str:
    if isinstance(booking, dict):
        return str(booking.get("id") or "")
    return getattr(booking, "id", None) or ""


def get_today_time_range(now: Optional[datetime] = None) -> Tuple[str, str]:
    """Start and end of the current UTC day"""
    now = now or utc_now()
    start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    end = start.replace(hour=23, minute=59, second=59)
    return _iso(start), _iso(end)


def get_time_range_with_buffer(now: Optional[datetime] = None) -> Tuple[str, str]:
    """Yesterday 00:00 through tomorrow 23:59:59 (UTC), catches day-boundary bookings"""
    now = now or utc_now()
    today = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    start = today - timedelta(days=1)
    end = (today + timedelta(days=1)).replace(hour=23, minute=59, second=59)
    return _iso(start), _iso(end)


class ReconciliationEngine:
    def __init__(
        self,
        bookings_client: BookingsClient,
        sync_service: JobSyncService,
        max_pages: int = 10,
        page_size: int = 100,
        clock: Callable[[], datetime] = utc_now,
        request_id: Optional[str] = None
    ):
        self.bookings_client = bookings_client
        self.sync_service = sync_service
        self.max_pages = max_pages
        self.page_size = page_size
        self.clock = clock
        self.request_id = request_id or "no-request-id"

    def run(
        self,
        start_at_min: str,
        start_at_max: str,
        location_id: Optional[str] = None,
        dry_run: bool = False
    ) -> ReconciliationSummary:
        started = time.monotonic()
        summary = ReconciliationSummary(start_time=_iso(self.clock()), dry_run=dry_run)

        logger.info(
            f"[{self.request_id}] Reconciliation started window={start_at_min}..{start_at_max} "
            f"location={location_id} dry_run={dry_run}"
        )

        # Listing failure aborts the run
        bookings = self.bookings_client.list_all_bookings(
            start_at_min=start_at_min,
            start_at_max=start_at_max,
            location_id=location_id,
            limit=self.page_size,
            max_pages=self.max_pages
        )
        summary.scanned = len(bookings)

        for booking in bookings:
            booking_id = _raw_booking_id(booking)
            try:
                self._process_booking(booking, dry_run, summary)
            except (JobSyncError, ValueError) as e:
                message = e.message if isinstance(e, JobSyncError) else str(e)
                logger.error(
                    f"[{self.request_id}] Error reconciling booking {booking_id}: {message}",
                    extra={"booking_id": booking_id}
                )
                summary.errors.append(ReconciliationError(booking_id=booking_id, error=message))
            except Exception as e:
                logger.exception(
                    f"[{self.request_id}] Unexpected error reconciling booking {booking_id}",
                    extra={"booking_id": booking_id}
                )
                summary.errors.append(ReconciliationError(booking_id=booking_id, error=str(e)))

        summary.end_time = _iso(self.clock())
        summary.duration_ms = int((time.monotonic() - started) * 1000)

        logger.info(
            f"[{self.request_id}] Reconciliation complete: scanned={summary.scanned} "
            f"created={summary.created} updated={summary.updated} cancelled={summary.cancelled} "
            f"skipped={summary.skipped} errors={len(summary.errors)} ({summary.duration_ms}ms)",
            extra={"duration_ms": summary.duration_ms}
        )
        return summary

    def _process_booking(self, booking: Dict[str, Any], dry_run: bool, summary: ReconciliationSummary):
        parsed = parse_square_booking(booking)
        store = self.sync_service.store
        source = CreatedBy.RECONCILIATION.value

        if is_cancelled_status(parsed.status):
            existing = store.get_job_by_booking_id(parsed.booking_id) if parsed.booking_id else None
            if existing is None:
                summary.skipped += 1
                return
            self.sync_service.mark_cancelled_upstream(existing, source, dry_run=dry_run)
            summary.cancelled += 1
            return

        if not is_valid_booking(parsed):
            raise InvalidBooking("Booking missing id, start time or status")

        result = self.sync_service.sync_booking(parsed, source, dry_run=dry_run)
        if result.action == SyncAction.CREATED:
            summary.created += 1
        elif result.action == SyncAction.UPDATED:
            summary.updated += 1
        else:
            summary.skipped += 1
