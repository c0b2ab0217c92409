"""
Idempotent create-or-update shared by the webhook and reconciliation paths.

Both paths call sync_booking with the same ParsedBooking semantics, so a
booking seen by either path (any number of times) converges on one job
with the same booking-derived values.
"""

import logging
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from ..models.job import Job
from .booking_parser import ParsedBooking
from .errors import ConflictOnCreate, PersistenceError
from .field_provenance import FieldProvenanceMerger, utc_now
from .job_store import JobStore

logger = logging.getLogger(__name__)


class SyncAction(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass
class SyncResult:
    action: SyncAction
    job_id: Optional[str] = None


class JobSyncService:
    def __init__(
        self,
        store: JobStore,
        merger: FieldProvenanceMerger,
        clock: Callable[[], datetime] = utc_now,
        request_id: Optional[str] = None
    ):
        self.store = store
        self.merger = merger
        self.clock = clock
        self.request_id = request_id or "no-request-id"

    def sync_booking(self, parsed: ParsedBooking, source: str, dry_run: bool = False) -> SyncResult:
        existing = self.store.get_job_by_booking_id(parsed.booking_id)
        if existing is not None:
            return self._update(existing, parsed, source, dry_run)

        if dry_run:
            logger.info(
                f"[{self.request_id}] Dry run: would create job for booking {parsed.booking_id}",
                extra={"booking_id": parsed.booking_id}
            )
            return SyncResult(action=SyncAction.CREATED)

        record = self.merger.build_creation_record(parsed, created_by=source)
        try:
            job = self.store.create_job(record)
        except ConflictOnCreate:
            # Lost the insert race with the other path
            existing = self.store.get_job_by_booking_id(parsed.booking_id)
            if existing is None:
                raise PersistenceError(
                    f"Conflict on create but no job found for booking {parsed.booking_id}"
                )
            logger.info(
                f"[{self.request_id}] Booking {parsed.booking_id} created concurrently, updating instead",
                extra={"booking_id": parsed.booking_id}
            )
            return self._update(existing, parsed, source, dry_run)

        logger.info(
            f"[{self.request_id}] Created job {job.job_id} for booking {parsed.booking_id} ({source})",
            extra={"job_id": job.job_id, "booking_id": parsed.booking_id}
        )
        return SyncResult(action=SyncAction.CREATED, job_id=job.job_id)

    def _update(self, existing: Job, parsed: ParsedBooking, source: str, dry_run: bool) -> SyncResult:
        sync = self.merger.build_sync_update(existing, parsed)
        if not sync.has_changes:
            return SyncResult(action=SyncAction.UNCHANGED, job_id=existing.job_id)

        if dry_run:
            logger.info(
                f"[{self.request_id}] Dry run: would update job {existing.job_id} "
                f"fields={sorted(sync.updates)}",
                extra={"job_id": existing.job_id, "booking_id": parsed.booking_id}
            )
            return SyncResult(action=SyncAction.UPDATED, job_id=existing.job_id)

        self.store.update_job(existing.job_id, {**sync.updates, "updated_by": source})
        logger.info(
            f"[{self.request_id}] Updated job {existing.job_id} from booking {parsed.booking_id} "
            f"fields={sorted(sync.updates)}",
            extra={"job_id": existing.job_id, "booking_id": parsed.booking_id}
        )
        return SyncResult(action=SyncAction.UPDATED, job_id=existing.job_id)

    def mark_cancelled_upstream(self, job: Job, source: str, dry_run: bool = False) -> bool:
        """
        Stamp booking_cancelled_at the first time a cancellation is seen.
        Staff fields and history are left alone.
        """
        if job.booking_cancelled_at is not None or dry_run:
            return False
        self.store.update_job(job.job_id, {
            "booking_cancelled_at": self.clock(),
            "updated_by": source,
        })
        logger.info(
            f"[{self.request_id}] Job {job.job_id} flagged cancelled upstream",
            extra={"job_id": job.job_id, "booking_id": job.booking_id}
        )
        return True
