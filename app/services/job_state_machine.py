"""
Job State Machine

Governs staff-authored changes to a job, independent of booking sync:

    SCHEDULED <-> CHECKED_IN <-> IN_PROGRESS <-> QC_READY  (free movement)
         any of the above -> WORK_COMPLETED (terminal, irreversible)
         any of the above -> NO_SHOW_PENDING_CHARGE / _CHARGED / _WAIVED
         NO_SHOW_* <-> NO_SHOW_*,  NO_SHOW_* -> SCHEDULED (correction)

Sub-workflows:
- No-show marking (SCHEDULED/CHECKED_IN/IN_PROGRESS only, reason required)
- Post-completion issue (MANAGER, WORK_COMPLETED only, one open at a time)
- Payment status (MANAGER, PAID needs a committed receipt photo)

Every accepted operation appends exactly one status_history entry.
Checks are optimistic (no locks); concurrent staff edits are last-write-wins
with the history as the record of what happened.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from ..models.job import Job, WorkStatus
from ..schemas.job import (
    Actor,
    ChecklistUpdate,
    CommittedPhoto,
    HistoryEvent,
    IssueAction,
    IssueType,
    JobUpdateRequest,
    NoShowAction,
    NoShowReason,
    NoShowStatus,
    PaymentStatus,
    UnpaidReason,
    VehicleInfo,
)
from .errors import Forbidden, InvalidTransition, JobNotFound, PreconditionFailed
from .field_provenance import utc_now
from .job_store import JobStore

logger = logging.getLogger(__name__)

ACTIVE_STATES: FrozenSet[WorkStatus] = frozenset({
    WorkStatus.SCHEDULED,
    WorkStatus.CHECKED_IN,
    WorkStatus.IN_PROGRESS,
    WorkStatus.QC_READY,
})

NO_SHOW_STATES: FrozenSet[WorkStatus] = frozenset({
    WorkStatus.NO_SHOW_PENDING_CHARGE,
    WorkStatus.NO_SHOW_CHARGED,
    WorkStatus.NO_SHOW_WAIVED,
})

# Charging or waiving a no-show fee is a manager decision
MANAGER_ONLY_TARGETS: FrozenSet[WorkStatus] = frozenset({
    WorkStatus.NO_SHOW_CHARGED,
    WorkStatus.NO_SHOW_WAIVED,
})

NO_SHOW_MARKABLE: FrozenSet[WorkStatus] = frozenset({
    WorkStatus.SCHEDULED,
    WorkStatus.CHECKED_IN,
    WorkStatus.IN_PROGRESS,
})


def allowed_transitions(current: WorkStatus) -> FrozenSet[WorkStatus]:
    if current == WorkStatus.WORK_COMPLETED:
        return frozenset()
    if current in ACTIVE_STATES:
        targets = ACTIVE_STATES | NO_SHOW_STATES | {WorkStatus.WORK_COMPLETED}
    else:
        targets = NO_SHOW_STATES | {WorkStatus.SCHEDULED}
    return frozenset(targets - {current})


def validate_transition(current: WorkStatus, target: WorkStatus) -> None:
    """Raise InvalidTransition unless current -> target is legal"""
    if current == WorkStatus.WORK_COMPLETED:
        raise InvalidTransition(
            "WORK_COMPLETED is final; record problems as a post-completion issue",
            current=current.value,
            attempted=target.value
        )
    if current == target:
        raise InvalidTransition(
            f"Job is already {current.value}",
            current=current.value,
            attempted=target.value
        )
    if target not in allowed_transitions(current):
        raise InvalidTransition(
            f"Cannot change status from {current.value} to {target.value}",
            current=current.value,
            attempted=target.value
        )


def _require_manager(actor: Actor, operation: str) -> None:
    if not actor.is_manager:
        raise Forbidden(
            f"Only MANAGER can {operation}",
            details={"role": actor.role.value}
        )


def _with_note(reason: str, note: Optional[str]) -> str:
    return f"{reason}: {note}" if note else reason


class JobStateMachine:
    def __init__(self, store: JobStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    # ==================
    # Helpers
    # ==================

    def _load(self, job_id: str) -> Job:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found", details={"job_id": job_id})
        return job

    def _history_entry(
        self,
        from_status: Optional[str],
        to_status: Optional[str],
        event: HistoryEvent,
        actor: Actor,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        entry = {
            "from": from_status,
            "to": to_status,
            "event": event.value,
            "changed_by": actor.audit(),
            "changed_at": self.clock().isoformat(),
        }
        if reason:
            entry["reason"] = reason
        return entry

    def _commit(self, job: Job, actor: Actor, changes: Dict[str, Any], entry: Dict[str, Any]) -> Job:
        history: List[Dict[str, Any]] = list(job.status_history or [])
        history.append(entry)
        partial = dict(changes)
        partial["status_history"] = history
        partial["updated_by"] = actor.user_id
        updated = self.store.update_job(job.job_id, partial)
        logger.info(
            f"Job {job.job_id}: {entry['event']} by {actor.user_id} ({actor.role.value})"
        )
        return updated

    # ==================
    # Work status
    # ==================

    def change_status(
        self,
        job_id: str,
        new_status: WorkStatus,
        actor: Actor,
        reason: Optional[str] = None
    ) -> Job:
        job = self._load(job_id)
        current = WorkStatus(job.work_status)
        validate_transition(current, new_status)
        if new_status in MANAGER_ONLY_TARGETS:
            _require_manager(actor, f"set status {new_status.value}")

        entry = self._history_entry(current.value, new_status.value, HistoryEvent.STATUS_CHANGE, actor, reason)
        return self._commit(job, actor, {"work_status": new_status.value}, entry)

    # ==================
    # No-show
    # ==================

    def mark_no_show(
        self,
        job_id: str,
        reason: Optional[NoShowReason],
        actor: Actor,
        notes: Optional[str] = None
    ) -> Job:
        job = self._load(job_id)
        current = WorkStatus(job.work_status)

        if current not in NO_SHOW_MARKABLE:
            raise InvalidTransition(
                f"Cannot mark no-show from {current.value}",
                current=current.value,
                attempted=NoShowStatus.NO_SHOW.value
            )
        if reason is None:
            raise PreconditionFailed("A reason is required to mark a no-show")
        if (job.no_show or {}).get("status") == NoShowStatus.NO_SHOW.value:
            raise PreconditionFailed("A no-show is already open for this job")

        now = self.clock().isoformat()
        no_show = {
            "status": NoShowStatus.NO_SHOW.value,
            "reason": reason.value,
            "notes": notes,
            "updated_at": now,
            "updated_by": actor.audit(),
        }
        entry = self._history_entry(
            current.value, current.value, HistoryEvent.NO_SHOW_MARKED, actor,
            _with_note(reason.value, notes)
        )
        return self._commit(job, actor, {"no_show": no_show}, entry)

    def resolve_no_show(self, job_id: str, actor: Actor, notes: Optional[str] = None) -> Job:
        job = self._load(job_id)
        current_no_show = job.no_show or {}
        if current_no_show.get("status") != NoShowStatus.NO_SHOW.value:
            raise PreconditionFailed("No open no-show to resolve")

        now = self.clock().isoformat()
        no_show = {
            **current_no_show,
            "status": NoShowStatus.RESOLVED.value,
            "resolved_at": now,
            "resolved_by": actor.audit(),
            "updated_at": now,
            "updated_by": actor.audit(),
        }
        if notes:
            no_show["notes"] = notes

        status = job.work_status
        entry = self._history_entry(status, status, HistoryEvent.NO_SHOW_RESOLVED, actor, notes)
        return self._commit(job, actor, {"no_show": no_show}, entry)

    # ==================
    # Post-completion issue
    # ==================

    def open_post_completion_issue(
        self,
        job_id: str,
        issue_type: IssueType,
        actor: Actor,
        notes: Optional[str] = None
    ) -> Job:
        _require_manager(actor, "open a post-completion issue")
        job = self._load(job_id)

        if job.work_status != WorkStatus.WORK_COMPLETED.value:
            raise PreconditionFailed(
                "Post-completion issues can only be opened on WORK_COMPLETED jobs",
                details={"current": job.work_status}
            )
        if (job.post_completion_issue or {}).get("is_open"):
            raise PreconditionFailed("A post-completion issue is already open")

        issue = {
            "is_open": True,
            "type": issue_type.value,
            "notes": notes,
            "opened_at": self.clock().isoformat(),
            "opened_by": actor.audit(),
        }
        entry = self._history_entry(
            None, None, HistoryEvent.POST_COMPLETION_ISSUE_OPENED, actor,
            _with_note(issue_type.value, notes)
        )
        return self._commit(job, actor, {"post_completion_issue": issue}, entry)

    def resolve_post_completion_issue(self, job_id: str, actor: Actor, notes: Optional[str] = None) -> Job:
        _require_manager(actor, "resolve a post-completion issue")
        job = self._load(job_id)

        current_issue = job.post_completion_issue or {}
        if not current_issue.get("is_open"):
            raise PreconditionFailed("No open post-completion issue to resolve")

        issue = {
            **current_issue,
            "is_open": False,
            "resolved_at": self.clock().isoformat(),
            "resolved_by": actor.audit(),
        }
        if notes:
            issue["resolution_notes"] = notes

        entry = self._history_entry(None, None, HistoryEvent.POST_COMPLETION_ISSUE_RESOLVED, actor, notes)
        return self._commit(job, actor, {"post_completion_issue": issue}, entry)

    # ==================
    # Payment
    # ==================

    def mark_paid(self, job_id: str, actor: Actor) -> Job:
        _require_manager(actor, "change payment status")
        job = self._load(job_id)

        if not job.receipt_photos:
            raise PreconditionFailed("At least one receipt photo is required to mark PAID")

        payment = {
            **(job.payment or {}),
            "status": PaymentStatus.PAID.value,
            "paid_at": self.clock().isoformat(),
            "paid_by": actor.audit(),
            "unpaid_reason": None,
            "unpaid_note": None,
        }
        entry = self._history_entry(None, None, HistoryEvent.PAYMENT_MARKED_PAID, actor)
        return self._commit(job, actor, {"payment": payment}, entry)

    def mark_unpaid(
        self,
        job_id: str,
        reason: Optional[UnpaidReason],
        actor: Actor,
        note: Optional[str] = None
    ) -> Job:
        _require_manager(actor, "change payment status")
        if reason is None:
            raise PreconditionFailed("A reason is required to mark UNPAID")
        job = self._load(job_id)

        # paid_at / paid_by are kept for history
        payment = {
            **(job.payment or {}),
            "status": PaymentStatus.UNPAID.value,
            "unpaid_reason": reason.value,
            "unpaid_note": note,
        }
        entry = self._history_entry(
            None, None, HistoryEvent.PAYMENT_MARKED_UNPAID, actor, _with_note(reason.value, note)
        )
        return self._commit(job, actor, {"payment": payment}, entry)

    # ==================
    # Checklist, notes, vehicle
    # ==================

    def update_checklist(self, job_id: str, checklist: ChecklistUpdate, actor: Actor) -> Job:
        job = self._load(job_id)
        current = job.checklist or {}
        new_checklist = {
            "tech": [i.model_dump() for i in checklist.tech] if checklist.tech is not None else current.get("tech", []),
            "qc": [i.model_dump() for i in checklist.qc] if checklist.qc is not None else current.get("qc", []),
        }
        status = job.work_status
        entry = self._history_entry(status, status, HistoryEvent.CHECKLIST_UPDATED, actor)
        return self._commit(job, actor, {"checklist": new_checklist}, entry)

    def update_notes(self, job_id: str, notes: str, actor: Actor) -> Job:
        job = self._load(job_id)
        status = job.work_status
        entry = self._history_entry(status, status, HistoryEvent.NOTES_UPDATED, actor)
        return self._commit(job, actor, {"notes": notes}, entry)

    def update_vehicle_info(self, job_id: str, vehicle_info: VehicleInfo, actor: Actor) -> Job:
        job = self._load(job_id)
        merged = {**(job.vehicle_info or {}), **vehicle_info.model_dump(exclude_none=True)}
        status = job.work_status
        entry = self._history_entry(status, status, HistoryEvent.VEHICLE_INFO_UPDATED, actor)
        return self._commit(job, actor, {"vehicle_info": merged}, entry)

    def record_phone_booking(
        self,
        job_id: str,
        actor: Actor,
        vehicle_info: Optional[VehicleInfo] = None
    ) -> Job:
        """Opening history entry (plus vehicle details) for a job a manager booked by phone"""
        _require_manager(actor, "create phone bookings")
        job = self._load(job_id)
        changes: Dict[str, Any] = {}
        if vehicle_info is not None:
            changes["vehicle_info"] = {**(job.vehicle_info or {}), **vehicle_info.model_dump(exclude_none=True)}
        entry = self._history_entry(
            None, job.work_status, HistoryEvent.STATUS_CHANGE, actor,
            reason="Phone booking created by manager"
        )
        return self._commit(job, actor, changes, entry)


    # ==================
    # Photos and receipts
    # ==================

    def _photo_records(self, job: Job, photos: List[CommittedPhoto], folder: str, actor: Actor,
                       with_category: bool) -> List[Dict[str, Any]]:
        prefix = f"jobs/{job.job_id}/{folder}/"
        now = self.clock().isoformat()
        records = []
        for photo in photos:
            if not photo.s3_key.startswith(prefix):
                raise PreconditionFailed(
                    "Photo key does not belong to this job",
                    details={"s3_key": photo.s3_key, "expected_prefix": prefix}
                )
            record = {
                "photo_id": photo.photo_id,
                "s3_key": photo.s3_key,
                "public_url": photo.public_url,
                "content_type": photo.content_type,
                "uploaded_at": now,
                "uploaded_by": actor.audit(),
            }
            if with_category:
                record["category"] = photo.category.value if photo.category else None
            records.append(record)
        return records

    def commit_photos(self, job_id: str, photos: List[CommittedPhoto], actor: Actor) -> Job:
        job = self._load(job_id)
        records = self._photo_records(job, photos, "photos", actor, with_category=True)
        status = job.work_status
        entry = self._history_entry(
            status, status, HistoryEvent.PHOTOS_COMMITTED, actor, f"{len(records)} photo(s)"
        )
        return self._commit(job, actor, {"photos_meta": list(job.photos_meta or []) + records}, entry)

    def commit_receipts(self, job_id: str, photos: List[CommittedPhoto], actor: Actor) -> Job:
        _require_manager(actor, "commit receipt photos")
        job = self._load(job_id)
        records = self._photo_records(job, photos, "receipts", actor, with_category=False)
        entry = self._history_entry(
            None, None, HistoryEvent.RECEIPTS_COMMITTED, actor, f"{len(records)} receipt(s)"
        )
        return self._commit(job, actor, {"receipt_photos": list(job.receipt_photos or []) + records}, entry)

    # ==================
    # Request dispatch
    # ==================

    def apply_update(self, job_id: str, request: JobUpdateRequest, actor: Actor) -> Job:
        """Route a PATCH body (exactly one operation group) to its operation"""
        if request.work_status is not None:
            return self.change_status(job_id, request.work_status, actor, request.reason)

        if request.no_show is not None:
            if request.no_show.action == NoShowAction.MARK:
                return self.mark_no_show(job_id, request.no_show.reason, actor, request.no_show.notes)
            return self.resolve_no_show(job_id, actor, request.no_show.notes)

        if request.post_completion_issue is not None:
            issue = request.post_completion_issue
            if issue.action == IssueAction.OPEN:
                return self.open_post_completion_issue(job_id, issue.type, actor, issue.notes)
            return self.resolve_post_completion_issue(job_id, actor, issue.notes)

        if request.payment is not None:
            if request.payment.status == PaymentStatus.PAID:
                return self.mark_paid(job_id, actor)
            return self.mark_unpaid(job_id, request.payment.unpaid_reason, actor, request.payment.unpaid_note)

        if request.checklist is not None:
            return self.update_checklist(job_id, request.checklist, actor)

        if request.vehicle_info is not None:
            return self.update_vehicle_info(job_id, request.vehicle_info, actor)

        return self.update_notes(job_id, request.notes, actor)
