"""
Job Model

A Job is the locally-owned operational record for one Square booking.
Columns fall into two provenance classes that must never cross:

- Booking-derived: may be overwritten by the webhook and reconciliation paths
- Staff-derived: only changed by explicit staff actions (JobStateMachine)

booking_id is UNIQUE so concurrent webhook/reconciliation inserts for the
same booking collapse into one row (the loser falls back to an update).
"""

import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, Text, DateTime, JSON, Index
from ..database import Base
import enum


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return str(uuid.uuid4())


class WorkStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    CHECKED_IN = "CHECKED_IN"
    IN_PROGRESS = "IN_PROGRESS"
    QC_READY = "QC_READY"
    WORK_COMPLETED = "WORK_COMPLETED"
    NO_SHOW_PENDING_CHARGE = "NO_SHOW_PENDING_CHARGE"
    NO_SHOW_CHARGED = "NO_SHOW_CHARGED"
    NO_SHOW_WAIVED = "NO_SHOW_WAIVED"


class CreatedBy(str, enum.Enum):
    """Identity tags used by the sync paths"""
    SQUARE_WEBHOOK = "square-webhook"
    RECONCILIATION = "reconciliation"
    MANAGER_PHONE = "manager-phone"


# Fields the sync paths are allowed to write
BOOKING_DERIVED_FIELDS = (
    "booking_id",
    "appointment_time",
    "service_type",
    "customer_id",
    "customer_name",
    "customer_email",
    "customer_phone",
    "customer_cached",
)

# Fields only staff actions may write
STAFF_DERIVED_FIELDS = (
    "work_status",
    "checklist",
    "photos_meta",
    "receipt_photos",
    "post_completion_issue",
    "payment",
    "vehicle_info",
    "notes",
    "status_history",
    "no_show",
)


class Job(Base):
    __tablename__ = "jobs"

    job_id = Column(String(36), primary_key=True, default=new_job_id)

    # Booking-derived
    booking_id = Column(String(255), nullable=False, unique=True)
    appointment_time = Column(String(40), nullable=True)  # RFC 3339 as sent by Square
    service_type = Column(String(255), nullable=True)
    customer_id = Column(String(255), nullable=True)
    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    customer_cached = Column(JSON, nullable=True)  # {id, name, email, phone, cached_at}

    # Staff-derived
    work_status = Column(String(40), nullable=False, default=WorkStatus.SCHEDULED.value)
    checklist = Column(JSON, nullable=True)  # {tech: [...], qc: [...]}
    photos_meta = Column(JSON, nullable=True)
    receipt_photos = Column(JSON, nullable=True)
    post_completion_issue = Column(JSON, nullable=True)
    payment = Column(JSON, nullable=True)
    vehicle_info = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)
    status_history = Column(JSON, nullable=True)
    no_show = Column(JSON, nullable=True)

    # Set by the sync paths the first time they see the booking cancelled upstream
    booking_cancelled_at = Column(DateTime(timezone=True), nullable=True)

    created_by = Column(String(255), nullable=True)
    updated_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("ix_jobs_appointment_time", "appointment_time"),
        Index("ix_jobs_work_status", "work_status"),
    )

    def __repr__(self):
        return f"<Job {self.job_id} booking={self.booking_id} status={self.work_status}>"
