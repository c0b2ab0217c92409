from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum

from ..models.job import WorkStatus


class StaffRole(str, Enum):
    TECH = "TECH"
    QC = "QC"
    MANAGER = "MANAGER"


class HistoryEvent(str, Enum):
    STATUS_CHANGE = "STATUS_CHANGE"
    NO_SHOW_MARKED = "NO_SHOW_MARKED"
    NO_SHOW_RESOLVED = "NO_SHOW_RESOLVED"
    POST_COMPLETION_ISSUE_OPENED = "POST_COMPLETION_ISSUE_OPENED"
    POST_COMPLETION_ISSUE_RESOLVED = "POST_COMPLETION_ISSUE_RESOLVED"
    PAYMENT_MARKED_PAID = "PAYMENT_MARKED_PAID"
    PAYMENT_MARKED_UNPAID = "PAYMENT_MARKED_UNPAID"
    CHECKLIST_UPDATED = "CHECKLIST_UPDATED"
    NOTES_UPDATED = "NOTES_UPDATED"
    VEHICLE_INFO_UPDATED = "VEHICLE_INFO_UPDATED"
    PHOTOS_COMMITTED = "PHOTOS_COMMITTED"
    RECEIPTS_COMMITTED = "RECEIPTS_COMMITTED"


# Closed categories; anything new goes under OTHER with a free-text note
class IssueType(str, Enum):
    DAMAGE = "DAMAGE"
    QUALITY = "QUALITY"
    CUSTOMER_COMPLAINT = "CUSTOMER_COMPLAINT"
    OTHER = "OTHER"


class NoShowReason(str, Enum):
    CUSTOMER_NO_SHOW = "CUSTOMER_NO_SHOW"
    LATE_CANCELLATION = "LATE_CANCELLATION"
    UNREACHABLE = "UNREACHABLE"
    OTHER = "OTHER"


class NoShowStatus(str, Enum):
    NO_SHOW = "NO_SHOW"
    RESOLVED = "RESOLVED"


class PaymentStatus(str, Enum):
    PAID = "PAID"
    UNPAID = "UNPAID"


class UnpaidReason(str, Enum):
    CUSTOMER_DISPUTE = "CUSTOMER_DISPUTE"
    PAY_LATER = "PAY_LATER"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    OTHER = "OTHER"


class PhotoCategory(str, Enum):
    BEFORE = "before"
    AFTER = "after"
    DAMAGE = "damage"
    OTHER = "other"


ALLOWED_PHOTO_TYPES = ["image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"]
MAX_FILES_PER_UPLOAD = 20


class Actor(BaseModel):
    """Authenticated staff member performing an action"""
    user_id: str
    name: str
    role: StaffRole

    @property
    def is_manager(self) -> bool:
        return self.role == StaffRole.MANAGER

    def audit(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "name": self.name, "role": self.role.value}


# ==================
# Staff update requests
# ==================

class ChecklistItem(BaseModel):
    label: str = Field(..., min_length=1, max_length=200)
    completed: bool = False


class ChecklistUpdate(BaseModel):
    tech: Optional[List[ChecklistItem]] = None
    qc: Optional[List[ChecklistItem]] = None


class VehicleInfo(BaseModel):
    make: Optional[str] = Field(None, max_length=50)
    model: Optional[str] = Field(None, max_length=50)
    year: Optional[int] = Field(None, ge=1900, le=2100)
    color: Optional[str] = Field(None, max_length=30)
    license_plate: Optional[str] = Field(None, max_length=20)


class NoShowAction(str, Enum):
    MARK = "mark"
    RESOLVE = "resolve"


class NoShowUpdate(BaseModel):
    action: NoShowAction
    reason: Optional[NoShowReason] = None
    notes: Optional[str] = Field(None, max_length=1000)


class IssueAction(str, Enum):
    OPEN = "open"
    RESOLVE = "resolve"


class PostCompletionIssueUpdate(BaseModel):
    action: IssueAction
    type: Optional[IssueType] = None
    notes: Optional[str] = Field(None, max_length=2000)

    @model_validator(mode="after")
    def type_required_to_open(self):
        if self.action == IssueAction.OPEN and self.type is None:
            raise ValueError("type is required to open a post-completion issue")
        return self


class PaymentUpdate(BaseModel):
    status: PaymentStatus
    unpaid_reason: Optional[UnpaidReason] = None
    unpaid_note: Optional[str] = Field(None, max_length=1000)


class JobUpdateRequest(BaseModel):
    """
    Staff mutation of a job. Exactly one operation group per request so
    each accepted request maps to exactly one audit entry.
    """
    work_status: Optional[WorkStatus] = None
    reason: Optional[str] = Field(None, max_length=500)
    no_show: Optional[NoShowUpdate] = None
    post_completion_issue: Optional[PostCompletionIssueUpdate] = None
    payment: Optional[PaymentUpdate] = None
    checklist: Optional[ChecklistUpdate] = None
    vehicle_info: Optional[VehicleInfo] = None
    notes: Optional[str] = Field(None, max_length=5000)

    @model_validator(mode="after")
    def exactly_one_operation(self):
        groups = [
            self.work_status, self.no_show, self.post_completion_issue,
            self.payment, self.checklist, self.vehicle_info, self.notes,
        ]
        provided = sum(1 for g in groups if g is not None)
        if provided != 1:
            raise ValueError("Exactly one update operation must be provided")
        return self


# ==================
# Photos
# ==================

class PhotoFile(BaseModel):
    filename: str = Field(..., min_length=1, max_length=255)
    content_type: str
    category: Optional[PhotoCategory] = None

    @field_validator("content_type")
    @classmethod
    def validate_content_type(cls, v: str) -> str:
        if v not in ALLOWED_PHOTO_TYPES:
            raise ValueError(f"Invalid content type: {v}. Allowed: {', '.join(ALLOWED_PHOTO_TYPES)}")
        return v


class PresignRequest(BaseModel):
    files: List[PhotoFile] = Field(..., min_length=1, max_length=MAX_FILES_PER_UPLOAD)


class PresignedUpload(BaseModel):
    photo_id: str
    s3_key: str
    put_url: str
    public_url: str
    content_type: str
    category: Optional[PhotoCategory] = None


class PresignResponse(BaseModel):
    uploads: List[PresignedUpload]


class CommittedPhoto(BaseModel):
    photo_id: str = Field(..., min_length=1)
    s3_key: str = Field(..., min_length=1)
    public_url: str = Field(..., min_length=1)
    content_type: str = Field(..., min_length=1)
    category: Optional[PhotoCategory] = None


class CommitRequest(BaseModel):
    photos: List[CommittedPhoto] = Field(..., min_length=1, max_length=MAX_FILES_PER_UPLOAD)


# ==================
# Manager phone bookings
# ==================

class PhoneBookingCustomer(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    phone: str = Field(..., min_length=7, max_length=20)
    email: Optional[str] = Field(None, max_length=255)

    @field_validator("name", "phone")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class PhoneBookingServiceLine(BaseModel):
    service_variation_id: str = Field(..., min_length=1)
    # Looked up from the catalog when omitted
    service_variation_version: Optional[int] = Field(None, ge=1)
    duration_minutes: int = Field(..., ge=1, le=1440)
    team_member_id: Optional[str] = None


class PhoneBookingRequest(BaseModel):
    customer: PhoneBookingCustomer
    service: PhoneBookingServiceLine
    start_at: datetime
    notes: Optional[str] = Field(None, max_length=1000)
    vehicle: Optional[VehicleInfo] = None
    # Reuse on retries so Square returns the original booking
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=45)

    @field_validator("start_at")
    @classmethod
    def timezone_required(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("start_at must include a timezone offset")
        return v



# ==================
# Responses
# ==================

class JobResponse(BaseModel):
    job_id: str
    booking_id: str
    appointment_time: Optional[str] = None
    service_type: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_cached: Optional[Dict[str, Any]] = None
    work_status: WorkStatus
    checklist: Optional[Dict[str, Any]] = None
    photos_meta: List[Dict[str, Any]] = []
    receipt_photos: List[Dict[str, Any]] = []
    post_completion_issue: Optional[Dict[str, Any]] = None
    payment: Optional[Dict[str, Any]] = None
    vehicle_info: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None
    status_history: List[Dict[str, Any]] = []
    no_show: Optional[Dict[str, Any]] = None
    booking_cancelled_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("photos_meta", "receipt_photos", "status_history", mode="before")
    @classmethod
    def none_as_empty(cls, v):
        return v or []

    class Config:
        from_attributes = True


class PhoneBookingResponse(BaseModel):
    job_id: str
    booking_id: str
    created: bool
    job: JobResponse
