"""
Job Sync Error Taxonomy

Every failure the sync paths and the job state machine can raise.
Each error carries a stable code and the HTTP status it maps to, so
routers stay thin and app.main renders one consistent error body.

Retry semantics for the Square webhook:
- 5xx (parse/validation/persistence) -> Square redelivers
- 4xx (signature, forbidden, invalid transition) -> caller's fault, no retry
"""

from typing import Any, Dict, Optional


class JobSyncError(Exception):
    """Base class for all domain errors"""

    code = "JOB_SYNC_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        error = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return error


# ==================
# Webhook ingestion
# ==================

class SignatureInvalid(JobSyncError):
    code = "SIGNATURE_INVALID"
    status_code = 401


class SignatureMissing(JobSyncError):
    code = "SIGNATURE_MISSING"
    status_code = 401


class MalformedPayload(JobSyncError):
    code = "MALFORMED_PAYLOAD"
    status_code = 500


class MalformedBookingError(MalformedPayload):
    """Webhook envelope carries no booking object at all"""
    code = "MALFORMED_BOOKING"


class InvalidBooking(JobSyncError):
    """Parsed booking lacks booking id, start time or status"""
    code = "INVALID_BOOKING"
    status_code = 500


# ==================
# Persistence
# ==================

class ConflictOnCreate(JobSyncError):
    """A job already exists for this booking id - fall back to update"""
    code = "CONFLICT_ON_CREATE"
    status_code = 409


class PersistenceError(JobSyncError):
    code = "PERSISTENCE_ERROR"
    status_code = 500


class JobNotFound(JobSyncError):
    code = "JOB_NOT_FOUND"
    status_code = 404


# ==================
# Square API
# ==================

class UpstreamError(JobSyncError):
    code = "UPSTREAM_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        status: int = 0,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.status = status
        self.retryable = retryable


# ==================
# Job state machine
# ==================

class InvalidTransition(JobSyncError):
    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, message: str, current: Optional[str], attempted: Optional[str]):
        super().__init__(message, {"current": current, "attempted": attempted})
        self.current = current
        self.attempted = attempted


class Forbidden(JobSyncError):
    code = "FORBIDDEN"
    status_code = 403


class Unauthorized(JobSyncError):
    """Missing or invalid staff token or cron secret"""
    code = "UNAUTHORIZED"
    status_code = 401



class PreconditionFailed(JobSyncError):
    code = "PRECONDITION_FAILED"
    status_code = 412


class ReconciliationFailed(JobSyncError):
    """Reconciliation run aborted (listing bookings failed or not configured)"""
    code = "RECONCILIATION_FAILED"
    status_code = 500


class ConfigurationError(JobSyncError):
    code = "CONFIGURATION_ERROR"
    status_code = 500
