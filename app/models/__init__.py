# Models package
from .job import (
    Job,
    WorkStatus,
    CreatedBy,
    BOOKING_DERIVED_FIELDS,
    STAFF_DERIVED_FIELDS,
)

__all__ = [
    "Job", "WorkStatus", "CreatedBy",
    "BOOKING_DERIVED_FIELDS", "STAFF_DERIVED_FIELDS",
]
