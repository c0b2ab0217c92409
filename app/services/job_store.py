"""
Job Store

SQLAlchemy-backed storage for jobs, keyed by job_id with a unique
secondary index on booking_id.

create_job is a conditional insert: if a job already exists for the
booking id it raises ConflictOnCreate and the caller falls back to an
update. No row locks are taken anywhere.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.job import Job
from .errors import ConflictOnCreate, JobNotFound, PersistenceError

logger = logging.getLogger(__name__)


class JobStore:
    def __init__(self, db: Session):
        self.db = db

    def get_job(self, job_id: str) -> Optional[Job]:
        try:
            return self.db.query(Job).filter(Job.job_id == job_id).first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load job {job_id}: {e}")

    def get_job_by_booking_id(self, booking_id: str) -> Optional[Job]:
        try:
            return self.db.query(Job).filter(Job.booking_id == booking_id).first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load job for booking {booking_id}: {e}")

    def create_job(self, record: Dict[str, Any]) -> Job:
        """Insert a job unless one already exists for its booking id"""
        job = Job(**record)
        try:
            self.db.add(job)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Job for booking {record.get('booking_id')} already exists")
            raise ConflictOnCreate(
                f"Job already exists for booking {record.get('booking_id')}",
                details={"booking_id": record.get("booking_id")}
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to create job: {e}")

        self.db.refresh(job)
        return job

    def update_job(self, job_id: str, partial: Dict[str, Any]) -> Job:
        """
        Apply a partial update keyed on job_id.

        JSON columns must be given new objects (not mutated in place)
        for the change to be flushed.
        """
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found", details={"job_id": job_id})

        for key, value in partial.items():
            if key == "job_id" or not hasattr(Job, key):
                raise PersistenceError(f"Unknown job field: {key}")
            setattr(job, key, value)
        job.updated_at = datetime.now(timezone.utc)

        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to update job {job_id}: {e}")

        self.db.refresh(job)
        return job

    def list_jobs(
        self,
        limit: int = 100,
        offset: int = 0,
        status: Optional[str] = None,
        customer_id: Optional[str] = None
    ) -> List[Job]:
        """Jobs by appointment time, optionally filtered by work status and customer"""
        try:
            query = self.db.query(Job)
            if status:
                query = query.filter(Job.work_status == status)
            if customer_id:
                query = query.filter(Job.customer_id == customer_id)
            return (
                query
                .order_by(Job.appointment_time.asc(), Job.job_id.asc())
                .offset(offset)
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list jobs: {e}")

