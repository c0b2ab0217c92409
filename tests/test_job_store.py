"""
Tests for JobStore

Tests cover:
- Conditional create on booking_id (duplicate -> ConflictOnCreate)
- Partial updates and their failure modes
- Sync fallback from create to update when a concurrent insert wins
"""

from unittest.mock import MagicMock

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from conftest import make_booking

from app.models.job import Job
from app.services.booking_parser import parse_square_booking
from app.services.errors import ConflictOnCreate, JobNotFound, PersistenceError
from app.services.job_sync import SyncAction


class TestJobStore:
    def test_create_and_lookup(self, job_factory, store):
        job = job_factory()

        assert store.get_job(job.job_id).booking_id == "bk-1"
        assert store.get_job_by_booking_id("bk-1").job_id == job.job_id
        assert store.get_job("missing") is None
        assert store.get_job_by_booking_id("missing") is None

    def test_duplicate_booking_rejected(self, job_factory, store, merger):
        job_factory()
        record = merger.build_creation_record(parse_square_booking(make_booking()), created_by="reconciliation")

        with pytest.raises(ConflictOnCreate):
            store.create_job(record)

        assert store.db.query(Job).count() == 1

    def test_update_partial(self, job_factory, store):
        job = job_factory()
        updated = store.update_job(job.job_id, {"notes": "Ceramic coat", "updated_by": "u-1"})

        assert updated.notes == "Ceramic coat"
        assert updated.updated_by == "u-1"
        assert updated.booking_id == "bk-1"

    def test_update_missing_job(self, store):
        with pytest.raises(JobNotFound):
            store.update_job("missing", {"notes": "x"})

    def test_update_unknown_field(self, job_factory, store):
        job = job_factory()
        with pytest.raises(PersistenceError):
            store.update_job(job.job_id, {"not_a_column": 1})

    def test_list_jobs_ordered_by_appointment(self, job_factory, store):
        job_factory(booking_id="bk-late", start_at="2026-10-21T09:00:00Z")
        job_factory(booking_id="bk-early", start_at="2026-10-20T09:00:00Z")

        assert [j.booking_id for j in store.list_jobs()] == ["bk-early", "bk-late"]
        assert len(store.list_jobs(limit=1)) == 1

    def test_list_jobs_filters(self, job_factory, store):
        job_factory(booking_id="bk-1", start_at="2026-10-20T09:00:00Z")
        second = job_factory(booking_id="bk-2", start_at="2026-10-20T10:00:00Z", customer_id="cust-2")
        job_factory(booking_id="bk-3", start_at="2026-10-20T11:00:00Z", customer_id="cust-2")
        store.update_job(second.job_id, {"work_status": "CHECKED_IN"})

        assert [j.booking_id for j in store.list_jobs(status="SCHEDULED")] == ["bk-1", "bk-3"]
        assert [j.booking_id for j in store.list_jobs(customer_id="cust-2")] == ["bk-2", "bk-3"]
        assert [j.booking_id for j in store.list_jobs(status="CHECKED_IN", customer_id="cust-2")] == ["bk-2"]

    def test_list_jobs_pages(self, job_factory, store):
        for hour in range(5):
            job_factory(booking_id=f"bk-{hour}", start_at=f"2026-10-20T1{hour}:00:00Z")

        pages = [
            [j.booking_id for j in store.list_jobs(limit=2, offset=offset)]
            for offset in (0, 2, 4)
        ]
        assert pages == [["bk-0", "bk-1"], ["bk-2", "bk-3"], ["bk-4"]]



class TestCreateRace:
    def test_conflict_on_create_falls_back_to_update(self, job_factory, store, sync_service):
        existing = job_factory()
        real_lookup = store.get_job_by_booking_id

        # First lookup misses (the other path has not committed yet), refetch sees it
        store.get_job_by_booking_id = MagicMock(side_effect=[None, real_lookup("bk-1")])

        result = sync_service.sync_booking(
            parse_square_booking(make_booking(start_at="2026-10-20T16:00:00Z")),
            source="reconciliation"
        )

        assert result.action == SyncAction.UPDATED
        assert result.job_id == existing.job_id
        assert store.db.query(Job).count() == 1
        assert store.get_job(existing.job_id).appointment_time == "2026-10-20T16:00:00Z"

    def test_conflict_without_visible_job_is_persistence_error(self, store, sync_service):
        store.create_job = MagicMock(side_effect=ConflictOnCreate("duplicate booking_id"))
        store.get_job_by_booking_id = MagicMock(return_value=None)

        with pytest.raises(PersistenceError) as exc:
            sync_service.sync_booking(parse_square_booking(make_booking()), source="square-webhook")

        assert exc.value.status_code == 500
        assert store.get_job_by_booking_id.call_count == 2
