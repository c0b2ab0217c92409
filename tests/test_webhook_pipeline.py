"""
Tests for the Square booking webhook ingest pipeline

Tests cover:
- Create, duplicate delivery, update, update-before-create
- Staff-owned fields survive booking updates
- Signature policy (invalid always rejected, missing rejected when strict)
- Unsupported events, location filter, cancelled bookings
- Malformed / invalid payloads surface as retryable (5xx) errors
- Persistence failures propagate
- Log records carry event, booking and job ids
"""

import json
import logging
from unittest.mock import MagicMock

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from conftest import SIGNATURE_KEY, WEBHOOK_URL, make_booking, make_event

from app.models.job import STAFF_DERIVED_FIELDS, Job, WorkStatus
from app.services.errors import (
    InvalidBooking,
    MalformedBookingError,
    MalformedPayload,
    PersistenceError,
    SignatureInvalid,
    SignatureMissing,
)
from app.services.square_signature import compute_signature
from app.services.webhook_pipeline import WebhookIngestPipeline, WebhookOutcome


def signed(event):
    body = json.dumps(event).encode("utf-8")
    headers = {"x-square-hmacsha256-signature": compute_signature(body, SIGNATURE_KEY, WEBHOOK_URL)}
    return body, headers


@pytest.fixture
def pipeline(sync_service):
    return WebhookIngestPipeline(
        sync_service,
        signature_key=SIGNATURE_KEY,
        strict_signatures=True,
        request_id="test"
    )


def deliver(pipeline, event):
    body, headers = signed(event)
    return pipeline.process(body, headers, WEBHOOK_URL)


class TestCreateAndUpdate:
    def test_booking_created_creates_job(self, pipeline, store):
        result = deliver(pipeline, make_event("booking.created", make_booking()))

        assert result.processed is True
        assert result.action == "created"
        assert result.booking_id == "bk-1"
        assert result.event_id == "evt-1"

        job = store.get_job(result.job_id)
        assert job.booking_id == "bk-1"
        assert job.customer_name == "Jane Doe"
        assert job.service_type == "Full Detail - Large SUV"
        assert job.work_status == WorkStatus.SCHEDULED.value
        assert job.created_by == "square-webhook"

    def test_duplicate_delivery_is_idempotent(self, pipeline, store):
        event = make_event("booking.created", make_booking())
        first = deliver(pipeline, event)
        second = deliver(pipeline, event)

        assert second.action == "unchanged"
        assert second.job_id == first.job_id
        assert store.db.query(Job).count() == 1

    def test_update_changes_booking_fields_only(self, pipeline, store):
        created = deliver(pipeline, make_event("booking.created", make_booking()))

        store.update_job(created.job_id, {
            "work_status": WorkStatus.IN_PROGRESS.value,
            "notes": "Scratch on rear bumper",
            "checklist": {"tech": [{"label": "Vacuum", "completed": True}], "qc": []},
            "status_history": [{"from": "SCHEDULED", "to": "IN_PROGRESS", "event": "STATUS_CHANGE"}],
        })

        result = deliver(pipeline, make_event(
            "booking.updated",
            make_booking(start_at="2026-10-20T17:30:00Z", variation_id="var-2"),
            event_id="evt-2"
        ))

        assert result.action == "updated"
        job = store.get_job(created.job_id)
        assert job.appointment_time == "2026-10-20T17:30:00Z"
        assert job.service_type == "Interior Only"
        assert job.work_status == WorkStatus.IN_PROGRESS.value
        assert job.notes == "Scratch on rear bumper"
        assert job.checklist["tech"][0]["completed"] is True
        assert len(job.status_history) == 1
        assert job.updated_by == "square-webhook"

    def test_every_staff_field_survives_sync(self, pipeline, store):
        created = deliver(pipeline, make_event("booking.created", make_booking()))
        staff_values = {
            "work_status": WorkStatus.QC_READY.value,
            "checklist": {"tech": [{"label": "Wheels", "completed": True}], "qc": [{"label": "Glass", "completed": False}]},
            "photos_meta": [{"photo_id": "p-1", "s3_key": "jobs/x/photos/1-a.jpg"}],
            "receipt_photos": [{"photo_id": "r-1", "s3_key": "jobs/x/receipts/r-1-a.jpg"}],
            "post_completion_issue": {"is_open": False, "type": "QUALITY"},
            "payment": {"status": "UNPAID", "unpaid_reason": "PAY_LATER"},
            "vehicle_info": {"make": "Honda", "model": "Pilot"},
            "notes": "Dog hair in the third row",
            "status_history": [{"from": "SCHEDULED", "to": "QC_READY", "event": "STATUS_CHANGE"}],
            "no_show": {"status": "RESOLVED", "reason": "OTHER"},
        }
        assert set(staff_values) == set(STAFF_DERIVED_FIELDS)
        store.update_job(created.job_id, staff_values)

        deliver(pipeline, make_event(
            "booking.updated",
            make_booking(start_at="2026-10-22T08:00:00Z", customer_id="cust-2", variation_id="var-2",
                         customer_note="Changed my mind"),
            event_id="evt-3"
        ))

        job = store.get_job(created.job_id)
        assert job.appointment_time == "2026-10-22T08:00:00Z"
        for field in STAFF_DERIVED_FIELDS:
            assert getattr(job, field) == staff_values[field], field

    def test_update_before_create_upserts(self, pipeline, store):
        result = deliver(pipeline, make_event("booking.updated", make_booking(booking_id="bk-late")))

        assert result.action == "created"
        assert store.get_job_by_booking_id("bk-late") is not None


class TestSignaturePolicy:
    def test_invalid_signature_rejected(self, pipeline, store):
        body, _ = signed(make_event("booking.created", make_booking()))
        with pytest.raises(SignatureInvalid):
            pipeline.process(body, {"x-square-hmacsha256-signature": "A" * 44}, WEBHOOK_URL)
        assert store.db.query(Job).count() == 0

    def test_signature_for_other_url_rejected(self, pipeline):
        body, headers = signed(make_event("booking.created", make_booking()))
        with pytest.raises(SignatureInvalid):
            pipeline.process(body, headers, "https://attacker.example/hook")

    def test_missing_signature_rejected_when_strict(self, pipeline):
        body, _ = signed(make_event("booking.created", make_booking()))
        with pytest.raises(SignatureMissing):
            pipeline.process(body, {}, WEBHOOK_URL)

    def test_missing_key_rejected_when_strict(self, sync_service):
        pipeline = WebhookIngestPipeline(sync_service, signature_key=None, strict_signatures=True)
        body, headers = signed(make_event("booking.created", make_booking()))
        with pytest.raises(SignatureMissing):
            pipeline.process(body, headers, WEBHOOK_URL)

    def test_missing_signature_allowed_when_lenient(self, sync_service):
        pipeline = WebhookIngestPipeline(sync_service, signature_key=SIGNATURE_KEY, strict_signatures=False)
        body, _ = signed(make_event("booking.created", make_booking()))

        assert pipeline.process(body, {}, WEBHOOK_URL).action == "created"

    def test_invalid_signature_rejected_even_when_lenient(self, sync_service):
        pipeline = WebhookIngestPipeline(sync_service, signature_key=SIGNATURE_KEY, strict_signatures=False)
        body, _ = signed(make_event("booking.created", make_booking()))
        with pytest.raises(SignatureInvalid):
            pipeline.process(body, {"x-square-signature": "A" * 44}, WEBHOOK_URL)


class TestSkippedDeliveries:
    def test_unsupported_event_acknowledged(self, pipeline, store):
        result = deliver(pipeline, make_event("customer.updated", make_booking()))

        assert result.processed is False
        assert result.action == WebhookOutcome.SKIPPED_UNSUPPORTED_EVENT.value
        assert store.db.query(Job).count() == 0

    def test_other_location_filtered(self, sync_service, store):
        pipeline = WebhookIngestPipeline(
            sync_service, signature_key=SIGNATURE_KEY, strict_signatures=True, location_id="LOC1"
        )
        result = deliver(pipeline, make_event("booking.created", make_booking(location_id="LOC2")))

        assert result.processed is False
        assert result.action == WebhookOutcome.SKIPPED_FILTERED.value
        assert store.db.query(Job).count() == 0

    def test_same_location_processed(self, sync_service):
        pipeline = WebhookIngestPipeline(
            sync_service, signature_key=SIGNATURE_KEY, strict_signatures=True, location_id="LOC1"
        )
        assert deliver(pipeline, make_event("booking.created", make_booking())).action == "created"

    def test_cancelled_without_job_not_created(self, pipeline, store):
        result = deliver(pipeline, make_event("booking.updated", make_booking(status="CANCELLED_BY_CUSTOMER")))

        assert result.processed is False
        assert result.action == WebhookOutcome.SKIPPED_CANCELLED.value
        assert store.db.query(Job).count() == 0

    def test_cancelled_with_job_is_flagged_not_deleted(self, pipeline, store):
        created = deliver(pipeline, make_event("booking.created", make_booking()))
        store.update_job(created.job_id, {"work_status": WorkStatus.CHECKED_IN.value})

        result = deliver(pipeline, make_event(
            "booking.updated", make_booking(status="CANCELLED_BY_SELLER"), event_id="evt-2"
        ))

        assert result.processed is True
        assert result.action == WebhookOutcome.CANCELLED.value
        assert result.job_id == created.job_id
        job = store.get_job(created.job_id)
        assert job.booking_cancelled_at is not None
        assert job.work_status == WorkStatus.CHECKED_IN.value

    def test_cancellation_redelivery_not_reported_twice(self, pipeline, store):
        deliver(pipeline, make_event("booking.created", make_booking()))
        cancelled = make_event("booking.updated", make_booking(status="CANCELLED_BY_SELLER"), event_id="evt-2")

        assert deliver(pipeline, cancelled).action == "cancelled"
        assert deliver(pipeline, cancelled).action == "unchanged"


class TestPersistenceFailures:
    def test_update_failure_propagates(self, pipeline, store, monkeypatch):
        deliver(pipeline, make_event("booking.created", make_booking()))
        monkeypatch.setattr(store, "update_job", MagicMock(side_effect=PersistenceError("db down")))

        with pytest.raises(PersistenceError) as exc:
            deliver(pipeline, make_event(
                "booking.updated", make_booking(start_at="2026-10-21T09:00:00Z"), event_id="evt-2"
            ))
        assert exc.value.status_code == 500


class TestStructuredLogging:
    def test_log_records_carry_ids(self, pipeline, caplog):
        with caplog.at_level(logging.INFO, logger="app.services.webhook_pipeline"):
            result = deliver(pipeline, make_event("booking.created", make_booking()))

        record = [r for r in caplog.records if r.name == "app.services.webhook_pipeline"][-1]
        assert record.event_id == "evt-1"
        assert record.booking_id == "bk-1"
        assert record.job_id == result.job_id


class TestMalformedDeliveries:
    def test_invalid_json(self, pipeline):
        body = b"{not json"
        headers = {"x-square-hmacsha256-signature": compute_signature(body, SIGNATURE_KEY, WEBHOOK_URL)}
        with pytest.raises(MalformedPayload) as exc:
            pipeline.process(body, headers, WEBHOOK_URL)
        assert exc.value.status_code == 500

    def test_missing_booking_object(self, pipeline):
        with pytest.raises(MalformedBookingError):
            deliver(pipeline, make_event("booking.created", None))

    def test_booking_without_start_time(self, pipeline, store):
        with pytest.raises(InvalidBooking) as exc:
            deliver(pipeline, make_event("booking.created", make_booking(start_at=None)))
        assert exc.value.status_code == 500
        assert store.db.query(Job).count() == 0
