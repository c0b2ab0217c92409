"""
Tests for manager phone bookings

Tests cover:
- Customer reused by phone or created, booking created in Square
- Job created immediately with manager provenance, vehicle and history
- Replayed idempotency key and webhook-first races return the existing job
- Webhook delivery for the same booking converges on the same job
- Role, configuration and catalog preconditions
"""

import json
from types import SimpleNamespace

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from conftest import WEBHOOK_URL, FakeBookingsClient, make_event

from app.models.job import Job, WorkStatus
from app.schemas.job import PhoneBookingRequest
from app.services.errors import ConfigurationError, Forbidden, PreconditionFailed, UpstreamError
from app.services.phone_booking import PhoneBookingService, vehicle_note
from app.services.webhook_pipeline import WebhookIngestPipeline


def make_request(**overrides):
    data = {
        "customer": {"name": "Sam Caller", "phone": "+15555550199", "email": "sam@example.com"},
        "service": {"service_variation_id": "var-1", "service_variation_version": 3, "duration_minutes": 90},
        "start_at": "2026-10-21T16:00:00Z",
        "notes": "Gate code 1234",
        "vehicle": {"make": "Honda", "model": "Pilot", "year": 2021},
    }
    data.update(overrides)
    return PhoneBookingRequest.model_validate(data)


@pytest.fixture
def phone_bookings():
    return FakeBookingsClient()


@pytest.fixture
def service(customer_client, catalog_client, phone_bookings, sync_service, machine):
    clients = SimpleNamespace(bookings=phone_bookings, customers=customer_client, catalog=catalog_client)
    return PhoneBookingService(
        clients, sync_service, machine, location_id="LOC1", team_member_id="tm-default", request_id="test"
    )


class TestCreatePhoneBooking:
    def test_creates_customer_booking_and_job(self, service, customer_client, phone_bookings, store, manager):
        result = service.create(make_request(), manager)

        assert result.created is True
        assert result.booking_id == "bk-phone-1"

        assert [c["phone_number"] for c in customer_client.created] == ["+15555550199"]
        call = phone_bookings.create_calls[0]
        assert call["customer_id"] == customer_client.created[0]["id"]
        assert call["location_id"] == "LOC1"
        assert call["start_at"] == "2026-10-21T16:00:00Z"
        assert call["service_variation_version"] == 3
        assert call["duration_minutes"] == 90
        assert call["team_member_id"] == "tm-default"
        assert call["seller_note"] == "Vehicle: 2021 Honda Pilot"
        assert call["customer_note"] == "Gate code 1234"

        job = store.get_job_by_booking_id("bk-phone-1")
        assert job.job_id == result.job.job_id
        assert job.work_status == WorkStatus.SCHEDULED.value
        assert job.appointment_time == "2026-10-21T16:00:00Z"
        assert job.customer_name == "Sam Caller"
        assert job.service_type == "Full Detail - Large SUV"
        assert job.created_by == "manager-phone:u-mgr"
        assert job.vehicle_info == {"make": "Honda", "model": "Pilot", "year": 2021}

        entry = job.status_history[0]
        assert entry["from"] is None
        assert entry["to"] == WorkStatus.SCHEDULED.value
        assert entry["changed_by"]["user_id"] == "u-mgr"
        assert entry["reason"] == "Phone booking created by manager"

    def test_existing_customer_reused_by_phone(self, service, customer_client, phone_bookings, store, manager):
        request = make_request(customer={"name": "Jane D", "phone": "+15555550100"})

        service.create(request, manager)

        assert customer_client.created == []
        assert phone_bookings.create_calls[0]["customer_id"] == "cust-1"
        assert store.get_job_by_booking_id("bk-phone-1").customer_name == "Jane Doe"

    def test_request_team_member_wins(self, service, phone_bookings, manager):
        request = make_request(service={
            "service_variation_id": "var-1",
            "service_variation_version": 3,
            "duration_minutes": 60,
            "team_member_id": "tm-9",
        })
        service.create(request, manager)

        assert phone_bookings.create_calls[0]["team_member_id"] == "tm-9"

    def test_variation_version_from_catalog(self, service, phone_bookings, manager):
        request = make_request(service={"service_variation_id": "var-2", "duration_minutes": 60})
        service.create(request, manager)

        assert phone_bookings.create_calls[0]["service_variation_version"] == 7


class TestIdempotency:
    def test_replayed_key_returns_existing_job(self, service, phone_bookings, store, manager):
        first = service.create(make_request(idempotency_key="call-42"), manager)
        second = service.create(make_request(idempotency_key="call-42"), manager)

        assert first.created is True
        assert second.created is False
        assert second.job.job_id == first.job.job_id
        assert len(phone_bookings.create_calls) == 1
        assert store.db.query(Job).count() == 1
        assert len(store.get_job(first.job.job_id).status_history) == 1

    def test_webhook_for_phone_booking_converges(self, service, sync_service, phone_bookings, store, manager):
        result = service.create(make_request(), manager)

        pipeline = WebhookIngestPipeline(sync_service, signature_key=None, strict_signatures=False)
        booking = phone_bookings.created["bk-phone-1"]
        outcome = pipeline.process(
            json.dumps(make_event("booking.created", booking)),
            {},
            WEBHOOK_URL
        )

        assert outcome.action == "unchanged"
        assert outcome.job_id == result.job.job_id
        job = store.get_job(result.job.job_id)
        assert job.created_by == "manager-phone:u-mgr"
        assert job.vehicle_info["make"] == "Honda"


class TestPreconditions:
    def test_tech_forbidden_before_square_calls(self, service, customer_client, phone_bookings, tech):
        with pytest.raises(Forbidden):
            service.create(make_request(), tech)

        assert customer_client.created == []
        assert phone_bookings.create_calls == []

    def test_location_required(self, customer_client, catalog_client, phone_bookings, sync_service, machine, manager):
        clients = SimpleNamespace(bookings=phone_bookings, customers=customer_client, catalog=catalog_client)
        service = PhoneBookingService(clients, sync_service, machine, location_id="")

        with pytest.raises(ConfigurationError) as exc:
            service.create(make_request(), manager)
        assert exc.value.status_code == 500
        assert phone_bookings.create_calls == []

    def test_unknown_variation_without_version(self, service, customer_client, phone_bookings, manager):
        request = make_request(service={"service_variation_id": "var-missing", "duration_minutes": 60})

        with pytest.raises(PreconditionFailed):
            service.create(request, manager)
        assert customer_client.created == []
        assert phone_bookings.create_calls == []

    def test_square_failure_creates_no_job(self, service, phone_bookings, store, manager):
        phone_bookings.error = UpstreamError("Failed to create booking: slot unavailable", status=400)

        with pytest.raises(UpstreamError):
            service.create(make_request(), manager)
        assert store.db.query(Job).count() == 0


class TestRequestValidation:
    def test_naive_start_rejected(self):
        with pytest.raises(ValueError):
            make_request(start_at="2026-10-21T16:00:00")

    def test_blank_name_rejected(self):
        with pytest.raises(ValueError):
            make_request(customer={"name": "   ", "phone": "+15555550199"})

    def test_offset_start_normalized_to_utc(self, service, phone_bookings, manager):
        service.create(make_request(start_at="2026-10-21T09:00:00-07:00"), manager)
        assert phone_bookings.create_calls[0]["start_at"] == "2026-10-21T16:00:00Z"


class TestVehicleNote:
    def test_partial_vehicle(self):
        assert vehicle_note(None) is None
        assert vehicle_note(make_request(vehicle={"make": "Tesla"}).vehicle) == "Vehicle: Tesla"
        assert vehicle_note(make_request(vehicle={"color": "Red"}).vehicle) is None
