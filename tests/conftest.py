"""
Shared fixtures: in-memory SQLite store, fake Square clients,
a fixed clock and a FastAPI TestClient wired to both.
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SQUARE_ENVIRONMENT", "sandbox")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base
from app.models.job import CreatedBy
from app.schemas.job import Actor, StaffRole
from app.services.booking_parser import parse_square_booking
from app.services.field_provenance import FieldProvenanceMerger
from app.services.job_state_machine import JobStateMachine
from app.services.job_store import JobStore
from app.services.job_sync import JobSyncService
from app.services.photo_storage import PhotoStorage
from app.services.square_client import to_customer_cached


NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)
WEBHOOK_URL = "https://ops.example.com/api/square/webhooks/bookings"
SIGNATURE_KEY = "test-signature-key"


# ==================
# Builders
# ==================

def make_booking(
    booking_id="bk-1",
    start_at="2026-10-20T15:00:00Z",
    status="ACCEPTED",
    customer_id="cust-1",
    variation_id="var-1",
    location_id="LOC1",
    customer_note=None,
    version=1
):
    booking = {
        "id": booking_id,
        "version": version,
        "status": status,
        "created_at": "2026-10-18T09:00:00Z",
        "start_at": start_at,
        "location_id": location_id,
        "customer_id": customer_id,
        "customer_note": customer_note,
        "appointment_segments": [],
    }
    if variation_id:
        booking["appointment_segments"] = [{
            "service_variation_id": variation_id,
            "service_variation_version": 1,
            "duration_minutes": 120,
            "team_member_id": "tm-1",
        }]
    return booking


def make_event(event_type, booking, event_id="evt-1"):
    return {
        "merchant_id": "MERCHANT1",
        "type": event_type,
        "event_id": event_id,
        "created_at": "2026-10-19T11:59:00Z",
        "data": {
            "type": "booking",
            "id": booking["id"] if booking else None,
            "object": {"booking": booking},
        },
    }


class FixedClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


# ==================
# Fake Square clients
# ==================

class FakeCustomerClient:
    def __init__(self, customers=None):
        self.customers = customers or {}
        self.calls = []
        self.created = []

    def fetch_customer_with_retry(self, customer_id, retries=1, now=None):
        self.calls.append(customer_id)
        customer = self.customers.get(customer_id)
        if not customer:
            return None
        return to_customer_cached(customer, now)

    def find_or_create_customer(self, name, phone, email=None, idempotency_key=None):
        for customer in self.customers.values():
            if customer.get("phone_number") == phone:
                return customer
        given_name, _, family_name = name.partition(" ")
        customer = {
            "id": f"cust-new-{len(self.customers) + 1}",
            "given_name": given_name,
            "family_name": family_name or None,
            "phone_number": phone,
            "email_address": email,
        }
        self.customers[customer["id"]] = customer
        self.created.append(customer)
        return customer


class FakeCatalogClient:
    def __init__(self, names=None):
        self.names = names or {}
        self.calls = []

    def fetch_service_name(self, variation_id):
        self.calls.append(variation_id)
        return self.names.get(variation_id, variation_id)

    def fetch_catalog_object(self, object_id):
        if object_id not in self.names:
            return None
        return {"id": object_id, "type": "ITEM_VARIATION", "version": 7}


class FakeBookingsClient:
    def __init__(self, bookings=None, error=None):
        self.bookings = bookings or []
        self.error = error
        self.calls = []
        self.created = {}
        self.create_calls = []

    def list_all_bookings(self, start_at_min=None, start_at_max=None, location_id=None, limit=100, max_pages=10):
        self.calls.append({
            "start_at_min": start_at_min,
            "start_at_max": start_at_max,
            "location_id": location_id,
        })
        if self.error:
            raise self.error
        return list(self.bookings)

    def create_booking(self, idempotency_key=None, **fields):
        """Square semantics: a replayed idempotency key returns the original booking"""
        if self.error:
            raise self.error
        if idempotency_key and idempotency_key in self.created:
            return self.created[idempotency_key]
        booking = make_booking(
            booking_id=f"bk-phone-{len(self.created) + 1}",
            start_at=fields["start_at"],
            customer_id=fields["customer_id"],
            variation_id=fields["service_variation_id"],
            location_id=fields["location_id"],
            customer_note=fields.get("customer_note"),
        )
        booking["seller_note"] = fields.get("seller_note")
        self.created[idempotency_key or booking["id"]] = booking
        self.create_calls.append({"idempotency_key": idempotency_key, **fields})
        return booking


# ==================
# Fixtures
# ==================

@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def store(db_session):
    return JobStore(db_session)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def customer_client():
    return FakeCustomerClient({
        "cust-1": {
            "id": "cust-1",
            "given_name": "Jane",
            "family_name": "Doe",
            "email_address": "jane@example.com",
            "phone_number": "+15555550100",
        },
        "cust-2": {
            "id": "cust-2",
            "company_name": "Acme Fleet",
            "email_address": "fleet@acme.test",
        },
    })


@pytest.fixture
def catalog_client():
    return FakeCatalogClient({
        "var-1": "Full Detail - Large SUV",
        "var-2": "Interior Only",
    })


@pytest.fixture
def merger(customer_client, catalog_client, clock):
    return FieldProvenanceMerger(customer_client, catalog_client, clock=clock)


@pytest.fixture
def sync_service(store, merger, clock):
    return JobSyncService(store, merger, clock=clock, request_id="test")


@pytest.fixture
def machine(store, clock):
    return JobStateMachine(store, clock=clock)


@pytest.fixture
def job_factory(store, merger):
    """Insert a job as if created by the webhook path"""
    def _create(**booking_kwargs):
        parsed = parse_square_booking(make_booking(**booking_kwargs))
        record = merger.build_creation_record(parsed, created_by=CreatedBy.SQUARE_WEBHOOK.value)
        return store.create_job(record)
    return _create


@pytest.fixture
def tech():
    return Actor(user_id="u-tech", name="Tara Tech", role=StaffRole.TECH)


@pytest.fixture
def qc():
    return Actor(user_id="u-qc", name="Quinn QC", role=StaffRole.QC)


@pytest.fixture
def manager():
    return Actor(user_id="u-mgr", name="Morgan Manager", role=StaffRole.MANAGER)


@pytest.fixture
def s3_client():
    client = MagicMock()
    client.generate_presigned_url.side_effect = (
        lambda op, Params, ExpiresIn: f"https://signed.example/{op}/{Params['Key']}?expires={ExpiresIn}"
    )
    return client


@pytest.fixture
def photo_storage(s3_client):
    return PhotoStorage(
        bucket="detail-photos",
        region="us-east-1",
        s3_client=s3_client,
        clock=lambda: 1760875200.0,
    )


@pytest.fixture
def bookings_client():
    return FakeBookingsClient()


def make_token(claims, expires_in=timedelta(hours=12)):
    """Staff access token as issued by the auth service"""
    from jose import jwt

    from app.config import settings

    payload = {**claims, "exp": datetime.now(timezone.utc) + expires_in, "type": "access"}
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def auth_headers(role="TECH", user_id="u-1", name="Staff Member"):
    token = make_token({"sub": user_id, "name": name, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def api_client(db_session, customer_client, catalog_client, bookings_client, photo_storage):
    """TestClient with DB, Square clients and storage replaced"""
    from fastapi.testclient import TestClient

    from app.database import get_db
    from app.main import app
    from app.utils.dependencies import get_clients, get_storage
    from app.utils.rate_limiter import limiter

    def override_get_db():
        yield db_session

    clients = SimpleNamespace(
        bookings=bookings_client,
        customers=customer_client,
        catalog=catalog_client,
    )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clients] = lambda: clients
    app.dependency_overrides[get_storage] = lambda: photo_storage
    limiter.enabled = False

    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        limiter.enabled = True

