"""
Request-scoped dependencies: staff identity and service wiring.
"""

import logging
import uuid

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from ..config import settings
from ..database import get_db
from ..schemas.job import Actor
from ..services.errors import Unauthorized
from ..services.field_provenance import FieldProvenanceMerger
from ..services.job_state_machine import JobStateMachine
from ..services.job_store import JobStore
from ..services.job_sync import JobSyncService
from ..services.phone_booking import PhoneBookingService
from ..services.photo_storage import PhotoStorage, get_photo_storage
from ..services.square_client import SquareClients, get_square_clients
from .logging_config import set_request_context
from .security import actor_from_token

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def get_request_id(request: Request) -> str:
    """Get request_id from request state or generate one"""
    return getattr(request.state, "request_id", str(uuid.uuid4())[:8])


async def get_current_actor(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    """Staff member from the Bearer token"""
    if not credentials or not credentials.credentials:
        raise Unauthorized("Not authenticated")

    actor = actor_from_token(credentials.credentials)
    if actor is None:
        logger.warning(f"[{get_request_id(request)}] Rejected staff token")
        raise Unauthorized("Invalid or expired token")

    set_request_context(get_request_id(request), actor.user_id)
    return actor


def get_job_store(db: Session = Depends(get_db)) -> JobStore:
    return JobStore(db)


def get_clients() -> SquareClients:
    return get_square_clients()


def get_sync_service(
    request: Request,
    store: JobStore = Depends(get_job_store),
    clients: SquareClients = Depends(get_clients),
) -> JobSyncService:
    merger = FieldProvenanceMerger(
        clients.customers,
        clients.catalog,
        customer_cache_hours=settings.customer_cache_hours
    )
    return JobSyncService(store, merger, request_id=get_request_id(request))


def get_state_machine(store: JobStore = Depends(get_job_store)) -> JobStateMachine:
    return JobStateMachine(store)


def get_storage() -> PhotoStorage:
    return get_photo_storage()


def get_phone_booking_service(
    request: Request,
    sync_service: JobSyncService = Depends(get_sync_service),
    machine: JobStateMachine = Depends(get_state_machine),
    clients: SquareClients = Depends(get_clients),
) -> PhoneBookingService:
    return PhoneBookingService(
        clients,
        sync_service,
        machine,
        location_id=settings.square_location_id,
        team_member_id=settings.square_team_member_id,
        request_id=get_request_id(request)
    )
