"""
Manager Router - phone bookings

POST /api/manager/bookings

Books a slot in Square for a caller and returns the job immediately.
201 when the job was created, 200 when the booking already had one
(replayed idempotency key, or the webhook arrived first).
"""

import logging

from fastapi import APIRouter, Depends, Request, Response

from ..schemas.job import Actor, PhoneBookingRequest, PhoneBookingResponse
from ..services.phone_booking import PhoneBookingService
from ..services.photo_storage import PhotoStorage
from ..utils.dependencies import get_current_actor, get_phone_booking_service, get_storage
from ..utils.rate_limiter import get_rate_limit, limiter
from .jobs import to_job_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/manager", tags=["Manager"])


@router.post("/bookings", response_model=PhoneBookingResponse, status_code=201)
@limiter.limit(get_rate_limit("phone_booking"))
async def create_phone_booking(
    request: Request,
    response: Response,
    booking: PhoneBookingRequest,
    service: PhoneBookingService = Depends(get_phone_booking_service),
    storage: PhotoStorage = Depends(get_storage),
    actor: Actor = Depends(get_current_actor)
):
    result = service.create(booking, actor)
    if not result.created:
        response.status_code = 200

    return PhoneBookingResponse(
        job_id=result.job.job_id,
        booking_id=result.booking_id,
        created=result.created,
        job=to_job_response(result.job, storage)
    )
