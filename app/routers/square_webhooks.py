"""
Square Booking Webhooks Router

POST receives booking.created / booking.updated deliveries from Square.
GET / HEAD answer Square's endpoint reachability checks.

Security:
- HMAC-SHA256 over notification URL + raw body (x-square-hmacsha256-signature)
- Unsigned deliveries rejected in production or with WEBHOOK_REQUIRE_SIGNATURE
- Rate limited per client IP

Response codes drive Square's redelivery: 2xx acknowledged, 401 rejected,
5xx retried later.
"""

import logging

from fastapi import APIRouter, Depends, Request, Response

from ..config import settings
from ..schemas.square import WebhookResponse
from ..services.job_sync import JobSyncService
from ..services.square_signature import build_webhook_url
from ..services.webhook_pipeline import WebhookIngestPipeline
from ..utils.dependencies import get_request_id, get_sync_service
from ..utils.logging_config import set_request_context
from ..utils.rate_limiter import get_rate_limit, limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/square/webhooks", tags=["Square Webhooks"])


@router.post(
    "/bookings",
    response_model=WebhookResponse,
    response_model_exclude_none=True
)
@limiter.limit(get_rate_limit("webhook"))
async def square_booking_webhook(
    request: Request,
    sync_service: JobSyncService = Depends(get_sync_service)
):
    """
    Receive a Square booking webhook.

    Flow: Verify signature -> Parse -> Validate -> Filter -> Create or update job
    """
    request_id = get_request_id(request)
    set_request_context(request_id, "square-webhook")

    # Signature is computed over the exact bytes Square sent
    body = await request.body()
    url = build_webhook_url(
        request.headers.get("host", request.url.netloc),
        request.url.path,
        settings.square_webhook_url or None
    )

    pipeline = WebhookIngestPipeline(
        sync_service,
        signature_key=settings.square_webhook_signature_key or None,
        strict_signatures=settings.strict_signatures,
        location_id=settings.square_location_id or None,
        request_id=request_id
    )
    return pipeline.process(body, request.headers, url)


@router.get("/bookings")
async def square_webhook_check():
    """Reachability check for the Square dashboard"""
    return {"status": "ok", "endpoint": "square-bookings-webhook"}


@router.head("/bookings")
async def square_webhook_head():
    return Response(status_code=200)
