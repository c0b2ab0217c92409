"""
Cron Router - scheduled reconciliation trigger

GET /api/cron/reconcile?token=...&dry_run=true

Called by an external scheduler (or worker.py) to converge jobs onto
Square's bookings for yesterday through tomorrow.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from ..config import settings
from ..services.errors import ReconciliationFailed, Unauthorized, UpstreamError
from ..services.job_sync import JobSyncService
from ..services.reconciliation import ReconciliationEngine, get_time_range_with_buffer
from ..services.square_client import SquareClients
from ..utils.dependencies import get_clients, get_request_id, get_sync_service
from ..utils.logging_config import set_request_context
from ..utils.rate_limiter import get_rate_limit, limiter
from ..utils.security import verify_shared_secret

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["Cron"])


@router.get("/reconcile")
@limiter.limit(get_rate_limit("cron"))
async def reconcile_bookings(
    request: Request,
    token: Optional[str] = Query(None),
    dry_run: bool = Query(False),
    sync_service: JobSyncService = Depends(get_sync_service),
    clients: SquareClients = Depends(get_clients)
):
    request_id = get_request_id(request)
    set_request_context(request_id, "reconciliation")

    if not settings.cron_secret:
        logger.error(f"[{request_id}] CRON_SECRET is not configured")
        raise ReconciliationFailed("Reconciliation is not configured")

    if not verify_shared_secret(token, settings.cron_secret):
        logger.warning(f"[{request_id}] Rejected cron call with invalid token")
        raise Unauthorized("Invalid cron token")

    start_at_min, start_at_max = get_time_range_with_buffer()
    engine = ReconciliationEngine(
        clients.bookings,
        sync_service,
        max_pages=settings.reconcile_max_pages,
        page_size=settings.reconcile_page_size,
        request_id=request_id
    )

    try:
        summary = engine.run(
            start_at_min,
            start_at_max,
            location_id=settings.square_location_id or None,
            dry_run=dry_run
        )
    except UpstreamError as e:
        logger.error(f"[{request_id}] Reconciliation aborted: {e.message}")
        raise ReconciliationFailed(
            f"Failed to list bookings: {e.message}",
            details={"upstream_status": e.status}
        )

    return summary.to_response()
