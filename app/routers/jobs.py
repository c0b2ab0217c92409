"""
Jobs API Router

Staff-facing job operations. Booking-derived fields are read-only here;
every write goes through JobStateMachine so it is role-checked and
recorded in status_history.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request

from ..models.job import Job, WorkStatus
from ..schemas.job import (
    Actor,
    CommitRequest,
    JobResponse,
    JobUpdateRequest,
    PresignRequest,
    PresignResponse,
)
from ..services.errors import Forbidden, JobNotFound
from ..services.job_state_machine import JobStateMachine
from ..services.job_store import JobStore
from ..services.photo_storage import PHOTOS_FOLDER, RECEIPTS_FOLDER, PhotoStorage
from ..utils.dependencies import (
    get_current_actor,
    get_job_store,
    get_request_id,
    get_state_machine,
    get_storage,
)
from ..utils.rate_limiter import get_rate_limit, limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["Jobs"])


def _with_download_urls(photos: List[Dict[str, Any]], storage: PhotoStorage) -> List[Dict[str, Any]]:
    return [
        {**photo, "download_url": storage.presign_download(photo["s3_key"])} if photo.get("s3_key") else photo
        for photo in photos or []
    ]


def to_job_response(job: Job, storage: PhotoStorage) -> JobResponse:
    response = JobResponse.model_validate(job)
    response.photos_meta = _with_download_urls(response.photos_meta, storage)
    response.receipt_photos = _with_download_urls(response.receipt_photos, storage)
    return response


def _load_job(store: JobStore, job_id: str) -> Job:
    job = store.get_job(job_id)
    if job is None:
        raise JobNotFound(f"Job {job_id} not found", details={"job_id": job_id})
    return job


# ==================
# Read
# ==================

@router.get("", response_model=List[JobResponse])
@router.get("/", response_model=List[JobResponse])
@limiter.limit(get_rate_limit("job_read"))
async def list_jobs(
    request: Request,
    status: Optional[WorkStatus] = Query(None),
    customer_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    store: JobStore = Depends(get_job_store),
    actor: Actor = Depends(get_current_actor)
):
    """Jobs by appointment time, filtered by work status and Square customer"""
    jobs = store.list_jobs(
        limit=limit,
        offset=offset,
        status=status.value if status else None,
        customer_id=customer_id
    )
    return [JobResponse.model_validate(job) for job in jobs]


@router.get("/{job_id}", response_model=JobResponse)
@limiter.limit(get_rate_limit("job_read"))
async def get_job(
    request: Request,
    job_id: str,
    store: JobStore = Depends(get_job_store),
    storage: PhotoStorage = Depends(get_storage),
    actor: Actor = Depends(get_current_actor)
):
    return to_job_response(_load_job(store, job_id), storage)


# ==================
# Staff updates
# ==================

@router.patch("/{job_id}", response_model=JobResponse)
@limiter.limit(get_rate_limit("job_update"))
async def update_job(
    request: Request,
    job_id: str,
    update: JobUpdateRequest,
    machine: JobStateMachine = Depends(get_state_machine),
    storage: PhotoStorage = Depends(get_storage),
    actor: Actor = Depends(get_current_actor)
):
    """
    Apply exactly one staff operation:
    work_status | no_show | post_completion_issue | payment | checklist | vehicle_info | notes
    """
    job = machine.apply_update(job_id, update, actor)
    logger.info(f"[{get_request_id(request)}] Job {job_id} updated by {actor.user_id}")
    return to_job_response(job, storage)


# ==================
# Photos & receipts
# ==================

@router.post("/{job_id}/photos/presign", response_model=PresignResponse)
@limiter.limit(get_rate_limit("photo_presign"))
async def presign_photos(
    request: Request,
    job_id: str,
    body: PresignRequest,
    store: JobStore = Depends(get_job_store),
    storage: PhotoStorage = Depends(get_storage),
    actor: Actor = Depends(get_current_actor)
):
    _load_job(store, job_id)
    return PresignResponse(uploads=storage.presign_uploads(job_id, body.files, PHOTOS_FOLDER))


@router.post("/{job_id}/photos/commit", response_model=JobResponse)
async def commit_photos(
    request: Request,
    job_id: str,
    body: CommitRequest,
    machine: JobStateMachine = Depends(get_state_machine),
    storage: PhotoStorage = Depends(get_storage),
    actor: Actor = Depends(get_current_actor)
):
    job = machine.commit_photos(job_id, body.photos, actor)
    return to_job_response(job, storage)


@router.post("/{job_id}/receipts/presign", response_model=PresignResponse)
@limiter.limit(get_rate_limit("photo_presign"))
async def presign_receipts(
    request: Request,
    job_id: str,
    body: PresignRequest,
    store: JobStore = Depends(get_job_store),
    storage: PhotoStorage = Depends(get_storage),
    actor: Actor = Depends(get_current_actor)
):
    if not actor.is_manager:
        raise Forbidden("Only MANAGER can upload receipts", details={"role": actor.role.value})
    _load_job(store, job_id)
    return PresignResponse(uploads=storage.presign_uploads(job_id, body.files, RECEIPTS_FOLDER))


@router.post("/{job_id}/receipts/commit", response_model=JobResponse)
async def commit_receipts(
    request: Request,
    job_id: str,
    body: CommitRequest,
    machine: JobStateMachine = Depends(get_state_machine),
    storage: PhotoStorage = Depends(get_storage),
    actor: Actor = Depends(get_current_actor)
):
    job = machine.commit_receipts(job_id, body.photos, actor)
    return to_job_response(job, storage)
