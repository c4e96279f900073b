"""FastAPI endpoints for the Expense Sync API.

This module defines the synchronous sync routes (upload, download, full sync,
status), the background job routes and the health check. The caller's
identity comes from the ``X-User-Id`` header set by the upstream auth layer.
"""

from typing import Any

from fastapi import APIRouter, Body, Depends, Query

from app.api.dependencies import get_app_settings, get_job_store, get_job_worker, get_sync_service, get_user_id
from app.core.errors import JobNotFoundError
from app.core.settings import Settings
from app.core.utils import get_logger, utcnow_iso
from app.services.job_store import JobStore
from app.services.sync_service import SyncService
from app.workers.job_runner import JobWorker

router = APIRouter()
sync_router = APIRouter(prefix="/sync", tags=["sync"])
jobs_router = APIRouter(prefix="/jobs", tags=["jobs"])
logger = get_logger("expense-sync.api")

PAYLOAD_EXAMPLE = {
    "categories": [{"name": "Food", "color": "#FF0000", "updated_at": "2025-09-01T10:00:00Z"}],
    "transactions": [
        {"amount": 12.5, "type": "expense", "date": "2025-09-01", "description": "Lunch", "categories": ["Food"]}
    ],
}
ERROR_EXAMPLE = {
    "success": False,
    "message": "Invalid data detected. Please contact support.",
    "error": "Upload data validation failed: Item 1: Category name is required",
    "error_type": "VALIDATION",
    "retryable": False,
    "timestamp": "2025-09-01T10:00:00+00:00",
}


@sync_router.post(
    "/upload",
    summary="Upload local data",
    description=(
        "Reconcile the device's categories and transactions against the remote store and return per-kind tallies. "
        "Categories are synced before transactions; a failing item is reported without aborting its batch.\n\n"
        "**Response:**\n"
        "- 200 OK: `{ success, message, results: { categories, transactions }, timestamp }`.\n"
        "- 400 Bad Request: The payload failed validation; nothing was written."
    ),
    responses={400: {"description": "Invalid payload.", "content": {"application/json": {"example": ERROR_EXAMPLE}}}},
)
def upload(
    payload: Any = Body(default_factory=dict, examples=[PAYLOAD_EXAMPLE]),
    user_id: str = Depends(get_user_id),
    sync_service: SyncService = Depends(get_sync_service),
) -> dict:
    """Upload local data and return created/updated counts."""
    results = sync_service.upload(user_id, payload)
    logger.info(
        f"[UPLOAD] User {user_id}: {results.categories.created} categories and "
        f"{results.transactions.created} transactions created"
    )
    return {
        "success": True,
        "message": "Data uploaded successfully",
        "results": results.model_dump(mode="json"),
        "timestamp": utcnow_iso(),
    }


@sync_router.get(
    "/download",
    summary="Download remote data",
    description="Return every category and transaction the remote store holds for the caller.",
)
def download(user_id: str = Depends(get_user_id), sync_service: SyncService = Depends(get_sync_service)) -> dict:
    """Download all of the caller's data."""
    data = sync_service.get_user_data(user_id)
    return {
        "success": True,
        "message": "Data downloaded successfully",
        "data": data.model_dump(mode="json"),
        "timestamp": utcnow_iso(),
    }


@sync_router.post(
    "/full",
    summary="Full sync",
    description="Upload the device's data, then return the authoritative remote snapshot.",
    responses={400: {"description": "Invalid payload.", "content": {"application/json": {"example": ERROR_EXAMPLE}}}},
)
def full_sync(
    payload: Any = Body(default_factory=dict, examples=[PAYLOAD_EXAMPLE]),
    user_id: str = Depends(get_user_id),
    sync_service: SyncService = Depends(get_sync_service),
) -> dict:
    """Upload then download in one call."""
    results = sync_service.full_sync(user_id, payload)
    return {"success": True, "message": "Full sync completed successfully", "results": results.model_dump(mode="json")}


@sync_router.get(
    "/status",
    summary="Sync status",
    description="Category and transaction counts, the last transaction update and the server time.",
)
def sync_status(user_id: str = Depends(get_user_id), sync_service: SyncService = Depends(get_sync_service)) -> dict:
    """Get sync status for the caller."""
    status = sync_service.get_sync_status(user_id)
    logger.info(
        f"[SYNC_STATUS] User {user_id}: {status.categories_count} categories, "
        f"{status.transactions_count} transactions"
    )
    return {"success": True, "status": status.model_dump(mode="json")}


@jobs_router.post(
    "/sync",
    summary="Create a background sync job",
    description=(
        "Queue an `upload`, `download` or `full_sync` job. The body carries `type` (default `upload`) "
        "alongside the `categories` and `transactions` to sync.\n\n"
        "**Response:**\n"
        "- 200 OK: `{ success, message, job: { id, job_type, status, progress, created_at } }`.\n"
        "- 400 Bad Request: Unknown job type or invalid payload."
    ),
    responses={400: {"description": "Invalid request.", "content": {"application/json": {"example": ERROR_EXAMPLE}}}},
)
def create_sync_job(
    body: Any = Body(default_factory=dict, examples=[{"type": "upload", **PAYLOAD_EXAMPLE}]),
    user_id: str = Depends(get_user_id),
    worker: JobWorker = Depends(get_job_worker),
) -> dict:
    """Create a sync job to be picked up by the worker."""
    if isinstance(body, dict):
        payload = dict(body)
        job_type = payload.pop("type", "upload")
    else:
        payload, job_type = body, "upload"
    logger.info(f"[JOB] Creating {job_type} job for user {user_id}")
    job = worker.enqueue(user_id, job_type, payload)
    return {
        "success": True,
        "message": "Sync job created successfully",
        "job": {
            "id": job.id,
            "job_type": job.job_type,
            "status": job.status,
            "progress": job.progress,
            "total_items": job.total_items,
            "created_at": job.created_at.isoformat() if job.created_at else None,
        },
    }


@jobs_router.get(
    "/{job_id}",
    summary="Get job status",
    description="Status, progress and results of one of the caller's jobs. Jobs of other users are not found.",
    responses={404: {"description": "Job not found."}},
)
def get_job(job_id: str, user_id: str = Depends(get_user_id), job_store: JobStore = Depends(get_job_store)) -> dict:
    """Get a job's status and results."""
    job = job_store.get(job_id, user_id)
    if job is None:
        raise JobNotFoundError(job_id)
    logger.info(f"[JOB] Job {job_id}: {job.status} ({job.progress}%)")
    return {"success": True, "job": job.summary()}


@jobs_router.get(
    "",
    summary="List jobs",
    description="The caller's most recent jobs, newest first, without payloads or results.",
)
def list_jobs(
    limit: int | None = Query(default=None, ge=1, le=100),
    user_id: str = Depends(get_user_id),
    job_store: JobStore = Depends(get_job_store),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    """Get the caller's job history."""
    jobs = job_store.list_for_user(user_id, limit or settings.jobs_list_limit)
    return {"success": True, "jobs": [job.summary(include_results=False) for job in jobs], "total": len(jobs)}


@jobs_router.delete(
    "/{job_id}",
    summary="Cancel a pending job",
    description="Only jobs that have not started can be cancelled; they are marked failed.",
    responses={400: {"description": "Job is no longer pending."}, 404: {"description": "Job not found."}},
)
def cancel_job(job_id: str, user_id: str = Depends(get_user_id), job_store: JobStore = Depends(get_job_store)) -> dict:
    """Cancel a pending job."""
    job = job_store.cancel(job_id, user_id)
    return {"success": True, "message": "Job cancelled successfully", "job": job.summary(include_results=False)}


@router.get(
    "/health",
    summary="Health check",
    description="Simple health check endpoint. Returns status ok.",
    response_description="Status ok.",
    responses={200: {"description": "API is healthy.", "content": {"application/json": {"example": {"status": "ok"}}}}},
)
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


router.include_router(sync_router)
router.include_router(jobs_router)
