"""FastAPI dependencies for DI (settings, identity, services).

The services are built once by the application factory and kept on
``app.state``; these helpers hand them to the endpoints.
"""

from fastapi import Header, Request

from app.core.errors import SyncError, SyncErrorType
from app.core.settings import Settings
from app.core.validation import ValidationResultFormatter, validate_user_id
from app.services.job_store import JobStore
from app.services.sync_service import SyncService
from app.workers.job_runner import JobWorker


def get_app_settings(request: Request) -> Settings:
    """Provide the settings the application was created with."""
    return request.app.state.settings


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Provide the caller's user id, as verified upstream and passed in ``X-User-Id``."""
    result = validate_user_id(x_user_id)
    if not result.is_valid:
        message = "; ".join(ValidationResultFormatter.format_errors(result))
        raise SyncError(f"Authentication required: {message}", SyncErrorType.AUTH, status_code=401)
    return x_user_id.strip()


def get_sync_service(request: Request) -> SyncService:
    """Provide the shared reconciliation service."""
    return request.app.state.sync_service


def get_job_store(request: Request) -> JobStore:
    """Provide the job persistence layer."""
    return request.app.state.job_store


def get_job_worker(request: Request) -> JobWorker:
    """Provide the background job worker."""
    return request.app.state.job_worker
