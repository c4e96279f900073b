"""API package: provides FastAPI dependencies and route definitions for the application."""

from .dependencies import get_app_settings, get_job_store, get_job_worker, get_sync_service, get_user_id  # noqa: F401
from .routes import jobs_router, router, sync_router  # noqa: F401
