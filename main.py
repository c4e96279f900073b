"""Main entrypoint and application factory for the Expense Sync API.

This module configures logging, builds the database, store, sync service and
background worker, maps sync errors to HTTP responses and exposes the Scalar
API reference endpoint. It also includes the entrypoint for running the app
with Uvicorn.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse
from scalar_fastapi import get_scalar_api_reference
from sqlalchemy.exc import SQLAlchemyError

from app.api.routes import router
from app.core.db import create_session_factory, get_engine, init_db
from app.core.errors import InvalidJobStateError, JobNotFoundError, SyncError, SyncErrorType, error_result
from app.core.settings import Settings, get_settings
from app.core.utils import LOGGER_ROOT, ensure_dir, get_logger
from app.services.job_store import JobStore
from app.services.remote_store import SqlRemoteStore
from app.services.sync_service import SyncService
from app.workers.job_runner import JobWorker

logger = get_logger("expense-sync.main")

STATUS_BY_ERROR_TYPE = {
    SyncErrorType.VALIDATION: 400,
    SyncErrorType.AUTH: 401,
    SyncErrorType.DATA_INTEGRITY: 409,
    SyncErrorType.NETWORK: 503,
    SyncErrorType.SERVER: 502,
    SyncErrorType.TIMEOUT: 504,
    SyncErrorType.UNKNOWN: 500,
}


# --- Logging Setup ---
def setup_logging(settings: Settings) -> None:
    """Attach a plain file handler to every project logger and apply the configured level."""
    log_path = Path(settings.log_file)
    ensure_dir(log_path.parent)
    level = settings.log_level.upper()
    file_handler = logging.FileHandler(log_path)
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    names = [
        name
        for name, existing in logging.Logger.manager.loggerDict.items()
        if name.startswith(LOGGER_ROOT) and isinstance(existing, logging.Logger)
    ]
    for name in names:
        project_logger = get_logger(name)
        project_logger.setLevel(level)
        for handler in list(project_logger.handlers):
            if isinstance(handler, logging.FileHandler):
                project_logger.removeHandler(handler)
                handler.close()
        project_logger.addHandler(file_handler)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create the tables, then run the background worker for the lifetime of the app."""
    try:
        init_db(app.state.engine)
    except SQLAlchemyError:
        logger.exception("Failed to create database tables")
        raise
    worker: JobWorker = app.state.job_worker
    if app.state.settings.worker_enabled:
        worker.start_loop()
    yield
    worker.stop_loop(timeout=app.state.settings.worker_poll_interval_seconds)
    app.state.engine.dispose()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI application and its services."""
    settings = settings or get_settings()
    setup_logging(settings)

    app = FastAPI(
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        title="Expense Sync API",
        description="""
    The Expense Sync API reconciles the categories and transactions kept on a device with the remote store.

    **Endpoints:**
    - `POST /sync/upload`, `GET /sync/download`, `POST /sync/full`, `GET /sync/status`: synchronous sync.
    - `POST /jobs/sync`: queue a background sync job. Returns the job.
    - `GET /jobs/{job_id}`, `GET /jobs`, `DELETE /jobs/{job_id}`: inspect and cancel jobs.
    - `GET /health`: Health check endpoint.
    - `GET /scalar`: Interactive Scalar OpenAPI documentation.
    """,
        version="1.0.0",
    )

    engine = get_engine(settings.database_url)
    session_factory = create_session_factory(engine)
    sync_service = SyncService(SqlRemoteStore(session_factory), settings)
    job_store = JobStore(session_factory)
    app.state.settings = settings
    app.state.engine = engine
    app.state.sync_service = sync_service
    app.state.job_store = job_store
    app.state.job_worker = JobWorker(job_store, sync_service, settings)

    app.include_router(router)

    @app.exception_handler(SyncError)
    async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
        """Render a SyncError with the status for its type."""
        body = error_result(exc, f"{request.method} {request.url.path}")
        if exc.type is SyncErrorType.VALIDATION and exc.details:
            body["details"] = exc.details
        return JSONResponse(status_code=STATUS_BY_ERROR_TYPE[exc.type], content=body)

    @app.exception_handler(JobNotFoundError)
    async def job_not_found_handler(_request: Request, exc: JobNotFoundError) -> JSONResponse:
        """Render an unknown job as 404."""
        return JSONResponse(status_code=404, content={"success": False, "message": "Job not found", "error": str(exc)})

    @app.exception_handler(InvalidJobStateError)
    async def job_state_handler(_request: Request, exc: InvalidJobStateError) -> JSONResponse:
        """Render a disallowed job action as 400."""
        message = f"Cannot {exc.action} job in {exc.status} status. Only pending jobs can be cancelled."
        return JSONResponse(status_code=400, content={"success": False, "message": message, "error": str(exc)})

    @app.get("/scalar", include_in_schema=False)
    async def scalar_docs() -> HTMLResponse:
        """Return Scalar API reference."""
        return get_scalar_api_reference(openapi_url=app.openapi_url, title=app.title)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("main:app", host=settings.server_host, port=settings.server_port, reload=True)
