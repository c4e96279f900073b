"""Background job orchestration for sync jobs.

A :class:`JobWorker` drains the job queue one job at a time. Each job runs on
its own thread under a deadline; a job that misses it is marked failed and the
run is abandoned rather than cancelled.
"""

import threading
import time
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from app.core.errors import classify, log_sync_error, with_timeout
from app.core.models import (
    DownloadResults,
    FullSyncResults,
    Job,
    JobType,
    SyncResults,
    UploadPayload,
    UploadResults,
    parse_payload,
)
from app.core.settings import Settings, get_settings
from app.core.utils import get_logger, utcnow_iso
from app.core.validation import validate_or_raise, validate_sync_job_type
from app.services.job_store import JobStore
from app.services.sync_service import SyncService

logger = get_logger("expense-sync.worker")


class JobWorker:
    """Single-flight worker executing sync jobs through a :class:`SyncService`."""

    def __init__(self, job_store: JobStore, sync_service: SyncService, settings: Settings | None = None) -> None:
        """Bind the worker to its stores; the loop is not started."""
        self.job_store = job_store
        self.sync_service = sync_service
        self.settings = settings or get_settings()
        self._lock = threading.Lock()
        self._busy = False
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._handlers: dict[JobType, Callable[[Job], BaseModel]] = {
            JobType.UPLOAD: self._run_upload,
            JobType.DOWNLOAD: self._run_download,
            JobType.FULL_SYNC: self._run_full_sync,
        }

    def is_busy(self) -> bool:
        """Whether a job is currently running on this worker."""
        with self._lock:
            return self._busy

    # --- enqueue --------------------------------------------------------------

    def enqueue(self, user_id: str, job_type: JobType | str, payload: BaseModel | Mapping | None = None) -> Job:
        """Validate a request and store it as a pending job.

        Raises a ``VALIDATION`` :class:`SyncError` for an unknown job type or a
        malformed payload; nothing is stored in that case.
        """
        validate_or_raise(job_type, validate_sync_job_type, "Job type")
        job_type = JobType(job_type)
        if isinstance(payload, BaseModel):
            raw = payload.model_dump(mode="json", by_alias=True, exclude_none=True)
        elif isinstance(payload, Mapping):
            raw = dict(payload)
        else:
            raw = {} if payload is None else payload

        if job_type is JobType.DOWNLOAD:
            raw = {}
        else:
            self.sync_service.validate_upload(raw, f"{job_type} payload")
        try:
            typed = parse_payload(job_type, raw)
        except PydanticValidationError as exc:
            raise classify(exc) from exc
        return self.job_store.create(user_id, job_type, raw, typed.total_items)

    # --- execution ------------------------------------------------------------

    def poll_once(self) -> Job | None:
        """Run the oldest pending job, if any and if no job is already running.

        Returns the job as finalized, or ``None`` when nothing ran.
        """
        with self._lock:
            if self._busy:
                logger.debug("Worker busy, skipping poll")
                return None
            self._busy = True
        try:
            job = self.job_store.next_pending()
            if job is None:
                return None
            return self._process(job)
        finally:
            with self._lock:
                self._busy = False

    def _process(self, job: Job) -> Job | None:
        """Claim, run and finalize one job."""
        if not self.job_store.claim(job.id):
            return None
        timeout = self.settings.job_timeout_seconds
        logger.info(f"Starting {job.job_type} job {job.id} for user {job.user_id}")
        started = time.perf_counter()
        try:
            results = with_timeout(
                lambda: self._handlers[job.job_type](job),
                timeout,
                f"Job timed out after {timeout:g} seconds",
            )
        except Exception as exc:
            error = classify(exc)
            log_sync_error(error, f"job {job.id}")
            self.job_store.fail(job.id, error.message)
        else:
            stored = results.model_dump(mode="json")
            self.job_store.complete(job.id, stored)
            logger.info(f"Job {job.id} finished in {time.perf_counter() - started:.2f}s: {results_summary(stored)}")
        return self.job_store.get(job.id)

    def _sync_upload(self, job: Job, payload: UploadPayload) -> SyncResults:
        """Upload a job's payload, reporting progress per kind."""
        total = payload.total_items
        processed = 0
        results = SyncResults()
        if payload.categories:
            results.categories = self.sync_service.sync_categories(job.user_id, payload.categories)
            processed += len(payload.categories)
            self.job_store.update_progress(job.id, processed, total)
        if payload.transactions:
            results.transactions = self.sync_service.sync_transactions(job.user_id, payload.transactions)
            processed += len(payload.transactions)
            self.job_store.update_progress(job.id, processed, total)
        if total == 0:
            self.job_store.update_progress(job.id, 0, 0)
        return results

    def _typed_upload(self, job: Job) -> UploadPayload:
        """Re-validate and parse a stored upload payload."""
        self.sync_service.validate_upload(job.payload, f"Job {job.id} payload")
        return job.typed_payload()

    def _run_upload(self, job: Job) -> UploadResults:
        """Run an ``upload`` job."""
        payload = self._typed_upload(job)
        return UploadResults(upload=self._sync_upload(job, payload))

    def _run_download(self, job: Job) -> DownloadResults:
        """Run a ``download`` job."""
        self.job_store.update_progress(job.id, 0, 1)
        data = self.sync_service.get_user_data(job.user_id)
        self.job_store.update_progress(job.id, 1, 1)
        return DownloadResults(download=data)

    def _run_full_sync(self, job: Job) -> FullSyncResults:
        """Run a ``full_sync`` job: upload if needed, then download."""
        payload = self._typed_upload(job)
        upload = self._sync_upload(job, payload) if payload.total_items else SyncResults()
        download = self.sync_service.get_user_data(job.user_id)
        return FullSyncResults(upload=upload, download=download, timestamp=utcnow_iso())

    # --- housekeeping ---------------------------------------------------------

    def cleanup_old_jobs(self, days: int | None = None) -> int:
        """Purge terminal jobs past the retention window. Failures are only logged."""
        days = self.settings.job_retention_days if days is None else days
        try:
            deleted = self.job_store.delete_terminal_older_than(days)
        except Exception:
            logger.exception("Failed to clean up old jobs")
            return 0
        if deleted:
            logger.info(f"Cleaned up {deleted} jobs older than {days} days")
        return deleted

    # --- loop -----------------------------------------------------------------

    def _safe_poll(self) -> None:
        """Poll once, logging anything that escapes."""
        try:
            self.poll_once()
        except Exception:
            logger.exception("Worker poll failed")

    def _run_loop(self, interval: float) -> None:
        """Poll until stopped, purging old jobs periodically."""
        last_cleanup = time.monotonic()
        self._safe_poll()
        while not self._stop.wait(interval):
            self._safe_poll()
            if time.monotonic() - last_cleanup >= self.settings.cleanup_interval_seconds:
                self.cleanup_old_jobs()
                last_cleanup = time.monotonic()

    def start_loop(self, interval: float | None = None) -> None:
        """Poll on a background thread, once immediately and then every ``interval`` seconds."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Worker loop already running")
            return
        interval = self.settings.worker_poll_interval_seconds if interval is None else interval
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, args=(interval,), name="sync-worker", daemon=True)
        self._thread.start()
        logger.info(f"Worker loop started (interval {interval:g}s)")

    def stop_loop(self, timeout: float | None = None) -> None:
        """Stop polling and wait for the loop thread to exit."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Worker loop stopped")


def results_summary(results: Mapping[str, Any] | None) -> str:
    """One-line rendering of stored job results for logs."""
    if not results:
        return "no results"
    upload = results.get("upload") or {}
    parts = []
    for kind in ("categories", "transactions"):
        tally = upload.get(kind)
        if tally:
            created, updated, errors = tally["created"], tally["updated"], len(tally["errors"])
            parts.append(f"{kind}: {created} created, {updated} updated, {errors} errors")
    download = results.get("download")
    if download:
        counts = len(download["categories"]), len(download["transactions"])
        parts.append(f"download: {counts[0]} categories, {counts[1]} transactions")
    return "; ".join(parts) or "empty"
