"""Durable storage for sync jobs.

Every status change is a conditional ``UPDATE ... WHERE status = ...`` so a
transition only happens from the state it expects. This keeps an abandoned
(timed out) run from touching a job that has already been finalized.
"""

from datetime import timedelta
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.orm import sessionmaker

from app.core.db import SyncJob
from app.core.errors import InvalidJobStateError, JobNotFoundError
from app.core.models import TERMINAL_STATUSES, Job, JobStatus, JobType
from app.core.utils import get_logger, utcnow

logger = get_logger("expense-sync.jobs")

CANCELLED_MESSAGE = "Cancelled by user"


def compute_progress(processed: int, total: int) -> int:
    """Percentage of processed items; an empty job is complete."""
    if total <= 0:
        return 100
    return min(100, round(processed / total * 100))


class JobStore:
    """Create, read and transition :class:`SyncJob` rows."""

    def __init__(self, session_factory: sessionmaker) -> None:
        """Keep the session factory used for every operation."""
        self.Session = session_factory

    def create(self, user_id: str, job_type: JobType | str, payload: dict | None, total_items: int = 0) -> Job:
        """Store a new pending job and return it."""
        now = utcnow()
        with self.Session() as session:
            row = SyncJob(
                user_id=user_id,
                job_type=str(JobType(job_type)),
                status=str(JobStatus.PENDING),
                progress=0,
                total_items=total_items,
                processed_items=0,
                payload=payload,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            logger.info(f"Created {row.job_type} job {row.id} for user {user_id} ({total_items} items)")
            return Job.model_validate(row)

    def get(self, job_id: str, user_id: str | None = None) -> Job | None:
        """Fetch a job; with ``user_id`` set, jobs of other users are invisible."""
        with self.Session() as session:
            row = session.get(SyncJob, job_id)
            if row is None or (user_id is not None and row.user_id != user_id):
                return None
            return Job.model_validate(row)

    def list_for_user(self, user_id: str, limit: int = 10) -> list[Job]:
        """Most recent jobs first."""
        with self.Session() as session:
            rows = session.execute(
                select(SyncJob)
                .where(SyncJob.user_id == user_id)
                .order_by(SyncJob.created_at.desc())
                .limit(limit)
            ).scalars()
            return [Job.model_validate(row) for row in rows]

    def next_pending(self) -> Job | None:
        """Oldest pending job across all users."""
        with self.Session() as session:
            row = session.execute(
                select(SyncJob)
                .where(SyncJob.status == str(JobStatus.PENDING))
                .order_by(SyncJob.created_at.asc())
                .limit(1)
            ).scalar_one_or_none()
            return Job.model_validate(row) if row else None

    def _transition(self, job_id: str, expected: JobStatus, values: dict[str, Any]) -> bool:
        """Apply ``values`` only if the job is still in ``expected``; return whether it was."""
        now = utcnow()
        with self.Session() as session:
            result = session.execute(
                update(SyncJob)
                .where(SyncJob.id == job_id, SyncJob.status == str(expected))
                .values(updated_at=now, **values)
            )
            session.commit()
            return result.rowcount == 1

    def claim(self, job_id: str) -> bool:
        """Move a pending job to processing. Returns ``False`` if it was no longer pending."""
        claimed = self._transition(
            job_id, JobStatus.PENDING, {"status": str(JobStatus.PROCESSING), "started_at": utcnow()}
        )
        if not claimed:
            logger.warning(f"Job {job_id} could not be claimed: no longer pending")
        return claimed

    def update_progress(self, job_id: str, processed: int, total: int) -> bool:
        """Record progress of a processing job; ignored once the job is finalized."""
        return self._transition(
            job_id,
            JobStatus.PROCESSING,
            {"processed_items": processed, "total_items": total, "progress": compute_progress(processed, total)},
        )

    def complete(self, job_id: str, results: dict[str, Any]) -> bool:
        """Mark a processing job completed with its results."""
        with self.Session() as session:
            row = session.get(SyncJob, job_id)
            total = row.total_items if row else 0
            processed = row.processed_items if row else 0
        done = self._transition(
            job_id,
            JobStatus.PROCESSING,
            {
                "status": str(JobStatus.COMPLETED),
                "progress": 100,
                "processed_items": max(processed, total),
                "results": results,
                "completed_at": utcnow(),
            },
        )
        if done:
            logger.info(f"Job {job_id} completed")
        else:
            logger.warning(f"Job {job_id} was not processing; completion discarded")
        return done

    def fail(self, job_id: str, message: str) -> bool:
        """Mark a processing job failed with ``message``."""
        done = self._transition(
            job_id,
            JobStatus.PROCESSING,
            {
                "status": str(JobStatus.FAILED),
                "progress": 0,
                "error_message": message,
                "completed_at": utcnow(),
            },
        )
        if done:
            logger.error(f"Job {job_id} failed: {message}")
        else:
            logger.warning(f"Job {job_id} was not processing; failure discarded: {message}")
        return done

    def cancel(self, job_id: str, user_id: str) -> Job:
        """Cancel a pending job owned by ``user_id``.

        Raises :class:`JobNotFoundError` when the job is unknown to this user and
        :class:`InvalidJobStateError` when it is no longer pending.
        """
        job = self.get(job_id, user_id)
        if job is None:
            raise JobNotFoundError(job_id)
        cancelled = self._transition(
            job_id,
            JobStatus.PENDING,
            {"status": str(JobStatus.FAILED), "error_message": CANCELLED_MESSAGE, "completed_at": utcnow()},
        )
        if not cancelled:
            current = self.get(job_id) or job
            raise InvalidJobStateError(job_id, str(current.status), "cancel")
        logger.info(f"Job {job_id} cancelled by user {user_id}")
        return self.get(job_id)

    def delete_terminal_older_than(self, days: int) -> int:
        """Purge completed and failed jobs created more than ``days`` ago."""
        cutoff = utcnow() - timedelta(days=days)
        with self.Session() as session:
            result = session.execute(
                delete(SyncJob).where(
                    SyncJob.status.in_([str(status) for status in TERMINAL_STATUSES]),
                    SyncJob.created_at < cutoff,
                )
            )
            session.commit()
            return result.rowcount
