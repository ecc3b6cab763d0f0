"""
Job Store

Durable ImageJob records on top of SQLModel. The queue driver only relies on:
- find_oldest(status): FIFO lookup by creation order
- update(job_id, **fields): single-row update of status/image_path/error
- find_one(status): any job in a given status (status views)

Each call opens its own short-lived session so the API threads and the queue
worker thread never share a Session object.
"""

import logging
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from comfy_batch.models.job import ImageJob, JobStatus, utcnow

logger = logging.getLogger(__name__)

MUTABLE_FIELDS = {"status", "image_path", "error"}


class JobStoreError(Exception):
    pass


class JobNotFoundError(JobStoreError):
    """Raised when a job id does not exist."""
    pass


class InvalidTransitionError(JobStoreError):
    """Raised when an update would break the job lifecycle."""
    pass


class JobStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def create_jobs(self, project_id: str, prompts: Iterable[str]) -> List[ImageJob]:
        """Create one pending job per prompt, preserving submission order."""
        jobs = []
        with self._session() as session:
            for prompt in prompts:
                job = ImageJob(prompt=prompt, project_id=project_id, status=JobStatus.PENDING)
                session.add(job)
                # Flush one at a time so ids follow submission order even when
                # created_at collides at clock resolution.
                session.flush()
                jobs.append(job)
            session.commit()
        return jobs

    def get(self, job_id: int) -> Optional[ImageJob]:
        with self._session() as session:
            return session.get(ImageJob, job_id)

    def find_oldest(self, status: JobStatus) -> Optional[ImageJob]:
        with self._session() as session:
            stmt = (
                select(ImageJob)
                .where(ImageJob.status == status)
                .order_by(ImageJob.created_at.asc(), ImageJob.id.asc())
                .limit(1)
            )
            return session.exec(stmt).first()

    def find_one(self, status: JobStatus) -> Optional[ImageJob]:
        with self._session() as session:
            return session.exec(select(ImageJob).where(ImageJob.status == status)).first()

    def list_jobs(
        self,
        project_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[ImageJob]:
        with self._session() as session:
            query = select(ImageJob)
            if project_id:
                query = query.where(ImageJob.project_id == project_id)
            if status:
                query = query.where(ImageJob.status == status)
            query = query.order_by(ImageJob.created_at.asc(), ImageJob.id.asc())
            return list(session.exec(query.offset(skip).limit(limit)).all())

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        with self._session() as session:
            rows = session.exec(
                select(ImageJob.status, func.count(ImageJob.id)).group_by(ImageJob.status)
            ).all()
        for status, count in rows:
            counts[JobStatus(status).value] = count
        return counts

    def update(self, job_id: int, **fields) -> ImageJob:
        """
        Update mutable fields of a single job in one transaction.

        Keeps the record consistent: image_path only survives on completed
        jobs, error only on failed jobs, and terminal jobs are never touched.
        """
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise InvalidTransitionError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        with self._session() as session:
            job = session.get(ImageJob, job_id)
            if not job:
                raise JobNotFoundError(f"Job {job_id} not found")

            if job.status.is_terminal:
                raise InvalidTransitionError(f"Job {job_id} is already {job.status.value}")

            new_status = JobStatus(fields.get("status", job.status))
            if new_status == JobStatus.COMPLETED and not fields.get("image_path"):
                raise InvalidTransitionError("Completed jobs require an image_path")

            job.status = new_status
            job.image_path = fields.get("image_path") if new_status == JobStatus.COMPLETED else None
            job.error = fields.get("error") if new_status == JobStatus.FAILED else None
            job.updated_at = utcnow()

            session.add(job)
            session.commit()
            session.refresh(job)
            return job

    def claim_oldest_pending(self) -> Optional[ImageJob]:
        """Move the oldest pending job to processing and return it."""
        while True:
            candidate = self.find_oldest(JobStatus.PENDING)
            if not candidate:
                return None

            with self._session() as session:
                # Conditional update: only succeeds if nobody else moved the job.
                result = session.execute(
                    sa_update(ImageJob)
                    .where(ImageJob.id == candidate.id, ImageJob.status == JobStatus.PENDING)
                    .values(status=JobStatus.PROCESSING, updated_at=utcnow())
                )
                session.commit()
                if result.rowcount == 1:
                    return session.get(ImageJob, candidate.id)

            logger.debug("Job %s was claimed elsewhere; retrying", candidate.id)

    def recover_stale(self, grace_seconds: int, to_status: JobStatus = JobStatus.PENDING) -> List[int]:
        """
        Reclaim jobs stuck in processing (e.g. after a crash).

        Jobs whose last update is older than grace_seconds are moved back to
        pending, or marked failed when to_status is FAILED.
        """
        if to_status not in (JobStatus.PENDING, JobStatus.FAILED):
            raise ValueError("Stale jobs can only be returned to pending or failed")

        cutoff = utcnow() - timedelta(seconds=max(grace_seconds, 0))
        recovered: List[int] = []
        with self._session() as session:
            stale = session.exec(
                select(ImageJob)
                .where(ImageJob.status == JobStatus.PROCESSING, ImageJob.updated_at <= cutoff)
                .order_by(ImageJob.created_at.asc(), ImageJob.id.asc())
            ).all()
            now = utcnow()
            for job in stale:
                job.status = to_status
                job.image_path = None
                job.error = (
                    "Worker stopped while this job was processing"
                    if to_status == JobStatus.FAILED
                    else None
                )
                job.updated_at = now
                session.add(job)
                recovered.append(job.id)
            session.commit()

        if recovered:
            logger.warning(
                "Recovered %d stale processing job(s) to %s: %s",
                len(recovered),
                to_status.value,
                recovered,
            )
        return recovered

    def release(self, job_id: int) -> ImageJob:
        """Return a processing job to pending (used when the worker is stopped mid-job)."""
        with self._session() as session:
            job = session.get(ImageJob, job_id)
            if not job:
                raise JobNotFoundError(f"Job {job_id} not found")
            if job.status != JobStatus.PROCESSING:
                raise InvalidTransitionError(f"Job {job_id} is {job.status.value}, not processing")
            job.status = JobStatus.PENDING
            job.updated_at = utcnow()
            session.add(job)
            session.commit()
            session.refresh(job)
            return job
