"""
Image Jobs API Endpoints

1. JOB CREATION (POST /api/images): one pending job per prompt, then wakes the queue
2. STATUS (GET /api/images, /api/images/{job_id}, /api/images/queue/status)

Execution is owned by comfy_batch.services.queue_driver.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from comfy_batch.models.job import (
    ImageJobRead,
    ImageJobsCreate,
    ImageJobsCreated,
    JobStatus,
)
from comfy_batch.services.job_store import JobStore
from comfy_batch.services.queue_driver import QueueDriver, driver as queue_driver

logger = logging.getLogger(__name__)

router = APIRouter()


def get_driver() -> QueueDriver:
    """Dependency returning the process-wide queue driver."""
    return queue_driver


def get_store(driver: QueueDriver = Depends(get_driver)) -> JobStore:
    return driver.store


@router.post("", response_model=ImageJobsCreated, status_code=201)
def create_image_jobs(
    body: ImageJobsCreate,
    driver: QueueDriver = Depends(get_driver),
):
    """
    Create image jobs from a list of prompts for a project.
    The queue is woken immediately; creation never waits on generation.
    """
    jobs = driver.store.create_jobs(body.project_id, body.prompts)
    logger.info("Queued %d job(s) for project %s", len(jobs), body.project_id)

    driver.trigger()

    return ImageJobsCreated(
        message="Image jobs created and queue started",
        jobsCreated=len(jobs),
        projectId=body.project_id,
        jobIds=[job.id for job in jobs],
    )


@router.get("", response_model=List[ImageJobRead])
def read_image_jobs(
    project_id: Optional[str] = Query(default=None, alias="projectId"),
    status: Optional[JobStatus] = None,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    store: JobStore = Depends(get_store),
):
    return store.list_jobs(project_id=project_id, status=status, skip=skip, limit=limit)


@router.get("/queue/status")
def read_queue_status(
    check_backend: bool = False,
    driver: QueueDriver = Depends(get_driver),
):
    """Counts per status, the job currently processing, and worker state."""
    active = driver.store.find_one(JobStatus.PROCESSING)
    payload = {
        "counts": driver.store.count_by_status(),
        "active_job": ImageJobRead.model_validate(active, from_attributes=True).model_dump(mode="json") if active else None,
        "driver": driver.status(),
    }
    if check_backend:
        client = driver.client_factory(driver.settings)
        payload["backend_healthy"] = client.check_health()
    return payload


@router.get("/{job_id}", response_model=ImageJobRead)
def read_image_job(job_id: int, store: JobStore = Depends(get_store)):
    job = store.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job
