"""
Queue Driver

Single worker that turns pending ImageJobs into images, one at a time:
1. Claim the oldest pending job (FIFO by creation)
2. Snapshot the ComfyUI output folder, then submit the prompt
3. Poll the output folder for the new image
4. Move it to <generated_images>/<projectId>/image_NN.png
5. Mark the job completed (or failed with the reason)

The worker runs on its own daemon thread and sleeps TICK_DELAY between
iterations. API handlers call trigger() after creating jobs to cut the sleep
short. Every failure is recorded against the job that was claimed in that
iteration; the loop itself never dies on an iteration error.
"""

import logging
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from comfy_batch.core.comfy_client import ComfyClient, GenerationError
from comfy_batch.core.config import ConfigurationError, Settings, settings as default_settings
from comfy_batch.db.engine import engine as db_engine
from comfy_batch.models.job import ImageJob, JobStatus
from comfy_batch.services import artifact_locator
from comfy_batch.services.artifact_locator import ArtifactLocatorCancelled, ArtifactTimeoutError
from comfy_batch.services.job_store import JobStore
from comfy_batch.services.relocation import RelocationError, relocate_artifact

logger = logging.getLogger(__name__)


class IterationResult(str, Enum):
    BUSY = "busy"                  # another iteration holds the run guard
    CONFIG_ERROR = "config_error"  # nothing claimed, settings incomplete
    IDLE = "idle"                  # no pending work
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"        # stopped mid-job, job returned to pending


def default_client_factory(cfg: Settings) -> ComfyClient:
    return ComfyClient(
        cfg.COMFYUI_URL,
        cfg.WORKFLOW_PATH,
        timeout=cfg.SUBMIT_TIMEOUT,
        steps=cfg.SAMPLER_STEPS,
        cfg=cfg.SAMPLER_CFG,
        debug_path=cfg.WORKFLOW_DEBUG_PATH,
    )


class QueueDriver:
    def __init__(
        self,
        store: JobStore,
        cfg: Optional[Settings] = None,
        client_factory: Optional[Callable[[Settings], Any]] = None,
    ):
        self.store = store
        self.settings = cfg or default_settings
        self.client_factory = client_factory or default_client_factory

        # Run guard: at most one iteration body at a time in this process.
        self._run_guard = threading.Lock()
        self._state_lock = threading.Lock()
        # Cancellation token for the worker thread and any poll in progress.
        self._stop_event = threading.Event()
        # Set by trigger()/stop() to end the between-iterations sleep early.
        self._wake_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.current_job_id: Optional[int] = None
        self.last_result: Optional[IterationResult] = None
        self.last_error: Optional[str] = None
        self._last_sweep = 0.0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    @property
    def is_busy(self) -> bool:
        return self._run_guard.locked()

    def start(self) -> None:
        """Recover jobs orphaned by a previous process, then start the worker thread."""
        with self._state_lock:
            if self.is_running:
                return

            self.recover_stale_jobs()
            self._stop_event.clear()
            self._wake_event.clear()
            self._thread = threading.Thread(target=self._run, name="comfy-batch-queue", daemon=True)
            self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        with self._state_lock:
            thread = self._thread
            if not thread:
                return
            self._stop_event.set()
            self._wake_event.set()

        thread.join(timeout)
        if thread.is_alive():
            logger.warning("Queue worker did not stop within %ss", timeout)
        else:
            with self._state_lock:
                self._thread = None

    def trigger(self) -> None:
        """Fire-and-forget request to run an iteration as soon as the worker is idle."""
        self._wake_event.set()

    def recover_stale_jobs(self) -> list:
        to_status = JobStatus(self.settings.STALE_JOB_ACTION)
        self._last_sweep = time.monotonic()
        try:
            return self.store.recover_stale(self.settings.STALE_JOB_GRACE_SECONDS, to_status)
        except Exception:
            logger.exception("Failed to recover stale processing jobs")
            return []

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "busy": self.is_busy,
            "current_job_id": self.current_job_id,
            "last_result": self.last_result.value if self.last_result else None,
            "last_error": self.last_error,
        }

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    def _wait(self, seconds: float, wakeable: bool = False) -> bool:
        """Timed wait shared by the tick delay and the artifact poll; True when stopping."""
        if self._stop_event.is_set():
            return True
        if wakeable:
            self._wake_event.wait(seconds)
            self._wake_event.clear()
        else:
            self._stop_event.wait(seconds)
        return self._stop_event.is_set()

    def _run(self) -> None:
        logger.info("Queue worker started")
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                # Store unreachable etc.; try again on the next tick
                logger.exception("Queue iteration failed")
                self.last_error = str(e)

            # At most once per grace period, busy or idle
            self._maybe_sweep()

            if self._wait(self.settings.TICK_DELAY, wakeable=True):
                break
        logger.info("Queue worker stopped")

    def _maybe_sweep(self) -> None:
        grace = self.settings.STALE_JOB_GRACE_SECONDS
        if time.monotonic() - self._last_sweep >= max(grace, 1):
            self.recover_stale_jobs()

    # ------------------------------------------------------------------
    # One iteration
    # ------------------------------------------------------------------

    def run_once(self) -> IterationResult:
        """Process at most one pending job end-to-end."""
        if not self._run_guard.acquire(blocking=False):
            return IterationResult.BUSY

        try:
            result = self._process_next()
        finally:
            self.current_job_id = None
            self._run_guard.release()

        self.last_result = result
        return result

    def _process_next(self) -> IterationResult:
        try:
            output_dir = self.settings.output_dir
        except ConfigurationError as e:
            logger.error("%s", e)
            self.last_error = str(e)
            return IterationResult.CONFIG_ERROR

        job = self.store.claim_oldest_pending()
        if not job:
            return IterationResult.IDLE

        self.current_job_id = job.id
        logger.info("Generating image for job %s: %r", job.id, job.prompt)

        try:
            image_path = self._generate(job, output_dir)
        except ArtifactLocatorCancelled:
            logger.warning("Stopped while waiting for job %s; returning it to pending", job.id)
            self._release(job)
            return IterationResult.CANCELLED
        except GenerationError as e:
            logger.error("ComfyUI image generation failed for job %s: %s", job.id, e)
            return self._fail(job, str(e))
        except ArtifactTimeoutError as e:
            logger.error("Timed out waiting for image for job %s: %s", job.id, e)
            return self._fail(job, str(e))
        except RelocationError as e:
            logger.error("Could not relocate image for job %s: %s", job.id, e)
            return self._fail(job, str(e))
        except Exception as e:
            logger.exception("Image generation failed for job %s", job.id)
            return self._fail(job, str(e) or e.__class__.__name__)

        try:
            self.store.update(job.id, status=JobStatus.COMPLETED, image_path=str(image_path))
        except Exception as e:
            logger.exception("Could not mark job %s as completed", job.id)
            return self._fail(job, f"Image saved to {image_path} but the job could not be completed: {e}")

        self.last_error = None
        return IterationResult.COMPLETED

    def _generate(self, job: ImageJob, output_dir: Path) -> Path:
        cfg = self.settings
        ext = cfg.ARTIFACT_EXTENSION

        # Snapshot before submitting so pre-existing files are never mistaken for ours
        before = artifact_locator.snapshot(output_dir, ext)

        client = self.client_factory(cfg)
        client.submit(job.prompt)

        filename = artifact_locator.await_new_artifact(
            output_dir,
            before,
            ext,
            interval=cfg.POLL_INTERVAL,
            max_attempts=cfg.POLL_MAX_ATTEMPTS,
            wait=self._wait,
        )
        logger.info("Found ComfyUI output %s for job %s", filename, job.id)

        return relocate_artifact(output_dir / filename, cfg.GENERATED_IMAGES_DIR, job.project_id, ext)

    def _fail(self, job: ImageJob, reason: str) -> IterationResult:
        self.last_error = reason
        try:
            self.store.update(job.id, status=JobStatus.FAILED, error=reason)
        except Exception:
            logger.exception("Could not mark job %s as failed", job.id)
        return IterationResult.FAILED

    def _release(self, job: ImageJob) -> None:
        try:
            self.store.release(job.id)
        except Exception:
            # Left in processing; the stale sweep returns it to the queue
            logger.exception("Could not return job %s to pending", job.id)


driver = QueueDriver(JobStore(db_engine))
