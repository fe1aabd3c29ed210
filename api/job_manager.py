"""
Background queue for coaching generation.

Uses an in-memory job store + ThreadPoolExecutor(max_workers=1), so text
generation calls run one at a time off the request path. Jobs are not
retried: a failure is logged and recorded on the job.
"""

import time
import uuid
import asyncio
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Optional, Dict, Any, List

from exceptions import QueueFullError

logger = logging.getLogger("speechcoach.jobs")

# ---------------------------------------------------------------------------
# Job states
# ---------------------------------------------------------------------------
STATUS_QUEUED = "queued"
STATUS_PROCESSING = "processing"
STATUS_COMPLETE = "complete"
STATUS_FAILED = "failed"


class CoachingJob:
    __slots__ = (
        "job_id", "user_id", "status",
        "created_at", "started_at", "completed_at",
        "source", "error",
    )

    def __init__(self, job_id: str, user_id: str):
        self.job_id = job_id
        self.user_id = user_id
        self.status = STATUS_QUEUED
        self.created_at = datetime.now(timezone.utc).isoformat()
        self.started_at: Optional[str] = None
        self.completed_at: Optional[str] = None
        self.source: Optional[str] = None
        self.error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "user_id": self.user_id,
            "status": self.status,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "source": self.source,
            "error": self.error,
        }


class CoachingQueue:
    """Single-worker queue. ``work(user_id)`` returns the stored coaching payload."""

    def __init__(self, work: Callable[[str], Dict[str, Any]],
                 max_queue_depth: int = 100, expiration_hours: int = 24,
                 cleanup_interval_sec: int = 3600):
        self._work = work
        self.max_queue_depth = max_queue_depth
        self.expiration_hours = expiration_hours
        self.cleanup_interval_sec = cleanup_interval_sec
        self._jobs: Dict[str, CoachingJob] = {}
        self._futures: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="coaching")
        self._cleanup_task: Optional[asyncio.Task] = None

    # -- Lifecycle --

    def start(self, loop: asyncio.AbstractEventLoop):
        """Start background cleanup task."""
        self._cleanup_task = loop.create_task(self._cleanup_loop())
        logger.info("Coaching queue started (max_queue=%d, expiry=%dh)",
                    self.max_queue_depth, self.expiration_hours)

    def shutdown(self, wait: bool = False):
        if self._cleanup_task:
            self._cleanup_task.cancel()
        self._executor.shutdown(wait=wait)
        logger.info("Coaching queue shut down.")

    # -- Submission --

    def submit(self, user_id: str) -> CoachingJob:
        """Queue coaching generation for a user.

        A job already waiting for the same user is returned instead of
        queueing a second one.
        """
        with self._lock:
            active = [j for j in self._jobs.values()
                      if j.status in (STATUS_QUEUED, STATUS_PROCESSING)]
            for j in active:
                if j.user_id == user_id and j.status == STATUS_QUEUED:
                    return j
            if len(active) >= self.max_queue_depth:
                raise QueueFullError(
                    f"Coaching queue is full ({len(active)}/{self.max_queue_depth})."
                )

            job = CoachingJob(str(uuid.uuid4()), user_id)
            self._jobs[job.job_id] = job
            self._futures[job.job_id] = self._executor.submit(self._execute_job, job.job_id)

        logger.info("Coaching job %s queued for %s (queue depth: %d)",
                    job.job_id, user_id, len(active) + 1)
        return job

    # -- Queries --

    def get_job(self, job_id: str) -> Optional[CoachingJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[CoachingJob]:
        """Block until a job has finished. Returns the job, or None if unknown."""
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.get_job(job_id)

    def list_jobs(self, user_id: Optional[str] = None, limit: int = 50) -> List[CoachingJob]:
        with self._lock:
            jobs = list(self._jobs.values())
        if user_id:
            jobs = [j for j in jobs if j.user_id == user_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:limit]

    def stats(self) -> dict:
        with self._lock:
            jobs = list(self._jobs.values())
        counts = {STATUS_QUEUED: 0, STATUS_PROCESSING: 0,
                  STATUS_COMPLETE: 0, STATUS_FAILED: 0}
        for j in jobs:
            counts[j.status] = counts.get(j.status, 0) + 1
        return {
            "queue_depth": counts[STATUS_QUEUED] + counts[STATUS_PROCESSING],
            "max_queue_depth": self.max_queue_depth,
            "jobs_queued": counts[STATUS_QUEUED],
            "jobs_processing": counts[STATUS_PROCESSING],
            "jobs_complete": counts[STATUS_COMPLETE],
            "jobs_failed": counts[STATUS_FAILED],
        }

    # -- Internal execution --

    def _execute_job(self, job_id: str):
        """Run coaching generation for a job. Runs in the worker thread."""
        job = self.get_job(job_id)
        if not job:
            logger.error("Coaching job %s not found for execution", job_id)
            return

        with self._lock:
            job.status = STATUS_PROCESSING
            job.started_at = datetime.now(timezone.utc).isoformat()

        t0 = time.time()
        try:
            payload = self._work(job.user_id)
            with self._lock:
                job.status = STATUS_COMPLETE
                job.completed_at = datetime.now(timezone.utc).isoformat()
                job.source = (payload or {}).get("insight", {}).get("source")
            logger.info("Coaching job %s complete (%.1fs, source=%s)",
                        job_id, time.time() - t0, job.source)
        except Exception as e:
            logger.exception("Coaching job %s for %s failed after %.1fs",
                             job_id, job.user_id, time.time() - t0)
            with self._lock:
                job.status = STATUS_FAILED
                job.completed_at = datetime.now(timezone.utc).isoformat()
                job.error = str(e)[:500]

    # -- Cleanup --

    async def _cleanup_loop(self):
        """Periodically remove expired jobs."""
        while True:
            try:
                await asyncio.sleep(self.cleanup_interval_sec)
                self.cleanup_expired()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in coaching queue cleanup loop")

    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """Remove finished jobs older than ``expiration_hours``."""
        expiry_seconds = self.expiration_hours * 3600
        now = now or datetime.now(timezone.utc)

        with self._lock:
            to_remove = [
                job_id for job_id, job in self._jobs.items()
                if job.status in (STATUS_COMPLETE, STATUS_FAILED)
                and (now - datetime.fromisoformat(job.created_at)).total_seconds() > expiry_seconds
            ]
            for job_id in to_remove:
                del self._jobs[job_id]
                self._futures.pop(job_id, None)

        if to_remove:
            logger.info("Cleaned up %d expired coaching jobs", len(to_remove))
        return len(to_remove)
