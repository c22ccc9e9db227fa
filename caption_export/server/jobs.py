"""In-memory export job store with TTL cleanup and delayed deletion.

WHY: The HTTP service tracks caption exports through their lifecycle
(pending → running → completed | failed). Exports take seconds to minutes,
so the API returns a job ID immediately and renders in the background. An
in-memory store is sufficient for a single-instance service with no
persistence requirements.

HOW: Three components work together:
  ExportStatus - enum of valid job states
  ExportJob    - dataclass holding job metadata, status, and temp directory
  JobStore     - thread-safe dict-based store with create/update/get/list/delete,
                 TTL cleanup, and schedule_deletion() for post-download removal

RULES:
- All store mutations are protected by threading.Lock for thread safety
- Each job gets a dedicated temp directory holding the upload and the output
- TTL-based expiry removes finished jobs and their temp directories
- Job IDs are the payload's export id when given, otherwise UUID4 hex
- A job ID already in the store is rejected with JobExistsError
"""

from __future__ import annotations

import enum
import logging
import re
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from caption_export.config import JOB_TTL_S, MAX_EXPORT_JOBS
from caption_export.core.ir import CaptionPayload
from caption_export.pipeline.exporter import remove_tree

logger = logging.getLogger(__name__)

_JOB_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class JobLimitError(ValueError):
    """Raised when the store already holds max_jobs jobs."""


class JobExistsError(ValueError):
    """Raised when a job with the requested id is already tracked."""


class ExportStatus(str, enum.Enum):
    """Valid states for an export job.

    RULES:
    - pending: job created, background export not started
    - running: export pipeline in progress (see the progress store for detail)
    - completed: output MP4 ready for download
    - failed: unrecoverable error at any stage
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExportStatus.COMPLETED, ExportStatus.FAILED)


@dataclass
class ExportJob:
    """Metadata and state for a single export job.

    RULES:
    - id: unique and immutable after creation
    - filename: sanitized name of the uploaded video
    - work_dir: temp directory holding the upload, scratch frames and output
    - payload: the validated caption payload to burn in
    - config: renderer options (renderer, fps, concurrency)
    - output_path: set when the export completed
    - error: message when status is FAILED, else None
    """

    id: str
    status: ExportStatus
    filename: str
    work_dir: Path
    created_at: float
    updated_at: float
    payload: Optional[CaptionPayload] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None
    output_path: Optional[Path] = None
    config: Dict[str, Any] = field(default_factory=dict)

    @property
    def input_path(self) -> Path:
        return self.work_dir / self.filename


def is_valid_job_id(job_id: str) -> bool:
    """Job ids end up in paths and URLs, so they are restricted to [A-Za-z0-9_-]."""
    return bool(_JOB_ID_RE.match(job_id))


class JobStore:
    """Thread-safe in-memory store for export jobs.

    RULES:
    - All public methods that mutate state acquire self._lock
    - get_job() returns None for missing job IDs (no exceptions)
    - delete_job() removes the job and its temp directory
    - cleanup_expired() removes terminal jobs older than the TTL
    - Pending deletion timers are cancelled when the job goes away first
    """

    def __init__(
        self,
        ttl_seconds: int = JOB_TTL_S,
        max_jobs: int = MAX_EXPORT_JOBS,
    ) -> None:
        self._jobs: Dict[str, ExportJob] = {}
        self._timers: Dict[str, threading.Timer] = {}
        self._lock = threading.Lock()
        self._ttl_seconds = ttl_seconds
        self.max_jobs = max_jobs

    def create_job(
        self,
        filename: str,
        payload: Optional[CaptionPayload] = None,
        config: Optional[Dict[str, Any]] = None,
        job_id: Optional[str] = None,
    ) -> ExportJob:
        """Create a new job in PENDING state with a dedicated temp directory.

        Raises JobLimitError when the store is full, JobExistsError when
        job_id is already tracked, and ValueError for a malformed job_id.
        """
        if job_id is not None and not is_valid_job_id(job_id):
            raise ValueError("Invalid job id '{}'".format(job_id))

        with self._lock:
            if len(self._jobs) >= self.max_jobs:
                raise JobLimitError(
                    "Maximum number of concurrent jobs ({}) reached".format(self.max_jobs)
                )
            job_id = job_id or uuid.uuid4().hex
            if job_id in self._jobs:
                raise JobExistsError("Export {} already exists".format(job_id))

            now = time.time()
            job = ExportJob(
                id=job_id,
                status=ExportStatus.PENDING,
                filename=filename,
                work_dir=Path(tempfile.mkdtemp(prefix="caption_job_")),
                created_at=now,
                updated_at=now,
                payload=payload,
                config=config or {},
            )
            self._jobs[job_id] = job

        logger.info("Created export job %s for file %s", job_id, filename)
        return job

    def get_job(self, job_id: str) -> Optional[ExportJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self) -> List[ExportJob]:
        """All jobs, oldest first."""
        with self._lock:
            return sorted(self._jobs.values(), key=lambda j: j.created_at)

    def update_job(
        self,
        job_id: str,
        status: Optional[ExportStatus] = None,
        error: Optional[str] = None,
        output_path: Optional[Path] = None,
    ) -> Optional[ExportJob]:
        """Apply the non-None fields; returns None if job_id is unknown.

        completed_at is set when the job reaches a terminal state.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None

            now = time.time()
            if status is not None:
                job.status = status
            if error is not None:
                job.error = error
            if output_path is not None:
                job.output_path = output_path
            job.updated_at = now

            if job.status.is_terminal and job.completed_at is None:
                job.completed_at = now
            return job

    def delete_job(self, job_id: str) -> bool:
        """Delete a job and its temp directory. Returns False if not found."""
        with self._lock:
            job = self._jobs.pop(job_id, None)
            timer = self._timers.pop(job_id, None)

        if timer is not None:
            timer.cancel()
        if job is None:
            return False

        remove_tree(job.work_dir)
        logger.info("Deleted export job %s", job_id)
        return True

    def schedule_deletion(self, job_id: str, delay_s: float) -> bool:
        """Delete job_id after delay_s seconds (used after a download).

        Scheduling again replaces the pending timer. Returns False if the
        job is unknown.
        """
        with self._lock:
            if job_id not in self._jobs:
                return False
            existing = self._timers.pop(job_id, None)
            timer = threading.Timer(delay_s, self.delete_job, args=(job_id,))
            timer.daemon = True
            self._timers[job_id] = timer

        if existing is not None:
            existing.cancel()
        timer.start()
        logger.debug("Export job %s scheduled for deletion in %.0fs", job_id, delay_s)
        return True

    def cleanup_expired(self) -> int:
        """Remove terminal jobs whose completed_at is older than the TTL.

        Returns the count of removed jobs.
        """
        now = time.time()
        expired: List[ExportJob] = []

        with self._lock:
            for job_id, job in list(self._jobs.items()):
                if not job.status.is_terminal or job.completed_at is None:
                    continue
                if now - job.completed_at > self._ttl_seconds:
                    expired.append(self._jobs.pop(job_id))
                    timer = self._timers.pop(job_id, None)
                    if timer is not None:
                        timer.cancel()

        for job in expired:
            remove_tree(job.work_dir)
            logger.info("Expired export job %s (completed %.0fs ago)", job.id, now - job.completed_at)

        return len(expired)

    def close(self) -> None:
        """Cancel pending deletions and remove every job's temp directory."""
        with self._lock:
            jobs = list(self._jobs.values())
            timers = list(self._timers.values())
            self._jobs.clear()
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        for job in jobs:
            remove_tree(job.work_dir)
