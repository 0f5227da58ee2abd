"""In-memory registry of asynchronous download jobs."""

from __future__ import annotations

import copy
import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .artifacts import TempArtifact
from .errors import ArtifactGone, DownfilesError, InvalidTransition, JobNotReady, NotFound
from .metrics import JOBS

logger = logging.getLogger("downfiles.jobs")


class JobStatus(str, Enum):
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self is not JobStatus.PROCESSING


@dataclass
class Job:
    id: str
    url: str
    format_id: Optional[str] = None
    audio_only: bool = False
    title: Optional[str] = None
    status: JobStatus = JobStatus.PROCESSING
    progress: float = 0.0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    error_reason: Optional[str] = None
    delivered: bool = False
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


class JobRegistry:
    """Owns every job and the artifact of every finished, undelivered job.

    All mutations happen under one lock; readers get deep copies so that
    a snapshot can never observe a later update half-applied.
    """

    def __init__(self, ttl_seconds: int = 3600) -> None:
        self.ttl_seconds = ttl_seconds
        self._jobs: Dict[str, Job] = {}
        self._artifacts: Dict[str, TempArtifact] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def _refresh_gauge(self) -> None:
        counts = {status: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status] += 1
        for status, count in counts.items():
            JOBS.labels(status=status.value).set(count)

    def create(
        self,
        url: str,
        format_id: Optional[str] = None,
        audio_only: bool = False,
        title: Optional[str] = None,
    ) -> str:
        job = Job(id=uuid.uuid4().hex, url=url, format_id=format_id, audio_only=audio_only, title=title)
        with self._lock:
            self._jobs[job.id] = job
            self._refresh_gauge()
        logger.info("job_created", extra={"event": "job_created", "job_id": job.id})
        return job.id

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job is not None else None

    def require(self, job_id: str) -> Job:
        job = self.get(job_id)
        if job is None:
            raise NotFound("Job not found.")
        return job

    def set_progress(self, job_id: str, pct: float) -> None:
        pct = max(0.0, min(100.0, float(pct)))
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status.terminal:
                return
            if pct > job.progress:
                job.progress = pct
                job.updated_at = time.time()

    def set_status(
        self,
        job_id: str,
        status: JobStatus,
        error: Optional[DownfilesError] = None,
    ) -> None:
        status = JobStatus(status)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFound("Job not found.")
            if job.status.terminal or not status.terminal:
                raise InvalidTransition(f"Cannot move job from {job.status.value} to {status.value}.")
            job.status = status
            job.updated_at = time.time()
            if status is JobStatus.DONE:
                job.progress = 100.0
            elif error is not None:
                job.error = error.message
                job.error_kind = error.kind
                job.error_reason = error.reason
            self._refresh_gauge()
        event = "job_done" if status is JobStatus.DONE else "job_failed"
        extra: Dict[str, Any] = {"event": event, "job_id": job_id}
        if error is not None:
            extra["kind"] = error.kind
            extra["reason"] = error.reason
        logger.info(event, extra=extra)

    def complete(self, job_id: str, artifact: TempArtifact) -> None:
        """Store the prepared artifact and mark the job done."""
        with self._lock:
            if job_id not in self._jobs:
                artifact.discard()
                raise NotFound("Job not found.")
            self._artifacts[job_id] = artifact
        try:
            self.set_status(job_id, JobStatus.DONE)
        except DownfilesError:
            with self._lock:
                self._artifacts.pop(job_id, None)
            artifact.discard()
            raise

    def claim(self, job_id: str) -> TempArtifact:
        """Hand the artifact of a done job to exactly one caller."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFound("Job not found.")
            if job.status is JobStatus.PROCESSING:
                raise JobNotReady("The file is still being prepared.")
            if job.status is JobStatus.FAILED:
                raise JobNotReady(job.error or "The job failed.")
            if job.delivered:
                raise ArtifactGone("The file was already delivered.")
            artifact = self._artifacts.pop(job_id, None)
            if artifact is None:
                raise ArtifactGone("The file is no longer available.")
            job.delivered = True
            job.updated_at = time.time()
            return artifact

    def evict_expired(self, now: Optional[float] = None) -> List[str]:
        if self.ttl_seconds <= 0:
            return []
        now = time.time() if now is None else now
        expired: List[str] = []
        stale: List[TempArtifact] = []
        with self._lock:
            for job_id, job in list(self._jobs.items()):
                if job.status.terminal and now - job.updated_at >= self.ttl_seconds:
                    expired.append(job_id)
                    del self._jobs[job_id]
                    artifact = self._artifacts.pop(job_id, None)
                    if artifact is not None:
                        stale.append(artifact)
            if expired:
                self._refresh_gauge()
        for artifact in stale:
            artifact.discard()
        if expired:
            logger.info("jobs_evicted", extra={"event": "jobs_evicted", "count": len(expired)})
        return expired

    def discard_all(self) -> None:
        with self._lock:
            artifacts = list(self._artifacts.values())
            self._artifacts.clear()
        for artifact in artifacts:
            artifact.discard()
