"""In-memory job registry with forward-only state transitions.

State lives in this process only; a restart forgets every job. All reads
return snapshots, so callers never see a job change under them.
"""

import asyncio
import logging
import shutil
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import BinaryIO

from timeline_renderer.exceptions import NotFoundError, NotReadyError

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    RENDERING = "rendering"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


_ORDER = {
    JobState.QUEUED: 0,
    JobState.DOWNLOADING: 1,
    JobState.RENDERING: 2,
    JobState.COMPLETED: 3,
    JobState.FAILED: 3,
}


@dataclass
class Job:
    job_id: str
    work_dir: Path
    state: JobState = JobState.QUEUED
    error: str | None = None
    current_stage: str | None = None
    output_size: int | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    # monotonic creation time, drives retention
    created_mono: float = field(default_factory=time.monotonic)

    @property
    def output_path(self) -> Path:
        return self.work_dir / "output.mp4"


class JobStore:
    """Job registry guarded by one asyncio lock.

    Each job has one writer (its task); the lock makes reads atomic against
    that writer and against retention deletes.
    """

    def __init__(self, work_root: str | Path):
        self.work_root = Path(work_root)
        self._jobs: dict[str, Job] = {}
        self._lock = asyncio.Lock()

    async def create(self) -> Job:
        """Register a new queued job with its own empty work directory."""
        job_id = uuid.uuid4().hex
        work_dir = self.work_root / job_id
        work_dir.mkdir(parents=True, exist_ok=False)
        job = Job(job_id=job_id, work_dir=work_dir)
        async with self._lock:
            self._jobs[job_id] = job
        return replace(job)

    async def get(self, job_id: str) -> Job:
        """Snapshot of a job.

        Raises:
            NotFoundError: Unknown or already deleted job id
        """
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(job_id)
            return replace(job)

    async def jobs(self) -> list[Job]:
        async with self._lock:
            return [replace(job) for job in self._jobs.values()]

    async def transition(
        self,
        job_id: str,
        state: JobState,
        *,
        error: str | None = None,
        stage: str | None = None,
    ) -> Job:
        """Move a job forward.

        Terminal states are final, and the error message is recorded once
        with the transition to failed.

        Raises:
            NotFoundError: Unknown or already deleted job id
            ValueError: The move is not forward
        """
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(job_id)
            if job.state.terminal or _ORDER[state] <= _ORDER[job.state]:
                raise ValueError(f"Job {job_id}: cannot move from {job.state.value} to {state.value}")

            job.state = state
            job.current_stage = stage if not state.terminal else None
            now = datetime.now(UTC)
            if state is JobState.DOWNLOADING:
                job.started_at = now
            if state.terminal:
                job.completed_at = now
            if state is JobState.FAILED:
                job.error = error or "Render failed"
            if state is JobState.COMPLETED and job.output_path.exists():
                job.output_size = job.output_path.stat().st_size
            logger.info(f"[JOBS] {job_id} -> {state.value}" + (f": {job.error}" if error else ""))
            return replace(job)

    def set_stage(self, job_id: str, stage: str) -> None:
        """Update the free-text progress note of a running job.

        Synchronous so engine progress callbacks can call it; it never
        awaits, so it cannot interleave with a locked section.
        """
        job = self._jobs.get(job_id)
        if job is not None and not job.state.terminal:
            job.current_stage = stage

    async def open_output(self, job_id: str) -> BinaryIO:
        """Open a completed job's output for reading.

        The file is opened under the lock, so a concurrent delete cannot
        remove it between the state check and the open. The handle stays
        valid after the directory is removed.

        Raises:
            NotFoundError: Unknown or already deleted job id
            NotReadyError: Job is not completed (including failed jobs)
        """
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(job_id)
            if job.state is not JobState.COMPLETED:
                raise NotReadyError(job_id, job.state.value)
            return open(job.output_path, "rb")

    async def delete(self, job_id: str) -> None:
        """Forget a job and remove its work directory.

        The entry and the directory disappear together under the lock (the
        directory is renamed aside); the slow recursive delete runs after.

        Raises:
            NotFoundError: Unknown or already deleted job id
        """
        async with self._lock:
            job = self._jobs.pop(job_id, None)
            if job is None:
                raise NotFoundError(job_id)
            trash = self._move_aside(job.work_dir)
        if trash is not None:
            await asyncio.to_thread(shutil.rmtree, trash, True)
        logger.info(f"[JOBS] {job_id} deleted")

    async def expired(self, ttl_seconds: float, now: float | None = None) -> list[str]:
        """Ids of jobs created more than the TTL ago, in any state."""
        now = time.monotonic() if now is None else now
        async with self._lock:
            return [job_id for job_id, job in self._jobs.items() if now - job.created_mono >= ttl_seconds]

    async def expire(self, ttl_seconds: float, now: float | None = None) -> list[str]:
        """Delete jobs created more than the TTL ago; returns their ids.

        Age counts from creation, so a job stuck in a running state is
        removed too. Stopping its task is the caller's business.
        """
        now = time.monotonic() if now is None else now
        trash: list[Path] = []
        expired: list[str] = []
        async with self._lock:
            for job_id, job in list(self._jobs.items()):
                if now - job.created_mono >= ttl_seconds:
                    del self._jobs[job_id]
                    expired.append(job_id)
                    moved = self._move_aside(job.work_dir)
                    if moved is not None:
                        trash.append(moved)
        for path in trash:
            await asyncio.to_thread(shutil.rmtree, path, True)
        if expired:
            logger.info(f"[JOBS] Retention removed {len(expired)} job(s)")
        return expired

    def _move_aside(self, work_dir: Path) -> Path | None:
        """Rename a work dir to a hidden name (called under lock)."""
        if not work_dir.exists():
            return None
        trash = work_dir.with_name(f".trash-{work_dir.name}")
        work_dir.rename(trash)
        return trash
