"""
Background execution of dispatch runs.

═══════════════════════════════════════════════════════════════════════════
EXECUTION MODEL
═══════════════════════════════════════════════════════════════════════════

    HTTP request ──► submit_run() ──► task_id returned immediately
                          │
                          ▼
                   asyncio.create_task
                          │
              ┌───────────┴────────────┐
              │ semaphore (MAX_WORKERS)│  bounds concurrent runs
              └───────────┬────────────┘
              ┌───────────┴────────────┐
              │ per-message lock       │  one run per message at a time
              └───────────┬────────────┘
                          ▼
                orchestrator.run(...)

A run that raises is logged, marked FAILED on its JobProgress, and the
message gets a ``status_change/failed`` history entry. Jobs are tracked in
memory only; a process restart forgets them (messages stay in storage).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence

from backend.app.core.logging_config import dispatch_context
from backend.app.dispatch.models import Attachment, Channel
from backend.app.dispatch.orchestrator import DispatchOrchestrator

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Job Status Model
# ═══════════════════════════════════════════════════════════════════════════

class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    DISPATCH = "dispatch"
    RESEND = "resend"


@dataclass
class JobProgress:
    """Tracking record for one dispatch run."""
    task_id: str
    job_type: JobType
    message_id: int
    channels: List[Channel]
    status: JobStatus
    message: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "job_type": self.job_type.value,
            "message_id": self.message_id,
            "channels": [c.value for c in self.channels],
            "status": self.status.value,
            "message": self.message,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "elapsed_seconds": (
                (self.completed_at or _now()) - self.started_at
            ).total_seconds(),
            "error": self.error,
            "result": self.result,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Job Manager
# ═══════════════════════════════════════════════════════════════════════════

class DispatchJobManager:
    """
    Fire-and-forget execution of orchestrator runs with progress tracking.

    Usage:
        manager = DispatchJobManager(orchestrator, max_workers=4)
        task_id = manager.submit_run(message_id, channels)
        manager.get_progress(task_id).status
    """

    def __init__(
        self,
        orchestrator: DispatchOrchestrator,
        *,
        max_workers: int = 4,
        serialize_per_message: bool = True,
        job_retention_hours: int = 24,
    ) -> None:
        self.orchestrator = orchestrator
        self.serialize_per_message = serialize_per_message
        self.job_retention_hours = job_retention_hours
        self._max_workers = max(1, max_workers)
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._jobs: Dict[str, JobProgress] = {}
        self._running_tasks: Dict[str, asyncio.Task] = {}
        self._message_locks: Dict[int, asyncio.Lock] = {}
        self._lock_users: Dict[int, int] = {}

    def _generate_task_id(self) -> str:
        return str(uuid.uuid4())[:8]

    @property
    def semaphore(self) -> asyncio.Semaphore:
        # Created lazily so it binds to the running event loop
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._max_workers)
        return self._semaphore

    @contextlib.asynccontextmanager
    async def _message_slot(self, message_id: int) -> AsyncIterator[None]:
        if not self.serialize_per_message:
            yield
            return
        lock = self._message_locks.setdefault(message_id, asyncio.Lock())
        self._lock_users[message_id] = self._lock_users.get(message_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # Forget the lock once no run holds or awaits it
            self._lock_users[message_id] -= 1
            if not self._lock_users[message_id]:
                del self._lock_users[message_id]
                del self._message_locks[message_id]

    # ── Queries ──

    def get_progress(self, task_id: str) -> Optional[JobProgress]:
        return self._jobs.get(task_id)

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[JobProgress]:
        jobs = list(self._jobs.values())
        if status:
            jobs = [j for j in jobs if j.status == status]
        return sorted(jobs, key=lambda j: j.started_at, reverse=True)

    # ── Submission ──

    def submit_run(
        self,
        message_id: int,
        channels: Iterable[Channel],
        attachments: Optional[Sequence[Attachment]] = None,
        *,
        job_type: JobType = JobType.DISPATCH,
    ) -> str:
        """Schedule a run on the current event loop and return its task id."""
        self.cleanup_old_jobs(self.job_retention_hours)
        task_id = self._generate_task_id()
        channels = list(channels)
        progress = JobProgress(
            task_id=task_id,
            job_type=job_type,
            message_id=message_id,
            channels=channels,
            status=JobStatus.PENDING,
            message=f"Queued {job_type.value} on {', '.join(c.value for c in channels)}",
            started_at=_now(),
        )
        self._jobs[task_id] = progress

        task = asyncio.create_task(self._execute(progress, attachments))
        self._running_tasks[task_id] = task
        task.add_done_callback(lambda _t: self._running_tasks.pop(task_id, None))
        logger.info(
            "Job %s queued (%s, message %d)", task_id, job_type.value, message_id,
            extra={"task_id": task_id, "message_id": message_id},
        )
        return task_id

    async def _execute(
        self,
        progress: JobProgress,
        attachments: Optional[Sequence[Attachment]],
    ) -> None:
        with dispatch_context(task_id=progress.task_id, message_id=progress.message_id):
            try:
                # Message lock first: a run waiting on its message never holds a worker slot
                async with self._message_slot(progress.message_id), self.semaphore:
                    progress.status = JobStatus.RUNNING
                    progress.message = "Sending..."
                    report = await self.orchestrator.run(
                        progress.message_id, progress.channels, attachments,
                    )
            except Exception as exc:
                logger.exception("Job %s failed", progress.task_id)
                progress.status = JobStatus.FAILED
                progress.error = str(exc) or type(exc).__name__
                progress.message = "Dispatch run failed"
                progress.completed_at = _now()
                await self._record_failure(progress)
                return

        progress.status = JobStatus.COMPLETED
        progress.completed_at = _now()
        progress.result = report.to_dict()
        progress.message = f"Message {report.status.value}: {report.delivered}/{report.attempted} delivered"

    async def _record_failure(self, progress: JobProgress) -> None:
        try:
            await self.orchestrator.record_failure(progress.message_id, progress.error or "unknown error")
        except Exception:
            logger.exception("Could not record failure of job %s in message history", progress.task_id)

    # ── Lifecycle ──

    async def wait_all(self) -> None:
        """Wait for every in-flight run to finish."""
        while self._running_tasks:
            await asyncio.gather(*list(self._running_tasks.values()), return_exceptions=True)

    def cleanup_old_jobs(self, max_age_hours: int = 24) -> int:
        """Remove finished jobs older than ``max_age_hours``. Returns count removed."""
        cutoff = _now().timestamp() - (max_age_hours * 3600)
        to_remove = [
            task_id for task_id, job in self._jobs.items()
            if job.status in (JobStatus.COMPLETED, JobStatus.FAILED)
            and job.completed_at and job.completed_at.timestamp() < cutoff
        ]
        for task_id in to_remove:
            del self._jobs[task_id]
        return len(to_remove)
