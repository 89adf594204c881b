"""Priority job queue with disk persistence."""

import json
import logging
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Callable

from events import (
    EventBus,
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_ENQUEUED,
    JOB_FAILED,
    JOB_PROGRESS,
    JOB_STARTED,
    QUEUE_UPDATED,
)

from .models import (
    CancelOutcome,
    GenerationJob,
    JobPriority,
    JobProgress,
    JobStatus,
    QueueFile,
    QueueSnapshot,
)

logger = logging.getLogger(__name__)


class JobNotFoundError(Exception):
    """Raised when a job id is not in the queue."""
    pass


class InvalidJobStateError(Exception):
    """Raised when an operation does not apply to a job's current status."""
    pass


def _run_order(job: GenerationJob) -> tuple[int, int]:
    return (job.priority.order, job.sequence)


class QueueManager:
    """Owns the generation jobs and the pause flag.

    Every read-modify-write happens under one lock and is applied to copies
    that only replace the live jobs once they are on disk, so a failed write
    changes nothing. Events are published under the lock so
    subscribers see them in the same order as the state changes. Callers only
    ever receive copies of jobs.
    """

    def __init__(self, queue_path: Path, bus: EventBus | None = None, max_history: int = 200):
        """Initialize queue manager and recover jobs interrupted by a restart.

        Args:
            queue_path: Path to the queue.json file
            bus: Event bus for queue events
            max_history: Finished jobs to keep
        """
        self.queue_path = queue_path
        self.bus = bus or EventBus()
        self.max_history = max_history
        self._lock = Lock()
        self._paused = False
        self._wake_listeners: list[Callable[[], None]] = []
        self._interrupt_handler: Callable[[str], None] | None = None

        state = self._load_state()
        self._jobs: dict[str, GenerationJob] = {job.id: job for job in state.jobs}
        self._next_sequence = max((job.sequence for job in state.jobs), default=0) + 1
        if self._recover():
            self._save_state()

    def _load_state(self) -> QueueFile:
        """Load queue state from disk."""
        if self.queue_path.exists():
            try:
                data = json.loads(self.queue_path.read_text())
                return QueueFile.model_validate(data)
            except json.JSONDecodeError as e:
                logger.warning(f"Corrupted queue file, resetting: {e}")
            except Exception as e:
                logger.error(f"Failed to load queue state, resetting: {e}")
        return QueueFile()

    def _save_state(self, jobs: dict[str, GenerationJob] | None = None) -> None:
        """Save queue state to disk atomically."""
        if jobs is None:
            jobs = self._jobs
        self.queue_path.parent.mkdir(parents=True, exist_ok=True)
        state = QueueFile(jobs=list(jobs.values()))
        # Write to temp file first, then atomic rename (POSIX rename is atomic)
        tmp_path = self.queue_path.with_suffix('.tmp')
        tmp_path.write_text(state.model_dump_json(indent=2))
        tmp_path.replace(self.queue_path)

    def _recover(self) -> bool:
        """Requeue jobs that were generating when the process stopped.

        They go back to pending at high priority and run again from scratch.
        A job that was being cancelled is cancelled instead.
        """
        changed = False
        for job in self._jobs.values():
            if job.status != JobStatus.GENERATING:
                continue
            changed = True
            if job.cancel_requested:
                job.status = JobStatus.CANCELLED
                job.completed_at = datetime.now()
                logger.info(f"Job {job.id[:8]} was being cancelled at shutdown, marking cancelled")
                continue
            job.status = JobStatus.PENDING
            job.priority = JobPriority.HIGH
            job.started_at = None
            job.progress = JobProgress()
            logger.info(f"Job {job.id[:8]} was interrupted by a restart, requeued at high priority")
        return changed

    def _publish(self, topic: str, data: dict) -> None:
        """Publish an event. Called under self._lock."""
        self.bus.publish(topic, data)

    def _publish_updated(self) -> None:
        counts = self._counts()
        self._publish(QUEUE_UPDATED, {
            "pending_count": counts[JobStatus.PENDING],
            "generating": self._active_job().id if self._active_job() else None,
            "paused": self._paused,
        })

    def _counts(self) -> dict[JobStatus, int]:
        counts = {status: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status] += 1
        return counts

    def _active_job(self) -> GenerationJob | None:
        for job in self._jobs.values():
            if job.status == JobStatus.GENERATING:
                return job
        return None

    def _pending_jobs(self) -> list[GenerationJob]:
        pending = [job for job in self._jobs.values() if job.status == JobStatus.PENDING]
        return sorted(pending, key=_run_order)

    def _require(self, job_id: str) -> GenerationJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def _commit(self, *changed: GenerationJob, removed: tuple[str, ...] = ()) -> None:
        """Write changed jobs through to disk, then make them current.

        Changed jobs are copies; if the write fails, the in-memory state is
        left exactly as it was and the error propagates. Called under self._lock.
        """
        jobs = dict(self._jobs)
        for job in changed:
            jobs[job.id] = job
        for job_id in removed:
            jobs.pop(job_id, None)
        self._trim_history(jobs)
        self._save_state(jobs)
        self._jobs = jobs

    def _copy_for_update(self, job: GenerationJob) -> GenerationJob:
        return job.model_copy(deep=True)

    def _finished(self, job: GenerationJob, status: JobStatus) -> GenerationJob:
        job = self._copy_for_update(job)
        job.status = status
        job.completed_at = datetime.now()
        return job

    def _trim_history(self, jobs: dict[str, GenerationJob]) -> None:
        finished = [job for job in jobs.values() if job.status.is_terminal]
        excess = len(finished) - self.max_history
        if excess <= 0:
            return
        finished.sort(key=lambda job: job.completed_at or job.created_at)
        for job in finished[:excess]:
            del jobs[job.id]

    def _wake(self) -> None:
        for listener in list(self._wake_listeners):
            try:
                listener()
            except Exception as e:
                logger.exception(f"Error in queue wake listener: {e}")

    def add_wake_listener(self, listener: Callable[[], None]) -> None:
        """Register a callback invoked whenever runnable work may have changed."""
        with self._lock:
            self._wake_listeners.append(listener)

    def remove_wake_listener(self, listener: Callable[[], None]) -> None:
        with self._lock:
            if listener in self._wake_listeners:
                self._wake_listeners.remove(listener)

    def set_interrupt_handler(self, handler: Callable[[str], None] | None) -> None:
        """Register the callback that interrupts a generating job (the executor)."""
        with self._lock:
            self._interrupt_handler = handler

    # Caller-facing operations

    def enqueue(self, job: GenerationJob) -> str:
        """
        Add a job to the end of its priority tier.

        Args:
            job: Job to add; status and bookkeeping fields are reset

        Returns:
            The job id

        Raises:
            ValueError: If a job with the same id already exists
        """
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} is already queued")
            job = job.model_copy(deep=True, update={
                "status": JobStatus.PENDING,
                "sequence": self._next_sequence,
                "started_at": None,
                "completed_at": None,
                "result_artifact_id": None,
                "error": None,
                "progress": JobProgress(),
                "seed_used": None,
                "cancel_requested": False,
            })
            self._commit(job)
            self._next_sequence += 1

            self._publish(JOB_ENQUEUED, {
                "job_id": job.id,
                "priority": job.priority.value,
            })
            self._publish_updated()

        logger.info(f"Enqueued job {job.id[:8]} at {job.priority.value} priority")
        self._wake()
        return job.id

    def get(self, job_id: str) -> GenerationJob:
        """Return a copy of a job.

        Raises:
            JobNotFoundError: If the job does not exist
        """
        with self._lock:
            return self._require(job_id).model_copy(deep=True)

    def list_jobs(self) -> list[GenerationJob]:
        """All jobs: the generating one, then pending in run order, then finished newest first."""
        with self._lock:
            active = self._active_job()
            finished = [job for job in self._jobs.values() if job.status.is_terminal]
            finished.sort(key=lambda job: job.completed_at or job.created_at, reverse=True)
            ordered = ([active] if active else []) + self._pending_jobs() + finished
            return [job.model_copy(deep=True) for job in ordered]

    def reorder(self, job_id: str, priority: JobPriority) -> GenerationJob:
        """
        Move a pending job to another priority tier, behind the jobs already in it.

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidJobStateError: If the job is not pending
        """
        with self._lock:
            job = self._require(job_id)
            if job.status != JobStatus.PENDING:
                raise InvalidJobStateError(f"Only pending jobs can be reordered (job is {job.status.value})")
            job = self._copy_for_update(job)
            job.priority = priority
            job.sequence = self._next_sequence
            self._commit(job)
            self._next_sequence += 1
            self._publish_updated()
            result = job.model_copy(deep=True)

        self._wake()
        return result

    def cancel(self, job_id: str) -> CancelOutcome:
        """
        Cancel a job.

        Pending jobs are cancelled immediately. Generating jobs are flagged and
        handed to the interrupt handler; they become cancelled once the
        executor has interrupted the backend.

        Returns:
            What happened

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidJobStateError: If the job already finished
        """
        handler = None
        with self._lock:
            job = self._require(job_id)
            if job.status == JobStatus.PENDING:
                self._commit(self._finished(job, JobStatus.CANCELLED))
                self._publish(JOB_CANCELLED, {"job_id": job_id})
                self._publish_updated()
                outcome = CancelOutcome.CANCELLED
            elif job.status == JobStatus.GENERATING:
                if not job.cancel_requested:
                    job = self._copy_for_update(job)
                    job.cancel_requested = True
                    self._commit(job)
                    handler = self._interrupt_handler
                outcome = CancelOutcome.INTERRUPT_REQUESTED
            else:
                raise InvalidJobStateError(f"Job already {job.status.value}")

        if handler is not None:
            try:
                handler(job_id)
            except Exception as e:
                logger.exception(f"Interrupt handler failed for job {job_id[:8]}: {e}")
        self._wake()
        return outcome

    def pause(self) -> None:
        """Stop handing out new jobs. A generating job runs to completion."""
        with self._lock:
            self._paused = True
            self._publish_updated()

    def resume(self) -> None:
        with self._lock:
            self._paused = False
            self._publish_updated()
        self._wake()

    def is_paused(self) -> bool:
        with self._lock:
            return self._paused

    def next_runnable(self) -> GenerationJob | None:
        """Oldest pending job in the highest non-empty tier, or None when paused or empty."""
        with self._lock:
            if self._paused:
                return None
            pending = self._pending_jobs()
            return pending[0].model_copy(deep=True) if pending else None

    def clear_pending(self) -> int:
        """Cancel all pending jobs.

        Returns:
            Number of jobs cancelled
        """
        with self._lock:
            pending = self._pending_jobs()
            if pending:
                self._commit(*(self._finished(job, JobStatus.CANCELLED) for job in pending))
                for job in pending:
                    self._publish(JOB_CANCELLED, {"job_id": job.id})
                self._publish_updated()
            return len(pending)

    def purge_finished(self) -> int:
        """Drop all finished jobs from the history.

        Returns:
            Number of jobs removed
        """
        with self._lock:
            finished = tuple(job_id for job_id, job in self._jobs.items() if job.status.is_terminal)
            if finished:
                self._commit(removed=finished)
                self._publish_updated()
            return len(finished)

    def counts(self) -> dict[str, int]:
        with self._lock:
            return {status.value: count for status, count in self._counts().items()}

    def current_job(self) -> GenerationJob | None:
        with self._lock:
            active = self._active_job()
            return active.model_copy(deep=True) if active else None

    def snapshot(self) -> QueueSnapshot:
        """Consistent view of the whole queue, taken under one lock."""
        with self._lock:
            active = self._active_job()
            return QueueSnapshot(
                paused=self._paused,
                current_job=active.model_copy(deep=True) if active else None,
                pending=[job.model_copy(deep=True) for job in self._pending_jobs()],
                counts={status.value: count for status, count in self._counts().items()},
            )

    # Executor-facing operations

    def claim_next(self) -> GenerationJob | None:
        """
        Mark the next runnable job as generating.

        Returns:
            The claimed job, or None if paused, empty, or a job is already generating
        """
        with self._lock:
            if self._paused or self._active_job() is not None:
                return None
            pending = self._pending_jobs()
            if not pending:
                return None

            job = self._copy_for_update(pending[0])
            job.status = JobStatus.GENERATING
            job.started_at = datetime.now()
            job.progress = JobProgress()
            self._commit(job)

            self._publish(JOB_STARTED, job.model_dump(mode='json'))
            self._publish_updated()
            return job.model_copy(deep=True)

    def update_progress(self, job_id: str, current_step: int, total_steps: int) -> None:
        """Record sampling progress of the generating job. Not persisted."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.GENERATING:
                return
            fraction = current_step / total_steps if total_steps > 0 else 0.0
            job.progress = JobProgress(
                current_step=current_step,
                total_steps=total_steps,
                progress=min(1.0, max(0.0, fraction)),
            )
            self._publish(JOB_PROGRESS, {
                "job_id": job_id,
                "current_step": current_step,
                "total_steps": total_steps,
                "progress": job.progress.progress,
            })

    def complete_job(self, job_id: str, artifact_id: str, seed_used: int | None = None) -> bool:
        """
        Mark the generating job as completed.

        Returns:
            False if the job is not generating or a cancel was requested
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.GENERATING:
                return False
            if job.cancel_requested:
                logger.info(f"Job {job_id[:8]} finished after cancel was requested, not completing")
                return False
            job = self._finished(job, JobStatus.COMPLETED)
            job.result_artifact_id = artifact_id
            job.seed_used = seed_used
            job.progress = JobProgress(
                current_step=job.progress.total_steps,
                total_steps=job.progress.total_steps,
                progress=1.0,
            )
            self._commit(job)

            self._publish(JOB_COMPLETED, {
                "job_id": job_id,
                "artifact_id": artifact_id,
            })
            self._publish_updated()
        self._wake()
        return True

    def fail_job(self, job_id: str, error: str) -> bool:
        """Mark the generating job as failed."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.GENERATING:
                return False
            job = self._finished(job, JobStatus.FAILED)
            job.error = error
            self._commit(job)

            self._publish(JOB_FAILED, {
                "job_id": job_id,
                "error": error,
            })
            self._publish_updated()
        self._wake()
        return True

    def mark_cancelled(self, job_id: str) -> bool:
        """Mark the generating job as cancelled, after the backend was interrupted."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.GENERATING:
                return False
            self._commit(self._finished(job, JobStatus.CANCELLED))

            self._publish(JOB_CANCELLED, {"job_id": job_id})
            self._publish_updated()
        self._wake()
        return True
