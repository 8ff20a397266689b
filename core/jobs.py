import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from core.errors import InvalidJobTransition, JobNotFound
from core.models import IngestionJob, JobStatus, ProgressEvent, utc_now

logger = logging.getLogger(__name__)

Listener = Callable[[ProgressEvent], None]


class ProgressChannel(object):
    """
    Ordered stream of progress events for one pipeline run.

    Listeners are called synchronously, in the order events are published.
    """
    def __init__(self):
        self._listeners: List[Listener] = []
        self.history: List[ProgressEvent] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def publish(self, event: ProgressEvent) -> None:
        self.history.append(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Progress listener failed on '{event.phase}' event: {e}")

    def emit(self, phase: str, message: str, percentage: int, **details) -> None:
        self.publish(ProgressEvent(phase=phase, message=message, percentage=percentage, details=details))


class JobTracker(object):
    """
    In-memory registry of long running ingestion jobs.

    A job moves pending -> running -> completed | failed. Terminal jobs are never
    modified again. Terminal jobs older than the retention window are dropped by
    cleanup(), and when more than max_jobs are held the oldest terminal jobs go first.
    """
    def __init__(self, max_jobs: int = 100, retention: timedelta = timedelta(hours=2), clock=utc_now):
        self.max_jobs = max_jobs
        self.retention = retention
        self._clock = clock
        self._jobs: Dict[str, IngestionJob] = {}

    def create(self, job_type: str, params: Optional[Dict[str, Any]] = None) -> IngestionJob:
        self.cleanup()
        now = self._clock()
        job = IngestionJob(id=str(uuid.uuid4()), type=job_type, params=dict(params or {}),
                           created_at=now, updated_at=now)
        self._jobs[job.id] = job
        self._evict()
        logger.info(f"Created {job_type} job {job.id}")
        return job

    def get(self, job_id: str) -> IngestionJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def all_jobs(self) -> List[IngestionJob]:
        return sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)

    def _mutable(self, job_id: str) -> IngestionJob:
        job = self.get(job_id)
        if job.status.is_terminal:
            raise InvalidJobTransition(job_id, job.status.value)
        return job

    def update(self, job_id: str, progress: Dict[str, Any]) -> IngestionJob:
        job = self._mutable(job_id)
        job.status = JobStatus.RUNNING
        job.progress = dict(progress)
        job.updated_at = self._clock()
        logger.debug(f"Job {job_id}: {progress.get('phase')} {progress.get('percentage')}% {progress.get('message')}")
        return job

    def complete(self, job_id: str, result: Dict[str, Any]) -> IngestionJob:
        job = self._mutable(job_id)
        job.status = JobStatus.COMPLETED
        job.result = result
        job.progress = {'phase': 'completed', 'message': 'Job completed successfully', 'percentage': 100}
        job.updated_at = self._clock()
        logger.info(f"Job {job_id} completed")
        return job

    def fail(self, job_id: str, error: str) -> IngestionJob:
        job = self._mutable(job_id)
        job.status = JobStatus.FAILED
        job.error = error
        job.progress = {'phase': 'failed', 'message': error, 'percentage': 0}
        job.updated_at = self._clock()
        logger.error(f"Job {job_id} failed: {error}")
        return job

    def subscribe(self, job_id: str, channel: ProgressChannel) -> Callable[[], None]:
        """Forward progress events from channel to the job until it reaches a terminal state."""
        self.get(job_id)

        def on_event(event: ProgressEvent):
            job = self._jobs.get(job_id)
            if job is None or job.status.is_terminal:
                return
            self.update(job_id, event.to_dict())

        return channel.subscribe(on_event)

    def cleanup(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        expired = [
            job_id for job_id, job in self._jobs.items()
            if job.status.is_terminal and now - job.updated_at > self.retention
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.info(f"Removed {len(expired)} expired jobs")
        return len(expired)

    def _evict(self) -> None:
        overflow = len(self._jobs) - self.max_jobs
        if overflow <= 0:
            return
        terminal = sorted((j for j in self._jobs.values() if j.status.is_terminal), key=lambda j: j.updated_at)
        for job in terminal[:overflow]:
            del self._jobs[job.id]
            logger.debug(f"Evicted job {job.id}")
