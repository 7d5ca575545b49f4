# app/jobs/service/queue_service.py
import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from typing import List, Optional

from app.core.config import settings
from app.core.errors import JobNotFound, Timeout
from app.core.logger import get_logger
from app.jobs.entity.job import CANCELLABLE_STATES, Job, JobSpec, JobState, JobStatus, QueueStats
from app.jobs.repository.broker import QueueBroker

logger = get_logger("QueueService")


class JobQueue(ABC):
    """What handlers see of the queue. ``is_executing`` is False in degraded mode."""

    is_executing: bool = True

    @abstractmethod
    async def enqueue(self, spec: JobSpec) -> str:
        pass

    @abstractmethod
    async def get_status(self, job_id: str) -> Optional[JobStatus]:
        pass

    @abstractmethod
    async def cancel(self, job_id: str) -> bool:
        pass

    @abstractmethod
    async def retry(self, job_id: str) -> bool:
        pass

    @abstractmethod
    async def wait_for_completion(self, job_id: str, timeout_ms: Optional[int] = None) -> JobStatus:
        pass

    @abstractmethod
    async def get_user_jobs(self, user_id: str, limit: int = 20) -> List[JobStatus]:
        pass

    @abstractmethod
    async def get_stats(self) -> QueueStats:
        pass

    @abstractmethod
    async def clean_old_jobs(self) -> int:
        pass

    async def close(self) -> None:
        pass


class BrokerJobQueue(JobQueue):
    """Queue facade over a QueueBroker. Jobs run in JobWorker tasks."""

    is_executing = True

    def __init__(
        self,
        broker: QueueBroker,
        poll_interval_ms: Optional[int] = None,
        wait_max_ms: Optional[int] = None,
        retention_seconds: Optional[int] = None,
        sleep=asyncio.sleep,
    ):
        self.broker = broker
        self.poll_interval_ms = poll_interval_ms or settings.JOB_POLL_INTERVAL_MS
        self.wait_max_ms = wait_max_ms or settings.JOB_WAIT_MAX_MS
        self.retention_seconds = retention_seconds or settings.JOB_RETENTION_SECONDS
        self._sleep = sleep

    async def enqueue(self, spec: JobSpec) -> str:
        job_id = str(uuid.uuid4())
        job = Job.from_spec(job_id, spec)
        await self.broker.add(job)
        logger.info(f"Enqueued job {job_id} type={spec.type.value} priority={spec.priority.value} user={spec.user_id}")
        return job_id

    async def get_status(self, job_id: str) -> Optional[JobStatus]:
        job = await self.broker.get(job_id)
        if job is None:
            return None
        return JobStatus.from_job(job)

    async def cancel(self, job_id: str) -> bool:
        cancelled = await self.broker.remove_if(job_id, CANCELLABLE_STATES)
        if cancelled:
            logger.info(f"Cancelled job {job_id}")
        else:
            logger.debug(f"Job {job_id} not cancellable (missing or not waiting/delayed)")
        return cancelled

    async def retry(self, job_id: str) -> bool:
        retried = await self.broker.retry_failed(job_id)
        if retried:
            logger.info(f"Retrying failed job {job_id}")
        return retried

    async def wait_for_completion(self, job_id: str, timeout_ms: Optional[int] = None) -> JobStatus:
        """Poll until the job finishes. Raises Timeout after ``timeout_ms`` (capped) and JobNotFound."""
        timeout_ms = min(timeout_ms or self.wait_max_ms, self.wait_max_ms)
        deadline = time.monotonic() + timeout_ms / 1000

        while True:
            status = await self.get_status(job_id)
            if status is None:
                raise JobNotFound(f"Job {job_id} not found")
            if status.status in (JobState.COMPLETED, JobState.FAILED):
                return status
            if time.monotonic() >= deadline:
                raise Timeout(f"Job {job_id} did not complete within {timeout_ms}ms")
            await self._sleep(self.poll_interval_ms / 1000)

    async def get_user_jobs(self, user_id: str, limit: int = 20) -> List[JobStatus]:
        jobs = await self.broker.list_jobs(user_id=user_id, limit=limit)
        return [JobStatus.from_job(job) for job in jobs]

    async def get_stats(self) -> QueueStats:
        counts = await self.broker.counts()
        return QueueStats(**{state.value: count for state, count in counts.items()}, executing=True)

    async def clean_old_jobs(self) -> int:
        removed = await self.broker.clean(self.retention_seconds * 1000)
        if removed:
            logger.info(f"Cleaned {removed} old jobs")
        return removed

    async def close(self) -> None:
        await self.broker.close()


class NullQueue(JobQueue):
    """
    Degraded mode used when no broker is reachable at startup. Accepts jobs
    so request handling keeps working, but nothing ever executes them.
    """

    is_executing = False
    MESSAGE = "queue unavailable"

    async def enqueue(self, spec: JobSpec) -> str:
        job_id = f"noop-{uuid.uuid4()}"
        logger.warning(f"Queue unavailable; job {job_id} accepted but will not execute")
        return job_id

    async def get_status(self, job_id: str) -> Optional[JobStatus]:
        return JobStatus(job_id=job_id, status=JobState.WAITING, executing=False, message=self.MESSAGE)

    async def cancel(self, job_id: str) -> bool:
        return False

    async def retry(self, job_id: str) -> bool:
        return False

    async def wait_for_completion(self, job_id: str, timeout_ms: Optional[int] = None) -> JobStatus:
        raise Timeout(f"Job {job_id} cannot complete: {self.MESSAGE}")

    async def get_user_jobs(self, user_id: str, limit: int = 20) -> List[JobStatus]:
        return []

    async def get_stats(self) -> QueueStats:
        return QueueStats(executing=False)

    async def clean_old_jobs(self) -> int:
        return 0
