# app/jobs/repository/broker.py
"""
Queue broker contract plus the in-process implementation.

A broker owns job records and the state transitions between them. Every
transition that a worker makes is guarded by the lock token it received from
``claim_next``; once the lock expires or the job leaves ``active`` the token
is worthless, which is what keeps a job to a single active owner.
"""

import asyncio
import itertools
import uuid
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from app.core.logger import get_logger
from app.jobs.entity.job import Job, JobState, TERMINAL_STATES, now_ms

logger = get_logger("QueueBroker")

STALLED_ERROR = "job stalled more than allowable limit"


class QueueBroker(ABC):
    """Durable job storage with atomic claim / finish / cancel / retry."""

    @abstractmethod
    async def add(self, job: Job) -> None:
        pass

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    async def claim_next(self, worker_id: str, lock_ttl_ms: int) -> Optional[Tuple[Job, str]]:
        """Move the best waiting job to ``active``; returns the job and its lock token."""

    @abstractmethod
    async def extend_lock(self, job_id: str, token: str, lock_ttl_ms: int) -> bool:
        pass

    @abstractmethod
    async def update_progress(self, job_id: str, token: str, progress: int) -> bool:
        pass

    @abstractmethod
    async def complete(self, job_id: str, token: str, result: dict) -> bool:
        pass

    @abstractmethod
    async def fail(self, job_id: str, token: str, error: str, retry_in_ms: Optional[int] = None) -> bool:
        """
        Record a failed attempt. With ``retry_in_ms`` the job goes to ``delayed``
        and becomes claimable again once the delay has passed; otherwise it is
        final.
        """

    @abstractmethod
    async def remove_if(self, job_id: str, states: Iterable[JobState]) -> bool:
        """Delete the job only if its current state is one of ``states``."""

    @abstractmethod
    async def retry_failed(self, job_id: str) -> bool:
        """Move a ``failed`` job back to ``waiting``, keeping ``attempts_made``."""

    @abstractmethod
    async def requeue_stalled(self, max_stalls: int) -> List[str]:
        """Recover active jobs whose lock expired. Returns the affected job ids."""

    @abstractmethod
    async def counts(self) -> Dict[JobState, int]:
        pass

    @abstractmethod
    async def list_jobs(self, user_id: Optional[str] = None, limit: int = 20) -> List[Job]:
        """Newest first."""

    @abstractmethod
    async def clean(self, older_than_ms: int) -> int:
        """Drop finished jobs that finished more than ``older_than_ms`` ago."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class InMemoryBroker(QueueBroker):
    """Single-process broker for development and tests. Same contract, one asyncio.Lock."""

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock
        self._lock = asyncio.Lock()
        self._jobs: Dict[str, Job] = {}
        self._waiting: Dict[str, Tuple[int, int]] = {}  # id -> (priority, seq)
        self._owners: Dict[str, Tuple[str, int]] = {}  # id -> (token, lock expiry ms)
        self._seq = itertools.count()

    def _enqueue(self, job: Job) -> None:
        self._waiting[job.id] = (job.priority, next(self._seq))

    def _promote_delayed(self, now: int) -> None:
        for job in self._jobs.values():
            if job.status == JobState.DELAYED and (job.delay_until or 0) <= now:
                job.status = JobState.WAITING
                self._enqueue(job)

    def _owned(self, job_id: str, token: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        owner = self._owners.get(job_id)
        if job is None or job.status != JobState.ACTIVE or owner is None:
            return None
        owner_token, expires_at = owner
        if owner_token != token or expires_at <= self._clock():
            return None
        return job

    async def add(self, job: Job) -> None:
        async with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)
            if job.status == JobState.WAITING:
                self._enqueue(job)

    async def get(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    async def claim_next(self, worker_id: str, lock_ttl_ms: int) -> Optional[Tuple[Job, str]]:
        async with self._lock:
            now = self._clock()
            self._promote_delayed(now)
            if not self._waiting:
                return None
            job_id = min(self._waiting, key=self._waiting.__getitem__)
            del self._waiting[job_id]

            job = self._jobs[job_id]
            token = f"{worker_id}:{uuid.uuid4()}"
            job.status = JobState.ACTIVE
            job.processed_at = now
            job.attempts_made += 1
            self._owners[job_id] = (token, now + lock_ttl_ms)
            return job.model_copy(deep=True), token

    async def extend_lock(self, job_id: str, token: str, lock_ttl_ms: int) -> bool:
        async with self._lock:
            if self._owned(job_id, token) is None:
                return False
            self._owners[job_id] = (token, self._clock() + lock_ttl_ms)
            return True

    async def update_progress(self, job_id: str, token: str, progress: int) -> bool:
        async with self._lock:
            job = self._owned(job_id, token)
            if job is None:
                return False
            job.progress = max(0, min(100, progress))
            return True

    async def _finish(self, job_id: str, token: str, state: JobState, result=None, error=None) -> bool:
        async with self._lock:
            job = self._owned(job_id, token)
            if job is None:
                return False
            job.status = state
            job.finished_at = self._clock()
            if state == JobState.COMPLETED:
                job.progress = 100
                job.result = result
                job.error = None
            else:
                job.error = error
            self._owners.pop(job_id, None)
            return True

    async def complete(self, job_id: str, token: str, result: dict) -> bool:
        return await self._finish(job_id, token, JobState.COMPLETED, result=result)

    async def fail(self, job_id: str, token: str, error: str, retry_in_ms: Optional[int] = None) -> bool:
        if retry_in_ms is None:
            return await self._finish(job_id, token, JobState.FAILED, error=error)
        async with self._lock:
            job = self._owned(job_id, token)
            if job is None:
                return False
            job.status = JobState.DELAYED
            job.delay_until = self._clock() + retry_in_ms
            job.progress = 0
            job.error = error
            self._owners.pop(job_id, None)
            return True

    async def remove_if(self, job_id: str, states: Iterable[JobState]) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in set(states):
                return False
            del self._jobs[job_id]
            self._waiting.pop(job_id, None)
            self._owners.pop(job_id, None)
            return True

    async def retry_failed(self, job_id: str) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobState.FAILED:
                return False
            job.status = JobState.WAITING
            job.progress = 0
            job.error = None
            job.finished_at = None
            self._enqueue(job)
            return True

    async def requeue_stalled(self, max_stalls: int) -> List[str]:
        async with self._lock:
            now = self._clock()
            recovered = []
            for job_id, (_, expires_at) in list(self._owners.items()):
                if expires_at > now:
                    continue
                job = self._jobs[job_id]
                del self._owners[job_id]
                job.stalls += 1
                if job.stalls > max_stalls:
                    job.status = JobState.FAILED
                    job.error = STALLED_ERROR
                    job.finished_at = now
                    logger.warning(f"Job {job_id} failed after {job.stalls} stalls")
                else:
                    job.status = JobState.WAITING
                    self._enqueue(job)
                    logger.warning(f"Job {job_id} stalled; moved back to waiting")
                recovered.append(job_id)
            return recovered

    async def counts(self) -> Dict[JobState, int]:
        async with self._lock:
            counts = {state: 0 for state in JobState}
            for job in self._jobs.values():
                counts[job.status] += 1
            return counts

    async def list_jobs(self, user_id: Optional[str] = None, limit: int = 20) -> List[Job]:
        async with self._lock:
            jobs = [j for j in self._jobs.values() if user_id is None or j.user_id == user_id]
            jobs.sort(key=lambda j: j.created_at, reverse=True)
            return [j.model_copy(deep=True) for j in jobs[:limit]]

    async def clean(self, older_than_ms: int) -> int:
        async with self._lock:
            cutoff = self._clock() - older_than_ms
            expired = [
                job_id for job_id, job in self._jobs.items()
                if job.status in TERMINAL_STATES and (job.finished_at or 0) < cutoff
            ]
            for job_id in expired:
                del self._jobs[job_id]
            return len(expired)
