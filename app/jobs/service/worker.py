# app/jobs/service/worker.py
import asyncio
import contextlib
import time
import uuid
from typing import List, Optional

from app.analytics.entity.usage import UsageStatus
from app.analytics.service.usage_service import UsageService
from app.core.config import settings
from app.core.errors import AiError
from app.core.logger import get_logger
from app.jobs.entity.job import Job, JobType
from app.jobs.repository.broker import QueueBroker
from app.llm.service.llm_service import LLMService

logger = get_logger("JobWorker")

PROGRESS_STARTED = 10
PROGRESS_CALLING = 30
PROGRESS_DONE = 100


class LockLost(Exception):
    """The worker no longer owns the job it is executing."""


class JobWorker:
    """
    Pulls jobs from the broker and runs them through the LLM service.

    Each of ``concurrency`` loops owns at most one job at a time and keeps its
    lock alive with a heartbeat. Retryable failures put the job back as
    ``delayed`` with an exponential backoff until ``max_attempts`` claims have
    been used; other failures are final. A separate sweeper loop recovers jobs
    whose worker died.
    """

    def __init__(
        self,
        broker: QueueBroker,
        llm_service: LLMService,
        usage_service: Optional[UsageService] = None,
        concurrency: Optional[int] = None,
        lock_ttl_ms: Optional[int] = None,
        poll_interval_ms: Optional[int] = None,
        max_stalls: Optional[int] = None,
        max_attempts: Optional[int] = None,
        backoff_ms: Optional[int] = None,
    ):
        self.broker = broker
        self.llm_service = llm_service
        self.usage_service = usage_service
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.lock_ttl_ms = lock_ttl_ms or settings.JOB_LOCK_TTL_MS
        self.poll_interval_ms = poll_interval_ms or settings.JOB_POLL_INTERVAL_MS
        self.max_stalls = max_stalls if max_stalls is not None else settings.JOB_MAX_STALLS
        self.max_attempts = max_attempts or settings.JOB_MAX_ATTEMPTS
        self.backoff_ms = backoff_ms if backoff_ms is not None else settings.JOB_BACKOFF_MS
        self.worker_id = f"worker-{uuid.uuid4().hex[:8]}"
        self._tasks: List[asyncio.Task] = []
        self._stopping = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._tasks:
            return
        self._stopping.clear()
        for index in range(self.concurrency):
            self._tasks.append(asyncio.create_task(self._run_loop(index), name=f"{self.worker_id}-{index}"))
        self._tasks.append(asyncio.create_task(self._sweep_loop(), name=f"{self.worker_id}-sweeper"))
        logger.info(f"{self.worker_id} started with concurrency={self.concurrency}")

    async def stop(self) -> None:
        self._stopping.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        logger.info(f"{self.worker_id} stopped")

    async def _idle(self, ms: int) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stopping.wait(), ms / 1000)

    async def _run_loop(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                processed = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # broker trouble; back off and keep the loop alive
                logger.error(f"{self.worker_id}-{index} loop error: {e}", exc_info=True)
                processed = False
            if not processed:
                await self._idle(self.poll_interval_ms)

    async def _sweep_loop(self) -> None:
        while not self._stopping.is_set():
            await self._idle(self.lock_ttl_ms)
            try:
                await self.broker.requeue_stalled(self.max_stalls)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Stall sweep failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def run_once(self) -> bool:
        """Claim and execute a single job. Returns False when nothing was waiting."""
        claimed = await self.broker.claim_next(self.worker_id, self.lock_ttl_ms)
        if claimed is None:
            return False
        job, token = claimed
        await self._execute(job, token)
        return True

    async def _heartbeat(self, job_id: str, token: str) -> None:
        interval = self.lock_ttl_ms / 3 / 1000
        while True:
            await asyncio.sleep(interval)
            if not await self.broker.extend_lock(job_id, token, self.lock_ttl_ms):
                logger.warning(f"Lost lock on job {job_id}")
                return

    async def _progress(self, job: Job, token: str, progress: int) -> None:
        if not await self.broker.update_progress(job.id, token, progress):
            raise LockLost(f"lost ownership of job {job.id}")

    async def _execute(self, job: Job, token: str) -> None:
        logger.info(f"Processing job {job.id} type={job.type.value} attempt={job.attempts_made}")
        started = time.perf_counter()
        heartbeat = asyncio.create_task(self._heartbeat(job.id, token))
        model = job.model
        try:
            await self._progress(job, token, PROGRESS_STARTED)
            request = self.llm_service.with_defaults(job.spec().to_chat_request())
            model = request.model
            await self._progress(job, token, PROGRESS_CALLING)

            result = await self._dispatch(job, request)

            response = result.response
            payload = response.to_wire()
            payload["attemptsMade"] = result.attempts_made
            if await self.broker.complete(job.id, token, payload):
                logger.info(f"Job {job.id} completed via {response.provider}/{response.model}")
                self._track(job, result.model, response.usage, started, UsageStatus.SUCCESS)
            else:
                logger.warning(f"Job {job.id} finished after losing its lock; result discarded")
        except LockLost as e:
            logger.warning(str(e))
        except AiError as e:
            if e.retryable and job.attempts_made < self.max_attempts:
                delay_ms = self.retry_delay_ms(job.attempts_made)
                logger.warning(
                    f"Job {job.id} attempt {job.attempts_made}/{self.max_attempts} failed ({e.code}); "
                    f"retrying in {delay_ms}ms"
                )
                await self._fail(job, token, e.message, model, started, retry_in_ms=delay_ms)
            else:
                logger.error(f"Job {job.id} failed: {e.code} {e.message}")
                await self._fail(job, token, e.message, model, started)
        except Exception as e:
            logger.error(f"Job {job.id} failed unexpectedly: {e}", exc_info=True)
            await self._fail(job, token, str(e) or type(e).__name__, model, started)
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

    async def _dispatch(self, job: Job, request):
        # vision, audio and function calling are request shapes of the same chat call
        if job.type in (JobType.CHAT, JobType.VISION, JobType.AUDIO, JobType.FUNCTION_CALLING):
            return await self.llm_service.generate(request)
        raise ValueError(f"Unknown job type: {job.type}")

    def retry_delay_ms(self, attempts_made: int) -> int:
        """Exponential backoff: base, 2 x base, 4 x base, ..."""
        return self.backoff_ms * 2 ** (attempts_made - 1)

    async def _fail(
        self, job: Job, token: str, message: str, model: Optional[str], started: float,
        retry_in_ms: Optional[int] = None,
    ) -> None:
        if await self.broker.fail(job.id, token, message, retry_in_ms):
            self._track(job, model, None, started, UsageStatus.ERROR)

    def _track(self, job: Job, model, usage, started: float, status: UsageStatus) -> None:
        if self.usage_service is None:
            return
        self.usage_service.record_chat_usage(
            user_id=job.user_id,
            endpoint=f"jobs:{job.type.value}",
            method="WORKER",
            model=model,
            usage=usage,
            response_time_ms=(time.perf_counter() - started) * 1000,
            status=status,
            job_id=f"{job.id}:{job.attempts_made}",
        )
