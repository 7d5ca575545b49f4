from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request

from app.core.auth import CurrentUserIdDep
from app.core.errors import JobNotFound
from app.jobs.api.dto import EnqueueJobRequest, EnqueueJobResponse
from app.jobs.service.queue_service import JobQueue

jobs_router = APIRouter(prefix="/jobs", tags=["Jobs"])


def get_job_queue(request: Request) -> JobQueue:
    """Dependency to get the job queue (broker-backed or NullQueue) from app.state."""
    return request.app.state.job_queue


JobQueueDep = Annotated[JobQueue, Depends(get_job_queue)]


@jobs_router.post("", status_code=202)
async def enqueue_job(body: EnqueueJobRequest, user_id: CurrentUserIdDep, queue: JobQueueDep):
    job_id = await queue.enqueue(body.to_spec(user_id))
    message = "Job queued for processing" if queue.is_executing else "Job accepted; queue unavailable, it will not run"
    data = EnqueueJobResponse(job_id=job_id, message=message, executing=queue.is_executing)
    return {"success": True, "data": data.to_wire()}


# Static paths are declared before /{job_id} so they are not captured as ids
@jobs_router.get("/stats")
async def queue_stats(queue: JobQueueDep):
    stats = await queue.get_stats()
    return {"success": True, "data": stats.to_wire()}


@jobs_router.get("")
async def list_user_jobs(
    user_id: CurrentUserIdDep,
    queue: JobQueueDep,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
):
    """Most recent jobs of the calling user."""
    jobs = await queue.get_user_jobs(user_id, limit)
    return {"success": True, "data": [job.to_wire() for job in jobs]}


@jobs_router.get("/{job_id}")
async def get_job_status(job_id: str, queue: JobQueueDep):
    status = await queue.get_status(job_id)
    if status is None:
        raise JobNotFound(f"Job {job_id} not found")
    return {"success": True, "data": status.to_wire()}


@jobs_router.get("/{job_id}/wait")
async def wait_for_job(
    job_id: str,
    queue: JobQueueDep,
    timeout: Annotated[Optional[int], Query(ge=1, le=120000, description="milliseconds")] = None,
):
    """Block until the job completes or fails, up to ``timeout`` ms."""
    status = await queue.wait_for_completion(job_id, timeout)
    return {"success": True, "data": status.to_wire()}


@jobs_router.delete("/{job_id}")
async def cancel_job(job_id: str, queue: JobQueueDep):
    cancelled = await queue.cancel(job_id)
    return {"success": True, "data": {"cancelled": cancelled}}


@jobs_router.post("/{job_id}/retry")
async def retry_job(job_id: str, queue: JobQueueDep):
    retried = await queue.retry(job_id)
    return {"success": True, "data": {"retried": retried}}
