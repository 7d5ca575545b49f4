# app/jobs/repository/redis_broker.py
"""
Redis-backed broker.

Key layout under ``queue:{name}:``

    job:{id}        hash with the job fields (payload/result stored as JSON)
    waiting         zset, score = priority * 10^13 + seq (priority, then FIFO)
    delayed         zset, score = due time (ms)
    active          set
    completed       zset, score = finished time (ms)
    failed          zset, score = finished time (ms)
    lock:{id}       lock token, SET NX PX, owned by one worker
    user:{user_id}  zset of the user's jobs, score = created time
    all             zset of every job, score = created time
    seq             FIFO counter

Every multi-key transition runs as a single Lua script.
"""

import json
from typing import Any, Dict, Iterable, List, Optional, Tuple
import uuid

from redis.exceptions import RedisError

from app.core.logger import get_logger
from app.jobs.entity.job import Job, JobState, now_ms
from app.jobs.repository.broker import STALLED_ERROR, QueueBroker
from pkg.redis.client import RedisClient

logger = get_logger("RedisBroker")

# Lua helper: enqueue an id into the waiting zset keeping priority-then-FIFO order
_ENQUEUE_FN = """
local function enqueue(prefix, id, priority)
    local seq = redis.call('INCR', prefix .. 'seq')
    local score = string.format('%.0f', tonumber(priority) * 1e13 + seq)
    redis.call('ZADD', prefix .. 'waiting', score, id)
end
"""

ADD_SCRIPT = _ENQUEUE_FN + """
-- ARGV: prefix, id, status, priority, delay_until, created_at, user_id, field/value pairs...
local prefix, id = ARGV[1], ARGV[2]
redis.call('HSET', prefix .. 'job:' .. id, unpack(ARGV, 8))
if ARGV[3] == 'delayed' then
    redis.call('ZADD', prefix .. 'delayed', ARGV[5], id)
else
    enqueue(prefix, id, ARGV[4])
end
redis.call('ZADD', prefix .. 'user:' .. ARGV[7], ARGV[6], id)
redis.call('ZADD', prefix .. 'all', ARGV[6], id)
return 1
"""

CLAIM_SCRIPT = _ENQUEUE_FN + """
-- ARGV: prefix, now, token, lock_ttl_ms
local prefix, now = ARGV[1], ARGV[2]
local due = redis.call('ZRANGEBYSCORE', prefix .. 'delayed', '-inf', now)
for _, id in ipairs(due) do
    redis.call('ZREM', prefix .. 'delayed', id)
    local jobkey = prefix .. 'job:' .. id
    redis.call('HSET', jobkey, 'status', 'waiting')
    enqueue(prefix, id, redis.call('HGET', jobkey, 'priority') or 5)
end

local popped = redis.call('ZPOPMIN', prefix .. 'waiting')
if #popped == 0 then
    return false
end
local id = popped[1]
local jobkey = prefix .. 'job:' .. id
redis.call('SADD', prefix .. 'active', id)
redis.call('HSET', jobkey, 'status', 'active', 'processed_at', now)
redis.call('HINCRBY', jobkey, 'attempts_made', 1)
redis.call('SET', prefix .. 'lock:' .. id, ARGV[3], 'PX', ARGV[4])
return id
"""

PROGRESS_SCRIPT = """
-- ARGV: prefix, id, token, progress
local prefix, id = ARGV[1], ARGV[2]
if redis.call('GET', prefix .. 'lock:' .. id) ~= ARGV[3] then
    return 0
end
redis.call('HSET', prefix .. 'job:' .. id, 'progress', ARGV[4])
return 1
"""

FINISH_SCRIPT = """
-- ARGV: prefix, id, token, state, now, field, value
local prefix, id = ARGV[1], ARGV[2]
local lockkey = prefix .. 'lock:' .. id
if redis.call('GET', lockkey) ~= ARGV[3] then
    return 0
end
local jobkey = prefix .. 'job:' .. id
redis.call('DEL', lockkey)
redis.call('SREM', prefix .. 'active', id)
redis.call('HSET', jobkey, 'status', ARGV[4], 'finished_at', ARGV[5], ARGV[6], ARGV[7])
if ARGV[4] == 'completed' then
    redis.call('HSET', jobkey, 'progress', 100)
    redis.call('HDEL', jobkey, 'error')
end
redis.call('ZADD', prefix .. ARGV[4], ARGV[5], id)
return 1
"""

BACKOFF_SCRIPT = """
-- ARGV: prefix, id, token, delay_until, error
local prefix, id = ARGV[1], ARGV[2]
local lockkey = prefix .. 'lock:' .. id
if redis.call('GET', lockkey) ~= ARGV[3] then
    return 0
end
redis.call('DEL', lockkey)
redis.call('SREM', prefix .. 'active', id)
redis.call('HSET', prefix .. 'job:' .. id, 'status', 'delayed', 'delay_until', ARGV[4], 'error', ARGV[5], 'progress', 0)
redis.call('ZADD', prefix .. 'delayed', ARGV[4], id)
return 1
"""

REMOVE_IF_SCRIPT = """
-- ARGV: prefix, id, allowed states...
local prefix, id = ARGV[1], ARGV[2]
local jobkey = prefix .. 'job:' .. id
local status = redis.call('HGET', jobkey, 'status')
if not status then
    return 0
end
for i = 3, #ARGV do
    if ARGV[i] == status then
        local user_id = redis.call('HGET', jobkey, 'user_id')
        redis.call('DEL', jobkey, prefix .. 'lock:' .. id)
        redis.call('ZREM', prefix .. 'waiting', id)
        redis.call('ZREM', prefix .. 'delayed', id)
        redis.call('ZREM', prefix .. 'completed', id)
        redis.call('ZREM', prefix .. 'failed', id)
        redis.call('SREM', prefix .. 'active', id)
        redis.call('ZREM', prefix .. 'all', id)
        if user_id then
            redis.call('ZREM', prefix .. 'user:' .. user_id, id)
        end
        return 1
    end
end
return 0
"""

RETRY_SCRIPT = _ENQUEUE_FN + """
-- ARGV: prefix, id
local prefix, id = ARGV[1], ARGV[2]
local jobkey = prefix .. 'job:' .. id
if redis.call('HGET', jobkey, 'status') ~= 'failed' then
    return 0
end
redis.call('ZREM', prefix .. 'failed', id)
redis.call('HSET', jobkey, 'status', 'waiting', 'progress', 0)
redis.call('HDEL', jobkey, 'error', 'finished_at')
enqueue(prefix, id, redis.call('HGET', jobkey, 'priority') or 5)
return 1
"""

REQUEUE_STALLED_SCRIPT = _ENQUEUE_FN + """
-- ARGV: prefix, now, max_stalls, stalled error message
local prefix, now = ARGV[1], ARGV[2]
local recovered = {}
for _, id in ipairs(redis.call('SMEMBERS', prefix .. 'active')) do
    if redis.call('EXISTS', prefix .. 'lock:' .. id) == 0 then
        local jobkey = prefix .. 'job:' .. id
        redis.call('SREM', prefix .. 'active', id)
        local stalls = redis.call('HINCRBY', jobkey, 'stalls', 1)
        if stalls > tonumber(ARGV[3]) then
            redis.call('HSET', jobkey, 'status', 'failed', 'error', ARGV[4], 'finished_at', now)
            redis.call('ZADD', prefix .. 'failed', now, id)
        else
            redis.call('HSET', jobkey, 'status', 'waiting')
            enqueue(prefix, id, redis.call('HGET', jobkey, 'priority') or 5)
        end
        table.insert(recovered, id)
    end
end
return recovered
"""

_INT_FIELDS = ("priority", "progress", "attempts_made", "stalls", "created_at", "processed_at", "finished_at",
               "delay_until")
_JSON_FIELDS = ("payload", "result")


def job_to_hash(job: Job) -> Dict[str, str]:
    data = job.model_dump(mode="json")
    mapping: Dict[str, str] = {}
    for key, value in data.items():
        if value is None:
            continue
        if key in _JSON_FIELDS:
            mapping[key] = json.dumps(value)
        else:
            mapping[key] = str(value)
    return mapping


def job_from_hash(raw: Dict[str, str]) -> Job:
    data: Dict[str, Any] = dict(raw)
    for key in _INT_FIELDS:
        if key in data:
            data[key] = int(float(data[key]))
    for key in _JSON_FIELDS:
        if key in data:
            data[key] = json.loads(data[key])
    return Job.model_validate(data)


class RedisBroker(QueueBroker):
    def __init__(self, redis_client: RedisClient, queue_name: str = "ai-generation", clock=now_ms):
        self.redis = redis_client
        self.prefix = f"queue:{queue_name}:"
        self._clock = clock

    def _key(self, *parts: str) -> str:
        return self.prefix + ":".join(parts)

    async def _run(self, name: str, source: str, *args: Any) -> Any:
        return await self.redis.run_script(name, source, [], [self.prefix, *args])

    async def ping(self) -> bool:
        return await self.redis.ping()

    async def close(self) -> None:
        await self.redis.close()

    async def add(self, job: Job) -> None:
        pairs: List[str] = []
        for field, value in job_to_hash(job).items():
            pairs.extend((field, value))
        await self._run(
            "queue_add",
            ADD_SCRIPT,
            job.id,
            job.status.value,
            job.priority,
            job.delay_until or 0,
            job.created_at,
            job.user_id,
            *pairs,
        )

    async def get(self, job_id: str) -> Optional[Job]:
        raw = await self.redis.client.hgetall(self._key("job", job_id))
        if not raw:
            return None
        return job_from_hash(raw)

    async def claim_next(self, worker_id: str, lock_ttl_ms: int) -> Optional[Tuple[Job, str]]:
        token = f"{worker_id}:{uuid.uuid4()}"
        job_id = await self._run("queue_claim", CLAIM_SCRIPT, self._clock(), token, lock_ttl_ms)
        if not job_id:
            return None
        job = await self.get(job_id)
        if job is None:
            return None
        return job, token

    async def extend_lock(self, job_id: str, token: str, lock_ttl_ms: int) -> bool:
        return await self.redis.extend_lock(self._key("lock", job_id), token, lock_ttl_ms)

    async def update_progress(self, job_id: str, token: str, progress: int) -> bool:
        progress = max(0, min(100, progress))
        return await self._run("queue_progress", PROGRESS_SCRIPT, job_id, token, progress) == 1

    async def complete(self, job_id: str, token: str, result: dict) -> bool:
        result_json = json.dumps(result)
        return await self._run(
            "queue_finish", FINISH_SCRIPT, job_id, token, JobState.COMPLETED.value, self._clock(), "result", result_json
        ) == 1

    async def fail(self, job_id: str, token: str, error: str, retry_in_ms: Optional[int] = None) -> bool:
        if retry_in_ms is not None:
            delay_until = self._clock() + retry_in_ms
            return await self._run("queue_backoff", BACKOFF_SCRIPT, job_id, token, delay_until, error) == 1
        return await self._run(
            "queue_finish", FINISH_SCRIPT, job_id, token, JobState.FAILED.value, self._clock(), "error", error
        ) == 1

    async def remove_if(self, job_id: str, states: Iterable[JobState]) -> bool:
        allowed = [JobState(s).value for s in states]
        return await self._run("queue_remove_if", REMOVE_IF_SCRIPT, job_id, *allowed) == 1

    async def retry_failed(self, job_id: str) -> bool:
        return await self._run("queue_retry", RETRY_SCRIPT, job_id) == 1

    async def requeue_stalled(self, max_stalls: int) -> List[str]:
        recovered = await self._run(
            "queue_requeue_stalled", REQUEUE_STALLED_SCRIPT, self._clock(), max_stalls, STALLED_ERROR
        )
        for job_id in recovered or []:
            logger.warning(f"Recovered stalled job {job_id}")
        return list(recovered or [])

    async def counts(self) -> Dict[JobState, int]:
        client = self.redis.client
        async with client.pipeline(transaction=False) as pipe:
            pipe.zcard(self._key("waiting"))
            pipe.scard(self._key("active"))
            pipe.zcard(self._key("completed"))
            pipe.zcard(self._key("failed"))
            pipe.zcard(self._key("delayed"))
            waiting, active, completed, failed, delayed = await pipe.execute()
        return {
            JobState.WAITING: waiting,
            JobState.ACTIVE: active,
            JobState.COMPLETED: completed,
            JobState.FAILED: failed,
            JobState.DELAYED: delayed,
        }

    async def list_jobs(self, user_id: Optional[str] = None, limit: int = 20) -> List[Job]:
        index = self._key("user", user_id) if user_id is not None else self._key("all")
        client = self.redis.client
        job_ids = await client.zrevrange(index, 0, max(0, limit - 1))
        if not job_ids:
            return []
        async with client.pipeline(transaction=False) as pipe:
            for job_id in job_ids:
                pipe.hgetall(self._key("job", job_id))
            rows = await pipe.execute()
        return [job_from_hash(row) for row in rows if row]

    async def clean(self, older_than_ms: int) -> int:
        cutoff = self._clock() - older_than_ms
        client = self.redis.client
        removed = 0
        for state in (JobState.COMPLETED, JobState.FAILED):
            try:
                job_ids = await client.zrangebyscore(self._key(state.value), "-inf", cutoff)
            except RedisError as e:
                logger.error(f"Failed to scan {state.value} jobs for cleanup: {e}")
                raise
            for job_id in job_ids:
                if await self.remove_if(job_id, [state]):
                    removed += 1
        return removed
