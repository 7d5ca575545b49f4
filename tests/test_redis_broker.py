# Tests for the Redis broker's hash encoding and script calls, against a fake client (no server needed).

import json

import pytest

from app.jobs.entity.job import CANCELLABLE_STATES, Job, JobPriority, JobSpec, JobState
from app.jobs.repository.broker import STALLED_ERROR
from app.jobs.repository.redis_broker import RedisBroker, job_from_hash, job_to_hash
from app.llm.entity.chat import ChatMessage
from fakes import ManualClock


class FakeRedis:
    def __init__(self, hashes=None):
        self.hashes = hashes or {}

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))


class FakeRedisClient:
    """Records script invocations and answers them from a queue of canned results."""

    def __init__(self, results=(), hashes=None):
        self.calls = []
        self._results = list(results)
        self.client = FakeRedis(hashes)

    async def run_script(self, name, source, keys, args):
        self.calls.append((name, args))
        return self._results.pop(0) if self._results else None


def _job(**kwargs):
    spec = JobSpec(
        user_id="user-1",
        model="gemini-2.5-flash",
        messages=[ChatMessage(role="user", content="hi")],
        priority=kwargs.pop("priority", JobPriority.HIGH),
        delay_ms=kwargs.pop("delay_ms", 0),
    )
    return Job.from_spec("job-1", spec, created_at=1_700_000_000_000)


class TestHashEncoding:

    def test_values_are_strings_and_nones_dropped(self):
        mapping = job_to_hash(_job())

        assert all(isinstance(v, str) for v in mapping.values())
        assert mapping["status"] == "waiting"
        assert mapping["priority"] == "1"
        assert "result" not in mapping
        assert json.loads(mapping["payload"])["userId"] == "user-1"

    def test_decoding_restores_types(self):
        mapping = job_to_hash(_job())
        mapping.update({"status": "completed", "progress": "100", "attempts_made": "2",
                        "result": json.dumps({"text": "done"}), "finished_at": "1700000000500"})

        job = job_from_hash(mapping)

        assert job.status == JobState.COMPLETED
        assert job.attempts_made == 2
        assert job.finished_at == 1_700_000_000_500
        assert job.result == {"text": "done"}
        assert job.spec().messages[0].content == "hi"


class TestScriptCalls:

    @pytest.mark.asyncio
    async def test_add_passes_routing_fields_before_hash_pairs(self):
        client = FakeRedisClient([1])
        broker = RedisBroker(client, "ai-generation")

        await broker.add(_job(delay_ms=500))

        name, args = client.calls[0]
        assert name == "queue_add"
        assert args[:8] == [
            "queue:ai-generation:", "job-1", "delayed", 1, 1_700_000_000_500, 1_700_000_000_000, "user-1", "id",
        ]

    @pytest.mark.asyncio
    async def test_claim_on_empty_queue(self):
        broker = RedisBroker(FakeRedisClient([None]), clock=ManualClock())
        assert await broker.claim_next("w1", 30_000) is None

    @pytest.mark.asyncio
    async def test_claim_reads_back_the_job(self):
        stored = job_to_hash(_job())
        stored.update({"status": "active", "attempts_made": "1"})
        client = FakeRedisClient(["job-1"], hashes={"queue:ai-generation:job:job-1": stored})
        broker = RedisBroker(client, clock=ManualClock())

        job, token = await broker.claim_next("w1", 30_000)

        assert job.status == JobState.ACTIVE
        assert token.startswith("w1:")
        _, args = client.calls[0]
        assert args[2] == token

    @pytest.mark.asyncio
    async def test_finish_and_cancel_results(self):
        client = FakeRedisClient([1, 0, 1])
        broker = RedisBroker(client, clock=ManualClock())

        assert await broker.complete("job-1", "tok", {"text": "x"}) is True
        assert await broker.fail("job-1", "stale", "boom") is False
        assert await broker.remove_if("job-1", CANCELLABLE_STATES) is True

        assert client.calls[0][1][3] == "completed"
        assert json.loads(client.calls[0][1][6]) == {"text": "x"}
        assert set(client.calls[2][1][2:]) == {"waiting", "delayed"}

    @pytest.mark.asyncio
    async def test_fail_with_retry_delay_schedules_backoff(self):
        clock = ManualClock()
        client = FakeRedisClient([1])
        broker = RedisBroker(client, clock=clock)

        assert await broker.fail("job-1", "tok", "upstream down", retry_in_ms=4000) is True

        name, args = client.calls[0]
        assert name == "queue_backoff"
        assert args == ["queue:ai-generation:", "job-1", "tok", clock.now + 4000, "upstream down"]

    @pytest.mark.asyncio
    async def test_requeue_stalled_passes_limit(self):
        client = FakeRedisClient([["job-1"]])
        broker = RedisBroker(client, clock=ManualClock())

        assert await broker.requeue_stalled(max_stalls=1) == ["job-1"]
        assert client.calls[0][1][2:] == [1, STALLED_ERROR]
