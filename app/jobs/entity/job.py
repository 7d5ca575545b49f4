# app/jobs/entity/job.py
"""Deferred generation jobs and their lifecycle states."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field

from app.llm.entity.chat import CamelModel, ChatMessage, ChatOptions, ChatRequest


class JobType(str, Enum):
    CHAT = "chat"
    VISION = "vision"
    AUDIO = "audio"
    FUNCTION_CALLING = "function_calling"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})
CANCELLABLE_STATES = frozenset({JobState.WAITING, JobState.DELAYED})


class JobPriority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


# lower value is served first
PRIORITY_MAP = {JobPriority.HIGH: 1, JobPriority.NORMAL: 5, JobPriority.LOW: 10}


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


class JobSpec(CamelModel):
    """What a caller submits to run later."""
    type: JobType = JobType.CHAT
    user_id: str
    model: Optional[str] = None
    messages: List[ChatMessage]
    options: ChatOptions = Field(default_factory=ChatOptions)
    priority: JobPriority = JobPriority.NORMAL
    delay_ms: int = 0

    def to_chat_request(self, default_model: Optional[str] = None) -> ChatRequest:
        model = self.model or self.options.model or default_model
        options = self.options.model_copy(update={"model": model})
        return ChatRequest(messages=self.messages, options=options)


class Job(CamelModel):
    """Broker-side job record. Timestamps are epoch milliseconds."""
    id: str
    name: str
    type: JobType
    user_id: str
    model: Optional[str] = None
    payload: Dict[str, Any]
    priority: int = PRIORITY_MAP[JobPriority.NORMAL]
    status: JobState = JobState.WAITING
    progress: int = 0
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    attempts_made: int = 0
    stalls: int = 0
    created_at: int = Field(default_factory=now_ms)
    processed_at: Optional[int] = None
    finished_at: Optional[int] = None
    delay_until: Optional[int] = None

    @classmethod
    def from_spec(cls, job_id: str, spec: JobSpec, created_at: Optional[int] = None) -> "Job":
        created = created_at if created_at is not None else now_ms()
        delayed = spec.delay_ms > 0
        return cls(
            id=job_id,
            name=f"ai-{spec.type.value}",
            type=spec.type,
            user_id=spec.user_id,
            model=spec.model or spec.options.model,
            payload=spec.model_dump(mode="json", by_alias=True, exclude_none=True),
            priority=PRIORITY_MAP[spec.priority],
            status=JobState.DELAYED if delayed else JobState.WAITING,
            created_at=created,
            delay_until=created + spec.delay_ms if delayed else None,
        )

    def spec(self) -> JobSpec:
        return JobSpec.model_validate(self.payload)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES


class JobStatus(CamelModel):
    """Read-only snapshot handed to polling clients."""
    job_id: str
    status: JobState
    progress: int = 0
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    attempts_made: int = 0
    created_at: Optional[int] = None
    processed_at: Optional[int] = None
    finished_at: Optional[int] = None
    executing: bool = True
    message: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobStatus":
        return cls(
            job_id=job.id,
            status=job.status,
            progress=job.progress,
            result=job.result,
            error=job.error,
            attempts_made=job.attempts_made,
            created_at=job.created_at,
            processed_at=job.processed_at,
            finished_at=job.finished_at,
        )


class QueueStats(CamelModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    executing: bool = True
