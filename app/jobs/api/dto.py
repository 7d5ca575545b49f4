from typing import List, Optional

from pydantic import Field

from app.jobs.entity.job import JobPriority, JobSpec, JobType
from app.llm.entity.chat import CamelModel, ChatMessage, ChatOptions


class EnqueueJobRequest(CamelModel):
    type: JobType = JobType.CHAT
    model: Optional[str] = None
    messages: List[ChatMessage] = Field(min_length=1)
    options: ChatOptions = Field(default_factory=ChatOptions)
    priority: JobPriority = JobPriority.NORMAL
    delay_ms: int = Field(default=0, ge=0)

    def to_spec(self, user_id: str) -> JobSpec:
        return JobSpec(
            type=self.type,
            user_id=user_id,
            model=self.model,
            messages=self.messages,
            options=self.options,
            priority=self.priority,
            delay_ms=self.delay_ms,
        )


class EnqueueJobResponse(CamelModel):
    job_id: str
    message: str
    executing: bool
