from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import ConfigDict, Field

from app.llm.entity.chat import CamelModel

Period = Literal["day", "week", "month"]

PERIOD_WINDOWS = {
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UsageStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class UsageRecord(CamelModel):
    """One observed request. Never mutated after creation."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    endpoint: str
    method: str
    model: Optional[str] = None
    tokens_used: Optional[int] = None
    cost: Optional[float] = None
    response_time_ms: float
    status: UsageStatus
    timestamp: datetime = Field(default_factory=utcnow)
    job_id: Optional[str] = None
