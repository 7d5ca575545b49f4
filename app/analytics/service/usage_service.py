# app/analytics/service/usage_service.py
"""
In-process usage accounting.

Records live in a fixed-capacity ring; once it is full the oldest record is
evicted on every append. All read-side aggregates are computed from a
snapshot of the ring, so they always describe some consistent prefix of the
retained history.
"""

import threading
from collections import Counter, OrderedDict, defaultdict, deque
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from app.analytics.entity.usage import PERIOD_WINDOWS, Period, UsageRecord, UsageStatus, utcnow
from app.analytics.service.pricing import calculate_cost
from app.core.config import settings
from app.core.logger import get_logger
from app.llm.entity.chat import Usage

logger = get_logger("UsageService")


class UsageRingBuffer:
    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._records: deque = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, record: UsageRecord) -> None:
        with self._lock:
            self._records.append(record)

    def snapshot(self) -> List[UsageRecord]:
        with self._lock:
            return list(self._records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class UsageService:
    """Append-only request accounting with per-user and global aggregates."""

    def __init__(self, capacity: Optional[int] = None, clock: Callable[[], datetime] = utcnow):
        self.buffer = UsageRingBuffer(capacity or settings.USAGE_MAX_RECORDS)
        self._clock = clock
        # job ids already accounted, bounded like the ring itself
        self._accounted_jobs: "OrderedDict[str, None]" = OrderedDict()
        self._jobs_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------
    def record(self, record: UsageRecord) -> bool:
        """Append a record. A job is only ever accounted once; returns False for a duplicate."""
        if record.job_id is not None:
            with self._jobs_lock:
                if record.job_id in self._accounted_jobs:
                    return False
                self._accounted_jobs[record.job_id] = None
                while len(self._accounted_jobs) > self.buffer.capacity:
                    self._accounted_jobs.popitem(last=False)

        self.buffer.append(record)
        logger.debug(
            f"Tracked: {record.user_id} -> {record.method} {record.endpoint} ({record.response_time_ms:.0f}ms)"
        )
        return True

    def record_chat_usage(
        self,
        *,
        user_id: str,
        endpoint: str,
        method: str,
        model: Optional[str],
        usage: Optional[Usage],
        response_time_ms: float,
        status: UsageStatus = UsageStatus.SUCCESS,
        job_id: Optional[str] = None,
    ) -> bool:
        return self.record(
            UsageRecord(
                user_id=user_id,
                endpoint=endpoint,
                method=method,
                model=model,
                tokens_used=usage.total_tokens if usage else None,
                cost=calculate_cost(model, usage) if usage else None,
                response_time_ms=response_time_ms,
                status=status,
                timestamp=self._clock(),
                job_id=job_id,
            )
        )

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    def _window(self, period: Period, user_id: Optional[str] = None) -> List[UsageRecord]:
        cutoff = self._clock() - PERIOD_WINDOWS[period]
        return [
            r for r in self.buffer.snapshot()
            if r.timestamp >= cutoff and (user_id is None or r.user_id == user_id)
        ]

    def summarize(self, user_id: str, period: Period = "day") -> Dict[str, Any]:
        records = self._window(period, user_id)
        by_endpoint: Counter = Counter()
        by_model: Counter = Counter()
        total_tokens = 0
        total_cost = 0.0
        total_time = 0.0
        succeeded = 0

        for r in records:
            by_endpoint[r.endpoint] += 1
            if r.model:
                by_model[r.model] += 1
            total_tokens += r.tokens_used or 0
            total_cost += r.cost or 0.0
            total_time += r.response_time_ms
            if r.status == UsageStatus.SUCCESS:
                succeeded += 1

        return {
            "userId": user_id,
            "period": period,
            "totalRequests": len(records),
            "successfulRequests": succeeded,
            "failedRequests": len(records) - succeeded,
            "totalTokens": total_tokens,
            "totalCost": total_cost,
            "averageResponseTime": total_time / len(records) if records else 0,
            "byEndpoint": dict(by_endpoint),
            "byModel": dict(by_model),
        }

    def global_stats(self, period: Period = "day") -> Dict[str, Any]:
        records = self._window(period)
        endpoints = Counter(r.endpoint for r in records)
        models = Counter(r.model for r in records if r.model)
        errors = sum(1 for r in records if r.status == UsageStatus.ERROR)
        total_time = sum(r.response_time_ms for r in records)

        return {
            "period": period,
            "totalRequests": len(records),
            "uniqueUsers": len({r.user_id for r in records}),
            "topEndpoints": [{"endpoint": e, "count": c} for e, c in endpoints.most_common(10)],
            "topModels": [{"model": m, "count": c} for m, c in models.most_common(10)],
            "errorRate": errors / len(records) if records else 0,
            "averageResponseTime": total_time / len(records) if records else 0,
        }

    def cost_tracking(self, user_id: str, period: Period = "month") -> Dict[str, Any]:
        records = [r for r in self._window(period, user_id) if r.cost]
        by_model: Dict[str, Dict[str, Any]] = defaultdict(lambda: {"cost": 0.0, "requests": 0})
        by_day: Dict[str, float] = defaultdict(float)
        total = 0.0

        for r in records:
            total += r.cost
            if r.model:
                by_model[r.model]["cost"] += r.cost
                by_model[r.model]["requests"] += 1
            by_day[r.timestamp.date().isoformat()] += r.cost

        return {
            "userId": user_id,
            "period": period,
            "totalCost": total,
            "byModel": sorted(
                ({"model": m, **data} for m, data in by_model.items()), key=lambda x: x["cost"], reverse=True
            ),
            "byDay": [{"date": d, "cost": c} for d, c in sorted(by_day.items())],
        }

    def export(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[UsageRecord]:
        return [
            r for r in self.buffer.snapshot()
            if (start is None or r.timestamp >= start) and (end is None or r.timestamp <= end)
        ]
