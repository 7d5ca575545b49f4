import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.analytics.entity.usage import UsageRecord, UsageStatus
from app.core.auth import ANONYMOUS_USER
from app.core.logger import get_logger

logger = get_logger("UsageTracking")

UNTRACKED_PATHS = {"/health", "/", "/docs", "/openapi.json", "/redoc"}


class UsageTrackingMiddleware(BaseHTTPMiddleware):
    """
    Records one usage entry per request. Chat handlers record their own entry
    (with model and token counts) and mark ``request.state.usage_recorded``;
    everything else, errors included, is recorded here.
    """

    async def dispatch(self, request: Request, call_next):
        if request.url.path in UNTRACKED_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        status = UsageStatus.SUCCESS
        try:
            response = await call_next(request)
            if response.status_code >= 400:
                status = UsageStatus.ERROR
            return response
        except Exception:
            status = UsageStatus.ERROR
            raise
        finally:
            self._record(request, status, (time.perf_counter() - started) * 1000)

    @staticmethod
    def _record(request: Request, status: UsageStatus, elapsed_ms: float) -> None:
        if getattr(request.state, "usage_recorded", False):
            return
        usage_service = getattr(request.app.state, "usage_service", None)
        if usage_service is None:
            return
        route = request.scope.get("route")
        usage_service.record(
            UsageRecord(
                user_id=request.headers.get("X-User-Id", "").strip() or ANONYMOUS_USER,
                endpoint=getattr(route, "path", request.url.path),
                method=request.method,
                response_time_ms=elapsed_ms,
                status=status,
            )
        )
