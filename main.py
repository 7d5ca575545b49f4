from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from starlette.middleware.base import BaseHTTPMiddleware
from redis.exceptions import RedisError
import uvicorn
from app.analytics.api.middleware import UsageTrackingMiddleware
from app.analytics.api.route import analytics_router
from app.analytics.service.usage_service import UsageService
from app.core.config import settings
from app.core.errors import AiError
from app.core.logger import get_logger
from app.jobs.api.route import jobs_router
from app.jobs.repository.broker import InMemoryBroker, QueueBroker
from app.jobs.repository.redis_broker import RedisBroker
from app.jobs.service.queue_service import BrokerJobQueue, JobQueue, NullQueue
from app.jobs.service.worker import JobWorker
from app.llm.api.route import chat_router
from app.llm.models.registry import ModelRegistry
from app.llm.service.llm_service import LLMService
from app.llm.service.provider.gemini import GeminiProvider
from app.llm.service.provider.openrouter import OpenRouterProvider
from app.llm.service.provider.vertex import VertexProvider
from app.llm.service.router_service import RoutingEngine
from pkg.redis.client import RedisClient
from dotenv import load_dotenv
import asyncio
import contextlib
import sys
from typing import Optional

# Load .env so os.getenv picks up values from your .env file
load_dotenv()

logger = get_logger("ai-gateway")

SERVICE_NAME = "ai-gateway"
VERSION = "1.0.0"


def build_llm_service() -> LLMService:
    registry = ModelRegistry()
    providers = [GeminiProvider(), VertexProvider(), OpenRouterProvider()]
    engine = RoutingEngine(
        providers,
        registry,
        retry_attempts=settings.RETRY_ATTEMPTS,
        retry_delay_ms=settings.RETRY_DELAY_MS,
        fallback_models=settings.fallback_models,
        provider_priority=settings.provider_priority,
    )
    enabled = engine.enabled_providers()
    if enabled:
        logger.info(f"AI providers enabled: {', '.join(enabled)}")
    else:
        logger.warning("No AI providers configured; generation requests will fail with AI_NO_PROVIDER")
    return LLMService(engine, registry, default_model=settings.DEFAULT_AI_MODEL)


async def connect_broker() -> Optional[QueueBroker]:
    """Pick the broker once at startup. None means the queue runs in no-op mode."""
    backend = settings.QUEUE_BACKEND.lower()
    if backend == "memory":
        logger.info("Using in-process job broker")
        return InMemoryBroker()
    if backend != "redis" or not settings.REDIS_URL:
        logger.warning("Job queue disabled (no Redis configured); running in no-op mode")
        return None

    redis_client = RedisClient(logger, url=settings.REDIS_URL)
    try:
        await asyncio.wait_for(redis_client.connect(), timeout=10.0)
    except (RedisError, OSError, asyncio.TimeoutError) as e:
        logger.warning(f"Redis unreachable ({e}); job queue running in no-op mode")
        return None
    return RedisBroker(redis_client, settings.QUEUE_NAME)


async def clean_jobs_periodically(queue: JobQueue, interval_s: float = 3600) -> None:
    while True:
        await asyncio.sleep(interval_s)
        try:
            await queue.clean_old_jobs()
        except RedisError as e:
            logger.error(f"Job cleanup failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager - ensures startup completes before accepting requests"""
    logger.info("AI Gateway starting up...")
    logger.info(f"Python: {sys.version}")

    cleanup_task: Optional[asyncio.Task] = None
    worker: Optional[JobWorker] = None
    try:
        llm_service = build_llm_service()
        usage_service = UsageService(settings.USAGE_MAX_RECORDS)

        broker = await connect_broker()
        if broker is not None:
            job_queue: JobQueue = BrokerJobQueue(broker)
            worker = JobWorker(broker, llm_service, usage_service)
            worker.start()
            cleanup_task = asyncio.create_task(clean_jobs_periodically(job_queue))
        else:
            job_queue = NullQueue()

        app.state.logger = logger
        app.state.llm_service = llm_service
        app.state.usage_service = usage_service
        app.state.job_queue = job_queue
        app.state.worker = worker
        app.state.startup_complete = True
        app.state.startup_error = None
        logger.info("✓ Startup complete - application is ready!")
    except Exception as e:
        logger.error(f"✗ Startup failed: {e}", exc_info=True)
        logger.error("Application will start in degraded mode - check logs above")
        app.state.logger = logger
        app.state.startup_complete = False
        app.state.startup_error = str(e)

    yield

    logger.info("AI Gateway shutting down...")
    if cleanup_task is not None:
        cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await cleanup_task
    if worker is not None:
        await worker.stop()
    job_queue = getattr(app.state, "job_queue", None)
    if job_queue is not None:
        await job_queue.close()


# Startup Check Middleware - ensures no requests processed before startup completes
class StartupCheckMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        # Allow health checks during startup
        if request.url.path in ["/health", "/", "/docs", "/openapi.json"]:
            return await call_next(request)

        if not getattr(request.app.state, "startup_complete", False):
            startup_error = getattr(request.app.state, "startup_error", None)
            message = (
                f"Service initialization failed: {startup_error}" if startup_error
                else "Service is starting up. Please retry in a few seconds."
            )
            return JSONResponse(
                status_code=503,
                content={"success": False, "code": "SERVICE_UNAVAILABLE", "message": message},
            )

        return await call_next(request)


async def ai_error_handler(request: Request, exc: AiError):
    """Every gateway error becomes the stable {success, code, message} envelope."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.code}: {exc.message} "
                     f"(provider={exc.provider} model={exc.model} upstream_status={exc.upstream_status})")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_envelope())


async def http_exception_handler(request: Request, exc: HTTPException):
    """Convert HTTPException to standardized error format"""
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "code": "HTTP_ERROR", "message": exc.detail},
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return JSONResponse(
        status_code=422,
        content={"success": False, "code": "AI_INVALID_REQUEST", "message": errors or "Invalid request"},
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    # stack traces stay in the logs
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"success": False, "code": "AI_INTERNAL_ERROR", "message": "Internal server error"},
    )


def create_app(app_lifespan=lifespan) -> FastAPI:
    app = FastAPI(
        title="AI Gateway",
        description="Unified REST API over Gemini, Vertex AI and OpenRouter with a deferred job queue",
        version=VERSION,
        lifespan=app_lifespan,
    )

    # Add middleware in correct order
    app.add_middleware(UsageTrackingMiddleware)
    app.add_middleware(StartupCheckMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # adjust in prod
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AiError, ai_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Routers
    app.include_router(chat_router)
    app.include_router(jobs_router)
    app.include_router(analytics_router)

    @app.get("/health")
    async def health(request: Request):
        """Health check that shows provider availability and queue mode"""
        state = request.app.state
        if not getattr(state, "startup_complete", False):
            startup_error = getattr(state, "startup_error", None)
            # 200 for platform health checks even during startup
            return JSONResponse(
                status_code=200,
                content={
                    "status": "starting" if startup_error is None else "degraded",
                    "service": SERVICE_NAME,
                    "message": startup_error or "Application is still starting up...",
                    "startup_complete": False,
                },
            )

        providers = state.llm_service.provider_status()
        job_queue: JobQueue = state.job_queue
        checks = {
            "providers": providers,
            "queue": "executing" if job_queue.is_executing else "noop",
        }
        healthy = any(providers.values()) and job_queue.is_executing
        return {
            "status": "ok" if healthy else "degraded",
            "service": SERVICE_NAME,
            "checks": checks,
            "startup_complete": True,
        }

    @app.get("/")
    async def root(request: Request):
        """Root endpoint - simple check that app is running"""
        job_queue = getattr(request.app.state, "job_queue", None)
        llm_service = getattr(request.app.state, "llm_service", None)
        return {
            "service": SERVICE_NAME,
            "version": VERSION,
            "status": "running",
            "providers": llm_service.engine.enabled_providers() if llm_service else [],
            "queue_executing": bool(job_queue and job_queue.is_executing),
            "health_check": "/health",
        }

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("main:app", host=settings.HOST, port=settings.PORT, reload=settings.ENV == "development")
