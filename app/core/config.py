import os
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(value: str | None) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Global configuration for environment variables."""

    APP_NAME: str = "AI Gateway"
    ENV: str = os.getenv("ENV", "development")

    # Server config
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", 8080))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "DEBUG")

    # Gemini (direct API key)
    GEMINI_API_KEY: str | None = os.getenv("GEMINI_API_KEY")
    GEMINI_ENDPOINT: str = os.getenv("GEMINI_ENDPOINT", "https://generativelanguage.googleapis.com")

    # Vertex AI
    GOOGLE_CLOUD_PROJECT: str | None = os.getenv("GOOGLE_CLOUD_PROJECT")
    GOOGLE_CLOUD_LOCATION: str = os.getenv("GOOGLE_CLOUD_LOCATION", "us-central1")
    VERTEX_ACCESS_TOKEN: str | None = os.getenv("VERTEX_ACCESS_TOKEN")
    VERTEX_ENDPOINT: str | None = os.getenv("VERTEX_ENDPOINT")

    # OpenRouter
    OPENROUTER_API_KEY: str | None = os.getenv("OPENROUTER_API_KEY")
    OPENROUTER_BASE_URL: str = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
    OPENROUTER_SITE_URL: str = os.getenv("OPENROUTER_SITE_URL", "http://localhost:8080")
    OPENROUTER_SITE_NAME: str = os.getenv("OPENROUTER_SITE_NAME", "AI Gateway")

    # Routing
    PROVIDER_PRIORITY: str = os.getenv("PROVIDER_PRIORITY", "gemini,vertex,openrouter")
    DEFAULT_AI_MODEL: str = os.getenv("DEFAULT_AI_MODEL", "gemini-2.5-flash")
    FALLBACK_MODELS: str = os.getenv("FALLBACK_MODELS", "gemini-2.5-flash,gemini-2.0-flash")
    RETRY_ATTEMPTS: int = int(os.getenv("RETRY_ATTEMPTS", "3"))
    RETRY_DELAY_MS: int = int(os.getenv("RETRY_DELAY_MS", "1000"))
    REQUEST_TIMEOUT_MS: int = int(os.getenv("REQUEST_TIMEOUT_MS", "120000"))

    # Job queue. "redis" needs REDIS_URL (falls back to no-op mode when unreachable),
    # "memory" keeps jobs in-process, "none" disables execution.
    QUEUE_BACKEND: str = os.getenv("QUEUE_BACKEND", "redis")
    REDIS_URL: str | None = os.getenv("REDIS_URL")
    QUEUE_NAME: str = os.getenv("QUEUE_NAME", "ai-generation")
    JOB_LOCK_TTL_MS: int = int(os.getenv("JOB_LOCK_TTL_MS", "30000"))
    JOB_MAX_STALLS: int = int(os.getenv("JOB_MAX_STALLS", "1"))
    JOB_MAX_ATTEMPTS: int = int(os.getenv("JOB_MAX_ATTEMPTS", "3"))
    JOB_BACKOFF_MS: int = int(os.getenv("JOB_BACKOFF_MS", "2000"))
    JOB_RETENTION_SECONDS: int = int(os.getenv("JOB_RETENTION_SECONDS", "86400"))
    JOB_POLL_INTERVAL_MS: int = int(os.getenv("JOB_POLL_INTERVAL_MS", "1000"))
    JOB_WAIT_MAX_MS: int = int(os.getenv("JOB_WAIT_MAX_MS", "120000"))
    WORKER_CONCURRENCY: int = int(os.getenv("WORKER_CONCURRENCY", "1"))

    # Usage accounting
    USAGE_MAX_RECORDS: int = int(os.getenv("USAGE_MAX_RECORDS", "10000"))

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    @property
    def provider_priority(self) -> List[str]:
        return _split_csv(self.PROVIDER_PRIORITY)

    @property
    def fallback_models(self) -> List[str]:
        return _split_csv(self.FALLBACK_MODELS)


settings = Settings()
