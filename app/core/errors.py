"""
Error taxonomy shared by adapters, the routing engine, the job worker and the
HTTP layer.

Adapters translate raw vendor failures into one of these classes; everything
downstream only looks at the class (and its ``retryable`` flag), never at
vendor strings.
"""

import asyncio
import json
from typing import Any, Dict, Optional

import httpx


class AiError(Exception):
    """Base class for every gateway error surfaced to callers."""

    code: str = "AI_INTERNAL_ERROR"
    status_code: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        upstream_status: Optional[int] = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.model = model
        self.upstream_status = upstream_status
        self.details = details

    def to_envelope(self) -> Dict[str, Any]:
        return {"success": False, "code": self.code, "message": self.message}

    def __repr__(self) -> str:
        return f"<{type(self).__name__} code={self.code} provider={self.provider} model={self.model}>"


class InvalidRequest(AiError):
    code = "AI_INVALID_REQUEST"
    status_code = 400


class QuotaExceeded(AiError):
    code = "AI_QUOTA_EXCEEDED"
    status_code = 429
    retryable = True


class SafetyBlocked(AiError):
    code = "AI_SAFETY_BLOCKED"
    status_code = 400


class Transient(AiError):
    code = "AI_TRANSIENT"
    status_code = 502
    retryable = True


class ModelNotAvailable(AiError):
    code = "AI_MODEL_NOT_AVAILABLE"
    status_code = 503


class UnknownModel(AiError):
    code = "AI_UNKNOWN_MODEL"
    status_code = 404


class InvalidConfiguration(AiError):
    code = "AI_INVALID_CONFIGURATION"
    status_code = 400


class NoProviderConfigured(AiError):
    code = "AI_NO_PROVIDER"
    status_code = 503


class UpstreamProtocolError(AiError):
    code = "AI_UPSTREAM_PROTOCOL"
    status_code = 502


class Timeout(AiError):
    code = "AI_TIMEOUT"
    status_code = 504


class JobNotFound(AiError):
    code = "JOB_NOT_FOUND"
    status_code = 404


def _error_type_and_message(body_text: str) -> tuple[Optional[str], Optional[str]]:
    """Pull ``error.type``/``error.status`` and ``error.message`` out of a vendor error body."""
    try:
        body = json.loads(body_text) if body_text else None
    except (TypeError, ValueError):
        return None, None
    if isinstance(body, list) and body:
        body = body[0]
    if not isinstance(body, dict):
        return None, None
    error = body.get("error")
    if isinstance(error, dict):
        return error.get("type") or error.get("status"), error.get("message")
    if isinstance(error, str):
        return None, error
    return None, body.get("message")


def classify_http_error(
    status: int,
    body_text: str = "",
    *,
    provider: Optional[str] = None,
    model: Optional[str] = None,
) -> AiError:
    """Map an upstream HTTP failure onto the taxonomy."""
    error_type, vendor_message = _error_type_and_message(body_text)
    message = vendor_message or f"Upstream returned HTTP {status}"
    kwargs = {"provider": provider, "model": model, "upstream_status": status}

    if status == 429:
        return QuotaExceeded(message, **kwargs)
    if error_type == "model_not_available":
        return ModelNotAvailable(message, **kwargs)
    if status >= 500:
        return Transient(message, **kwargs)
    return InvalidRequest(message, **kwargs)


def classify_transport_error(
    exc: Exception,
    *,
    provider: Optional[str] = None,
    model: Optional[str] = None,
) -> AiError:
    """Network failures and per-call deadline expiry are retryable."""
    if isinstance(exc, asyncio.TimeoutError):
        return Transient("Upstream call exceeded its deadline", provider=provider, model=model)
    if isinstance(exc, httpx.TimeoutException):
        return Transient(f"Upstream call timed out: {exc}", provider=provider, model=model)
    return Transient(f"Upstream connection failed: {exc}", provider=provider, model=model)
