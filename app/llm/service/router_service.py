# app/llm/service/router_service.py
import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Awaitable, Callable, List, Optional, Sequence, Tuple

from app.core.errors import AiError, ModelNotAvailable, NoProviderConfigured, UpstreamProtocolError
from app.core.logger import get_logger
from app.llm.entity.chat import ChatRequest, ChatResponse, StreamChunk
from app.llm.models.registry import ModelDescriptor, ModelRegistry, validate_options
from app.llm.service.provider.base_provider import BaseProvider

logger = get_logger("RoutingEngine")

SUCCESS = "success"


@dataclass(frozen=True)
class Attempt:
    provider: str
    model: str
    outcome: str  # "success" or the error code


@dataclass
class RoutingResult:
    response: ChatResponse
    attempts: List[Attempt] = field(default_factory=list)

    @property
    def attempts_made(self) -> int:
        """Failed invocations that preceded the successful one."""
        return sum(1 for a in self.attempts if a.outcome != SUCCESS)

    @property
    def provider(self) -> Optional[str]:
        return self.response.provider

    @property
    def model(self) -> str:
        """Registry id of the model that answered; vendors may report a dated version instead."""
        return self.attempts[-1].model if self.attempts else self.response.model


Invoker = Callable[[BaseProvider, ChatRequest], Awaitable[Any]]


class RoutingEngine:
    """
    Picks a provider for each request, retries retryable failures with a
    linear backoff and substitutes a fallback model once the primary model is
    exhausted or unavailable.

    Selection walks a fixed priority list, so the same availability state and
    failure sequence always produce the same provider/model sequence.
    """

    def __init__(
        self,
        providers: Sequence[BaseProvider],
        registry: ModelRegistry,
        retry_attempts: int = 3,
        retry_delay_ms: int = 1000,
        fallback_models: Optional[Sequence[str]] = None,
        provider_priority: Optional[Sequence[str]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay_ms = retry_delay_ms
        self.fallback_models = list(fallback_models or [])
        self._sleep = sleep

        priority = list(provider_priority or [])
        by_name = {p.name: p for p in providers}
        ordered = [by_name[name] for name in priority if name in by_name]
        self.providers: List[BaseProvider] = ordered + [p for p in providers if p not in ordered]

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------
    def select_provider(self, descriptor: ModelDescriptor) -> BaseProvider:
        for provider in self.providers:
            if provider.is_enabled() and provider.supports(descriptor):
                return provider
        raise NoProviderConfigured(
            f"No AI provider configured for model '{descriptor.id}'", model=descriptor.id
        )

    def has_provider(self, descriptor: ModelDescriptor) -> bool:
        return any(p.is_enabled() and p.supports(descriptor) for p in self.providers)

    def enabled_providers(self) -> List[str]:
        return [p.name for p in self.providers if p.is_enabled()]

    def resolve(self, request: ChatRequest) -> BaseProvider:
        descriptor = self.registry.require(request.model)
        validate_options(descriptor, request)
        return self.select_provider(descriptor)

    # ------------------------------------------------------------------
    # Retry / fallback
    # ------------------------------------------------------------------
    async def _invoke_with_retry(
        self,
        provider: BaseProvider,
        request: ChatRequest,
        invoke: Invoker,
        attempts: List[Attempt],
    ) -> Any:
        for attempt in range(1, self.retry_attempts + 1):
            try:
                result = await invoke(provider, request)
            except AiError as e:
                attempts.append(Attempt(provider.name, request.model, e.code))
                if not e.retryable or attempt >= self.retry_attempts:
                    raise
                delay_ms = self.retry_delay_ms * attempt
                logger.warning(
                    f"{provider.name}/{request.model} attempt {attempt}/{self.retry_attempts} failed "
                    f"({e.code}); retrying in {delay_ms}ms"
                )
                await self._sleep(delay_ms / 1000)
            else:
                attempts.append(Attempt(provider.name, request.model, SUCCESS))
                return result

    @staticmethod
    def _should_fallback(error: AiError) -> bool:
        return error.retryable or isinstance(error, ModelNotAvailable)

    def _fallback_for(self, request: ChatRequest) -> Optional[Tuple[BaseProvider, ChatRequest]]:
        """First fallback model, other than the one just tried, that can actually be routed."""
        for model in self.fallback_models:
            if model == request.model:
                continue
            candidate = request.with_model(model)
            try:
                return self.resolve(candidate), candidate
            except AiError as e:
                logger.debug(f"Skipping fallback model {model}: {e.message}")
        return None

    async def _route(self, request: ChatRequest, invoke: Invoker, attempts: List[Attempt]) -> Any:
        provider = self.resolve(request)
        try:
            return await self._invoke_with_retry(provider, request, invoke, attempts)
        except AiError as e:
            if not self._should_fallback(e):
                raise
            fallback = self._fallback_for(request)
            if fallback is None:
                raise
            fallback_provider, fallback_request = fallback
            logger.warning(
                f"{request.model} exhausted ({e.code}); falling back to "
                f"{fallback_request.model} via {fallback_provider.name}"
            )
            return await self._invoke_with_retry(fallback_provider, fallback_request, invoke, attempts)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def generate(self, request: ChatRequest) -> RoutingResult:
        attempts: List[Attempt] = []

        async def invoke(provider: BaseProvider, req: ChatRequest) -> ChatResponse:
            return await provider.generate(req, req.options.timeout_ms)

        response = await self._route(request, invoke, attempts)
        logger.info(f"Generated with {response.provider}/{response.model} after {len(attempts)} call(s)")
        return RoutingResult(response=response, attempts=attempts)

    async def stream_generate(
        self,
        request: ChatRequest,
        attempts: Optional[List[Attempt]] = None,
    ) -> AsyncGenerator[StreamChunk, None]:
        """
        Streaming counterpart of ``generate``. Opening the stream (up to the
        first chunk) is retried and may fall back; once a chunk has been
        delivered, later errors propagate to the consumer.
        """
        attempts = attempts if attempts is not None else []

        async def open_stream(provider: BaseProvider, req: ChatRequest):
            stream = provider.stream_generate(req, req.options.timeout_ms)
            try:
                first = await stream.__anext__()
            except StopAsyncIteration:
                raise UpstreamProtocolError(
                    f"{provider.name} stream ended without output", provider=provider.name, model=req.model
                )
            except BaseException:
                await stream.aclose()
                raise
            return first, stream

        first, stream = await self._route(request, open_stream, attempts)
        try:
            yield first
            async for chunk in stream:
                yield chunk
        finally:
            await stream.aclose()

    def __repr__(self):
        return f"<RoutingEngine providers={[p.name for p in self.providers]} retries={self.retry_attempts}>"
