# app/llm/service/provider/base_provider.py
import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncGenerator, AsyncIterator, Dict, Optional

import httpx

from app.core.errors import (
    NoProviderConfigured,
    UpstreamProtocolError,
    classify_http_error,
    classify_transport_error,
)
from app.core.logger import get_logger
from app.llm.entity.chat import ChatRequest, ChatResponse, StreamChunk
from app.llm.models.registry import ModelDescriptor
from app.llm.service.streaming import FrameParser, StreamNormalizer, iter_sse_payloads


class ProviderKind(str, Enum):
    GEMINI = "gemini"
    VERTEX = "vertex"
    OPENROUTER = "openrouter"


class BaseProvider(ABC):
    """Abstract base provider for all LLM integrations."""

    kind: ProviderKind
    vendors: tuple = ()

    def __init__(
        self,
        request_timeout_ms: int = 120000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.request_timeout_ms = request_timeout_ms
        self._transport = transport
        self._logger = get_logger(type(self).__name__)

    @property
    def name(self) -> str:
        return self.kind.value

    def is_enabled(self) -> bool:
        """Whether this provider is usable (e.g., credential present)."""
        return True

    def supports(self, descriptor: ModelDescriptor) -> bool:
        return descriptor.vendor in self.vendors

    # ------------------------------------------------------------------
    # Vendor-specific hooks
    # ------------------------------------------------------------------
    @abstractmethod
    def build_payload(self, request: ChatRequest, stream: bool) -> Dict[str, Any]:
        """Translate the internal request into the vendor body."""

    @abstractmethod
    def generate_url(self, model: str) -> str:
        pass

    @abstractmethod
    def stream_url(self, model: str) -> str:
        pass

    @abstractmethod
    def headers(self) -> Dict[str, str]:
        pass

    @abstractmethod
    def parse_response(self, data: Dict[str, Any], model: str) -> ChatResponse:
        pass

    @abstractmethod
    def frame_parser(self, model: str) -> FrameParser:
        pass

    # ------------------------------------------------------------------
    # Shared HTTP plumbing
    # ------------------------------------------------------------------
    def _deadline_s(self, request: ChatRequest, timeout_ms: Optional[int] = None) -> float:
        return (timeout_ms or request.options.timeout_ms or self.request_timeout_ms) / 1000

    def _client(self, deadline_s: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=httpx.Timeout(deadline_s), transport=self._transport)

    def _require_enabled(self, model: str) -> None:
        if not self.is_enabled():
            raise NoProviderConfigured(
                f"{self.name} provider is disabled: missing credentials", provider=self.name, model=model
            )

    async def generate(self, request: ChatRequest, timeout_ms: Optional[int] = None) -> ChatResponse:
        """One outbound call, aborted as a whole once the deadline passes."""
        self._require_enabled(request.model)
        deadline_s = self._deadline_s(request, timeout_ms)
        try:
            return await asyncio.wait_for(self._generate(request, deadline_s), deadline_s)
        except asyncio.TimeoutError as e:
            raise classify_transport_error(e, provider=self.name, model=request.model) from e

    async def _generate(self, request: ChatRequest, deadline_s: float) -> ChatResponse:
        model = request.model
        payload = self.build_payload(request, stream=False)

        try:
            async with self._client(deadline_s) as client:
                res = await client.post(self.generate_url(model), json=payload, headers=self.headers())
        except httpx.HTTPError as e:
            raise classify_transport_error(e, provider=self.name, model=model) from e

        if res.status_code != 200:
            self._logger.error(f"{self.name} API error: status={res.status_code} model={model}")
            raise classify_http_error(res.status_code, res.text, provider=self.name, model=model)

        try:
            data = res.json()
        except ValueError as e:
            raise UpstreamProtocolError(f"{self.name} returned a non-JSON body", provider=self.name, model=model) from e

        response = self.parse_response(data, model)
        return response.model_copy(update={"provider": self.name})

    @asynccontextmanager
    async def _open_stream(self, request: ChatRequest, deadline_s: float) -> AsyncIterator[httpx.Response]:
        model = request.model
        payload = self.build_payload(request, stream=True)
        try:
            async with self._client(deadline_s) as client:
                async with client.stream("POST", self.stream_url(model), json=payload, headers=self.headers()) as resp:
                    if resp.status_code != 200:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        self._logger.error(f"{self.name} stream error: status={resp.status_code} model={model}")
                        raise classify_http_error(resp.status_code, body, provider=self.name, model=model)
                    yield resp
        except httpx.HTTPError as e:
            raise classify_transport_error(e, provider=self.name, model=model) from e

    async def _stream_chunks(self, request: ChatRequest, deadline_s: float) -> AsyncGenerator[StreamChunk, None]:
        normalizer = StreamNormalizer(self.frame_parser(request.model), provider=self.name, model=request.model)
        async with self._open_stream(request, deadline_s) as resp:
            async for chunk in normalizer.normalize(iter_sse_payloads(resp.aiter_lines())):
                yield chunk

    async def stream_generate(self, request: ChatRequest, timeout_ms: Optional[int] = None) -> AsyncGenerator[StreamChunk, None]:
        """
        Incremental variant of ``generate``. The returned generator is lazy and
        single-use; closing it closes the upstream connection.

        The deadline covers the whole stream, not each read, so a vendor that
        keeps trickling bytes is still cut off.
        """
        self._require_enabled(request.model)
        deadline_s = self._deadline_s(request, timeout_ms)
        loop = asyncio.get_running_loop()
        expires_at = loop.time() + deadline_s
        chunks = self._stream_chunks(request, deadline_s)
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(chunks.__anext__(), max(expires_at - loop.time(), 0))
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError as e:
                    raise classify_transport_error(e, provider=self.name, model=request.model) from e
                yield chunk
        finally:
            await chunks.aclose()

    def __repr__(self):
        return f"<{type(self).__name__} enabled={self.is_enabled()}>"
