from typing import Any, AsyncGenerator, Dict, List, Optional

from pydantic.alias_generators import to_camel

from app.core.config import settings
from app.core.logger import get_logger
from app.llm.entity.chat import ChatRequest, StreamChunk
from app.llm.models.registry import ModelRegistry
from app.llm.service.router_service import Attempt, RoutingEngine, RoutingResult
from app.llm.service.streaming import ChunkChannel

logger = get_logger(__name__)


class LLMService:
    """Handles high-level LLM generation on top of the routing engine."""

    def __init__(self, engine: RoutingEngine, registry: ModelRegistry, default_model: Optional[str] = None):
        self.engine = engine
        self.registry = registry
        self.default_model = default_model or settings.DEFAULT_AI_MODEL

    def with_defaults(self, request: ChatRequest) -> ChatRequest:
        if request.model:
            return request
        return request.with_model(self.default_model)

    async def generate(self, request: ChatRequest) -> RoutingResult:
        return await self.engine.generate(self.with_defaults(request))

    def stream(self, request: ChatRequest, attempts: Optional[List[Attempt]] = None) -> AsyncGenerator[StreamChunk, None]:
        return self.engine.stream_generate(self.with_defaults(request), attempts)

    def open_channel(
        self, request: ChatRequest, attempts: Optional[List[Attempt]] = None, maxsize: int = 16
    ) -> ChunkChannel:
        """Stream through a bounded channel; closing the channel closes the upstream call."""
        return ChunkChannel(self.stream(request, attempts), maxsize=maxsize)

    def list_models(self) -> List[Dict[str, Any]]:
        models = []
        for descriptor in self.registry.list_models():
            entry = {to_camel(k): v for k, v in descriptor.model_dump().items()}
            entry["available"] = self.engine.has_provider(descriptor)
            models.append(entry)
        return models

    def provider_status(self) -> Dict[str, bool]:
        return {p.name: p.is_enabled() for p in self.engine.providers}

    def preflight(self, request: ChatRequest) -> ChatRequest:
        """Resolve model, options and provider up front so routing errors surface before a stream starts."""
        request = self.with_defaults(request)
        self.engine.resolve(request)
        return request
