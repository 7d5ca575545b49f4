from typing import Any, Dict, Optional

import httpx

from app.core.config import settings
from app.llm.entity.chat import ChatRequest, ChatResponse
from app.llm.service.streaming import FrameParser
from . import gemini_format
from .base_provider import BaseProvider, ProviderKind


class GeminiProvider(BaseProvider):
    """Handles Google Gemini models through the Generative Language API (API key auth)."""

    kind = ProviderKind.GEMINI
    vendors = ("google",)

    def __init__(
        self,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        request_timeout_ms: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(request_timeout_ms or settings.REQUEST_TIMEOUT_MS, transport)
        self.api_key = api_key if api_key is not None else settings.GEMINI_API_KEY
        self.endpoint = (endpoint or settings.GEMINI_ENDPOINT).rstrip("/")
        self._enabled = bool(self.api_key)

    def is_enabled(self) -> bool:
        return self._enabled

    def _model_url(self, model: str) -> str:
        return f"{self.endpoint}/v1beta/models/{model}"

    def generate_url(self, model: str) -> str:
        return f"{self._model_url(model)}:generateContent"

    def stream_url(self, model: str) -> str:
        return f"{self._model_url(model)}:streamGenerateContent?alt=sse"

    def headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.api_key or "", "Content-Type": "application/json"}

    def build_payload(self, request: ChatRequest, stream: bool) -> Dict[str, Any]:
        return gemini_format.build_generate_body(request)

    def parse_response(self, data: Dict[str, Any], model: str) -> ChatResponse:
        return gemini_format.parse_generate_response(data, model, self.name)

    def frame_parser(self, model: str) -> FrameParser:
        return gemini_format.make_frame_parser(self.name, model)
