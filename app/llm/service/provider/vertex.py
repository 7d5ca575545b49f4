from typing import Any, Dict, Optional

import httpx

from app.core.config import settings
from app.llm.entity.chat import ChatRequest, ChatResponse
from app.llm.service.streaming import FrameParser
from . import gemini_format
from .base_provider import BaseProvider, ProviderKind


class VertexProvider(BaseProvider):
    """
    Gemini models served from a Google Cloud project through Vertex AI.
    Same body as the Gemini API, different URL scheme and Bearer-token auth.
    """

    kind = ProviderKind.VERTEX
    vendors = ("google",)

    def __init__(
        self,
        project_id: Optional[str] = None,
        location: Optional[str] = None,
        access_token: Optional[str] = None,
        endpoint: Optional[str] = None,
        request_timeout_ms: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(request_timeout_ms or settings.REQUEST_TIMEOUT_MS, transport)
        self.project_id = project_id if project_id is not None else settings.GOOGLE_CLOUD_PROJECT
        self.location = location or settings.GOOGLE_CLOUD_LOCATION
        self.access_token = access_token if access_token is not None else settings.VERTEX_ACCESS_TOKEN
        self.endpoint = (endpoint or settings.VERTEX_ENDPOINT or self._default_endpoint()).rstrip("/")

    def _default_endpoint(self) -> str:
        if self.location == "global":
            return "https://aiplatform.googleapis.com"
        return f"https://{self.location}-aiplatform.googleapis.com"

    def is_enabled(self) -> bool:
        return bool(self.project_id and self.access_token)

    def resolve_model_path(self, model: str) -> str:
        return f"projects/{self.project_id}/locations/{self.location}/publishers/google/models/{model}"

    def generate_url(self, model: str) -> str:
        return f"{self.endpoint}/v1/{self.resolve_model_path(model)}:generateContent"

    def stream_url(self, model: str) -> str:
        return f"{self.endpoint}/v1/{self.resolve_model_path(model)}:streamGenerateContent?alt=sse"

    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}

    def build_payload(self, request: ChatRequest, stream: bool) -> Dict[str, Any]:
        return gemini_format.build_generate_body(request)

    def parse_response(self, data: Dict[str, Any], model: str) -> ChatResponse:
        return gemini_format.parse_generate_response(data, model, self.name)

    def frame_parser(self, model: str) -> FrameParser:
        return gemini_format.make_frame_parser(self.name, model)
