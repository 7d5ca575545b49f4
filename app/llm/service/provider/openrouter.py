# app/llm/service/provider/openrouter.py
import json
from typing import Any, Dict, List, Optional

import httpx

from app.core.config import settings
from app.core.errors import SafetyBlocked, classify_http_error
from app.llm.entity.chat import ChatMessage, ChatPart, ChatRequest, ChatResponse, FinishReason, Usage
from app.llm.service.streaming import FrameDelta, FrameParser
from .base_provider import BaseProvider, ProviderKind

FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "length": FinishReason.MAX_TOKENS,
    "content_filter": FinishReason.SAFETY,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
}


def map_finish_reason(raw: Optional[str]) -> Optional[FinishReason]:
    if raw is None:
        return None
    return FINISH_REASONS.get(raw, FinishReason.OTHER)


def _part_to_wire(part: ChatPart) -> Dict[str, Any]:
    if part.text is not None:
        return {"type": "text", "text": part.text}

    media = part.inline_data or part.file_data
    mime_type = media.mime_type
    if mime_type.startswith("audio/") and part.inline_data is not None:
        return {
            "type": "input_audio",
            "input_audio": {"data": part.inline_data.data, "format": mime_type.split("/", 1)[1]},
        }
    if part.inline_data is not None:
        url = f"data:{mime_type};base64,{part.inline_data.data}"
    else:
        url = part.file_data.file_uri
    return {"type": "image_url", "image_url": {"url": url}}


def _message_to_wire(message: ChatMessage) -> Dict[str, Any]:
    role = "assistant" if message.role in ("assistant", "model") else message.role
    if not message.parts:
        return {"role": role, "content": message.content}
    return {"role": role, "content": [_part_to_wire(p) for p in message.parts]}


def _parse_usage(data: Dict[str, Any]) -> Optional[Usage]:
    usage = data.get("usage")
    if not usage:
        return None
    prompt = usage.get("prompt_tokens", 0) or 0
    completion = usage.get("completion_tokens", 0) or 0
    return Usage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=usage.get("total_tokens") or prompt + completion,
    )


class OpenRouterProvider(BaseProvider):
    """OpenAI-compatible chat completions over OpenRouter."""

    kind = ProviderKind.OPENROUTER
    vendors = ("openrouter",)

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        site_url: Optional[str] = None,
        site_name: Optional[str] = None,
        request_timeout_ms: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(request_timeout_ms or settings.REQUEST_TIMEOUT_MS, transport)
        self.api_key = api_key if api_key is not None else settings.OPENROUTER_API_KEY
        self.base_url = (base_url or settings.OPENROUTER_BASE_URL).rstrip("/")
        self.site_url = site_url or settings.OPENROUTER_SITE_URL
        self.site_name = site_name or settings.OPENROUTER_SITE_NAME

    def is_enabled(self) -> bool:
        return bool(self.api_key)

    def generate_url(self, model: str) -> str:
        return f"{self.base_url}/chat/completions"

    def stream_url(self, model: str) -> str:
        return f"{self.base_url}/chat/completions"

    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "HTTP-Referer": self.site_url,
            "X-Title": self.site_name,
            "Content-Type": "application/json",
        }

    def build_payload(self, request: ChatRequest, stream: bool) -> Dict[str, Any]:
        options = request.options
        messages: List[Dict[str, Any]] = []
        if options.system_instruction:
            messages.append({"role": "system", "content": options.system_instruction})
        messages.extend(_message_to_wire(m) for m in request.messages)

        payload: Dict[str, Any] = {"model": request.model, "messages": messages, "stream": stream}
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.max_output_tokens is not None:
            payload["max_tokens"] = options.max_output_tokens
        if options.top_p is not None:
            payload["top_p"] = options.top_p
        if options.top_k is not None:
            payload["top_k"] = options.top_k
        if options.stop_sequences:
            payload["stop"] = list(options.stop_sequences)
        if options.tools:
            payload["tools"] = options.tools
        if options.thinking is not None:
            reasoning: Dict[str, Any] = {"exclude": not options.thinking.include_thoughts}
            if options.thinking.thinking_budget is not None:
                reasoning["max_tokens"] = options.thinking.thinking_budget
            elif options.thinking.thinking_level is not None:
                reasoning["effort"] = options.thinking.thinking_level.lower()
            payload["reasoning"] = reasoning
        if stream:
            payload["usage"] = {"include": True}
        return payload

    def _raise_embedded_error(self, data: Dict[str, Any], model: str) -> None:
        # OpenRouter reports some upstream failures inside a 200 body
        error = data.get("error")
        if not error:
            return
        status = error.get("code") if isinstance(error, dict) else None
        if not isinstance(status, int):
            status = 502
        raise classify_http_error(status, json.dumps({"error": error}), provider=self.name, model=model)

    def parse_response(self, data: Dict[str, Any], model: str) -> ChatResponse:
        self._raise_embedded_error(data, model)
        choices = data.get("choices") or []
        choice = choices[0] if choices else {}
        raw_finish = choice.get("finish_reason")
        if raw_finish == "content_filter":
            raise SafetyBlocked("Response blocked by content filter", provider=self.name, model=model)

        message = choice.get("message") or {}
        tool_calls = message.get("tool_calls") or None
        reasoning = message.get("reasoning")

        return ChatResponse(
            text=message.get("content") or "",
            thoughts=[reasoning] if reasoning else None,
            finish_reason=map_finish_reason(raw_finish) or FinishReason.STOP,
            usage=_parse_usage(data) or Usage(),
            function_calls=tool_calls,
            model=data.get("model") or model,
        )

    def frame_parser(self, model: str) -> FrameParser:
        def parse_frame(frame: Dict[str, Any]) -> FrameDelta:
            self._raise_embedded_error(frame, model)
            choices = frame.get("choices") or []
            if not choices and "usage" not in frame:
                raise ValueError("frame has neither choices nor usage")

            choice = choices[0] if choices else {}
            raw_finish = choice.get("finish_reason")
            if raw_finish == "content_filter":
                raise SafetyBlocked("Response blocked by content filter", provider=self.name, model=model)

            delta = choice.get("delta") or {}
            return FrameDelta(
                text=delta.get("content") or None,
                thought=delta.get("reasoning") or None,
                finish_reason=map_finish_reason(raw_finish),
                usage=_parse_usage(frame),
            )

        return parse_frame
