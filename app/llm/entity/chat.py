# app/llm/entity/chat.py
"""
Internal chat representation shared by every provider adapter.
Adapters read these models and translate them to/from vendor wire formats.
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class FinishReason(str, Enum):
    STOP = "STOP"
    MAX_TOKENS = "MAX_TOKENS"
    SAFETY = "SAFETY"
    RECITATION = "RECITATION"
    TOOL_CALLS = "TOOL_CALLS"
    OTHER = "OTHER"


class InlineData(CamelModel):
    mime_type: str
    data: str  # base64


class FileData(CamelModel):
    mime_type: str
    file_uri: str


class ChatPart(CamelModel):
    text: Optional[str] = None
    inline_data: Optional[InlineData] = None
    file_data: Optional[FileData] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "ChatPart":
        present = [v for v in (self.text, self.inline_data, self.file_data) if v is not None]
        if len(present) != 1:
            raise ValueError("a part carries exactly one of text, inlineData or fileData")
        return self

    @property
    def media_type(self) -> Optional[str]:
        data = self.inline_data or self.file_data
        return data.mime_type if data else None


class ChatMessage(CamelModel):
    role: Literal["user", "model", "assistant", "system"]
    content: str = ""
    parts: List[ChatPart] = Field(default_factory=list)

    def effective_parts(self) -> List[ChatPart]:
        """Explicit parts win; otherwise the plain content becomes a single text part."""
        if self.parts:
            return list(self.parts)
        return [ChatPart(text=self.content)]


class ThinkingConfig(CamelModel):
    thinking_budget: Optional[int] = None
    thinking_level: Optional[Literal["LOW", "HIGH"]] = None
    include_thoughts: bool = True


class ChatOptions(CamelModel):
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    stop_sequences: Optional[List[str]] = None
    system_instruction: Optional[str] = None
    tools: Optional[List[Dict[str, Any]]] = None
    thinking: Optional[ThinkingConfig] = None
    safety_preset: Optional[Literal["permissive", "standard", "strict"]] = None
    # whole-call deadline per upstream invocation; the provider default applies when unset
    timeout_ms: Optional[int] = Field(default=None, gt=0)


class ChatRequest(CamelModel):
    messages: List[ChatMessage]
    options: ChatOptions = Field(default_factory=ChatOptions)

    @property
    def model(self) -> Optional[str]:
        return self.options.model

    def with_model(self, model: str) -> "ChatRequest":
        return self.model_copy(update={"options": self.options.model_copy(update={"model": model})})

    def media_types(self) -> List[str]:
        return [
            part.media_type
            for message in self.messages
            for part in message.parts
            if part.media_type
        ]


class Usage(CamelModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatResponse(CamelModel):
    model_config = ConfigDict(frozen=True)

    text: str
    thoughts: Optional[List[str]] = None
    finish_reason: FinishReason = FinishReason.STOP
    usage: Usage = Field(default_factory=Usage)
    grounding: Optional[Dict[str, Any]] = None
    function_calls: Optional[List[Dict[str, Any]]] = None
    model: str
    provider: Optional[str] = None


class StreamChunk(CamelModel):
    model_config = ConfigDict(frozen=True)

    text: Optional[str] = None
    thought: Optional[str] = None
    done: bool = False
    finish_reason: Optional[FinishReason] = None
    usage: Optional[Usage] = None
