# app/llm/models/registry.py
"""
Static metadata about every model the gateway can route to.

The table is built once at import time and never mutated. Lookups are pure.
"""

from typing import Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, ConfigDict

from app.core.errors import InvalidConfiguration, UnknownModel
from app.llm.entity.chat import ChatRequest

Vendor = Literal["google", "openrouter"]


class ModelDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    vendor: Vendor
    display_name: str
    max_input_tokens: int
    max_output_tokens: int
    supports_thinking: bool = False
    thinking_type: Optional[Literal["budget", "level"]] = None
    supports_vision: bool = True
    supports_audio: bool = False
    supports_function_calling: bool = True
    supports_streaming: bool = True


def _google(model_id: str, display_name: str, *, thinking: Optional[str] = None,
            max_input: int = 1_048_576, max_output: int = 8192) -> ModelDescriptor:
    return ModelDescriptor(
        id=model_id,
        vendor="google",
        display_name=display_name,
        max_input_tokens=max_input,
        max_output_tokens=max_output,
        supports_thinking=thinking is not None,
        thinking_type=thinking,
        supports_vision=True,
        supports_audio=True,
        supports_function_calling=True,
    )


def _openrouter(model_id: str, display_name: str, *, max_input: int, max_output: int,
                vision: bool = True, audio: bool = False, tools: bool = True,
                thinking: bool = False) -> ModelDescriptor:
    return ModelDescriptor(
        id=model_id,
        vendor="openrouter",
        display_name=display_name,
        max_input_tokens=max_input,
        max_output_tokens=max_output,
        supports_thinking=thinking,
        thinking_type="budget" if thinking else None,
        supports_vision=vision,
        supports_audio=audio,
        supports_function_calling=tools,
    )


MODEL_TABLE: Dict[str, ModelDescriptor] = {
    m.id: m
    for m in (
        # Gemini 3 / 2.5 (thinking-capable)
        _google("gemini-3-pro-preview", "Gemini 3 Pro Preview", thinking="level", max_output=65536),
        _google("gemini-2.5-pro", "Gemini 2.5 Pro", thinking="budget"),
        _google("gemini-2.5-flash", "Gemini 2.5 Flash", thinking="budget"),
        _google("gemini-2.5-flash-lite", "Gemini 2.5 Flash Lite", thinking="budget"),
        # Gemini 2.0 / 1.5
        _google("gemini-2.0-flash", "Gemini 2.0 Flash"),
        _google("gemini-1.5-pro", "Gemini 1.5 Pro", max_input=2_097_152),
        _google("gemini-1.5-flash", "Gemini 1.5 Flash"),
        # OpenRouter premium models
        _openrouter("anthropic/claude-opus-4.5", "Claude Opus 4.5", max_input=200_000, max_output=32768),
        _openrouter("anthropic/claude-sonnet-4.5", "Claude Sonnet 4.5", max_input=200_000, max_output=16384),
        _openrouter("openai/gpt-5.2", "GPT-5.2", max_input=128_000, max_output=16384),
        _openrouter("openai/gpt-4o", "GPT-4o", max_input=128_000, max_output=16384, audio=True),
        _openrouter("google/gemini-2.5-pro", "Gemini 2.5 Pro (OpenRouter)", max_input=1_048_576,
                    max_output=65536, audio=True),
        _openrouter("deepseek/deepseek-r1", "DeepSeek R1", max_input=128_000, max_output=16384,
                    vision=False, tools=False, thinking=True),
    )
}


class ModelRegistry:
    """Read-only lookup over the static model table."""

    def __init__(self, table: Optional[Dict[str, ModelDescriptor]] = None):
        self._table: Dict[str, ModelDescriptor] = dict(table if table is not None else MODEL_TABLE)

    def describe(self, model_id: Optional[str]) -> Optional[ModelDescriptor]:
        """Return the descriptor for ``model_id`` or None when it is unknown."""
        if not model_id:
            return None
        return self._table.get(model_id)

    def require(self, model_id: Optional[str]) -> ModelDescriptor:
        descriptor = self.describe(model_id)
        if descriptor is None:
            raise UnknownModel(f"Unknown model: {model_id}", model=model_id)
        return descriptor

    def list_models(self, vendor: Optional[str] = None) -> List[ModelDescriptor]:
        return [m for m in self._table.values() if vendor is None or m.vendor == vendor]

    def ids(self) -> Iterable[str]:
        return self._table.keys()

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._table

    def __len__(self) -> int:
        return len(self._table)


def validate_options(descriptor: ModelDescriptor, request: ChatRequest) -> None:
    """Reject options the model cannot honour instead of silently dropping them."""
    options = request.options
    problems: List[str] = []

    thinking = options.thinking
    if thinking is not None and (thinking.thinking_budget is not None or thinking.thinking_level is not None):
        if not descriptor.supports_thinking:
            problems.append(f"Model {descriptor.id} does not support thinking configuration")
        elif thinking.thinking_level is not None and descriptor.thinking_type != "level":
            problems.append(f"Model {descriptor.id} takes a thinking budget, not a thinking level")
        elif thinking.thinking_budget is not None and descriptor.thinking_type != "budget":
            problems.append(f"Model {descriptor.id} takes a thinking level, not a thinking budget")

    if options.max_output_tokens is not None and options.max_output_tokens > descriptor.max_output_tokens:
        problems.append(
            f"Requested maxOutputTokens ({options.max_output_tokens}) exceeds model limit "
            f"({descriptor.max_output_tokens})"
        )

    if options.tools and not descriptor.supports_function_calling:
        problems.append(f"Model {descriptor.id} does not support function calling")

    media = request.media_types()
    if any(m.startswith("image/") for m in media) and not descriptor.supports_vision:
        problems.append(f"Model {descriptor.id} does not support vision/image input")
    if any(m.startswith("audio/") for m in media) and not descriptor.supports_audio:
        problems.append(f"Model {descriptor.id} does not support audio input")

    if problems:
        raise InvalidConfiguration("; ".join(problems), model=descriptor.id)
