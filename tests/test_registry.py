# Tests for the static model registry and option validation.

import pytest

from app.core.errors import InvalidConfiguration, UnknownModel
from app.llm.entity.chat import ChatMessage, ChatOptions, ChatPart, ChatRequest, InlineData, ThinkingConfig
from app.llm.models.registry import MODEL_TABLE, ModelRegistry, validate_options


class TestDescribe:

    def test_every_model_resolves_to_its_own_id(self, registry):
        for model_id in MODEL_TABLE:
            descriptor = registry.describe(model_id)
            assert descriptor is not None
            assert descriptor.id == model_id

    def test_unknown_model_is_none(self, registry):
        assert registry.describe("gpt-2") is None
        assert registry.describe(None) is None
        assert registry.describe("") is None

    def test_require_raises_unknown_model(self, registry):
        with pytest.raises(UnknownModel) as exc:
            registry.require("no-such-model")
        assert exc.value.code == "AI_UNKNOWN_MODEL"
        assert exc.value.status_code == 404

    def test_list_by_vendor(self, registry):
        google = registry.list_models("google")
        openrouter = registry.list_models("openrouter")
        assert google and all(m.vendor == "google" for m in google)
        assert openrouter and all(m.vendor == "openrouter" for m in openrouter)
        assert len(google) + len(openrouter) == len(registry)

    def test_contains(self, registry):
        assert "gemini-2.5-flash" in registry
        assert "anthropic/claude-sonnet-4.5" in registry
        assert "nope" not in registry

    def test_custom_table(self):
        table = {"gemini-2.5-flash": MODEL_TABLE["gemini-2.5-flash"]}
        registry = ModelRegistry(table)
        assert len(registry) == 1
        assert registry.describe("gemini-2.0-flash") is None

    def test_descriptors_are_immutable(self, registry):
        descriptor = registry.require("gemini-2.5-flash")
        with pytest.raises(Exception):
            descriptor.max_output_tokens = 1


class TestValidateOptions:

    def _request(self, model, parts=None, **options):
        message = ChatMessage(role="user", content="hi", parts=parts or [])
        return ChatRequest(messages=[message], options=ChatOptions(model=model, **options))

    def test_plain_request_passes(self, registry):
        request = self._request("gemini-2.5-flash", temperature=0.5)
        validate_options(registry.require("gemini-2.5-flash"), request)

    def test_thinking_budget_on_non_thinking_model(self, registry):
        request = self._request("gemini-2.0-flash", thinking=ThinkingConfig(thinking_budget=1024))
        with pytest.raises(InvalidConfiguration, match="does not support thinking"):
            validate_options(registry.require("gemini-2.0-flash"), request)

    def test_thinking_budget_on_budget_model(self, registry):
        request = self._request("gemini-2.5-flash", thinking=ThinkingConfig(thinking_budget=1024))
        validate_options(registry.require("gemini-2.5-flash"), request)

    def test_thinking_level_on_budget_model(self, registry):
        request = self._request("gemini-2.5-pro", thinking=ThinkingConfig(thinking_level="HIGH"))
        with pytest.raises(InvalidConfiguration, match="thinking budget"):
            validate_options(registry.require("gemini-2.5-pro"), request)

    def test_thinking_budget_on_level_model(self, registry):
        request = self._request("gemini-3-pro-preview", thinking=ThinkingConfig(thinking_budget=512))
        with pytest.raises(InvalidConfiguration, match="thinking level"):
            validate_options(registry.require("gemini-3-pro-preview"), request)

    def test_include_thoughts_alone_is_allowed_everywhere(self, registry):
        request = self._request("gemini-2.0-flash", thinking=ThinkingConfig(include_thoughts=True))
        validate_options(registry.require("gemini-2.0-flash"), request)

    def test_max_output_tokens_over_limit(self, registry):
        descriptor = registry.require("gemini-2.0-flash")
        request = self._request("gemini-2.0-flash", max_output_tokens=descriptor.max_output_tokens + 1)
        with pytest.raises(InvalidConfiguration, match="maxOutputTokens"):
            validate_options(descriptor, request)

    def test_tools_on_model_without_function_calling(self, registry):
        request = self._request("deepseek/deepseek-r1", tools=[{"type": "function", "function": {"name": "f"}}])
        with pytest.raises(InvalidConfiguration, match="function calling"):
            validate_options(registry.require("deepseek/deepseek-r1"), request)

    def test_image_on_text_only_model(self, registry):
        parts = [ChatPart(text="what is this?"), ChatPart(inline_data=InlineData(mime_type="image/png", data="AAAA"))]
        request = self._request("deepseek/deepseek-r1", parts=parts)
        with pytest.raises(InvalidConfiguration, match="vision"):
            validate_options(registry.require("deepseek/deepseek-r1"), request)

    def test_audio_on_model_without_audio(self, registry):
        parts = [ChatPart(inline_data=InlineData(mime_type="audio/wav", data="AAAA"))]
        request = self._request("anthropic/claude-sonnet-4.5", parts=parts)
        with pytest.raises(InvalidConfiguration, match="audio"):
            validate_options(registry.require("anthropic/claude-sonnet-4.5"), request)

    def test_audio_on_gemini(self, registry):
        parts = [ChatPart(inline_data=InlineData(mime_type="audio/wav", data="AAAA"))]
        request = self._request("gemini-2.5-flash", parts=parts)
        validate_options(registry.require("gemini-2.5-flash"), request)


class TestChatPart:

    def test_part_needs_exactly_one_payload(self):
        with pytest.raises(ValueError):
            ChatPart()
        with pytest.raises(ValueError):
            ChatPart(text="a", inline_data=InlineData(mime_type="image/png", data="AAAA"))

    def test_parts_accept_camel_case(self):
        message = ChatMessage.model_validate(
            {"role": "user", "parts": [{"inlineData": {"mimeType": "image/jpeg", "data": "AAAA"}}]}
        )
        assert message.parts[0].media_type == "image/jpeg"
