# Tests for provider selection, retry with linear backoff and model fallback.

import asyncio

import httpx
import pytest

from app.core.errors import (
    InvalidConfiguration,
    InvalidRequest,
    ModelNotAvailable,
    NoProviderConfigured,
    QuotaExceeded,
    SafetyBlocked,
    Transient,
    UnknownModel,
)
from app.llm.entity.chat import FinishReason, ThinkingConfig
from app.llm.service.provider.gemini import GeminiProvider
from app.llm.service.provider.openrouter import OpenRouterProvider
from app.llm.service.provider.vertex import VertexProvider
from app.llm.service.router_service import RoutingEngine
from fakes import ScriptedTransport, SleepRecorder, error_response, gemini_body, gemini_ok, sse_bytes, sse_response


def _gemini(transport, api_key="key"):
    return GeminiProvider(api_key=api_key, endpoint="https://gemini.test", transport=transport)


def _vertex(transport):
    return VertexProvider(project_id="proj", location="us-central1", access_token="tok", transport=transport)


def _engine(registry, providers, fallback_models=None, priority=None, sleep=None):
    return RoutingEngine(
        providers,
        registry,
        retry_attempts=3,
        retry_delay_ms=1000,
        fallback_models=fallback_models or [],
        provider_priority=priority or ["gemini", "vertex", "openrouter"],
        sleep=sleep or SleepRecorder(),
    )


def _model_gone():
    return error_response(400, "model retired", error_type="model_not_available")


async def _collect(aiterable):
    return [item async for item in aiterable]


class TestSelection:

    def test_priority_order_decides(self, registry):
        gemini, vertex = _gemini(ScriptedTransport([])), _vertex(ScriptedTransport([]))
        descriptor = registry.require("gemini-2.5-flash")

        assert _engine(registry, [vertex, gemini]).select_provider(descriptor) is gemini
        assert _engine(registry, [gemini, vertex], priority=["vertex", "gemini"]).select_provider(descriptor) is vertex

    def test_selection_is_deterministic(self, registry):
        engine = _engine(registry, [_gemini(ScriptedTransport([])), _vertex(ScriptedTransport([]))])
        descriptor = registry.require("gemini-2.0-flash")
        picks = {engine.select_provider(descriptor).name for _ in range(20)}
        assert picks == {"gemini"}

    def test_disabled_provider_is_skipped(self, registry):
        vertex = _vertex(ScriptedTransport([]))
        engine = _engine(registry, [_gemini(ScriptedTransport([]), api_key=""), vertex])
        assert engine.select_provider(registry.require("gemini-2.5-flash")) is vertex
        assert engine.enabled_providers() == ["vertex"]

    def test_no_provider_for_vendor(self, registry):
        engine = _engine(registry, [_gemini(ScriptedTransport([]))])
        descriptor = registry.require("openai/gpt-4o")
        assert not engine.has_provider(descriptor)
        with pytest.raises(NoProviderConfigured):
            engine.select_provider(descriptor)

    def test_openrouter_models_go_to_openrouter(self, registry):
        openrouter = OpenRouterProvider(api_key="k", transport=ScriptedTransport([]))
        engine = _engine(registry, [_gemini(ScriptedTransport([])), openrouter])
        assert engine.select_provider(registry.require("anthropic/claude-opus-4.5")) is openrouter


class TestGenerate:

    @pytest.mark.asyncio
    async def test_single_successful_call(self, registry, make_request):
        transport = ScriptedTransport([gemini_ok("Hello")])
        engine = _engine(registry, [_gemini(transport)])

        result = await engine.generate(make_request())

        assert transport.calls == 1
        assert result.response.text == "Hello"
        assert result.response.finish_reason == FinishReason.STOP
        assert result.provider == "gemini"
        assert result.attempts_made == 0

    @pytest.mark.asyncio
    async def test_transient_retries_with_linear_backoff(self, registry, make_request):
        transport = ScriptedTransport([error_response(500)] * 3)
        sleep = SleepRecorder()
        engine = _engine(registry, [_gemini(transport)], sleep=sleep)

        with pytest.raises(Transient):
            await engine.generate(make_request())

        assert transport.calls == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_recovers_after_transient(self, registry, make_request):
        transport = ScriptedTransport([error_response(502), gemini_ok("ok")])
        engine = _engine(registry, [_gemini(transport)])

        result = await engine.generate(make_request())

        assert transport.calls == 2
        assert result.attempts_made == 1
        assert [a.outcome for a in result.attempts] == ["AI_TRANSIENT", "success"]

    @pytest.mark.asyncio
    async def test_quota_exhaustion_falls_back(self, registry, make_request):
        transport = ScriptedTransport([error_response(429)] * 3 + [gemini_ok("from fallback")])
        sleep = SleepRecorder()
        engine = _engine(registry, [_gemini(transport)], fallback_models=["gemini-2.0-flash"], sleep=sleep)

        result = await engine.generate(make_request("gemini-2.5-flash"))

        assert transport.calls == 4
        assert result.attempts_made == 3
        assert result.response.text == "from fallback"
        assert "gemini-2.0-flash" in str(transport.requests[-1].url)
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_service_unavailable_is_retried(self, registry, make_request):
        transport = ScriptedTransport([error_response(503), error_response(503), gemini_ok("ok")])
        sleep = SleepRecorder()
        engine = _engine(registry, [_gemini(transport)], sleep=sleep)

        result = await engine.generate(make_request())

        assert transport.calls == 3
        assert result.response.text == "ok"
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_deadline_expiry_is_retried(self, registry, make_request):
        calls = []

        async def first_call_hangs(request):
            calls.append(request)
            if len(calls) == 1:
                await asyncio.sleep(1)
            return gemini_ok("second try")

        engine = _engine(registry, [_gemini(httpx.MockTransport(first_call_hangs))])

        result = await engine.generate(make_request(timeout_ms=20))

        assert len(calls) == 2
        assert result.response.text == "second try"
        assert [a.outcome for a in result.attempts] == ["AI_TRANSIENT", "success"]

    @pytest.mark.asyncio
    async def test_service_unavailable_exhaustion_falls_back(self, registry, make_request):
        transport = ScriptedTransport([error_response(503)] * 3 + [gemini_ok("fallback")])
        engine = _engine(registry, [_gemini(transport)], fallback_models=["gemini-2.0-flash"])

        result = await engine.generate(make_request("gemini-2.5-flash"))

        assert transport.calls == 4
        assert result.response.text == "fallback"
        assert "gemini-2.0-flash" in str(transport.requests[-1].url)

    @pytest.mark.asyncio
    async def test_model_unavailable_falls_back_immediately(self, registry, make_request):
        transport = ScriptedTransport([_model_gone(), gemini_ok("fallback")])
        sleep = SleepRecorder()
        engine = _engine(registry, [_gemini(transport)], fallback_models=["gemini-2.0-flash"], sleep=sleep)

        result = await engine.generate(make_request("gemini-2.5-flash"))

        assert transport.calls == 2
        assert sleep.delays == []
        assert result.response.model == "gemini-2.0-flash"

    @pytest.mark.asyncio
    async def test_model_unavailable_without_fallback(self, registry, make_request):
        transport = ScriptedTransport([_model_gone()])
        engine = _engine(registry, [_gemini(transport)])

        with pytest.raises(ModelNotAvailable):
            await engine.generate(make_request())
        assert transport.calls == 1

    @pytest.mark.asyncio
    async def test_primary_and_fallback_both_exhausted(self, registry, make_request):
        transport = ScriptedTransport([error_response(429)] * 6)
        sleep = SleepRecorder()
        engine = _engine(registry, [_gemini(transport)], fallback_models=["gemini-2.0-flash"], sleep=sleep)

        with pytest.raises(QuotaExceeded):
            await engine.generate(make_request("gemini-2.5-flash"))

        assert transport.calls == 6
        assert sleep.delays == [1.0, 2.0, 1.0, 2.0]

    @pytest.mark.asyncio
    async def test_fallback_to_same_model_is_skipped(self, registry, make_request):
        transport = ScriptedTransport([error_response(429)] * 3)
        engine = _engine(registry, [_gemini(transport)], fallback_models=["gemini-2.5-flash"])

        with pytest.raises(QuotaExceeded):
            await engine.generate(make_request("gemini-2.5-flash"))
        assert transport.calls == 3

    @pytest.mark.asyncio
    async def test_first_usable_fallback_wins(self, registry, make_request):
        transport = ScriptedTransport([_model_gone(), gemini_ok()])
        engine = _engine(
            registry,
            [_gemini(transport)],
            fallback_models=["no-such-model", "openai/gpt-4o", "gemini-1.5-flash"],
        )

        result = await engine.generate(make_request("gemini-2.5-flash"))

        assert result.response.model == "gemini-1.5-flash"

    @pytest.mark.parametrize(
        "response, error",
        [
            (error_response(400, "bad"), InvalidRequest),
            (httpx.Response(200, json=gemini_body("", finish="SAFETY")), SafetyBlocked),
        ],
    )
    @pytest.mark.asyncio
    async def test_non_retryable_errors_are_not_retried(self, registry, make_request, response, error):
        transport = ScriptedTransport([response])
        engine = _engine(registry, [_gemini(transport)], fallback_models=["gemini-2.0-flash"])

        with pytest.raises(error):
            await engine.generate(make_request())
        assert transport.calls == 1

    @pytest.mark.asyncio
    async def test_unknown_model_makes_no_calls(self, registry, make_request):
        transport = ScriptedTransport([])
        engine = _engine(registry, [_gemini(transport)])

        with pytest.raises(UnknownModel):
            await engine.generate(make_request("gpt-2"))
        assert transport.calls == 0

    @pytest.mark.asyncio
    async def test_invalid_configuration_makes_no_calls(self, registry, make_request):
        transport = ScriptedTransport([])
        engine = _engine(registry, [_gemini(transport)])

        with pytest.raises(InvalidConfiguration):
            await engine.generate(make_request("gemini-2.0-flash", thinking=ThinkingConfig(thinking_budget=100)))
        assert transport.calls == 0


class TestStreamGenerate:

    @pytest.mark.asyncio
    async def test_open_is_retried_before_first_chunk(self, registry, make_request):
        frames = [{"candidates": [{"content": {"parts": [{"text": "hi"}]}, "finishReason": "STOP"}]}]
        transport = ScriptedTransport([error_response(500), sse_response(frames)])
        sleep = SleepRecorder()
        engine = _engine(registry, [_gemini(transport)], sleep=sleep)
        attempts = []

        chunks = await _collect(engine.stream_generate(make_request(), attempts))

        assert transport.calls == 2
        assert sleep.delays == [1.0]
        assert [c.text for c in chunks] == ["hi", None]
        assert [a.outcome for a in attempts] == ["AI_TRANSIENT", "success"]

    @pytest.mark.asyncio
    async def test_stream_falls_back_when_model_unavailable(self, registry, make_request):
        frames = [{"candidates": [{"content": {"parts": [{"text": "fb"}]}, "finishReason": "STOP"}]}]
        transport = ScriptedTransport([_model_gone(), sse_response(frames)])
        engine = _engine(registry, [_gemini(transport)], fallback_models=["gemini-2.0-flash"])

        chunks = await _collect(engine.stream_generate(make_request("gemini-2.5-flash")))

        assert chunks[0].text == "fb"
        assert "gemini-2.0-flash" in str(transport.requests[-1].url)

    @pytest.mark.asyncio
    async def test_mid_stream_failure_is_not_retried(self, registry, make_request):
        first = sse_bytes([{"candidates": [{"content": {"parts": [{"text": "partial"}]}}]}])

        async def broken_body():
            yield first
            raise httpx.ReadError("connection reset")

        transport = ScriptedTransport([httpx.Response(200, content=broken_body())])
        engine = _engine(registry, [_gemini(transport)], fallback_models=["gemini-2.0-flash"])

        received = []
        with pytest.raises(Transient):
            async for chunk in engine.stream_generate(make_request()):
                received.append(chunk)

        assert [c.text for c in received] == ["partial"]
        assert transport.calls == 1
