# Tests for SSE payload extraction, stream normalization and the chunk channel.

import asyncio
import json

import pytest

from app.core.errors import SafetyBlocked, Transient, UpstreamProtocolError
from app.llm.entity.chat import FinishReason, StreamChunk, Usage
from app.llm.service.provider.gemini_format import make_frame_parser
from app.llm.service.streaming import (
    SSE_DONE,
    ChunkChannel,
    StreamNormalizer,
    encode_sse,
    encode_sse_error,
    iter_sse_payloads,
)


async def _aiter(items):
    for item in items:
        yield item


async def _collect(aiterable):
    return [item async for item in aiterable]


def _frame(text=None, thought=None, finish=None, usage=None):
    parts = []
    if thought:
        parts.append({"text": thought, "thought": True})
    if text:
        parts.append({"text": text})
    frame = {"candidates": [{"content": {"parts": parts}}]}
    if finish:
        frame["candidates"][0]["finishReason"] = finish
    if usage:
        frame["usageMetadata"] = {
            "promptTokenCount": usage[0],
            "candidatesTokenCount": usage[1],
            "totalTokenCount": usage[0] + usage[1],
        }
    return json.dumps(frame)


def _normalizer():
    return StreamNormalizer(make_frame_parser("gemini", "gemini-2.5-flash"), provider="gemini", model="gemini-2.5-flash")


class TestIterSsePayloads:

    @pytest.mark.asyncio
    async def test_extracts_data_lines(self):
        lines = ["data: {\"a\": 1}", "", ": keep-alive comment", "event: message", "id: 3", "data: {\"b\": 2}"]
        assert await _collect(iter_sse_payloads(_aiter(lines))) == ['{"a": 1}', '{"b": 2}']

    @pytest.mark.asyncio
    async def test_stops_at_done(self):
        lines = ["data: {\"a\": 1}", "data: [DONE]", "data: {\"late\": true}"]
        assert await _collect(iter_sse_payloads(_aiter(lines))) == ['{"a": 1}']

    @pytest.mark.asyncio
    async def test_accepts_bare_json_lines(self):
        lines = ['{"a": 1}', '{"b": 2}']
        assert await _collect(iter_sse_payloads(_aiter(lines))) == ['{"a": 1}', '{"b": 2}']


class TestStreamNormalizer:

    @pytest.mark.asyncio
    async def test_exactly_one_terminal_chunk_and_text_reassembles(self):
        payloads = [_frame("Hel"), _frame("lo, "), _frame("world", finish="STOP", usage=(3, 4))]
        chunks = await _collect(_normalizer().normalize(_aiter(payloads)))

        done = [c for c in chunks if c.done]
        assert len(done) == 1
        assert chunks[-1].done
        assert "".join(c.text or "" for c in chunks if not c.done) == "Hello, world"
        assert done[0].finish_reason == FinishReason.STOP

    @pytest.mark.asyncio
    async def test_usage_is_last_value_not_sum(self):
        payloads = [_frame("a", usage=(10, 1)), _frame("b", usage=(10, 2)), _frame("c", finish="STOP", usage=(10, 3))]
        chunks = await _collect(_normalizer().normalize(_aiter(payloads)))
        assert chunks[-1].usage == Usage(prompt_tokens=10, completion_tokens=3, total_tokens=13)

    @pytest.mark.asyncio
    async def test_thoughts_are_separate_from_text(self):
        payloads = [_frame(thought="thinking..."), _frame("answer", finish="STOP")]
        chunks = await _collect(_normalizer().normalize(_aiter(payloads)))
        assert chunks[0].thought == "thinking..."
        assert chunks[0].text is None
        assert "".join(c.text or "" for c in chunks if not c.done) == "answer"

    @pytest.mark.asyncio
    async def test_no_empty_non_terminal_chunks(self):
        payloads = [_frame(""), _frame("x"), _frame(finish="STOP", usage=(1, 1))]
        chunks = await _collect(_normalizer().normalize(_aiter(payloads)))
        for chunk in chunks[:-1]:
            assert chunk.text or chunk.thought
        assert len(chunks) == 2

    @pytest.mark.asyncio
    async def test_malformed_frames_are_skipped(self):
        payloads = ["not json", "[1, 2]", json.dumps({"unexpected": True}), _frame("ok", finish="STOP")]
        chunks = await _collect(_normalizer().normalize(_aiter(payloads)))
        assert [c.text for c in chunks if not c.done] == ["ok"]
        assert sum(1 for c in chunks if c.done) == 1

    @pytest.mark.asyncio
    async def test_no_valid_frame_raises_protocol_error(self):
        with pytest.raises(UpstreamProtocolError):
            await _collect(_normalizer().normalize(_aiter(["garbage", "{broken"])))

    @pytest.mark.asyncio
    async def test_empty_stream_raises_protocol_error(self):
        with pytest.raises(UpstreamProtocolError):
            await _collect(_normalizer().normalize(_aiter([])))

    @pytest.mark.asyncio
    async def test_missing_finish_reason_defaults_to_stop(self):
        chunks = await _collect(_normalizer().normalize(_aiter([_frame("hi")])))
        assert chunks[-1].done and chunks[-1].finish_reason == FinishReason.STOP

    @pytest.mark.asyncio
    async def test_max_tokens_finish_reason(self):
        chunks = await _collect(_normalizer().normalize(_aiter([_frame("hi", finish="MAX_TOKENS")])))
        assert chunks[-1].finish_reason == FinishReason.MAX_TOKENS

    @pytest.mark.asyncio
    async def test_safety_block_propagates(self):
        payloads = [_frame("partial"), _frame(finish="SAFETY")]
        with pytest.raises(SafetyBlocked):
            await _collect(_normalizer().normalize(_aiter(payloads)))


class TestChunkChannel:

    @pytest.mark.asyncio
    async def test_delivers_all_chunks_in_order(self):
        source = _aiter([StreamChunk(text="a"), StreamChunk(text="b"), StreamChunk(done=True)])
        async with ChunkChannel(source, maxsize=1) as channel:
            chunks = [c async for c in channel]
        assert [c.text for c in chunks] == ["a", "b", None]
        assert chunks[-1].done

    @pytest.mark.asyncio
    async def test_producer_error_reraises_on_consumer(self):
        async def failing():
            yield StreamChunk(text="a")
            raise Transient("connection reset")

        received = []
        with pytest.raises(Transient):
            async with ChunkChannel(failing()) as channel:
                async for chunk in channel:
                    received.append(chunk)
        assert [c.text for c in received] == ["a"]

    @pytest.mark.asyncio
    async def test_close_cancels_producer_and_closes_source(self):
        state = {"produced": 0, "closed": False}

        async def endless():
            try:
                while True:
                    state["produced"] += 1
                    yield StreamChunk(text=str(state["produced"]))
                    await asyncio.sleep(0)
            finally:
                state["closed"] = True

        channel = ChunkChannel(endless(), maxsize=2)
        first = await channel.__anext__()
        assert first.text == "1"
        await channel.aclose()

        assert state["closed"] is True
        produced = state["produced"]
        await asyncio.sleep(0.01)
        assert state["produced"] == produced
        with pytest.raises(StopAsyncIteration):
            await channel.__anext__()


class TestSseEncoding:

    def test_chunk_frame(self):
        frame = encode_sse(StreamChunk(text="hi"))
        assert frame.startswith("data: ") and frame.endswith("\n\n")
        assert json.loads(frame[len("data: "):]) == {"text": "hi", "done": False}

    def test_terminal_frame_uses_camel_case(self):
        chunk = StreamChunk(done=True, finish_reason=FinishReason.STOP, usage=Usage(prompt_tokens=1, completion_tokens=2, total_tokens=3))
        payload = json.loads(encode_sse(chunk)[len("data: "):])
        assert payload["finishReason"] == "STOP"
        assert payload["usage"] == {"promptTokens": 1, "completionTokens": 2, "totalTokens": 3}

    def test_done_and_error_frames(self):
        assert SSE_DONE == "data: [DONE]\n\n"
        payload = json.loads(encode_sse_error(Transient("later"))[len("data: "):])
        assert payload == {"success": False, "code": "AI_TRANSIENT", "message": "later"}
