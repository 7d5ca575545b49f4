# app/llm/service/streaming.py
"""
Turns vendor stream framing into the internal StreamChunk sequence.

Every normalized stream ends with exactly one ``done=True`` chunk carrying the
finish reason and the vendor's final usage totals.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Optional

from app.core.errors import AiError, UpstreamProtocolError
from app.core.logger import get_logger
from app.llm.entity.chat import FinishReason, StreamChunk, Usage

logger = get_logger("StreamNormalizer")

SSE_DONE = "data: [DONE]\n\n"


@dataclass
class FrameDelta:
    """What one vendor frame contributes to the stream."""
    text: Optional[str] = None
    thought: Optional[str] = None
    finish_reason: Optional[FinishReason] = None
    usage: Optional[Usage] = None


FrameParser = Callable[[Dict[str, Any]], FrameDelta]


async def iter_sse_payloads(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """
    Yield the payload of each ``data:`` line.
    Bare JSON lines (JSONL framing) are accepted as well; ``[DONE]`` ends the stream.
    """
    async for raw_line in lines:
        if raw_line is None:
            continue
        line = raw_line.strip()
        if not line or line.startswith(":"):
            continue
        if line.startswith("data:"):
            line = line[len("data:"):].strip()
            if line == "[DONE]":
                return
        elif line.startswith(("event:", "id:", "retry:")):
            continue
        yield line


class StreamNormalizer:
    """Applies a vendor frame parser to a payload stream and enforces the chunk invariants."""

    def __init__(self, parse_frame: FrameParser, provider: str, model: str):
        self._parse_frame = parse_frame
        self.provider = provider
        self.model = model

    async def normalize(self, payloads: AsyncIterator[str]) -> AsyncIterator[StreamChunk]:
        valid_frames = 0
        finish_reason: Optional[FinishReason] = None
        usage: Optional[Usage] = None

        async for payload in payloads:
            try:
                frame = json.loads(payload)
            except ValueError:
                logger.warning(f"Skipping unparseable {self.provider} frame: {payload[:100]}")
                continue
            if not isinstance(frame, dict):
                logger.warning(f"Skipping non-object {self.provider} frame: {payload[:100]}")
                continue

            try:
                delta = self._parse_frame(frame)
            except AiError:
                raise
            except (KeyError, IndexError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed {self.provider} frame: {e}")
                continue

            valid_frames += 1
            if delta.usage is not None:
                # vendor totals are cumulative; the latest one wins
                usage = delta.usage
            if delta.finish_reason is not None:
                finish_reason = delta.finish_reason
            if delta.text or delta.thought:
                yield StreamChunk(text=delta.text or None, thought=delta.thought or None)

        if valid_frames == 0:
            raise UpstreamProtocolError(
                f"{self.provider} stream produced no valid frames",
                provider=self.provider,
                model=self.model,
            )

        yield StreamChunk(done=True, finish_reason=finish_reason or FinishReason.STOP, usage=usage)


class _Failure:
    def __init__(self, error: BaseException):
        self.error = error


_END = object()


class ChunkChannel:
    """
    Bounded channel between a producer task draining ``source`` and a single consumer.

    Closing the channel from the consumer side cancels the producer, which in
    turn closes the upstream stream.
    """

    def __init__(self, source: AsyncIterator[StreamChunk], maxsize: int = 16):
        self._source = source
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._producer: Optional[asyncio.Task] = None
        self._closed = False

    def _ensure_started(self) -> None:
        if self._producer is None:
            self._producer = asyncio.create_task(self._produce())

    async def _produce(self) -> None:
        try:
            async for chunk in self._source:
                await self._queue.put(chunk)
            await self._queue.put(_END)
        except asyncio.CancelledError:
            raise
        except BaseException as e:  # forwarded to the consumer
            await self._queue.put(_Failure(e))
        finally:
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                await aclose()

    def __aiter__(self) -> "ChunkChannel":
        return self

    async def __anext__(self) -> StreamChunk:
        if self._closed:
            raise StopAsyncIteration
        self._ensure_started()
        item = await self._queue.get()
        if item is _END:
            self._closed = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._closed = True
            raise item.error
        return item

    async def aclose(self) -> None:
        self._closed = True
        if self._producer is not None and not self._producer.done():
            self._producer.cancel()
            try:
                await self._producer
            except asyncio.CancelledError:
                pass

    async def __aenter__(self) -> "ChunkChannel":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


def encode_sse(chunk: StreamChunk) -> str:
    return f"data: {json.dumps(chunk.to_wire())}\n\n"


def encode_sse_error(error: AiError) -> str:
    return f"data: {json.dumps(error.to_envelope())}\n\n"
