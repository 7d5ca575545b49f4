# Shared fakes for the gateway tests: scripted upstream HTTP and test clocks.

import json
from typing import Any, Dict, Iterable, List, Optional

import httpx


def gemini_body(
    text: str = "Hello there",
    finish: str = "STOP",
    prompt_tokens: int = 5,
    completion_tokens: int = 7,
    thoughts: Optional[List[str]] = None,
) -> Dict[str, Any]:
    parts = [{"text": t, "thought": True} for t in thoughts or []]
    parts.append({"text": text})
    return {
        "candidates": [{"content": {"role": "model", "parts": parts}, "finishReason": finish}],
        "usageMetadata": {
            "promptTokenCount": prompt_tokens,
            "candidatesTokenCount": completion_tokens,
            "totalTokenCount": prompt_tokens + completion_tokens,
        },
    }


def gemini_ok(text: str = "Hello there", **kwargs) -> httpx.Response:
    return httpx.Response(200, json=gemini_body(text, **kwargs))


def error_response(status: int, message: str = "upstream error", error_type: Optional[str] = None) -> httpx.Response:
    error: Dict[str, Any] = {"message": message, "code": status}
    if error_type:
        error["type"] = error_type
    return httpx.Response(status, json={"error": error})


def sse_bytes(frames: Iterable[Any], done: bool = False) -> bytes:
    """Frame dicts as ``data:`` events; plain strings are emitted verbatim as payloads."""
    lines = []
    for frame in frames:
        payload = frame if isinstance(frame, str) else json.dumps(frame)
        lines.append(f"data: {payload}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def sse_response(frames: Iterable[Any], done: bool = False) -> httpx.Response:
    return httpx.Response(200, content=sse_bytes(frames, done), headers={"Content-Type": "text/event-stream"})


class ScriptedTransport(httpx.MockTransport):
    """Replays a fixed list of responses (or exceptions) in order and records every request."""

    def __init__(self, responses: Iterable[Any]):
        self.requests: List[httpx.Request] = []
        self._responses = list(responses)
        super().__init__(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self._responses:
            raise AssertionError(f"unexpected upstream call to {request.url}")
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def calls(self) -> int:
        return len(self.requests)

    def json_body(self, index: int = -1) -> Dict[str, Any]:
        return json.loads(self.requests[index].content)


class SleepRecorder:
    """Stands in for asyncio.sleep and records the requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class ManualClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms
