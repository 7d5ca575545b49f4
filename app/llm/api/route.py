# app/llm/api/route.py
from typing import Annotated

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from app.core.auth import CurrentUserIdDep
from app.llm.api.handler import LLMHandler
from app.llm.entity.chat import ChatRequest

chat_router = APIRouter(tags=["Chat"])


def get_llm_handler(request: Request) -> LLMHandler:
    """Dependency to build the handler from services wired on app.state."""
    return LLMHandler(request.app.state.llm_service, getattr(request.app.state, "usage_service", None))


LLMHandlerDep = Annotated[LLMHandler, Depends(get_llm_handler)]


@chat_router.post("/chat/completions")
async def chat_completions(request: Request, body: ChatRequest, user_id: CurrentUserIdDep, handler: LLMHandlerDep):
    """Non-streaming chat endpoint."""
    data = await handler.complete(request, body, user_id)
    return {"success": True, "data": data.to_wire()}


@chat_router.post("/chat/stream")
async def chat_stream(request: Request, body: ChatRequest, user_id: CurrentUserIdDep, handler: LLMHandlerDep):
    """
    Streaming chat endpoint (Server-Sent Events).
    Each event is ``data: <chunk json>``; the stream ends with ``data: [DONE]``.
    """
    body = handler.llm_service.preflight(body)
    # the middleware finishes before the body streams; the handler records this request itself
    request.state.usage_recorded = True
    return StreamingResponse(
        handler.stream(request, body, user_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # for Nginx
        },
    )


@chat_router.get("/models")
async def list_models(handler: LLMHandlerDep):
    """Registry listing with per-model availability."""
    return {"success": True, "data": handler.models().to_wire()}
