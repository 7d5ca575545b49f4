import asyncio
import time
from typing import AsyncGenerator, List, Optional

from fastapi import Request

from app.analytics.entity.usage import UsageStatus
from app.analytics.service.usage_service import UsageService
from app.core.errors import AiError
from app.core.logger import get_logger
from app.llm.api.dto import CompletionData, ModelListData
from app.llm.entity.chat import ChatRequest, Usage
from app.llm.service.llm_service import LLMService
from app.llm.service.router_service import Attempt
from app.llm.service.streaming import SSE_DONE, encode_sse, encode_sse_error

logger = get_logger("ChatHandler")


class LLMHandler:
    """Handler for the chat completion and model endpoints."""

    def __init__(self, llm_service: LLMService, usage_service: Optional[UsageService] = None):
        self.llm_service = llm_service
        self.usage_service = usage_service

    def _track(self, request: Request, user_id: str, model: Optional[str], usage: Optional[Usage],
               started: float, status: UsageStatus) -> None:
        if self.usage_service is None:
            return
        self.usage_service.record_chat_usage(
            user_id=user_id,
            endpoint=request.url.path,
            method=request.method,
            model=model,
            usage=usage,
            response_time_ms=(time.perf_counter() - started) * 1000,
            status=status,
        )

    async def complete(self, request: Request, body: ChatRequest, user_id: str) -> CompletionData:
        started = time.perf_counter()
        body = self.llm_service.with_defaults(body)
        request.state.usage_recorded = True
        logger.debug(f"complete start | user={user_id} model={body.model}")
        try:
            result = await self.llm_service.generate(body)
        except AiError:
            self._track(request, user_id, body.model, None, started, UsageStatus.ERROR)
            raise
        self._track(request, user_id, result.model, result.response.usage, started, UsageStatus.SUCCESS)
        return CompletionData.from_result(result)

    async def stream(self, request: Request, body: ChatRequest, user_id: str) -> AsyncGenerator[str, None]:
        """
        SSE body for /chat/stream. Errors after the response has started are
        reported as a final error frame. A client disconnect closes the channel,
        which closes the upstream connection.
        """
        started = time.perf_counter()
        body = self.llm_service.with_defaults(body)
        usage: Optional[Usage] = None
        status = UsageStatus.SUCCESS
        attempts: List[Attempt] = []

        # a disconnect cancels this generator; leaving the block closes the channel
        async with self.llm_service.open_channel(body, attempts) as channel:
            try:
                async for chunk in channel:
                    if chunk.done:
                        usage = chunk.usage
                    yield encode_sse(chunk)
                yield SSE_DONE
            except AiError as e:
                status = UsageStatus.ERROR
                logger.error(f"stream failed | model={body.model} code={e.code} error={e.message}")
                yield encode_sse_error(e)
            except asyncio.CancelledError:
                status = UsageStatus.ERROR
                logger.info(f"Client disconnected; closing {body.model} stream")
                raise
            finally:
                model = attempts[-1].model if attempts else body.model
                self._track(request, user_id, model, usage, started, status)

    def models(self) -> ModelListData:
        return ModelListData(
            models=self.llm_service.list_models(),
            providers=self.llm_service.provider_status(),
        )
