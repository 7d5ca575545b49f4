# app/llm/api/dto.py
from typing import Any, Dict, List, Optional

from app.llm.entity.chat import CamelModel, ChatResponse
from app.llm.service.router_service import RoutingResult


class AttemptDTO(CamelModel):
    provider: str
    model: str
    outcome: str


class CompletionData(CamelModel):
    response: ChatResponse
    provider: Optional[str] = None
    attempts: List[AttemptDTO]
    attempts_made: int

    @classmethod
    def from_result(cls, result: RoutingResult) -> "CompletionData":
        return cls(
            response=result.response,
            provider=result.provider,
            attempts=[AttemptDTO(provider=a.provider, model=a.model, outcome=a.outcome) for a in result.attempts],
            attempts_made=result.attempts_made,
        )


class ModelListData(CamelModel):
    models: List[Dict[str, Any]]
    providers: Dict[str, bool]
