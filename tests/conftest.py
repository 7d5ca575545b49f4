import pytest

from app.llm.entity.chat import ChatMessage, ChatOptions, ChatRequest
from app.llm.models.registry import ModelRegistry


@pytest.fixture
def registry():
    return ModelRegistry()


@pytest.fixture
def make_request():
    def _make(model="gemini-2.5-flash", text="Hi", **options):
        return ChatRequest(
            messages=[ChatMessage(role="user", content=text)],
            options=ChatOptions(model=model, **options),
        )

    return _make
