import hashlib
import json
from typing import Any, Callable

import pytest
from httpx import ASGITransport, AsyncClient

from services.taskwing.app.config import (
    LLMSettings,
    RetrievalSettings,
    ServerSettings,
    StorageSettings,
    TaskWingSettings,
)
from services.taskwing.app.domain.pipeline import build_pipeline
from services.taskwing.app.llm.gateway import LLMGateway
from services.taskwing.app.llm.types import Usage


class ScriptedChat:
    """Chat client that replays queued replies in order.

    A reply may be a string, a dict (sent as JSON), an exception to raise, or an
    async callable receiving the messages.
    """

    provider = "fake"
    model = "scripted"

    def __init__(self) -> None:
        self.replies: list[Any] = []
        self.calls: list[list[Any]] = []

    def queue(self, *replies: Any) -> None:
        self.replies.extend(replies)

    async def complete(self, messages, *, json_output=False, on_token=None):
        self.calls.append(list(messages))
        if not self.replies:
            raise AssertionError("unexpected LLM call")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            reply = await reply(messages)
        if isinstance(reply, (dict, list)):
            reply = json.dumps(reply)
        if on_token is not None:
            await on_token(reply)
        return reply, Usage(10, 5)


class FakeEmbedder:
    """Deterministic embedder; texts registered in ``vectors`` map to fixed vectors."""

    def __init__(self, dimensions: int = 3) -> None:
        self.dimensions = dimensions
        self.vectors: dict[str, list[float]] = {}
        self.calls: list[list[str]] = []
        self.fail_with: Exception | None = None

    async def embed(self, texts):
        self.calls.append(list(texts))
        if self.fail_with is not None:
            raise self.fail_with
        return [self.vectors.get(text) or self._hashed(text) for text in texts]

    def _hashed(self, text: str) -> list[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [float(digest[i]) + 1.0 for i in range(self.dimensions)]


@pytest.fixture
def chat() -> ScriptedChat:
    return ScriptedChat()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def settings(tmp_path) -> TaskWingSettings:
    return TaskWingSettings(
        llm=LLMSettings(provider="openai", api_key="test-key", retry_base_delay=0, timeout=5),
        retrieval=RetrievalSettings(rewrite_enabled=False),
        storage=StorageSettings(memory_dir=tmp_path / "memory"),
        server=ServerSettings(cors_allow_origins=["http://localhost:5173"]),
    )


@pytest.fixture
def gateway(chat, embedder) -> LLMGateway:
    return LLMGateway(chat, embedder)


@pytest.fixture
async def pipeline(settings, gateway):
    pipe = build_pipeline(settings, gateway=gateway)
    await pipe.start()
    yield pipe
    await pipe.close()


@pytest.fixture
def store(pipeline):
    return pipeline.store


@pytest.fixture
def make_client(settings) -> Callable:
    from services.taskwing.app.main import create_app

    def factory(pipeline):
        app = create_app(settings, pipeline)
        return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")

    return factory


@pytest.fixture
async def client(make_client, pipeline):
    async with make_client(pipeline) as http:
        yield http
