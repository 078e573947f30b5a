"""Provider-agnostic gateway over chat completion and embeddings."""
from __future__ import annotations

from typing import Any, Sequence, overload

import httpx
import structlog

from ..config import TaskWingSettings
from ..errors import UpstreamError
from ..observability.otel import llm_tokens
from .chat import ChatClient, build_chat_client
from .embeddings import Embedder, HTTPEmbedder
from .types import ChatMessage, ModelT, TokenCallback, Usage, parse_structured

logger = structlog.get_logger(__name__)


class LLMGateway:
    def __init__(self, chat_client: ChatClient, embedder: Embedder, embed_batch_size: int = 32) -> None:
        self._chat = chat_client
        self._embedder = embedder
        self._batch_size = max(embed_batch_size, 1)
        self._dimensions: int | None = None

    @property
    def provider(self) -> str:
        return getattr(self._chat, "provider", "unknown")

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        *,
        json_output: bool = False,
        on_token: TokenCallback | None = None,
    ) -> tuple[str, Usage]:
        content, usage = await self._chat.complete(messages, json_output=json_output, on_token=on_token)
        if usage.total_tokens:
            llm_tokens.add(usage.total_tokens, {"provider": self.provider})
        return content, usage

    @overload
    async def chat(self, messages: Sequence[ChatMessage], schema: None = None, on_token: TokenCallback | None = None) -> tuple[str, Usage]: ...

    @overload
    async def chat(self, messages: Sequence[ChatMessage], schema: type[ModelT], on_token: TokenCallback | None = None) -> tuple[ModelT, Usage]: ...

    async def chat(self, messages, schema=None, on_token=None) -> tuple[Any, Usage]:
        """Return raw text, or a validated ``schema`` instance when one is given."""
        content, usage = await self.complete(messages, json_output=schema is not None, on_token=on_token)
        if schema is None:
            return content, usage
        return parse_structured(content, schema), usage

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed ``texts`` in input order; any failed batch fails the whole call."""
        if not texts:
            return []
        vectors: list[list[float]] = []
        for offset in range(0, len(texts), self._batch_size):
            batch = list(texts[offset : offset + self._batch_size])
            vectors.extend(await self._embedder.embed(batch))
        if len(vectors) != len(texts):
            raise UpstreamError(200, "", message=f"embedder returned {len(vectors)} vectors for {len(texts)} inputs")
        lengths = {len(vec) for vec in vectors}
        if len(lengths) != 1:
            raise UpstreamError(200, "", message=f"embedder returned vectors of unequal length: {sorted(lengths)}")
        if self._dimensions is None:
            self._dimensions = lengths.pop()
            logger.info("embedding.dimensions", dimensions=self._dimensions)
        return vectors

    async def dimensions(self) -> int:
        if self._dimensions is None:
            await self.embed(["dimension probe"])
        assert self._dimensions is not None
        return self._dimensions


def build_gateway(settings: TaskWingSettings, transport: httpx.AsyncBaseTransport | None = None) -> LLMGateway:
    embedding = settings.embedding
    # the chat key doubles as the embedding key when both talk to the same cloud
    if not embedding.api_key and embedding.provider == settings.llm.provider:
        embedding = embedding.model_copy(update={"api_key": settings.llm.resolved_api_key()})
    return LLMGateway(
        build_chat_client(settings.llm, transport=transport),
        HTTPEmbedder(embedding, transport=transport),
        embed_batch_size=settings.embedding.batch_size,
    )


__all__ = ["LLMGateway", "build_gateway"]
