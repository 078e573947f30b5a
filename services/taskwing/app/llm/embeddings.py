"""Embedding clients: cloud OpenAI and local TEI with a native-shape fallback."""
from __future__ import annotations

import time
from typing import Any, Protocol, Sequence

import httpx
import structlog

from ..config import EmbeddingSettings
from ..errors import AuthFailure, Timeout, TaskWingError, UpstreamError
from .chat import decode_json, raise_for_upstream

logger = structlog.get_logger(__name__)


class Embedder(Protocol):
    async def embed(self, texts: Sequence[str]) -> list[list[float]]: ...


def _ordered_vectors(data: Any, expected: int) -> list[list[float]]:
    items = data.get("data") if isinstance(data, dict) else None
    if not isinstance(items, list):
        raise UpstreamError(200, str(data)[:500], message="embedding response missing data[]")
    vectors: list[list[float] | None] = [None] * expected
    for position, item in enumerate(items):
        index = item.get("index", position)
        if not isinstance(index, int) or not 0 <= index < expected:
            raise UpstreamError(200, str(item)[:200], message=f"embedding index {index} out of range")
        vectors[index] = [float(x) for x in item.get("embedding") or []]
    if any(vec is None for vec in vectors):
        raise UpstreamError(200, "", message="embedding response is missing vectors")
    return [vec for vec in vectors if vec is not None]


def _check_batch(vectors: list[list[float]], expected: int) -> list[list[float]]:
    if len(vectors) != expected:
        raise UpstreamError(200, "", message=f"embedder returned {len(vectors)} vectors for {expected} inputs")
    lengths = {len(vec) for vec in vectors}
    if len(lengths) > 1 or 0 in lengths:
        raise UpstreamError(200, "", message=f"embedder returned vectors of unequal length: {sorted(lengths)}")
    return vectors


class HTTPEmbedder:
    """Embeds through an OpenAI-shaped endpoint, falling back to TEI's native ``/embed``.

    The cloud provider only speaks the OpenAI shape; the local TEI server is asked in
    the OpenAI shape first and the native shape second.
    """

    def __init__(self, settings: EmbeddingSettings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = self._settings.resolved_api_key()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        settings = self._settings
        base = settings.resolved_base_url()
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=settings.timeout) as client:
                if settings.provider == "openai":
                    vectors = await self._embed_openai(client, f"{base}/embeddings", texts)
                else:
                    vectors = await self._embed_tei(client, base, texts)
        except httpx.TimeoutException as exc:
            raise Timeout("embedding", settings.timeout) from exc
        except httpx.TransportError as exc:
            raise UpstreamError(0, str(exc), message=f"embedding transport error: {exc}") from exc
        logger.info(
            "embedding.call",
            provider=settings.provider,
            inputs=len(texts),
            latency_ms=int((time.perf_counter() - start) * 1000),
        )
        return _check_batch(vectors, len(texts))

    async def _embed_openai(self, client: httpx.AsyncClient, url: str, texts: Sequence[str]) -> list[list[float]]:
        payload: dict[str, Any] = {"input": list(texts)}
        if self._settings.model:
            payload["model"] = self._settings.model
        response = await client.post(url, headers=self._headers(), json=payload)
        raise_for_upstream(response)
        return _ordered_vectors(decode_json(response, "embedding"), len(texts))

    async def _embed_tei(self, client: httpx.AsyncClient, base: str, texts: Sequence[str]) -> list[list[float]]:
        try:
            return await self._embed_openai(client, f"{base}/v1/embeddings", texts)
        except AuthFailure:
            raise
        except (TaskWingError, httpx.HTTPError) as exc:
            logger.info("embedding.openai_shape_failed", error=str(exc), fallback="native")
        response = await client.post(
            f"{base}/embed",
            headers={"Content-Type": "application/json"},
            json={"inputs": list(texts), "truncate": True},
        )
        raise_for_upstream(response)
        data = decode_json(response, "native embed")
        if not isinstance(data, list):
            raise UpstreamError(response.status_code, str(data)[:500], message="native embed response is not a list")
        return [[float(x) for x in vec] for vec in data]


__all__ = ["Embedder", "HTTPEmbedder"]
