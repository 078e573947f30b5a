"""Client for a TEI-compatible reranking server."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Protocol, Sequence

import httpx
import structlog

from ..config import RerankSettings
from ..errors import ConfigError, Timeout, UpstreamError
from .chat import decode_json, raise_for_upstream

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RerankResult:
    index: int
    score: float


class Reranker(Protocol):
    async def rerank(self, query: str, texts: Sequence[str], top_k: int | None = None) -> list[RerankResult]: ...


class TEIReranker:
    def __init__(self, settings: RerankSettings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        if not settings.base_url:
            raise ConfigError("rerank.base_url is required when reranking is enabled")
        self._settings = settings
        self._transport = transport

    async def rerank(self, query: str, texts: Sequence[str], top_k: int | None = None) -> list[RerankResult]:
        if not texts:
            return []
        settings = self._settings
        payload = {"query": query, "texts": list(texts), "raw_scores": False, "truncate": True}
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=settings.timeout) as client:
                response = await client.post(f"{settings.base_url.rstrip('/')}/rerank", json=payload)
        except httpx.TimeoutException as exc:
            raise Timeout("rerank", settings.timeout) from exc
        except httpx.TransportError as exc:
            raise UpstreamError(0, str(exc), message=f"rerank transport error: {exc}") from exc
        logger.info("rerank.call", candidates=len(texts), latency_ms=int((time.perf_counter() - start) * 1000))
        raise_for_upstream(response)

        data = decode_json(response, "rerank")
        results = []
        try:
            for item in data:
                index = int(item["index"])
                if 0 <= index < len(texts):
                    results.append(RerankResult(index=index, score=float(item["score"])))
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamError(response.status_code, str(data)[:500], message="rerank response has an unexpected shape") from exc
        results.sort(key=lambda r: (-r.score, r.index))
        return results[: top_k or settings.top_k]


__all__ = ["RerankResult", "Reranker", "TEIReranker"]
