"""Chat-completion clients for cloud and local providers."""
from __future__ import annotations

import json
import time
from typing import Any, Protocol, Sequence

import httpx
import structlog

from ..config import LLMSettings
from ..errors import AuthFailure, RateLimited, Timeout, UpstreamError
from .types import ChatMessage, TokenCallback, Usage

logger = structlog.get_logger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
STREAM_USAGE_PROVIDERS = frozenset({"openai", "openrouter"})


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def raise_for_upstream(response: httpx.Response) -> None:
    """Translate a non-2xx response into the gateway error taxonomy."""
    if response.is_success:
        return
    body = response.text[:2000]
    if response.status_code in (401, 403):
        raise AuthFailure(response.status_code, body)
    if response.status_code == 429:
        raise RateLimited(response.status_code, body, retry_after=_retry_after(response))
    raise UpstreamError(response.status_code, body)


def decode_json(response: httpx.Response, what: str) -> Any:
    """Decode a successful response body, mapping a non-JSON body to ``UpstreamError``."""
    try:
        return response.json()
    except ValueError as exc:
        raise UpstreamError(response.status_code, response.text[:2000], message=f"{what} response is not JSON") from exc


class ChatClient(Protocol):
    provider: str
    model: str

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        *,
        json_output: bool = False,
        on_token: TokenCallback | None = None,
    ) -> tuple[str, Usage]: ...


class OpenAICompatibleChatClient:
    """Client for ``/chat/completions`` (OpenAI, OpenRouter, Ollama and compatible servers)."""

    def __init__(self, settings: LLMSettings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport
        self.provider = settings.provider
        self.model = settings.model

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = self._settings.resolved_api_key()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        *,
        json_output: bool = False,
        on_token: TokenCallback | None = None,
    ) -> tuple[str, Usage]:
        settings = self._settings
        url = f"{settings.resolved_base_url()}/chat/completions"
        payload: dict[str, Any] = {
            "model": settings.model,
            "messages": [message.as_dict() for message in messages],
            "temperature": settings.temperature,
            "max_tokens": settings.max_tokens,
        }
        if json_output:
            payload["response_format"] = {"type": "json_object"}

        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=settings.timeout) as client:
                if on_token is not None:
                    content, usage = await self._stream(client, url, payload, on_token)
                else:
                    response = await client.post(url, headers=self._headers(), json=payload)
                    raise_for_upstream(response)
                    content, usage = _parse_completion(decode_json(response, "llm chat"))
        except httpx.TimeoutException as exc:
            raise Timeout("llm chat", settings.timeout) from exc
        except httpx.TransportError as exc:
            raise UpstreamError(0, str(exc), message=f"llm transport error: {exc}") from exc
        latency_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            "llm.chat",
            provider=self.provider,
            model=self.model,
            latency_ms=latency_ms,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
        )
        return content, usage

    async def _stream(
        self,
        client: httpx.AsyncClient,
        url: str,
        payload: dict[str, Any],
        on_token: TokenCallback,
    ) -> tuple[str, Usage]:
        payload = {**payload, "stream": True}
        if self.provider in STREAM_USAGE_PROVIDERS:
            payload["stream_options"] = {"include_usage": True}
        parts: list[str] = []
        usage = Usage()
        async with client.stream("POST", url, headers=self._headers(), json=payload) as response:
            if not response.is_success:
                await response.aread()
                raise_for_upstream(response)
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[len("data:") :].strip()
                if data == "[DONE]":
                    break
                try:
                    chunk = json.loads(data)
                except ValueError as exc:
                    raise UpstreamError(response.status_code, data[:2000], message="llm stream chunk is not JSON") from exc
                if chunk.get("usage"):
                    usage = _usage_from(chunk["usage"])
                for choice in chunk.get("choices") or []:
                    delta = (choice.get("delta") or {}).get("content")
                    if delta:
                        parts.append(delta)
                        await on_token(delta)
        return "".join(parts), usage


class AnthropicChatClient:
    """Client for the Anthropic messages API."""

    def __init__(self, settings: LLMSettings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport
        self.provider = settings.provider
        self.model = settings.model

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        *,
        json_output: bool = False,
        on_token: TokenCallback | None = None,
    ) -> tuple[str, Usage]:
        settings = self._settings
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        payload: dict[str, Any] = {
            "model": settings.model,
            "max_tokens": settings.max_tokens,
            "temperature": settings.temperature,
            "messages": [m.as_dict() for m in messages if m.role != "system"],
        }
        if system:
            payload["system"] = system
        headers = {
            "x-api-key": settings.resolved_api_key() or "",
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=settings.timeout) as client:
                response = await client.post(f"{settings.resolved_base_url()}/v1/messages", headers=headers, json=payload)
        except httpx.TimeoutException as exc:
            raise Timeout("llm chat", settings.timeout) from exc
        except httpx.TransportError as exc:
            raise UpstreamError(0, str(exc), message=f"llm transport error: {exc}") from exc
        latency_ms = int((time.perf_counter() - start) * 1000)
        logger.info("llm.chat", provider=self.provider, model=self.model, latency_ms=latency_ms, status_code=response.status_code)
        raise_for_upstream(response)
        data = decode_json(response, "llm chat")

        content = "".join(block.get("text", "") for block in data.get("content", []) if block.get("type") == "text")
        usage_data = data.get("usage") or {}
        usage = Usage(usage_data.get("input_tokens", 0), usage_data.get("output_tokens", 0))
        if on_token is not None and content:
            await on_token(content)
        return content, usage


def _usage_from(data: dict[str, Any]) -> Usage:
    return Usage(int(data.get("prompt_tokens", 0) or 0), int(data.get("completion_tokens", 0) or 0))


def _parse_completion(data: Any) -> tuple[str, Usage]:
    if not isinstance(data, dict):
        raise UpstreamError(200, str(data)[:500], message="chat response is not a JSON object")
    choices = data.get("choices") or []
    if not choices:
        raise UpstreamError(200, json.dumps(data)[:500], message="chat response missing choices")
    message = choices[0].get("message") or {}
    return message.get("content") or "", _usage_from(data.get("usage") or {})


def build_chat_client(settings: LLMSettings, transport: httpx.AsyncBaseTransport | None = None) -> ChatClient:
    if settings.provider == "anthropic":
        return AnthropicChatClient(settings, transport=transport)
    return OpenAICompatibleChatClient(settings, transport=transport)


__all__ = [
    "AnthropicChatClient",
    "ChatClient",
    "OpenAICompatibleChatClient",
    "build_chat_client",
    "decode_json",
    "raise_for_upstream",
]
