"""Message and usage types shared by the LLM clients."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal, TypeVar

from pydantic import BaseModel, ValidationError

from ..errors import SchemaValidationError

Role = Literal["system", "user", "assistant"]
TokenCallback = Callable[[str], Awaitable[None]]
ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: str

    def as_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(self.prompt_tokens + other.prompt_tokens, self.completion_tokens + other.completion_tokens)


def extract_json(text: str) -> str:
    """Pull the JSON object out of a model reply that may carry fences or prose."""
    cleaned = _FENCE.sub("", text.strip()).strip()
    if cleaned.startswith("{") or cleaned.startswith("["):
        return cleaned
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        return cleaned
    return cleaned[start : end + 1]


def parse_structured(text: str, schema: type[ModelT]) -> ModelT:
    payload = extract_json(text)
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise SchemaValidationError(f"response is not valid JSON: {exc.msg}", raw=text) from exc
    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        raise SchemaValidationError(
            f"response does not match {schema.__name__}: {exc.error_count()} error(s): {exc.errors()[0]['msg']}",
            raw=text,
        ) from exc


__all__ = ["ChatMessage", "TokenCallback", "Usage", "extract_json", "parse_structured"]
