"""FastAPI dependency helpers."""
from __future__ import annotations

from fastapi import Request

from ..domain.pipeline import TaskWingPipeline
from ..persistence.store import KnowledgeStore


def get_pipeline(request: Request) -> TaskWingPipeline:
    return request.app.state.pipeline


def get_store(request: Request) -> KnowledgeStore:
    return request.app.state.pipeline.store


def require_llm(request: Request) -> TaskWingPipeline:
    """Pipeline dependency for endpoints that call the LLM; missing keys become 503."""
    pipeline: TaskWingPipeline = request.app.state.pipeline
    pipeline.require_llm()
    return pipeline


__all__ = ["get_pipeline", "get_store", "require_llm"]
