"""Knowledge graph API: nodes, search, stats, agents, edges and bootstrap."""
from __future__ import annotations

import os
from typing import Any, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from ..agents.registry import list_agents
from ..domain.pipeline import TaskWingPipeline
from ..domain.types import ScoredNode
from ..errors import UserError
from ..persistence.models import Node, NodeEdge, NodeType
from ..persistence.store import KnowledgeStore
from .deps import get_pipeline, get_store

router = APIRouter(prefix="/api", tags=["knowledge"])

SEMANTIC_RELATION = "semantically_similar"


class NodeResponse(BaseModel):
    id: str
    type: str
    summary: str
    content: str
    source_agent: str = Field(alias="sourceAgent")
    has_embedding: bool = Field(alias="hasEmbedding")
    created_at: str | None = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)


class SearchResult(NodeResponse):
    score: float
    expanded_from: str | None = Field(default=None, alias="expandedFrom")


class SearchRequest(BaseModel):
    query: str = ""
    limit: int = Field(default=5, ge=1, le=50)
    answer: bool = False


class SearchResponse(BaseModel):
    results: List[SearchResult]
    answer: str = ""


class AgentResponse(BaseModel):
    id: str
    name: str
    description: str
    node_count: int = Field(alias="nodeCount")

    model_config = ConfigDict(populate_by_name=True)


class BootstrapRequest(BaseModel):
    project_path: str | None = Field(default=None, alias="projectPath")
    agents: List[str] | None = None
    clear: bool = False

    model_config = ConfigDict(populate_by_name=True)


class BootstrapResponse(BaseModel):
    success: bool
    findings: int
    nodes_created: int = Field(alias="nodesCreated")
    duplicates_skipped: int = Field(alias="duplicatesSkipped")
    edges_created: int = Field(alias="edgesCreated")
    agents: List[str]
    errors: List[str]

    model_config = ConfigDict(populate_by_name=True)


def node_response(node: Node) -> NodeResponse:
    return NodeResponse(
        id=node.id,
        type=node.type.value,
        summary=node.summary,
        content=node.content,
        source_agent=node.source_agent,
        has_embedding=node.embedding is not None,
        created_at=node.created_at.isoformat() if node.created_at else None,
    )


def _search_result(item: ScoredNode) -> SearchResult:
    return SearchResult(
        **node_response(item.node).model_dump(),
        score=round(item.score, 4),
        expanded_from=item.expanded_from,
    )


def styled_edge(edge: NodeEdge) -> dict[str, Any]:
    semantic = edge.relation == SEMANTIC_RELATION
    return {
        "id": f"e-{edge.id}",
        "source": edge.from_node,
        "target": edge.to_node,
        "relation": edge.relation,
        "confidence": edge.confidence,
        "strokeColor": "#f59e0b" if semantic else "#10b981",
        "strokeWidth": max(1, int(edge.confidence * 3)) if semantic else 2,
        "opacity": max(edge.confidence, 0.4),
        "animated": semantic,
    }


def plain_edge(edge: NodeEdge) -> dict[str, Any]:
    return {
        "id": edge.id,
        "from": edge.from_node,
        "to": edge.to_node,
        "relation": edge.relation,
        "confidence": edge.confidence,
        "properties": edge.properties or {},
    }


@router.get("/nodes", response_model=List[NodeResponse])
async def list_nodes(type: str | None = Query(default=None), store: KnowledgeStore = Depends(get_store)):
    nodes = await store.list_nodes(type or None)
    return [node_response(node) for node in nodes]


@router.get("/nodes/{node_id}", response_model=NodeResponse)
async def get_node(node_id: str, store: KnowledgeStore = Depends(get_store)):
    return node_response(await store.get_node(node_id))


@router.post("/search", response_model=SearchResponse)
async def search(request: SearchRequest, pipeline: TaskWingPipeline = Depends(get_pipeline)):
    query = request.query.strip()
    if not query:
        raise UserError("query is required")
    pipeline.require_llm()
    nodes = await pipeline.retrieval.search(query, request.limit)
    answer = await pipeline.retrieval.answer(query, nodes) if request.answer else ""
    return SearchResponse(results=[_search_result(item) for item in nodes], answer=answer)


@router.get("/stats")
async def stats(store: KnowledgeStore = Depends(get_store)):
    counts = await store.count_nodes_by_type()
    return {
        "total": sum(counts.values()),
        "feature": counts.get(NodeType.feature.value, 0),
        "decision": counts.get(NodeType.decision.value, 0),
        "pattern": counts.get(NodeType.pattern.value, 0),
    }


@router.get("/agents", response_model=List[AgentResponse])
async def agents(store: KnowledgeStore = Depends(get_store)):
    counts = await store.count_nodes_by_agent()
    return [
        AgentResponse(id=info.id, name=info.name, description=info.description, node_count=counts.get(info.id, 0))
        for info in list_agents()
    ]


@router.get("/edges")
async def edges(styled: bool = False, store: KnowledgeStore = Depends(get_store)):
    rows = await store.get_all_node_edges()
    render = styled_edge if styled else plain_edge
    return [render(edge) for edge in rows]


@router.post("/bootstrap", response_model=BootstrapResponse)
async def bootstrap(request: BootstrapRequest, pipeline: TaskWingPipeline = Depends(get_pipeline)):
    project_path = request.project_path or os.getcwd()
    if not os.path.isdir(project_path):
        raise UserError("project path does not exist")
    pipeline.require_llm()
    report = await pipeline.bootstrap.run(project_path, agents=request.agents, clear=request.clear)
    return BootstrapResponse(
        success=report.success,
        findings=report.findings,
        nodes_created=report.nodes_created,
        duplicates_skipped=report.duplicates_skipped,
        edges_created=report.edges_created,
        agents=report.agents,
        errors=report.errors,
    )


@router.get("/info")
async def info(pipeline: TaskWingPipeline = Depends(get_pipeline)):
    settings = pipeline.settings
    return {
        "projectPath": os.getcwd(),
        "memoryDir": str(settings.storage.memory_dir),
        "version": "0.1.0",
        "llmProvider": settings.llm.provider,
        "llmModel": settings.llm.model,
        "embeddingProvider": settings.embedding.provider,
        "rerankEnabled": settings.rerank.enabled,
    }


__all__ = ["node_response", "plain_edge", "router", "styled_edge"]
