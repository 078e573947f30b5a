import math

import pytest

from services.taskwing.app.config import RetrievalSettings
from services.taskwing.app.domain.retrieval import (
    CONSTRAINTS_HEADER,
    KNOWLEDGE_HEADER,
    RetrievalService,
    clean_rewrite,
)
from services.taskwing.app.domain.types import NO_RELEVANT_MEMORY, ClarifyRequest
from services.taskwing.app.errors import UpstreamError
from services.taskwing.app.llm.rerank import RerankResult


def at_cosine(value: float) -> list[float]:
    """Unit vector whose cosine with (1, 0, 0) is ``value``."""
    return [value, math.sqrt(1 - value * value), 0.0]


class StaticReranker:
    def __init__(self, results=None, error=None) -> None:
        self.results = results or []
        self.error = error
        self.queries = []

    async def rerank(self, query, texts, top_k=None):
        self.queries.append((query, list(texts)))
        if self.error is not None:
            raise self.error
        return self.results[:top_k]


@pytest.fixture
async def auth_graph(store, embedder):
    embedder.vectors["auth"] = [1.0, 0.0, 0.0]
    strong = await store.create_node("decision", "Sessions use signed JWTs", "JWT with 15 minute expiry", at_cosine(0.81))
    weak = await store.create_node("feature", "Login page", "Email and password form", at_cosine(0.42))
    neighbor = await store.create_node("pattern", "Token refresh middleware", "Refreshes tokens before expiry")
    faint = await store.create_node("note", "Old cookie experiment", "Abandoned")
    await store.create_edge(strong.id, neighbor.id, "relates_to", 0.9)
    await store.create_edge(weak.id, faint.id, "relates_to", 0.3)
    return strong, weak, neighbor, faint


@pytest.mark.asyncio
async def test_graph_expansion_ranks_neighbors_by_discounted_parent_score(pipeline, auth_graph):
    strong, weak, neighbor, faint = auth_graph
    context = await pipeline.retrieval.retrieve("auth")

    ranked = [(item.node.id, item.score, item.expanded_from) for item in context.scored_nodes]
    assert [node_id for node_id, _, _ in ranked] == [strong.id, neighbor.id, weak.id]
    assert ranked[0][1] == pytest.approx(0.81)
    assert ranked[1][1] == pytest.approx(0.486)
    assert ranked[2][1] == pytest.approx(0.42)
    assert ranked[1][2] == strong.id
    assert faint.id not in {node_id for node_id, _, _ in ranked}
    assert context.strategy.splitlines() == ["vector search top 20", "graph expansion +1"]
    assert context.context_text.startswith(KNOWLEDGE_HEADER)


@pytest.mark.asyncio
async def test_empty_store_returns_empty_bundle_without_embedding(pipeline, embedder):
    context = await pipeline.retrieval.retrieve("anything")
    assert context.empty
    assert context.context_text == ""
    assert context.strategy == NO_RELEVANT_MEMORY
    assert embedder.calls == []
    assert await pipeline.retrieval.answer("anything", context.scored_nodes) == ""


@pytest.mark.asyncio
async def test_constraints_and_architecture_are_injected(pipeline, settings, store, auth_graph):
    await store.create_node("constraint", "All writes go through the store", embedding=at_cosine(0.1))
    settings.storage.architecture_path.write_text("# Layout\nOne FastAPI service.", encoding="utf-8")

    context = await pipeline.retrieval.retrieve("auth")
    text = context.context_text
    assert text.index("## PROJECT ARCHITECTURE OVERVIEW") < text.index(CONSTRAINTS_HEADER) < text.index(KNOWLEDGE_HEADER)
    assert "- All writes go through the store" in text
    assert "architecture injected" in context.strategy
    assert "constraints injected (1)" in context.strategy


@pytest.mark.asyncio
async def test_query_rewrite_is_cleaned_and_used(store, gateway, chat, embedder, auth_graph):
    embedder.vectors["auth session handling"] = [1.0, 0.0, 0.0]
    chat.queue('Rewritten: "auth session handling"')
    service = RetrievalService(store, gateway, RetrievalSettings(rewrite_enabled=True))

    context = await service.retrieve("auth sessions")
    assert context.rewritten_query == "auth session handling"
    assert embedder.calls[-1] == ["auth session handling"]
    assert context.strategy.splitlines()[0] == "query rewrite: auth session handling"


@pytest.mark.asyncio
async def test_failed_rewrite_falls_back_to_raw_query(store, gateway, chat, embedder, auth_graph):
    chat.queue(UpstreamError(500, "down"))
    service = RetrievalService(store, gateway, RetrievalSettings(rewrite_enabled=True))

    context = await service.retrieve("auth")
    assert context.rewritten_query is None
    assert embedder.calls[-1] == ["auth"]
    assert len(context.scored_nodes) == 3


@pytest.mark.asyncio
async def test_rerank_scores_replace_vector_scores(store, gateway, auth_graph):
    strong, weak, _, _ = auth_graph
    reranker = StaticReranker([RerankResult(index=1, score=0.95), RerankResult(index=0, score=0.30)])
    service = RetrievalService(store, gateway, RetrievalSettings(rewrite_enabled=False, graph_expansion=False), reranker)

    nodes = await service.search("auth", limit=2)
    assert [(item.node.id, item.score) for item in nodes] == [(weak.id, 0.95), (strong.id, 0.30)]


@pytest.mark.asyncio
async def test_rerank_failure_keeps_vector_ranking(store, gateway, auth_graph):
    strong, weak, _, _ = auth_graph
    reranker = StaticReranker(error=UpstreamError(0, "connection refused"))
    service = RetrievalService(store, gateway, RetrievalSettings(rewrite_enabled=False, graph_expansion=False), reranker)

    context = await service.retrieve("auth", limit=1)
    assert [item.node.id for item in context.scored_nodes] == [strong.id]
    assert "rerank failed; kept vector ranking" in context.strategy


@pytest.mark.asyncio
async def test_embedding_failure_is_fatal(pipeline, embedder, auth_graph):
    embedder.fail_with = UpstreamError(503, "embedding server down")
    with pytest.raises(UpstreamError):
        await pipeline.retrieval.retrieve("auth")


@pytest.mark.asyncio
async def test_answer_uses_retrieved_knowledge(pipeline, chat, auth_graph):
    nodes = await pipeline.retrieval.search("auth")
    chat.queue("  Sessions are JWT based.  ")
    assert await pipeline.retrieval.answer("how do sessions work?", nodes) == "Sessions are JWT based."
    prompt = chat.calls[-1][-1].content
    assert "Sessions use signed JWTs" in prompt
    assert prompt.endswith("Question: how do sessions work?")


@pytest.mark.parametrize(
    "raw, expected",
    [
        ('Rewritten: "jwt session expiry"', "jwt session expiry"),
        ("Here is the rewritten statement: token refresh", "token refresh"),
        ("", "original query"),
        ("x" * 100, "original query"),
    ],
)
def test_clean_rewrite(raw, expected):
    assert clean_rewrite("original query", raw) == expected


@pytest.mark.asyncio
async def test_architecture_and_constraints_are_injected_without_matches(pipeline, settings, store, embedder):
    await store.create_node("constraint", "All writes go through the store")
    settings.storage.architecture_path.write_text("# Layout\nOne FastAPI service.", encoding="utf-8")

    context = await pipeline.retrieval.retrieve("auth")
    assert context.empty
    assert embedder.calls == []
    text = context.context_text
    assert text.startswith("## PROJECT ARCHITECTURE OVERVIEW\n\n# Layout\nOne FastAPI service.")
    assert text.index("## PROJECT ARCHITECTURE OVERVIEW") < text.index(CONSTRAINTS_HEADER)
    assert KNOWLEDGE_HEADER not in text
    assert context.strategy.splitlines() == [NO_RELEVANT_MEMORY, "architecture injected", "constraints injected (1)"]
    assert await pipeline.retrieval.search("auth") == []


@pytest.mark.asyncio
async def test_clarify_sees_architecture_on_an_empty_store(pipeline, settings, chat):
    settings.storage.architecture_path.write_text("# Layout\nOne FastAPI service.", encoding="utf-8")
    chat.queue({"questions": ["Which token format?"], "goal_summary": "login", "enriched_goal": "Add login", "is_ready_to_plan": False})

    result = await pipeline.clarify.clarify(ClarifyRequest(goal="add login"))
    assert result.context_used
    assert "One FastAPI service." in chat.calls[0][-1].content
