"""Knowledge retrieval: rewrite, embed, vector search, rerank, graph expansion, injection."""
from __future__ import annotations

from pathlib import Path

import structlog

from ..cancellation import CancelToken, guarded
from ..config import RetrievalSettings
from ..errors import Cancelled, NotFound, StorageError, TaskWingError
from ..llm.gateway import LLMGateway
from ..llm.rerank import Reranker
from ..llm.types import ChatMessage
from ..observability.otel import tracer
from ..persistence.models import NodeType
from ..persistence.store import KnowledgeStore
from .types import NO_RELEVANT_MEMORY, KGContext, ScoredNode

logger = structlog.get_logger(__name__)

REWRITE_PROMPT = """Rewrite the question below as a short statement that would match architectural
knowledge about a software project (decisions, features, patterns, constraints).
Fix typos, keep every important term, and return only the rewritten statement.

Question: {query}

Rewritten:"""

REWRITE_PREAMBLES = (
    "rewritten:",
    "rewritten query:",
    "improved query:",
    "here is the rewritten statement:",
    "here's the rewritten statement:",
)

ANSWER_SYSTEM = (
    "You answer questions about a software project using only the provided project knowledge. "
    "If the knowledge does not cover the question, say so."
)

ARCHITECTURE_HEADER = "## PROJECT ARCHITECTURE OVERVIEW"
CONSTRAINTS_HEADER = "## MANDATORY ARCHITECTURAL CONSTRAINTS"
KNOWLEDGE_HEADER = "## RELEVANT PROJECT KNOWLEDGE"


def clean_rewrite(query: str, rewritten: str) -> str:
    """Strip preambles and quotes; fall back to ``query`` when the rewrite is unusable."""
    text = rewritten.strip()
    lowered = text.lower()
    for preamble in REWRITE_PREAMBLES:
        if lowered.startswith(preamble):
            text = text[len(preamble) :].strip()
            break
    text = text.strip("\"'").strip()
    if not text or len(text) > len(query) * 3:
        return query
    return text


def _sort_key(item: ScoredNode) -> tuple:
    return (-item.score, item.node.created_at, item.node.id)


class RetrievalService:
    def __init__(
        self,
        store: KnowledgeStore,
        gateway: LLMGateway,
        settings: RetrievalSettings,
        reranker: Reranker | None = None,
        architecture_path: Path | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._settings = settings
        self._reranker = reranker
        self._architecture_path = architecture_path

    async def retrieve(self, query: str, limit: int | None = None, cancel: CancelToken | None = None) -> KGContext:
        """Compose the knowledge bundle for ``query``.

        Only the query embedding is fatal; rewrite, rerank and expansion failures
        degrade to the previous step's output.
        """
        with tracer.start_as_current_span("retrieval.retrieve") as span:
            context = await self._retrieve(query, limit or self._settings.result_limit, cancel)
            span.set_attribute("retrieval.results", len(context.scored_nodes))
        logger.info("retrieval.done", results=len(context.scored_nodes), strategy=context.strategy.replace("\n", "; "))
        return context

    async def search(self, query: str, limit: int | None = None, cancel: CancelToken | None = None) -> list[ScoredNode]:
        context = await self.retrieve(query, limit, cancel)
        return context.scored_nodes

    async def answer(self, query: str, nodes: list[ScoredNode], cancel: CancelToken | None = None) -> str:
        if not nodes:
            return ""
        knowledge = self._knowledge_block(nodes)
        messages = [
            ChatMessage("system", ANSWER_SYSTEM),
            ChatMessage("user", f"{knowledge}\n\nQuestion: {query}"),
        ]
        text, _ = await guarded(self._gateway.chat(messages), cancel, None, "answer")
        return text.strip()

    async def rewrite_query(self, query: str, cancel: CancelToken | None = None) -> str:
        messages = [ChatMessage("user", REWRITE_PROMPT.format(query=query))]
        try:
            text, _ = await guarded(self._gateway.chat(messages), cancel, None, "query rewrite")
        except Cancelled:
            raise
        except TaskWingError as exc:
            logger.info("retrieval.rewrite_failed", error=str(exc))
            return query
        return clean_rewrite(query, text)

    async def _retrieve(self, query: str, limit: int, cancel: CancelToken | None) -> KGContext:
        if not await self._store.has_embedded_nodes():
            return await self._without_hits(None)
        steps: list[str] = []
        search_query = query
        if self._settings.rewrite_enabled:
            search_query = await self.rewrite_query(query, cancel)
            if search_query != query:
                steps.append(f"query rewrite: {search_query}")

        vectors = await guarded(self._gateway.embed([search_query]), cancel, None, "query embedding")
        top_k = self._settings.vector_top_k
        candidates = [ScoredNode(node, score) for node, score in await self._store.vector_search(vectors[0], top_k)]
        steps.append(f"vector search top {top_k}")
        if not candidates:
            return await self._without_hits(search_query if search_query != query else None)

        survivors = await self._rerank(search_query, candidates, limit, cancel, steps)
        if self._settings.graph_expansion and self._settings.expansion_per_node > 0:
            survivors = await self._expand(survivors, steps)
        survivors.sort(key=_sort_key)

        sections = await self._injections(steps)
        sections.append(self._knowledge_block(survivors))
        return KGContext(
            context_text="\n\n".join(sections),
            scored_nodes=survivors,
            strategy="\n".join(steps),
            rewritten_query=search_query if search_query != query else None,
        )

    async def _without_hits(self, rewritten_query: str | None) -> KGContext:
        """Architecture and constraints are injected even when no knowledge matched."""
        steps = [NO_RELEVANT_MEMORY]
        sections = await self._injections(steps)
        return KGContext(
            context_text="\n\n".join(sections),
            strategy="\n".join(steps),
            rewritten_query=rewritten_query,
        )

    async def _injections(self, steps: list[str]) -> list[str]:
        sections = []
        architecture = self._architecture()
        if architecture:
            sections.append(f"{ARCHITECTURE_HEADER}\n\n{architecture}")
            steps.append("architecture injected")
        constraints = await self._constraints()
        if constraints:
            sections.append(CONSTRAINTS_HEADER + "\n\n" + "\n".join(constraints))
            steps.append(f"constraints injected ({len(constraints)})")
        return sections

    async def _rerank(
        self,
        query: str,
        candidates: list[ScoredNode],
        limit: int,
        cancel: CancelToken | None,
        steps: list[str],
    ) -> list[ScoredNode]:
        if self._reranker is None:
            return candidates[:limit]
        texts = [item.node.content or item.node.summary for item in candidates]
        try:
            ranked = await guarded(self._reranker.rerank(query, texts, top_k=limit), cancel, None, "rerank")
        except Cancelled:
            raise
        except TaskWingError as exc:
            logger.warning("retrieval.rerank_failed", error=str(exc))
            steps.append("rerank failed; kept vector ranking")
            return candidates[:limit]
        steps.append(f"rerank top {limit}")
        return [ScoredNode(candidates[result.index].node, result.score) for result in ranked[:limit]]

    async def _expand(self, survivors: list[ScoredNode], steps: list[str]) -> list[ScoredNode]:
        settings = self._settings
        seen = {item.node.id for item in survivors}
        additions: list[tuple[str, str, float]] = []
        try:
            for parent in survivors:
                taken = 0
                for edge in await self._store.neighbors(parent.node.id):
                    if taken >= settings.expansion_per_node:
                        break
                    if edge.confidence < settings.expansion_min_confidence:
                        continue
                    other = edge.to_node if edge.from_node == parent.node.id else edge.from_node
                    if other in seen:
                        continue
                    seen.add(other)
                    additions.append((other, parent.node.id, parent.score * settings.expansion_discount))
                    taken += 1
            nodes = await self._store.get_nodes(node_id for node_id, _, _ in additions)
        except (NotFound, StorageError) as exc:
            logger.warning("retrieval.expansion_failed", error=str(exc))
            steps.append("graph expansion failed; skipped")
            return survivors
        expanded = [
            ScoredNode(nodes[node_id], score, expanded_from=parent_id)
            for node_id, parent_id, score in additions
            if node_id in nodes
        ]
        if expanded:
            steps.append(f"graph expansion +{len(expanded)}")
        return survivors + expanded

    def _architecture(self) -> str:
        if not self._settings.inject_architecture or self._architecture_path is None:
            return ""
        try:
            return self._architecture_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return ""
        except OSError as exc:
            logger.warning("retrieval.architecture_unreadable", path=str(self._architecture_path), error=str(exc))
            return ""

    async def _constraints(self) -> list[str]:
        if not self._settings.inject_constraints:
            return []
        try:
            nodes = await self._store.list_nodes(NodeType.constraint)
        except StorageError as exc:
            logger.warning("retrieval.constraints_failed", error=str(exc))
            return []
        return [f"- {node.summary}" for node in nodes[: self._settings.max_constraints]]

    @staticmethod
    def _knowledge_block(nodes: list[ScoredNode]) -> str:
        lines = [KNOWLEDGE_HEADER]
        for item in nodes:
            origin = f", via {item.expanded_from}" if item.expanded_from else ""
            lines.append(f"\n### [{item.node.type.value}] {item.node.summary} (score {item.score:.2f}{origin})")
            if item.node.content and item.node.content != item.node.summary:
                lines.append(item.node.content)
        return "\n".join(lines)


__all__ = ["RetrievalService", "clean_rewrite"]
