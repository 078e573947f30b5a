"""Knowledge store: nodes, edges, plans, tasks, clarify sessions and activity."""
from __future__ import annotations

import math
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Iterable, Sequence

import structlog
from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import Conflict, NotFound, StorageError, TaskWingError, UserError
from .db import Database
from .models import (
    ActivityEntry,
    ActivityType,
    ClarifySession,
    Node,
    NodeEdge,
    NodeType,
    Plan,
    PlanStatus,
    StoreMetadata,
    Task,
    TaskStatus,
    short_id,
    utcnow,
)

logger = structlog.get_logger(__name__)

DIMENSION_KEY = "embedding_dimension"
SUMMARY_MAX_CHARS = 200


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def coerce_node_type(value: NodeType | str) -> NodeType:
    if isinstance(value, NodeType):
        return value
    try:
        return NodeType(str(value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(t.value for t in NodeType)
        raise UserError(f"invalid node type '{value}' (expected one of: {allowed})") from exc


@dataclass
class NewNode:
    type: NodeType | str
    summary: str
    content: str = ""
    embedding: list[float] | None = None
    source_agent: str = ""


@dataclass
class NewEdge:
    from_node: str
    to_node: str
    relation: str
    confidence: float = 1.0
    properties: dict[str, Any] = field(default_factory=dict)


def _check_acyclic(tasks: Sequence[Task]) -> None:
    deps = {task.id: list(task.depends_on or []) for task in tasks}
    indegree = {task_id: 0 for task_id in deps}
    for task_id, task_deps in deps.items():
        for dep in task_deps:
            if dep not in deps:
                raise Conflict(f"task {task_id} depends on {dep}, which is not part of the plan")
            indegree[task_id] += 1
    dependents: dict[str, list[str]] = {task_id: [] for task_id in deps}
    for task_id, task_deps in deps.items():
        for dep in task_deps:
            dependents[dep].append(task_id)
    ready = [task_id for task_id, degree in indegree.items() if degree == 0]
    visited = 0
    while ready:
        current = ready.pop()
        visited += 1
        for child in dependents[current]:
            indegree[child] -= 1
            if indegree[child] == 0:
                ready.append(child)
    if visited != len(deps):
        raise Conflict("task dependencies contain a cycle")


class KnowledgeStore:
    """Async facade over the embedded database."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._last_created: datetime | None = None

    @property
    def database(self) -> Database:
        return self._db

    def _next_timestamp(self) -> datetime:
        now = utcnow()
        if self._last_created is not None and now <= self._last_created:
            now = self._last_created + timedelta(microseconds=1)
        self._last_created = now
        return now

    @asynccontextmanager
    async def _transaction(
        self, action: str, integrity_error: type[TaskWingError] = Conflict
    ) -> AsyncIterator[AsyncSession]:
        try:
            async with self._db.session_scope() as session:
                yield session
        except TaskWingError:
            raise
        except IntegrityError as exc:
            logger.warning("store.integrity_error", action=action, error=str(exc.orig))
            raise integrity_error(f"{action}: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            logger.error("store.error", action=action, error=str(exc))
            raise StorageError(f"{action} failed: {exc}") from exc

    # -- embedding dimension -------------------------------------------------

    async def dimensions(self) -> int | None:
        async with self._transaction("read dimension") as session:
            row = await session.get(StoreMetadata, DIMENSION_KEY)
            return int(row.value) if row else None

    async def _enforce_dimension(self, session: AsyncSession, embeddings: Iterable[list[float] | None]) -> None:
        lengths = {len(vec) for vec in embeddings if vec is not None}
        if not lengths:
            return
        row = await session.get(StoreMetadata, DIMENSION_KEY)
        if row is None:
            if len(lengths) > 1:
                raise Conflict(f"embeddings in one write have differing dimensions: {sorted(lengths)}")
            session.add(StoreMetadata(key=DIMENSION_KEY, value=str(lengths.pop())))
            return
        expected = int(row.value)
        wrong = sorted(length for length in lengths if length != expected)
        if wrong:
            raise Conflict(f"embedding dimension {wrong[0]} does not match store dimension {expected}")

    # -- nodes ---------------------------------------------------------------

    async def create_node(
        self,
        type: NodeType | str,
        summary: str,
        content: str = "",
        embedding: list[float] | None = None,
        source_agent: str = "",
    ) -> Node:
        nodes = await self.create_nodes([NewNode(type, summary, content, embedding, source_agent)])
        return nodes[0]

    async def create_nodes(self, drafts: Sequence[NewNode]) -> list[Node]:
        if not drafts:
            return []
        nodes = []
        for draft in drafts:
            summary = (draft.summary or "").strip()
            if not summary:
                raise UserError("node summary is required")
            nodes.append(
                Node(
                    type=coerce_node_type(draft.type),
                    summary=summary[:SUMMARY_MAX_CHARS],
                    content=draft.content or "",
                    embedding=[float(x) for x in draft.embedding] if draft.embedding is not None else None,
                    source_agent=draft.source_agent or "",
                    created_at=self._next_timestamp(),
                )
            )
        async with self._transaction("create nodes") as session:
            await self._enforce_dimension(session, (node.embedding for node in nodes))
            session.add_all(nodes)
        logger.debug("store.nodes_created", count=len(nodes))
        return nodes

    async def get_node(self, node_id: str) -> Node:
        async with self._transaction("get node") as session:
            node = await session.get(Node, node_id)
        if node is None:
            raise NotFound(f"node not found: {node_id}")
        return node

    async def get_nodes(self, node_ids: Iterable[str]) -> dict[str, Node]:
        ids = list(dict.fromkeys(node_ids))
        if not ids:
            return {}
        async with self._transaction("get nodes") as session:
            result = await session.execute(select(Node).where(Node.id.in_(ids)))
            return {node.id: node for node in result.scalars()}

    async def list_nodes(self, type_filter: NodeType | str | None = None) -> list[Node]:
        stmt = select(Node).order_by(Node.created_at, Node.id)
        if type_filter:
            stmt = stmt.where(Node.type == coerce_node_type(type_filter))
        async with self._transaction("list nodes") as session:
            result = await session.execute(stmt)
            return list(result.scalars())

    async def count_nodes_by_type(self) -> dict[str, int]:
        async with self._transaction("count nodes") as session:
            result = await session.execute(select(Node.type, func.count(Node.id)).group_by(Node.type))
            return {node_type.value: count for node_type, count in result.all()}

    async def count_nodes_by_agent(self) -> dict[str, int]:
        async with self._transaction("count nodes by agent") as session:
            result = await session.execute(
                select(Node.source_agent, func.count(Node.id)).where(Node.source_agent != "").group_by(Node.source_agent)
            )
            return {agent: count for agent, count in result.all()}

    async def has_embedded_nodes(self) -> bool:
        async with self._transaction("probe embeddings") as session:
            result = await session.execute(select(Node.id).where(Node.embedding.is_not(None)).limit(1))
            return result.first() is not None

    async def clear_all_knowledge(self) -> None:
        async with self._transaction("clear knowledge") as session:
            await session.execute(delete(NodeEdge))
            await session.execute(delete(Node))
            await session.execute(delete(StoreMetadata).where(StoreMetadata.key == DIMENSION_KEY))
        logger.info("store.knowledge_cleared")

    async def vector_search(self, query_vec: Sequence[float], k: int) -> list[tuple[Node, float]]:
        """Return the ``k`` most similar embedded nodes, best first.

        Equal scores keep the earlier-created node first.
        """
        if k <= 0:
            return []
        async with self._transaction("vector search") as session:
            dimension = await session.get(StoreMetadata, DIMENSION_KEY)
            if dimension is not None and int(dimension.value) != len(query_vec):
                raise Conflict(
                    f"query dimension {len(query_vec)} does not match store dimension {dimension.value}"
                )
            result = await session.execute(select(Node).where(Node.embedding.is_not(None)))
            candidates = list(result.scalars())
        scored = [(node, cosine_similarity(query_vec, node.embedding or [])) for node in candidates]
        scored.sort(key=lambda item: (-item[1], item[0].created_at, item[0].id))
        return scored[:k]

    # -- edges ---------------------------------------------------------------

    async def create_edge(
        self,
        from_node: str,
        to_node: str,
        relation: str,
        confidence: float = 1.0,
        properties: dict[str, Any] | None = None,
    ) -> NodeEdge:
        if not 0.0 <= confidence <= 1.0:
            raise UserError(f"edge confidence must be within [0, 1], got {confidence}")
        async with self._transaction("create edge") as session:
            for endpoint in (from_node, to_node):
                if await session.get(Node, endpoint) is None:
                    raise NotFound(f"node not found: {endpoint}")
            existing = await session.execute(
                select(NodeEdge.id).where(
                    NodeEdge.from_node == from_node,
                    NodeEdge.to_node == to_node,
                    NodeEdge.relation == relation,
                )
            )
            if existing.first() is not None:
                raise Conflict(f"edge {from_node} -[{relation}]-> {to_node} already exists")
            edge = NodeEdge(
                from_node=from_node,
                to_node=to_node,
                relation=relation,
                confidence=confidence,
                properties=properties or {},
                created_at=utcnow(),
            )
            session.add(edge)
            await session.flush()
        return edge

    async def link_nodes(self, edges: Sequence[NewEdge]) -> int:
        """Insert edges in one transaction, skipping existing triples and unknown endpoints."""
        if not edges:
            return 0
        endpoint_ids = {edge.from_node for edge in edges} | {edge.to_node for edge in edges}
        async with self._transaction("link nodes") as session:
            known = await session.execute(select(Node.id).where(Node.id.in_(endpoint_ids)))
            known_ids = set(known.scalars())
            existing = await session.execute(
                select(NodeEdge.from_node, NodeEdge.to_node, NodeEdge.relation).where(
                    NodeEdge.from_node.in_(endpoint_ids)
                )
            )
            seen = {tuple(row) for row in existing.all()}
            created = 0
            for edge in edges:
                key = (edge.from_node, edge.to_node, edge.relation)
                if key in seen or edge.from_node not in known_ids or edge.to_node not in known_ids:
                    continue
                if edge.from_node == edge.to_node:
                    continue
                seen.add(key)
                session.add(
                    NodeEdge(
                        from_node=edge.from_node,
                        to_node=edge.to_node,
                        relation=edge.relation,
                        confidence=min(max(edge.confidence, 0.0), 1.0),
                        properties=edge.properties,
                        created_at=utcnow(),
                    )
                )
                created += 1
        return created

    async def get_all_node_edges(self) -> list[NodeEdge]:
        async with self._transaction("list edges") as session:
            result = await session.execute(select(NodeEdge).order_by(NodeEdge.id))
            return list(result.scalars())

    async def neighbors(self, node_id: str) -> list[NodeEdge]:
        async with self._transaction("neighbors") as session:
            if await session.get(Node, node_id) is None:
                raise NotFound(f"node not found: {node_id}")
            result = await session.execute(
                select(NodeEdge)
                .where(or_(NodeEdge.from_node == node_id, NodeEdge.to_node == node_id))
                .order_by(NodeEdge.confidence.desc(), NodeEdge.id)
            )
            return list(result.scalars())

    # -- plans and tasks -----------------------------------------------------

    async def create_plan(
        self,
        goal: str,
        enriched_goal: str = "",
        goal_summary: str = "",
        status: PlanStatus = PlanStatus.active,
    ) -> Plan:
        if not goal.strip():
            raise UserError("plan goal is required")
        plan = Plan(goal=goal, enriched_goal=enriched_goal, goal_summary=goal_summary[:100], status=status)
        async with self._transaction("create plan") as session:
            session.add(plan)
            await session.flush()
        return plan

    async def create_plan_with_tasks(
        self,
        plan: Plan,
        tasks: Sequence[Task],
        retire_session_id: str | None = None,
    ) -> Plan:
        """Persist a plan, its tasks and the session retirement as one unit."""
        plan.id = plan.id or short_id("plan")
        for index, task in enumerate(tasks):
            task.id = task.id or short_id("task")
            task.plan_id = plan.id
            task.order_index = index
        _check_acyclic(tasks)
        async with self._transaction("persist plan", integrity_error=StorageError) as session:
            session.add(plan)
            await session.flush()
            session.add_all(tasks)
            if retire_session_id:
                clarify = await session.get(ClarifySession, retire_session_id)
                if clarify is None:
                    raise NotFound(f"clarify session not found: {retire_session_id}")
                clarify.status = "retired"
                clarify.plan_id = plan.id
            await session.flush()
        logger.info("store.plan_persisted", plan_id=plan.id, tasks=len(tasks))
        return plan

    async def get_plan(self, plan_id: str) -> Plan:
        async with self._transaction("get plan") as session:
            plan = await session.get(Plan, plan_id)
        if plan is None:
            raise NotFound(f"plan not found: {plan_id}")
        return plan

    async def list_plans(self) -> list[tuple[Plan, int]]:
        counts = (
            select(Task.plan_id, func.count(Task.id).label("task_count")).group_by(Task.plan_id).subquery()
        )
        stmt = (
            select(Plan, func.coalesce(counts.c.task_count, 0))
            .outerjoin(counts, counts.c.plan_id == Plan.id)
            .order_by(Plan.created_at.desc(), Plan.id)
        )
        async with self._transaction("list plans") as session:
            result = await session.execute(stmt)
            return [(plan, int(count)) for plan, count in result.all()]

    async def create_task(
        self,
        plan_id: str,
        title: str,
        description: str = "",
        priority: int = 50,
        status: TaskStatus = TaskStatus.pending,
        assigned_agent: str | None = None,
        complexity: str | None = None,
        acceptance_criteria: Sequence[str] = (),
        validation_steps: Sequence[str] = (),
        depends_on: Sequence[str] = (),
        scope: str | None = None,
        keywords: Sequence[str] = (),
        suggested_recall_queries: Sequence[str] = (),
    ) -> Task:
        if not title.strip():
            raise UserError("task title is required")
        async with self._transaction("create task") as session:
            if await session.get(Plan, plan_id) is None:
                raise NotFound(f"plan not found: {plan_id}")
            existing = await session.execute(select(Task.id).where(Task.plan_id == plan_id))
            sibling_ids = set(existing.scalars())
            unknown = [dep for dep in depends_on if dep not in sibling_ids]
            if unknown:
                raise Conflict(f"dependencies not in plan {plan_id}: {', '.join(unknown)}")
            task = Task(
                plan_id=plan_id,
                title=title[:200],
                description=description,
                status=status,
                priority=priority,
                assigned_agent=assigned_agent,
                complexity=complexity,
                acceptance_criteria=list(acceptance_criteria),
                validation_steps=list(validation_steps),
                depends_on=list(depends_on),
                scope=scope,
                keywords=list(keywords),
                suggested_recall_queries=list(suggested_recall_queries),
                order_index=len(sibling_ids),
            )
            session.add(task)
            await session.flush()
        return task

    async def get_task(self, task_id: str) -> Task:
        async with self._transaction("get task") as session:
            task = await session.get(Task, task_id)
        if task is None:
            raise NotFound(f"task not found: {task_id}")
        return task

    async def list_tasks(self, plan_id: str) -> list[Task]:
        async with self._transaction("list tasks") as session:
            result = await session.execute(
                select(Task).where(Task.plan_id == plan_id).order_by(Task.order_index, Task.created_at)
            )
            return list(result.scalars())

    # -- clarify sessions ----------------------------------------------------

    async def create_clarify_session(
        self,
        goal: str,
        max_rounds: int,
        context_text: str = "",
        context_strategy: str = "",
    ) -> ClarifySession:
        clarify = ClarifySession(
            goal=goal,
            rounds=[],
            max_rounds=max_rounds,
            context_text=context_text,
            context_strategy=context_strategy,
        )
        async with self._transaction("create clarify session") as session:
            session.add(clarify)
            await session.flush()
        return clarify

    async def get_clarify_session(self, session_id: str) -> ClarifySession:
        async with self._transaction("get clarify session") as session:
            clarify = await session.get(ClarifySession, session_id)
        if clarify is None:
            raise NotFound(f"clarify session not found: {session_id}")
        return clarify

    async def save_clarify_session(self, clarify: ClarifySession) -> ClarifySession:
        async with self._transaction("save clarify session") as session:
            merged = await session.merge(clarify)
            await session.flush()
        return merged

    # -- activity ------------------------------------------------------------

    async def record_activity(
        self,
        type: ActivityType,
        message: str,
        agent: str | None = None,
        category: str | None = None,
        path: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ActivityEntry:
        entry = ActivityEntry(
            type=type,
            message=message,
            agent=agent,
            category=category,
            path=path,
            details=details or {},
            timestamp=self._next_timestamp(),
        )
        async with self._transaction("record activity") as session:
            session.add(entry)
        return entry

    async def recent_activity(self, limit: int = 50) -> list[ActivityEntry]:
        async with self._transaction("list activity") as session:
            result = await session.execute(
                select(ActivityEntry).order_by(ActivityEntry.timestamp.desc(), ActivityEntry.id).limit(limit)
            )
            return list(result.scalars())

    async def get_activity(self, entry_id: str) -> ActivityEntry:
        async with self._transaction("get activity") as session:
            entry = await session.get(ActivityEntry, entry_id)
        if entry is None:
            raise NotFound(f"activity entry not found: {entry_id}")
        return entry

    async def activity_summary(self) -> dict[str, Any]:
        async with self._transaction("summarize activity") as session:
            result = await session.execute(
                select(ActivityEntry.type, func.count(ActivityEntry.id)).group_by(ActivityEntry.type)
            )
            by_type = {activity_type.value: count for activity_type, count in result.all()}
        return {"total": sum(by_type.values()), "byType": by_type}

    async def clear_activity(self) -> None:
        async with self._transaction("clear activity") as session:
            await session.execute(delete(ActivityEntry))


__all__ = ["KnowledgeStore", "NewEdge", "NewNode", "coerce_node_type", "cosine_similarity"]
