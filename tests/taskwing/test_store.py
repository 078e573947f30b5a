import pytest

from services.taskwing.app.errors import Conflict, NotFound, UserError
from services.taskwing.app.persistence.models import ActivityType, NodeType, Plan, Task
from services.taskwing.app.persistence.store import NewEdge, cosine_similarity


@pytest.mark.asyncio
async def test_node_round_trip_and_type_filter(store):
    decision = await store.create_node("decision", "Use SQLite", "Embedded storage", [1.0, 0.0, 0.0], "code")
    await store.create_node(NodeType.feature, "Plan generation", "Creates plans", None, "code")

    loaded = await store.get_node(decision.id)
    assert loaded.type is NodeType.decision
    assert loaded.embedding == [1.0, 0.0, 0.0]
    assert [node.summary for node in await store.list_nodes("feature")] == ["Plan generation"]
    assert await store.count_nodes_by_type() == {"decision": 1, "feature": 1}
    assert await store.count_nodes_by_agent() == {"code": 2}


@pytest.mark.asyncio
async def test_node_validation(store):
    with pytest.raises(UserError):
        await store.create_node("opinion", "Not a real type")
    with pytest.raises(UserError):
        await store.create_node("note", "   ")
    long_summary = await store.create_node("note", "x" * 250)
    assert len(long_summary.summary) == 200
    with pytest.raises(NotFound):
        await store.get_node("missing")


@pytest.mark.asyncio
async def test_embedding_dimension_is_fixed_until_cleared(store):
    await store.create_node("decision", "First", embedding=[1.0, 0.0, 0.0])
    with pytest.raises(Conflict):
        await store.create_node("decision", "Second", embedding=[1.0, 0.0, 0.0, 0.0])
    with pytest.raises(Conflict):
        await store.vector_search([1.0, 0.0], 5)
    assert await store.dimensions() == 3

    await store.clear_all_knowledge()
    assert await store.dimensions() is None
    await store.create_node("decision", "Wider", embedding=[1.0, 0.0, 0.0, 0.0])
    assert await store.dimensions() == 4


@pytest.mark.asyncio
async def test_vector_search_orders_by_similarity_then_creation(store):
    first = await store.create_node("pattern", "Same direction A", embedding=[1.0, 1.0, 0.0])
    second = await store.create_node("pattern", "Same direction B", embedding=[2.0, 2.0, 0.0])
    best = await store.create_node("pattern", "Exact match", embedding=[0.0, 0.0, 1.0])
    await store.create_node("note", "No embedding")

    results = await store.vector_search([0.0, 0.0, 1.0], 3)
    assert [node.id for node, _ in results] == [best.id, first.id, second.id]
    assert results[0][1] == pytest.approx(1.0)
    assert results[1][1] == results[2][1]
    assert await store.vector_search([0.0, 0.0, 1.0], 0) == []


def test_cosine_similarity_handles_zero_vectors():
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_edges_reject_duplicates_and_unknown_endpoints(store):
    a = await store.create_node("decision", "A")
    b = await store.create_node("decision", "B")
    edge = await store.create_edge(a.id, b.id, "relates_to", 0.8)
    assert edge.confidence == 0.8

    with pytest.raises(Conflict):
        await store.create_edge(a.id, b.id, "relates_to")
    with pytest.raises(NotFound):
        await store.create_edge(a.id, "ghost", "relates_to")
    with pytest.raises(UserError):
        await store.create_edge(a.id, b.id, "depends_on", 1.5)

    created = await store.link_nodes(
        [
            NewEdge(a.id, b.id, "relates_to"),
            NewEdge(b.id, a.id, "relates_to", 0.7),
            NewEdge(a.id, "ghost", "relates_to"),
            NewEdge(a.id, a.id, "relates_to"),
        ]
    )
    assert created == 1
    neighbors = await store.neighbors(a.id)
    assert [e.confidence for e in neighbors] == [0.8, 0.7]


@pytest.mark.asyncio
async def test_clear_all_knowledge_removes_edges(store):
    a = await store.create_node("decision", "A")
    b = await store.create_node("decision", "B")
    await store.create_edge(a.id, b.id, "relates_to")
    await store.clear_all_knowledge()
    assert await store.list_nodes() == []
    assert await store.get_all_node_edges() == []


@pytest.mark.asyncio
async def test_plan_with_cyclic_tasks_is_rejected_without_partial_writes(store):
    plan = Plan(goal="Cyclic plan")
    first = Task(id="task-a", title="A", depends_on=["task-b"])
    second = Task(id="task-b", title="B", depends_on=["task-a"])
    with pytest.raises(Conflict):
        await store.create_plan_with_tasks(plan, [first, second])
    assert await store.list_plans() == []


@pytest.mark.asyncio
async def test_plan_with_tasks_keeps_order_and_dependencies(store):
    plan = Plan(goal="Ship login", goal_summary="Ship login")
    tasks = [
        Task(id="task-1", title="Schema"),
        Task(id="task-2", title="Endpoint", depends_on=["task-1"]),
    ]
    await store.create_plan_with_tasks(plan, tasks)

    stored = await store.list_tasks(plan.id)
    assert [t.title for t in stored] == ["Schema", "Endpoint"]
    assert stored[1].depends_on == ["task-1"]
    assert [(p.id, count) for p, count in await store.list_plans()] == [(plan.id, 2)]


@pytest.mark.asyncio
async def test_create_task_checks_plan_and_dependencies(store):
    plan = await store.create_plan("Refactor storage")
    task = await store.create_task(plan.id, "Extract repository")
    follow_up = await store.create_task(plan.id, "Add tests", depends_on=[task.id])
    assert follow_up.order_index == 1

    with pytest.raises(Conflict):
        await store.create_task(plan.id, "Orphan", depends_on=["task-unknown"])
    with pytest.raises(NotFound):
        await store.create_task("plan-missing", "Anything")
    with pytest.raises(UserError):
        await store.create_plan("  ")


@pytest.mark.asyncio
async def test_activity_log_newest_first_with_summary(store):
    first = await store.record_activity(ActivityType.agent_run, "doc agent ran", agent="doc")
    second = await store.record_activity(ActivityType.finding, "decision: Use SQLite", agent="code")

    entries = await store.recent_activity(10)
    assert [entry.id for entry in entries] == [second.id, first.id]
    assert await store.activity_summary() == {"total": 2, "byType": {"agent_run": 1, "finding": 1}}
    assert (await store.get_activity(first.id)).message == "doc agent ran"

    await store.clear_activity()
    assert await store.recent_activity(10) == []
    with pytest.raises(NotFound):
        await store.get_activity(first.id)
