import pytest

from services.taskwing.app.persistence.models import ActivityType


@pytest.mark.asyncio
async def test_healthcheck_and_info(client):
    assert (await client.get("/healthz")).json() == {"status": "ok", "environment": "dev"}
    info = (await client.get("/api/info")).json()
    assert info["llmProvider"] == "openai"
    assert info["memoryDir"].endswith("memory")


@pytest.mark.asyncio
async def test_search_on_empty_store(client):
    response = await client.post("/api/search", json={"query": "how does auth work?", "answer": True})
    assert response.status_code == 200
    assert response.json() == {"results": [], "answer": ""}


@pytest.mark.asyncio
async def test_search_returns_scored_nodes(client, store, embedder, chat):
    embedder.vectors["jwt sessions"] = [1.0, 0.0, 0.0]
    node = await store.create_node("decision", "Sessions use JWT", "Signed tokens", [1.0, 0.0, 0.0], "code")
    chat.queue("Sessions are signed JWTs.")

    response = await client.post("/api/search", json={"query": "jwt sessions", "limit": 3, "answer": True})
    body = response.json()
    assert body["answer"] == "Sessions are signed JWTs."
    assert body["results"][0]["id"] == node.id
    assert body["results"][0]["score"] == pytest.approx(1.0)
    assert body["results"][0]["sourceAgent"] == "code"
    assert body["results"][0]["hasEmbedding"] is True
    assert body["results"][0]["expandedFrom"] is None


@pytest.mark.asyncio
async def test_search_validation(client):
    empty = await client.post("/api/search", json={"query": "   "})
    assert empty.status_code == 400
    assert empty.json() == {"error": "query is required"}

    out_of_range = await client.post("/api/search", json={"query": "auth", "limit": 0})
    assert out_of_range.status_code == 400
    assert out_of_range.json()["error"].startswith("invalid request")


@pytest.mark.asyncio
async def test_stats_counts_by_type(client, store):
    for kind, count in (("decision", 3), ("feature", 2), ("pattern", 2)):
        for n in range(count):
            await store.create_node(kind, f"{kind} {n}")
    response = await client.get("/api/stats")
    assert response.json() == {"total": 7, "feature": 2, "decision": 3, "pattern": 2}


@pytest.mark.asyncio
async def test_nodes_listing_and_errors(client, store):
    decision = await store.create_node("decision", "Use SQLite", source_agent="code")
    await store.create_node("feature", "Search")

    listed = (await client.get("/api/nodes", params={"type": "decision"})).json()
    assert [n["id"] for n in listed] == [decision.id]
    assert (await client.get(f"/api/nodes/{decision.id}")).json()["summary"] == "Use SQLite"

    missing = await client.get("/api/nodes/nope")
    assert missing.status_code == 404
    assert missing.json() == {"error": "node not found: nope"}

    bad_type = await client.get("/api/nodes", params={"type": "opinion"})
    assert bad_type.status_code == 400

    unknown_route = await client.get("/api/does-not-exist")
    assert unknown_route.status_code == 404
    assert "error" in unknown_route.json()


@pytest.mark.asyncio
async def test_agents_report_node_counts(client, store):
    await store.create_node("documentation", "README.md", source_agent="doc")
    agents = {a["id"]: a for a in (await client.get("/api/agents")).json()}
    assert set(agents) == {"doc", "code", "clarifying", "planning", "explain"}
    assert agents["doc"]["nodeCount"] == 1
    assert agents["code"]["nodeCount"] == 0


@pytest.mark.asyncio
async def test_edges_plain_and_styled(client, store):
    a = await store.create_node("decision", "A")
    b = await store.create_node("decision", "B")
    edge = await store.create_edge(a.id, b.id, "semantically_similar", 0.8)

    plain = (await client.get("/api/edges")).json()
    assert plain == [
        {"id": edge.id, "from": a.id, "to": b.id, "relation": "semantically_similar", "confidence": 0.8, "properties": {}}
    ]
    styled = (await client.get("/api/edges", params={"styled": "true"})).json()[0]
    assert styled["id"] == f"e-{edge.id}"
    assert (styled["source"], styled["target"]) == (a.id, b.id)
    assert styled["animated"] is True
    assert styled["strokeWidth"] == 2


@pytest.mark.asyncio
async def test_cors_preflight(client):
    headers = {"Origin": "http://evil.example", "Access-Control-Request-Method": "GET"}
    rejected = await client.options("/api/stats", headers=headers)
    assert rejected.status_code == 403
    assert rejected.json() == {"error": "origin not allowed"}

    headers["Origin"] = "http://localhost:5173"
    allowed = await client.options("/api/stats", headers=headers)
    assert allowed.status_code == 200
    assert allowed.headers["access-control-allow-origin"] == "http://localhost:5173"


@pytest.mark.asyncio
async def test_missing_api_key_is_service_unavailable(client, settings, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    settings.llm.api_key = None

    search = await client.post("/api/search", json={"query": "auth"})
    assert search.status_code == 503
    assert "OPENAI_API_KEY" in search.json()["error"]
    clarify = await client.post("/api/plans/clarify", json={"goal": "add login"})
    assert clarify.status_code == 503
    assert (await client.get("/api/stats")).status_code == 200


@pytest.mark.asyncio
async def test_activity_limit_and_clear(client, store):
    for n in range(3):
        await store.record_activity(ActivityType.agent_run, f"run {n}", agent="doc")

    limited = (await client.get("/api/activity", params={"limit": "2"})).json()
    assert [e["message"] for e in limited["entries"]] == ["run 2", "run 1"]
    assert limited["summary"] == {"total": 3, "byType": {"agent_run": 3}}
    for bad in ("abc", "0", "500"):
        fallback = (await client.get("/api/activity", params={"limit": bad})).json()
        assert len(fallback["entries"]) == 3

    assert (await client.delete("/api/activity")).json() == {"success": True}
    assert (await client.get("/api/activity")).json()["entries"] == []


@pytest.mark.asyncio
async def test_plan_crud(client):
    created = await client.post(
        "/api/plans",
        json={
            "goal": "Harden login",
            "tasks": [{"title": "Rate limit login endpoint", "acceptanceCriteria": ["429 after 5 tries"]}],
        },
    )
    assert created.status_code == 201
    plan = created.json()
    assert plan["taskCount"] == 1
    assert plan["tasks"][0]["scope"] == "auth"

    listed = (await client.get("/api/plans")).json()
    assert [p["id"] for p in listed] == [plan["id"]]
    assert "tasks" not in listed[0]

    fetched = (await client.get(f"/api/plans/{plan['id']}")).json()
    assert fetched["tasks"][0]["acceptanceCriteria"] == ["429 after 5 tries"]
    assert (await client.get("/api/plans/plan-missing")).status_code == 404


@pytest.mark.asyncio
async def test_promote_finding_to_task(client, store):
    finding = await store.record_activity(
        ActivityType.finding, "constraint: All writes go through the store", agent="code", category="constraint"
    )
    promoted = await client.post("/api/tasks/promote", json={"findingId": finding.id})
    assert promoted.status_code == 200
    task = promoted.json()
    assert task["title"] == finding.message
    assert task["priority"] == 50
    assert task["description"] == "Automatically promoted from activity finding. Original agent: code"
    plan = await store.get_plan(task["planId"])
    assert plan.goal == f"Address finding: {finding.message}"

    again = await client.post("/api/tasks/promote", json={"findingId": finding.id, "planId": plan.id})
    assert again.json()["planId"] == plan.id
    assert len(await store.list_tasks(plan.id)) == 2

    missing = await client.post("/api/tasks/promote", json={"findingId": "nope"})
    assert missing.status_code == 404
    assert missing.json() == {"error": "finding not found in activity log"}


@pytest.mark.asyncio
async def test_clarify_then_generate(client, chat):
    chat.queue(
        {"questions": ["Which token format?"], "goal_summary": "JWT login", "enriched_goal": "Add JWT login", "is_ready_to_plan": False},
        {"questions": [], "goal_summary": "JWT login", "enriched_goal": "Add JWT login with refresh", "is_ready_to_plan": True},
        {"tasks": [{"title": "Add login endpoint", "acceptance_criteria": ["returns a token"]}]},
    )
    first = (await client.post("/api/plans/clarify", json={"goal": "add login"})).json()
    assert first["round"] == 1
    assert first["questions"] == ["Which token format?"]

    second = (
        await client.post("/api/plans/clarify", json={"sessionId": first["clarifySessionId"], "answers": ["JWT"]})
    ).json()
    assert second["isReadyToPlan"] is True

    generated = await client.post("/api/plans/generate", json={"sessionId": first["clarifySessionId"]})
    body = generated.json()
    assert generated.status_code == 200
    assert body["success"] is True
    assert body["enrichedGoal"] == "Add JWT login with refresh"
    assert body["tasks"][0]["title"] == "Add login endpoint"
    assert body["semanticErrors"] == []

    retired = await client.post("/api/plans/generate", json={"sessionId": first["clarifySessionId"]})
    assert retired.status_code == 400


@pytest.mark.asyncio
async def test_bootstrap_endpoint(client, chat, tmp_path):
    project = tmp_path / "project"
    project.mkdir()
    (project / "README.md").write_text("# Demo\nPlanning tool.\n", encoding="utf-8")
    chat.queue({"findings": [{"type": "decision", "title": "Use FastAPI", "description": "HTTP layer"}]})

    response = await client.post("/api/bootstrap", json={"projectPath": str(project)})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["nodesCreated"] == 2
    assert body["agents"] == ["doc", "code"]

    missing = await client.post("/api/bootstrap", json={"projectPath": str(tmp_path / "nope")})
    assert missing.status_code == 400
    assert missing.json() == {"error": "project path does not exist"}
