import asyncio

import pytest

from services.taskwing.app.domain.clarify import REVIEW_QUESTION, SKIPPED
from services.taskwing.app.domain.types import ClarifyRequest
from services.taskwing.app.errors import NotFound, Timeout, UserError

GOAL = "add login"


def reply(questions=None, ready=False, enriched="Add JWT login to the API", summary="JWT login"):
    return {
        "questions": questions or [],
        "goal_summary": summary,
        "enriched_goal": enriched,
        "is_ready_to_plan": ready,
    }


@pytest.mark.asyncio
async def test_first_round_is_never_ready(pipeline, chat):
    chat.queue(reply(ready=True))
    result = await pipeline.clarify.clarify(ClarifyRequest(goal=GOAL))

    assert result.success
    assert result.round == 1
    assert not result.is_ready_to_plan
    assert result.questions == [REVIEW_QUESTION]
    assert result.enriched_goal == "Add JWT login to the API"
    assert result.context_used is False


@pytest.mark.asyncio
async def test_answers_feed_the_next_round(pipeline, chat, store):
    chat.queue(
        reply(questions=["Which token format?", "Do we need refresh tokens?"]),
        reply(ready=True, enriched="Add JWT login with refresh tokens"),
    )
    first = await pipeline.clarify.clarify(ClarifyRequest(goal=GOAL))
    second = await pipeline.clarify.clarify(
        ClarifyRequest(session_id=first.clarify_session_id, answers=["JWT", ""])
    )

    assert second.round == 2
    assert second.is_ready_to_plan
    assert second.questions == []
    assert second.enriched_goal == "Add JWT login with refresh tokens"
    history = chat.calls[-1][-1].content
    assert "Q: Which token format?\nA: JWT" in history
    assert f"Q: Do we need refresh tokens?\nA: {SKIPPED}" in history

    session = await store.get_clarify_session(first.clarify_session_id)
    assert [record["verdict"] for record in session.rounds] == ["needs_input", "ready"]
    assert session.rounds[0]["answers"] == ["JWT", SKIPPED]
    assert session.final_enriched_goal == "Add JWT login with refresh tokens"


@pytest.mark.asyncio
async def test_max_rounds_forces_readiness(pipeline, chat):
    chat.queue(reply(questions=["Q1?"]), reply(questions=["Q2?"]))
    first = await pipeline.clarify.clarify(ClarifyRequest(goal=GOAL, max_rounds=2))
    second = await pipeline.clarify.clarify(ClarifyRequest(session_id=first.clarify_session_id, answers=["A1"]))

    assert second.round == 2
    assert second.is_ready_to_plan
    assert second.questions == []


@pytest.mark.asyncio
async def test_single_round_session_is_ready_immediately(pipeline, chat):
    chat.queue(reply(questions=["Anything else?"]))
    result = await pipeline.clarify.clarify(ClarifyRequest(goal=GOAL, max_rounds=1))
    assert result.is_ready_to_plan
    assert result.round == 1


@pytest.mark.asyncio
async def test_questions_are_capped(pipeline, chat, settings):
    chat.queue(reply(questions=[f"Question {n}?" for n in range(6)]))
    result = await pipeline.clarify.clarify(ClarifyRequest(goal=GOAL))
    assert len(result.questions) == settings.clarify.max_questions


@pytest.mark.asyncio
async def test_goal_summary_is_truncated(pipeline, chat):
    chat.queue(reply(questions=["Q?"], summary="word " * 40))
    result = await pipeline.clarify.clarify(ClarifyRequest(goal=GOAL))
    assert len(result.goal_summary) == 100
    assert result.goal_summary.endswith("…")


@pytest.mark.asyncio
async def test_repeat_call_without_answers_replays_last_result(pipeline, chat, store):
    chat.queue(reply(questions=["Q?"]))
    first = await pipeline.clarify.clarify(ClarifyRequest(goal=GOAL))
    again = await pipeline.clarify.clarify(ClarifyRequest(session_id=first.clarify_session_id))

    assert again == first
    assert len(chat.calls) == 1
    session = await store.get_clarify_session(first.clarify_session_id)
    assert len(session.rounds) == 1


@pytest.mark.asyncio
async def test_ready_session_replays_even_with_answers(pipeline, chat):
    chat.queue(reply(questions=["Q?"]), reply(ready=True))
    first = await pipeline.clarify.clarify(ClarifyRequest(goal=GOAL))
    ready = await pipeline.clarify.clarify(ClarifyRequest(session_id=first.clarify_session_id, answers=["yes"]))
    replay = await pipeline.clarify.clarify(ClarifyRequest(session_id=first.clarify_session_id, answers=["more"]))
    assert replay == ready
    assert len(chat.calls) == 2


@pytest.mark.asyncio
async def test_failed_round_returns_previous_draft(pipeline, chat, store):
    chat.queue(reply(questions=["Q?"], enriched="Draft one"), "garbage", "garbage", "garbage")
    first = await pipeline.clarify.clarify(ClarifyRequest(goal=GOAL))
    failed = await pipeline.clarify.clarify(ClarifyRequest(session_id=first.clarify_session_id, answers=["A"]))

    assert not failed.success
    assert failed.enriched_goal == "Draft one"
    assert failed.round == 1
    assert failed.questions == ["Q?"]
    assert "round 2 failed" in failed.message
    session = await store.get_clarify_session(first.clarify_session_id)
    assert len(session.rounds) == 1


@pytest.mark.asyncio
async def test_auto_answer_fills_outstanding_questions(pipeline, chat, store):
    chat.queue(
        reply(questions=["Which token format?", "Refresh tokens?"]),
        {"answers": ["JWT, as already decided"]},
        reply(ready=True, enriched="Add JWT login"),
    )
    first = await pipeline.clarify.clarify(ClarifyRequest(goal=GOAL))
    second = await pipeline.clarify.clarify(ClarifyRequest(session_id=first.clarify_session_id, auto_answer=True))

    assert second.is_ready_to_plan
    auto_prompt = chat.calls[1][-1].content
    assert "1. Which token format?\n2. Refresh tokens?" in auto_prompt
    session = await store.get_clarify_session(first.clarify_session_id)
    assert session.rounds[0]["answers"] == ["JWT, as already decided", SKIPPED]


@pytest.mark.asyncio
async def test_auto_answer_timeout_leaves_session_unchanged(pipeline, chat, store, settings):
    async def slow(messages):
        await asyncio.sleep(5)
        return {"answers": ["too late"]}

    chat.queue(reply(questions=["Which token format?"]))
    first = await pipeline.clarify.clarify(ClarifyRequest(goal=GOAL))

    settings.llm.timeout = 0.05
    chat.queue(slow)
    with pytest.raises(Timeout):
        await pipeline.clarify.clarify(ClarifyRequest(session_id=first.clarify_session_id, auto_answer=True))

    session = await store.get_clarify_session(first.clarify_session_id)
    assert len(session.rounds) == 1
    assert session.rounds[0]["answers"] == []
    assert not session.is_ready_to_plan


@pytest.mark.asyncio
async def test_invalid_requests(pipeline):
    with pytest.raises(UserError):
        await pipeline.clarify.clarify(ClarifyRequest(goal="   "))
    with pytest.raises(UserError):
        await pipeline.clarify.clarify(ClarifyRequest(goal=GOAL, max_rounds=0))
    with pytest.raises(NotFound):
        await pipeline.clarify.clarify(ClarifyRequest(session_id="missing", answers=["x"]))


@pytest.mark.asyncio
async def test_context_is_recorded_when_knowledge_exists(pipeline, chat, store, embedder):
    embedder.vectors[GOAL] = [1.0, 0.0, 0.0]
    await store.create_node("decision", "Sessions use JWT", embedding=[1.0, 0.0, 0.0])
    chat.queue(reply(questions=["Q?"]))

    result = await pipeline.clarify.clarify(ClarifyRequest(goal=GOAL))
    assert result.context_used
    assert "Sessions use JWT" in chat.calls[0][-1].content


@pytest.mark.asyncio
async def test_all_blank_answers_skip_every_question(pipeline, chat, store):
    chat.queue(
        reply(questions=["Which token format?", "Do we need refresh tokens?"]),
        reply(questions=["Which user store?"]),
    )
    first = await pipeline.clarify.clarify(ClarifyRequest(goal=GOAL))
    second = await pipeline.clarify.clarify(ClarifyRequest(session_id=first.clarify_session_id, answers=["", "  "]))

    assert second.success
    assert second.round == 2
    assert second.questions == ["Which user store?"]
    assert len(chat.calls) == 2
    session = await store.get_clarify_session(first.clarify_session_id)
    assert len(session.rounds) == 2
    assert session.rounds[0]["answers"] == [SKIPPED, SKIPPED]


@pytest.mark.asyncio
async def test_session_locks_are_released_once_ready(pipeline, chat):
    chat.queue(reply(questions=["Q?"]), reply(ready=True))
    first = await pipeline.clarify.clarify(ClarifyRequest(goal=GOAL))
    assert first.clarify_session_id in pipeline.clarify._locks

    await pipeline.clarify.clarify(ClarifyRequest(session_id=first.clarify_session_id, answers=["yes"]))
    assert first.clarify_session_id not in pipeline.clarify._locks
    await pipeline.clarify.clarify(ClarifyRequest(session_id=first.clarify_session_id))
    assert first.clarify_session_id not in pipeline.clarify._locks

    with pytest.raises(NotFound):
        await pipeline.clarify.clarify(ClarifyRequest(session_id="missing", answers=["x"]))
    assert "missing" not in pipeline.clarify._locks


@pytest.mark.asyncio
async def test_single_round_session_holds_no_lock(pipeline, chat):
    chat.queue(reply())
    result = await pipeline.clarify.clarify(ClarifyRequest(goal=GOAL, max_rounds=1))
    assert result.is_ready_to_plan
    assert pipeline.clarify._locks == {}
