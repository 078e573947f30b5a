"""Bounded multi-round goal clarification with optional auto-answer."""
from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any

import structlog

from ..agents.events import EventHandler
from ..agents.runtime import AgentRuntime
from ..agents.specs import AUTO_ANSWER_AGENT, CLARIFYING_AGENT, AutoAnswerInput, ClarifyInput
from ..cancellation import CancelToken
from ..config import ClarifySettings
from ..errors import Cancelled, NotFound, TaskWingError, Timeout, UserError
from ..persistence.models import ClarifySession
from ..persistence.store import KnowledgeStore
from .retrieval import RetrievalService
from .text import summarize
from .types import ClarifyRequest, ClarifyResult, KGContext

logger = structlog.get_logger(__name__)

SKIPPED = "(skipped)"
REVIEW_QUESTION = "Does this specification capture what you want? Describe anything missing or wrong."


def _history(goal: str, rounds: list[dict[str, Any]]) -> str:
    if not rounds:
        return "(first round, nothing asked yet)"
    lines = []
    for number, record in enumerate(rounds, start=1):
        lines.append(f"Round {number} draft summary: {record.get('goal_summary') or goal}")
        answers = record.get("answers") or []
        for index, question in enumerate(record.get("questions") or []):
            answer = answers[index] if index < len(answers) else SKIPPED
            lines.append(f"Q: {question}")
            lines.append(f"A: {answer}")
    return "\n".join(lines)


def _align_answers(questions: list[str], answers: list[str]) -> list[str]:
    aligned = []
    for index in range(len(questions)):
        answer = answers[index].strip() if index < len(answers) and answers[index] else ""
        aligned.append(answer or SKIPPED)
    return aligned


class ClarifyEngine:
    def __init__(
        self,
        store: KnowledgeStore,
        runtime: AgentRuntime,
        retrieval: RetrievalService,
        settings: ClarifySettings,
    ) -> None:
        self._store = store
        self._runtime = runtime
        self._retrieval = retrieval
        self._settings = settings
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def clarify(
        self,
        request: ClarifyRequest,
        handler: EventHandler | None = None,
        cancel: CancelToken | None = None,
    ) -> ClarifyResult:
        if request.session_id is None:
            session = await self._start(request, cancel)
            async with self._locks[session.id]:
                result = await self._round(session, [], handler, cancel)
        else:
            try:
                async with self._locks[request.session_id]:
                    result = await self._continue(request, handler, cancel)
            except NotFound:
                self._locks.pop(request.session_id, None)
                raise
        if result.is_ready_to_plan:
            # ready sessions only replay from here on
            self._locks.pop(result.clarify_session_id, None)
        return result

    async def _continue(
        self,
        request: ClarifyRequest,
        handler: EventHandler | None,
        cancel: CancelToken | None,
    ) -> ClarifyResult:
        session = await self._store.get_clarify_session(request.session_id)
        # an explicit list of blanks is a real answer set: every question skipped
        answered = bool(request.answers)
        if session.last_result and (session.is_ready_to_plan or (not answered and not request.auto_answer)):
            logger.info("clarify.replay", session_id=session.id, rounds=len(session.rounds))
            return ClarifyResult.from_dict(session.last_result)

        outstanding = list(session.rounds[-1].get("questions") or []) if session.rounds else []
        answers = list(request.answers)
        if not answered and request.auto_answer and outstanding:
            auto = await self._auto_answer(session, outstanding, handler, cancel)
            if isinstance(auto, ClarifyResult):
                return auto
            answers = auto
        return await self._round(session, _align_answers(outstanding, answers), handler, cancel)

    async def _start(self, request: ClarifyRequest, cancel: CancelToken | None) -> ClarifySession:
        goal = request.goal.strip()
        if not goal:
            raise UserError("goal is required to start a clarify session")
        max_rounds = request.max_rounds if request.max_rounds is not None else self._settings.default_max_rounds
        if max_rounds < 1:
            raise UserError("max_rounds must be at least 1")
        context = await self._context(goal, cancel)
        session = await self._store.create_clarify_session(goal, max_rounds, context.context_text, context.strategy)
        logger.info("clarify.session_created", session_id=session.id, max_rounds=max_rounds, context=not context.empty)
        return session

    async def _context(self, goal: str, cancel: CancelToken | None) -> KGContext:
        try:
            return await self._retrieval.retrieve(goal, cancel=cancel)
        except (Timeout, Cancelled):
            raise
        except TaskWingError as exc:
            logger.warning("clarify.context_failed", error=str(exc))
            return KGContext()

    async def _auto_answer(
        self,
        session: ClarifySession,
        questions: list[str],
        handler: EventHandler | None,
        cancel: CancelToken | None,
    ) -> list[str] | ClarifyResult:
        previous = session.rounds[-1]
        inputs = AutoAnswerInput(
            goal=session.goal,
            enriched_goal=previous.get("draft_enriched_goal", ""),
            context=session.context_text or "(no stored project knowledge)",
            questions="\n".join(f"{n}. {q}" for n, q in enumerate(questions, start=1)),
        )
        run = await self._runtime.run(AUTO_ANSWER_AGENT, inputs, handler=handler, cancel=cancel)
        if not run.ok:
            return self._failure(session, f"auto-answer failed: {run.error}")
        return run.output.result.answers

    async def _round(
        self,
        session: ClarifySession,
        answers: list[str],
        handler: EventHandler | None,
        cancel: CancelToken | None,
    ) -> ClarifyResult:
        rounds = [dict(record) for record in session.rounds]
        if rounds and answers:
            rounds[-1]["answers"] = answers
        number = len(rounds) + 1
        previous_draft = rounds[-1].get("draft_enriched_goal", "") if rounds else ""

        inputs = ClarifyInput(
            goal=session.goal,
            enriched_goal=previous_draft,
            context=session.context_text or "(no stored project knowledge)",
            history=_history(session.goal, rounds),
            round_number=number,
            max_questions=self._settings.max_questions,
        )
        run = await self._runtime.run(CLARIFYING_AGENT, inputs, handler=handler, cancel=cancel)
        if not run.ok:
            return self._failure(session, f"clarification round {number} failed: {run.error}")

        output = run.output.result
        enriched = output.enriched_goal.strip() or previous_draft or session.goal
        summary = summarize(output.goal_summary or enriched)
        if number >= session.max_rounds:
            ready, verdict = True, "forced"
        elif output.is_ready_to_plan and number >= 2:
            ready, verdict = True, "ready"
        else:
            ready, verdict = False, "needs_input"
        questions = [] if ready else (output.questions[: self._settings.max_questions] or [REVIEW_QUESTION])

        rounds.append(
            {
                "draft_enriched_goal": enriched,
                "goal_summary": summary,
                "questions": questions,
                "answers": [],
                "verdict": verdict,
            }
        )
        result = ClarifyResult(
            success=True,
            clarify_session_id=session.id,
            message="ready to plan" if ready else "awaiting answers",
            enriched_goal=enriched,
            goal_summary=summary,
            questions=questions,
            is_ready_to_plan=ready,
            round=number,
            context_used=bool(session.context_text),
        )
        session.rounds = rounds
        session.is_ready_to_plan = ready
        session.goal_summary = summary
        session.final_enriched_goal = enriched if ready else ""
        session.last_result = result.as_dict()
        await self._store.save_clarify_session(session)
        logger.info("clarify.round", session_id=session.id, round=number, verdict=verdict, questions=len(questions))
        return result

    def _failure(self, session: ClarifySession, message: str) -> ClarifyResult:
        previous = session.rounds[-1] if session.rounds else {}
        logger.warning("clarify.round_failed", session_id=session.id, error=message)
        return ClarifyResult(
            success=False,
            clarify_session_id=session.id,
            message=message,
            enriched_goal=previous.get("draft_enriched_goal") or session.goal,
            goal_summary=previous.get("goal_summary") or summarize(session.goal),
            questions=list(previous.get("questions") or []),
            is_ready_to_plan=False,
            round=len(session.rounds),
            context_used=bool(session.context_text),
        )


__all__ = ["ClarifyEngine", "REVIEW_QUESTION", "SKIPPED"]
