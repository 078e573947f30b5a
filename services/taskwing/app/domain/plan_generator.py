"""Plan generation: planning agent, semantic validation and atomic persistence."""
from __future__ import annotations

import time

import structlog

from ..agents.events import EventHandler
from ..agents.runtime import AgentRuntime
from ..agents.specs import PLANNING_AGENT, PlanningInput
from ..cancellation import CancelToken
from ..config import RetrievalSettings
from ..errors import Cancelled, StorageError, TaskWingError, Timeout, UserError
from ..persistence.models import ActivityType, Plan, PlanStatus, Task, TaskStatus, short_id
from ..persistence.store import KnowledgeStore
from .retrieval import RetrievalService
from .text import enrich_task_fields, summarize
from .types import GenerateRequest, GenerateResult, KGContext
from .validation import ValidationReport, validate_tasks

logger = structlog.get_logger(__name__)


class PlanGenerator:
    def __init__(
        self,
        store: KnowledgeStore,
        runtime: AgentRuntime,
        retrieval: RetrievalService,
        settings: RetrievalSettings,
    ) -> None:
        self._store = store
        self._runtime = runtime
        self._retrieval = retrieval
        self._settings = settings

    async def generate(
        self,
        request: GenerateRequest,
        handler: EventHandler | None = None,
        cancel: CancelToken | None = None,
    ) -> GenerateResult:
        """Plan from a ready clarify session or a directly supplied enriched goal.

        Agent failures and empty plans come back as ``success=False``; a failed
        write raises ``StorageError`` and leaves nothing behind.
        """
        start = time.perf_counter()
        session_id = None
        if request.session_id:
            session = await self._store.get_clarify_session(request.session_id)
            if session.status == "retired":
                raise UserError(f"clarify session {session.id} already produced plan {session.plan_id}")
            if not session.is_ready_to_plan and not request.bypass_readiness:
                raise UserError(f"clarify session {session.id} is not ready to plan")
            latest = session.rounds[-1].get("draft_enriched_goal", "") if session.rounds else ""
            goal = session.goal
            enriched = session.final_enriched_goal or latest or session.goal
            summary = session.goal_summary or summarize(goal)
            session_id = session.id
        else:
            enriched = request.enriched_goal.strip()
            if not enriched:
                raise UserError("enriched_goal is required when no clarify session is given")
            goal = request.goal.strip() or enriched
            summary = summarize(goal)

        context = await self._context(enriched, cancel)
        inputs = PlanningInput(
            goal=goal,
            enriched_goal=enriched,
            context=context.context_text or "(no stored project knowledge)",
        )
        run = await self._runtime.run(PLANNING_AGENT, inputs, handler=handler, cancel=cancel)
        result = GenerateResult(success=False, goal=goal, goal_summary=summary, enriched_goal=enriched)
        if not run.ok:
            result.message = f"planning failed: {run.error}"
            return result
        if not run.output.result.tasks:
            result.message = run.warning or "planning agent returned no tasks"
            return result

        report = validate_tasks(run.output.result.tasks)
        tasks = self._build_tasks(report)
        plan = Plan(goal=goal, enriched_goal=enriched, goal_summary=summary, status=PlanStatus.active)
        await self._store.create_plan_with_tasks(plan, tasks, retire_session_id=session_id)
        await self._record(plan, tasks, report)

        logger.info(
            "plan.generated",
            plan_id=plan.id,
            tasks=len(tasks),
            warnings=len(report.warnings),
            errors=len(report.errors),
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        result.success = True
        result.plan_id = plan.id
        result.tasks = tasks
        result.semantic_warnings = report.warnings
        result.semantic_errors = report.errors
        result.message = f"created plan {plan.id} with {len(tasks)} tasks"
        return result

    async def _context(self, enriched_goal: str, cancel: CancelToken | None) -> KGContext:
        try:
            return await self._retrieval.retrieve(enriched_goal, limit=self._settings.plan_context_limit, cancel=cancel)
        except (Timeout, Cancelled):
            raise
        except TaskWingError as exc:
            logger.warning("plan.context_failed", error=str(exc))
            return KGContext()

    @staticmethod
    def _build_tasks(report: ValidationReport) -> list[Task]:
        ids = [short_id("task") for _ in report.tasks]
        tasks = []
        for index, validated in enumerate(report.tasks):
            proposal = validated.proposal
            scope, keywords, queries = enrich_task_fields(proposal.title, proposal.description)
            tasks.append(
                Task(
                    id=ids[index],
                    title=proposal.title,
                    description=proposal.description,
                    status=TaskStatus.pending,
                    priority=proposal.priority,
                    complexity=proposal.complexity,
                    assigned_agent=proposal.assigned_agent,
                    acceptance_criteria=list(proposal.acceptance_criteria),
                    validation_steps=list(proposal.validation_steps),
                    depends_on=[ids[dep] for dep in validated.depends_on],
                    scope=scope,
                    keywords=keywords,
                    suggested_recall_queries=queries,
                )
            )
        return tasks

    async def _record(self, plan: Plan, tasks: list[Task], report: ValidationReport) -> None:
        try:
            await self._store.record_activity(
                ActivityType.plan,
                f"Plan created: {plan.goal_summary or plan.goal}",
                agent=PLANNING_AGENT.name,
                details={"planId": plan.id, "tasks": len(tasks), "semanticErrors": len(report.errors)},
            )
        except StorageError as exc:
            logger.warning("plan.activity_failed", plan_id=plan.id, error=str(exc))


__all__ = ["PlanGenerator"]
