"""Plan management API: plans, clarification, generation and task promotion."""
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field

from ..domain.pipeline import TaskWingPipeline
from ..domain.text import enrich_task_fields, summarize
from ..domain.types import ClarifyRequest, GenerateRequest
from ..errors import NotFound
from ..persistence.models import Plan, Task
from ..persistence.store import KnowledgeStore
from .deps import get_store, require_llm

router = APIRouter(prefix="/api", tags=["plans"])


class TaskResponse(BaseModel):
    id: str
    plan_id: str = Field(alias="planId")
    title: str
    description: str
    status: str
    priority: int
    complexity: str | None = None
    assigned_agent: str | None = Field(default=None, alias="assignedAgent")
    acceptance_criteria: List[str] = Field(default_factory=list, alias="acceptanceCriteria")
    validation_steps: List[str] = Field(default_factory=list, alias="validationSteps")
    depends_on: List[str] = Field(default_factory=list, alias="dependsOn")
    scope: str | None = None
    keywords: List[str] = Field(default_factory=list)
    suggested_recall_queries: List[str] = Field(default_factory=list, alias="suggestedRecallQueries")
    created_at: str | None = Field(default=None, alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)


class PlanResponse(BaseModel):
    id: str
    goal: str
    enriched_goal: str = Field(alias="enrichedGoal")
    goal_summary: str = Field(alias="goalSummary")
    status: str
    task_count: int = Field(alias="taskCount")
    created_at: str | None = Field(default=None, alias="createdAt")
    updated_at: str | None = Field(default=None, alias="updatedAt")
    tasks: List[TaskResponse] | None = None

    model_config = ConfigDict(populate_by_name=True)


class TaskCreate(BaseModel):
    title: str
    description: str = ""
    priority: int = Field(default=50, ge=0, le=100)
    complexity: str | None = None
    assigned_agent: str | None = Field(default=None, alias="assignedAgent")
    acceptance_criteria: List[str] = Field(default_factory=list, alias="acceptanceCriteria")
    validation_steps: List[str] = Field(default_factory=list, alias="validationSteps")

    model_config = ConfigDict(populate_by_name=True)


class PlanCreateRequest(BaseModel):
    goal: str
    enriched_goal: str = Field(default="", alias="enrichedGoal")
    tasks: List[TaskCreate] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class ClarifyBody(BaseModel):
    goal: str = ""
    session_id: str | None = Field(default=None, alias="sessionId")
    answers: List[str] = Field(default_factory=list)
    auto_answer: bool = Field(default=False, alias="autoAnswer")
    max_rounds: int | None = Field(default=None, ge=1, alias="maxRounds")

    model_config = ConfigDict(populate_by_name=True)


class ClarifyResponse(BaseModel):
    success: bool
    message: str
    clarify_session_id: str = Field(alias="clarifySessionId")
    enriched_goal: str = Field(alias="enrichedGoal")
    goal_summary: str = Field(alias="goalSummary")
    questions: List[str]
    is_ready_to_plan: bool = Field(alias="isReadyToPlan")
    round: int
    context_used: bool = Field(alias="contextUsed")

    model_config = ConfigDict(populate_by_name=True)


class GenerateBody(BaseModel):
    session_id: str | None = Field(default=None, alias="sessionId")
    enriched_goal: str = Field(default="", alias="enrichedGoal")
    goal: str = ""
    bypass_readiness: bool = Field(default=False, alias="bypassReadiness")

    model_config = ConfigDict(populate_by_name=True)


class GenerateResponse(BaseModel):
    success: bool
    plan_id: str | None = Field(default=None, alias="planId")
    goal: str
    goal_summary: str = Field(alias="goalSummary")
    enriched_goal: str = Field(alias="enrichedGoal")
    tasks: List[TaskResponse]
    semantic_warnings: List[str] = Field(alias="semanticWarnings")
    semantic_errors: List[str] = Field(alias="semanticErrors")
    message: str

    model_config = ConfigDict(populate_by_name=True)


class PromoteRequest(BaseModel):
    finding_id: str = Field(alias="findingId")
    plan_id: str | None = Field(default=None, alias="planId")

    model_config = ConfigDict(populate_by_name=True)


def task_response(task: Task) -> TaskResponse:
    return TaskResponse(
        id=task.id,
        plan_id=task.plan_id,
        title=task.title,
        description=task.description,
        status=task.status.value,
        priority=task.priority,
        complexity=task.complexity,
        assigned_agent=task.assigned_agent,
        acceptance_criteria=task.acceptance_criteria or [],
        validation_steps=task.validation_steps or [],
        depends_on=task.depends_on or [],
        scope=task.scope,
        keywords=task.keywords or [],
        suggested_recall_queries=task.suggested_recall_queries or [],
        created_at=task.created_at.isoformat() if task.created_at else None,
    )


def plan_response(plan: Plan, task_count: int, tasks: List[Task] | None = None) -> PlanResponse:
    return PlanResponse(
        id=plan.id,
        goal=plan.goal,
        enriched_goal=plan.enriched_goal,
        goal_summary=plan.goal_summary,
        status=plan.status.value,
        task_count=task_count,
        created_at=plan.created_at.isoformat() if plan.created_at else None,
        updated_at=plan.updated_at.isoformat() if plan.updated_at else None,
        tasks=[task_response(task) for task in tasks] if tasks is not None else None,
    )


@router.get("/plans", response_model=List[PlanResponse], response_model_exclude_none=True)
async def list_plans(store: KnowledgeStore = Depends(get_store)):
    return [plan_response(plan, count) for plan, count in await store.list_plans()]


@router.post("/plans", response_model=PlanResponse, status_code=status.HTTP_201_CREATED)
async def create_plan(request: PlanCreateRequest, store: KnowledgeStore = Depends(get_store)):
    if not request.tasks:
        plan = await store.create_plan(request.goal, request.enriched_goal, summarize(request.goal))
        return plan_response(plan, 0, [])
    tasks = []
    for item in request.tasks:
        scope, keywords, queries = enrich_task_fields(item.title, item.description)
        tasks.append(
            Task(
                title=item.title[:200],
                description=item.description,
                priority=item.priority,
                complexity=item.complexity,
                assigned_agent=item.assigned_agent,
                acceptance_criteria=item.acceptance_criteria,
                validation_steps=item.validation_steps,
                depends_on=[],
                scope=scope,
                keywords=keywords,
                suggested_recall_queries=queries,
            )
        )
    plan = Plan(goal=request.goal, enriched_goal=request.enriched_goal, goal_summary=summarize(request.goal))
    await store.create_plan_with_tasks(plan, tasks)
    return plan_response(plan, len(tasks), tasks)


@router.get("/plans/{plan_id}", response_model=PlanResponse)
async def get_plan(plan_id: str, store: KnowledgeStore = Depends(get_store)):
    plan = await store.get_plan(plan_id)
    tasks = await store.list_tasks(plan_id)
    return plan_response(plan, len(tasks), tasks)


@router.post("/plans/clarify", response_model=ClarifyResponse)
async def clarify(request: ClarifyBody, pipeline: TaskWingPipeline = Depends(require_llm)):
    result = await pipeline.clarify.clarify(
        ClarifyRequest(
            goal=request.goal,
            session_id=request.session_id,
            answers=request.answers,
            auto_answer=request.auto_answer,
            max_rounds=request.max_rounds,
        )
    )
    return ClarifyResponse(**result.as_dict())


@router.post("/plans/generate", response_model=GenerateResponse)
async def generate(request: GenerateBody, pipeline: TaskWingPipeline = Depends(require_llm)):
    result = await pipeline.generator.generate(
        GenerateRequest(
            session_id=request.session_id,
            enriched_goal=request.enriched_goal,
            goal=request.goal,
            bypass_readiness=request.bypass_readiness,
        )
    )
    return GenerateResponse(
        success=result.success,
        plan_id=result.plan_id,
        goal=result.goal,
        goal_summary=result.goal_summary,
        enriched_goal=result.enriched_goal,
        tasks=[task_response(task) for task in result.tasks],
        semantic_warnings=result.semantic_warnings,
        semantic_errors=result.semantic_errors,
        message=result.message,
    )


@router.post("/tasks/promote", response_model=TaskResponse)
async def promote_finding(request: PromoteRequest, store: KnowledgeStore = Depends(get_store)):
    try:
        finding = await store.get_activity(request.finding_id)
    except NotFound as exc:
        raise NotFound("finding not found in activity log") from exc
    plan_id = request.plan_id
    if plan_id:
        await store.get_plan(plan_id)
    else:
        goal = f"Address finding: {finding.message}"
        plan_id = (await store.create_plan(goal, goal_summary=summarize(goal))).id
    description = f"Automatically promoted from activity finding. Original agent: {finding.agent or 'unknown'}"
    scope, keywords, queries = enrich_task_fields(finding.message, description)
    task = await store.create_task(
        plan_id,
        finding.message,
        description=description,
        priority=50,
        scope=scope,
        keywords=keywords,
        suggested_recall_queries=queries,
    )
    return task_response(task)


__all__ = ["plan_response", "router", "task_response"]
