"""Agent definitions: typed inputs, typed outputs and prompt templates."""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .runtime import AgentSpec, Finding

ASSIGNABLE_AGENTS = ("coder", "qa", "architect", "researcher")


def _clean_lines(values: list[str]) -> list[str]:
    return [value.strip() for value in values if isinstance(value, str) and value.strip()]


# -- clarifying --------------------------------------------------------------


class ClarifyInput(BaseModel):
    goal: str
    enriched_goal: str = ""
    context: str = ""
    history: str = ""
    round_number: int = 1
    max_questions: int = 3


class ClarifyingOutput(BaseModel):
    questions: list[str] = Field(default_factory=list)
    goal_summary: str = ""
    enriched_goal: str = ""
    is_ready_to_plan: bool = False

    @field_validator("questions", mode="before")
    @classmethod
    def _strip_questions(cls, value: object) -> object:
        return _clean_lines(value) if isinstance(value, list) else value

    @model_validator(mode="after")
    def _check_verdict(self) -> "ClarifyingOutput":
        if self.is_ready_to_plan and not self.enriched_goal.strip():
            raise ValueError("enriched_goal is required when is_ready_to_plan is true")
        if not self.is_ready_to_plan and not self.questions:
            raise ValueError("questions are required when is_ready_to_plan is false")
        return self


CLARIFY_SYSTEM = (
    "You are the Clarifying Agent of an engineering planning tool. You turn an ambiguous "
    "development goal into a precise technical specification that fits the existing "
    "architecture of the project. You never invent project facts that are not in the context."
)

CLARIFY_TEMPLATE = """Goal from the engineer:
{goal}

Project knowledge (decisions, patterns, constraints):
{context}

Conversation so far:
{history}

This is clarification round {round_number}.

Produce:
- "enriched_goal": a complete technical specification of the goal in markdown, consistent with the
  project knowledge and everything answered so far.
- "goal_summary": a one-line summary of at most 100 characters.
- "questions": at most {max_questions} short questions whose answers would change the plan. Do not
  repeat questions that were already answered or skipped.
- "is_ready_to_plan": true only when no open question would materially change the plan.

Respond with a single JSON object with exactly these keys:
{{"questions": [...], "goal_summary": "...", "enriched_goal": "...", "is_ready_to_plan": false}}"""


CLARIFYING_AGENT: AgentSpec[ClarifyingOutput] = AgentSpec(
    name="clarifying",
    description="Refines user goals by asking clarifying questions",
    system_prompt=CLARIFY_SYSTEM,
    prompt_template=CLARIFY_TEMPLATE,
    input_schema=ClarifyInput,
    output_schema=ClarifyingOutput,
)


# -- auto-answer -------------------------------------------------------------


class AutoAnswerInput(BaseModel):
    goal: str
    enriched_goal: str = ""
    context: str = ""
    questions: str


class AutoAnswerOutput(BaseModel):
    answers: list[str] = Field(default_factory=list)

    @field_validator("answers", mode="before")
    @classmethod
    def _coerce(cls, value: object) -> object:
        if isinstance(value, list):
            return [str(item).strip() for item in value]
        return value


AUTO_ANSWER_SYSTEM = (
    "You answer clarification questions on behalf of an engineer. Prefer what the project "
    "knowledge already decides; otherwise pick the simplest option consistent with it."
)

AUTO_ANSWER_TEMPLATE = """Goal:
{goal}

Current draft specification:
{enriched_goal}

Project knowledge:
{context}

Questions (answer each in order, one or two sentences per answer):
{questions}

Respond with a JSON object: {{"answers": ["answer to question 1", "answer to question 2"]}}"""


AUTO_ANSWER_AGENT: AgentSpec[AutoAnswerOutput] = AgentSpec(
    name="auto_answer",
    description="Answers outstanding clarification questions from project knowledge",
    system_prompt=AUTO_ANSWER_SYSTEM,
    prompt_template=AUTO_ANSWER_TEMPLATE,
    input_schema=AutoAnswerInput,
    output_schema=AutoAnswerOutput,
    warning=lambda out: None if any(out.answers) else "auto-answer produced no answers",
)


# -- planning ----------------------------------------------------------------


class PlanningInput(BaseModel):
    goal: str
    enriched_goal: str
    context: str = ""


class TaskProposal(BaseModel):
    title: str
    description: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    validation_steps: list[str] = Field(default_factory=list)
    priority: int = 50
    assigned_agent: str | None = None
    complexity: Literal["low", "medium", "high"] | None = None
    dependencies: list[str] = Field(default_factory=list)

    @field_validator("acceptance_criteria", "validation_steps", mode="before")
    @classmethod
    def _strip_lists(cls, value: object) -> object:
        return _clean_lines(value) if isinstance(value, list) else value

    @field_validator("dependencies", mode="before")
    @classmethod
    def _stringify_dependencies(cls, value: object) -> object:
        if isinstance(value, list):
            return [str(item).strip() for item in value if str(item).strip()]
        return value

    @field_validator("complexity", mode="before")
    @classmethod
    def _normalize_complexity(cls, value: object) -> object:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return lowered if lowered in ("low", "medium", "high") else None
        return value

    @field_validator("assigned_agent", mode="before")
    @classmethod
    def _normalize_agent(cls, value: object) -> object:
        return value.strip().lower() or None if isinstance(value, str) else value


class PlanningOutput(BaseModel):
    tasks: list[TaskProposal] = Field(default_factory=list)
    rationale: str = ""


PLANNING_SYSTEM = (
    "You are the Planning Agent of an engineering planning tool. You decompose a technical "
    "specification into an ordered list of small, independently verifiable implementation tasks "
    "that respect the project's architecture and constraints."
)

PLANNING_TEMPLATE = """Original goal:
{goal}

Technical specification:
{enriched_goal}

Project knowledge:
{context}

Return between 3 and 12 tasks in execution order. For each task give:
- "title" (imperative, under 200 characters)
- "description" (what to change and where)
- "acceptance_criteria" (at least one verifiable statement)
- "validation_steps" (shell commands that verify the task, may be empty)
- "priority" (integer 0-100, higher is more urgent)
- "assigned_agent" (one of: coder, qa, architect, researcher)
- "complexity" (low, medium or high)
- "dependencies" (titles of earlier tasks this task needs)

Respond with a single JSON object:
{{"tasks": [{{"title": "...", "description": "...", "acceptance_criteria": ["..."], "validation_steps": ["..."], "priority": 80, "assigned_agent": "coder", "complexity": "medium", "dependencies": []}}], "rationale": "..."}}"""


PLANNING_AGENT: AgentSpec[PlanningOutput] = AgentSpec(
    name="planning",
    description="Decomposes goals into actionable tasks with dependencies",
    system_prompt=PLANNING_SYSTEM,
    prompt_template=PLANNING_TEMPLATE,
    input_schema=PlanningInput,
    output_schema=PlanningOutput,
    warning=lambda out: None if out.tasks else "planning agent returned no tasks",
)


# -- code analysis (bootstrap) -------------------------------------------------


class ProjectDigestInput(BaseModel):
    goal: str = "Extract the architecture of this project"
    context: str


class FindingItem(BaseModel):
    type: Literal["decision", "feature", "pattern", "constraint"]
    title: str
    description: str
    why: str = ""
    tradeoffs: str = ""


class RelationshipItem(BaseModel):
    from_title: str
    to_title: str
    relation: str = "relates_to"


class FindingsOutput(BaseModel):
    findings: list[FindingItem] = Field(default_factory=list)
    relationships: list[RelationshipItem] = Field(default_factory=list)


def _findings_from(out: FindingsOutput) -> list[Finding]:
    return [
        Finding(type=item.type, title=item.title.strip(), description=item.description.strip(), why=item.why, tradeoffs=item.tradeoffs)
        for item in out.findings
        if item.title.strip()
    ]


CODE_SYSTEM = (
    "You are a senior engineer reverse-engineering the architecture of a repository from its "
    "file tree and manifest files. Report only what the evidence supports."
)

CODE_TEMPLATE = """{goal}.

Project digest:
{context}

List the architectural findings:
- "decision": a technology or design choice and why it was made
- "feature": a user-facing capability
- "pattern": a recurring code organization or convention
- "constraint": a rule every change must respect

Also list relationships between findings by title.

Respond with a single JSON object:
{{"findings": [{{"type": "decision", "title": "...", "description": "...", "why": "...", "tradeoffs": "..."}}], "relationships": [{{"from_title": "...", "to_title": "...", "relation": "relates_to"}}]}}"""


CODE_AGENT: AgentSpec[FindingsOutput] = AgentSpec(
    name="code",
    description="Analyzes source code structure, patterns, and architecture",
    system_prompt=CODE_SYSTEM,
    prompt_template=CODE_TEMPLATE,
    input_schema=ProjectDigestInput,
    output_schema=FindingsOutput,
    findings=_findings_from,
    warning=lambda out: None if out.findings else "no architectural findings extracted",
)


# -- explain -----------------------------------------------------------------


class ExplainInput(BaseModel):
    goal: str
    context: str = ""


class ExplainOutput(BaseModel):
    explanation: str
    key_points: list[str] = Field(default_factory=list)


EXPLAIN_TEMPLATE = """Explain the following to an engineer new to this project:
{goal}

Use only this project knowledge:
{context}

Respond with a JSON object: {{"explanation": "markdown explanation", "key_points": ["..."]}}"""


EXPLAIN_AGENT: AgentSpec[ExplainOutput] = AgentSpec(
    name="explain",
    description="Explains a concept or component using stored project knowledge",
    system_prompt="You explain software architecture concisely and only from the given context.",
    prompt_template=EXPLAIN_TEMPLATE,
    input_schema=ExplainInput,
    output_schema=ExplainOutput,
)


__all__ = [
    "ASSIGNABLE_AGENTS",
    "AUTO_ANSWER_AGENT",
    "AutoAnswerInput",
    "AutoAnswerOutput",
    "CLARIFYING_AGENT",
    "CODE_AGENT",
    "ClarifyInput",
    "ClarifyingOutput",
    "EXPLAIN_AGENT",
    "ExplainInput",
    "ExplainOutput",
    "FindingItem",
    "FindingsOutput",
    "PLANNING_AGENT",
    "PlanningInput",
    "PlanningOutput",
    "ProjectDigestInput",
    "RelationshipItem",
    "TaskProposal",
]
