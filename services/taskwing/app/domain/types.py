"""Domain-level dataclasses passed between pipeline stages."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from ..persistence.models import Node, Task

NO_RELEVANT_MEMORY = "no relevant memory"


@dataclass
class ScoredNode:
    node: Node
    score: float
    expanded_from: str | None = None


@dataclass
class KGContext:
    context_text: str = ""
    scored_nodes: list[ScoredNode] = field(default_factory=list)
    strategy: str = NO_RELEVANT_MEMORY
    rewritten_query: str | None = None

    @property
    def empty(self) -> bool:
        return not self.scored_nodes


@dataclass
class ClarifyRequest:
    goal: str = ""
    session_id: str | None = None
    answers: list[str] = field(default_factory=list)
    auto_answer: bool = False
    max_rounds: int | None = None


@dataclass
class ClarifyResult:
    success: bool
    clarify_session_id: str
    message: str = ""
    enriched_goal: str = ""
    goal_summary: str = ""
    questions: list[str] = field(default_factory=list)
    is_ready_to_plan: bool = False
    round: int = 0
    context_used: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClarifyResult":
        return cls(**{key: data[key] for key in cls.__dataclass_fields__ if key in data})


@dataclass
class GenerateRequest:
    session_id: str | None = None
    enriched_goal: str = ""
    goal: str = ""
    bypass_readiness: bool = False


@dataclass
class GenerateResult:
    success: bool
    goal: str = ""
    goal_summary: str = ""
    enriched_goal: str = ""
    plan_id: str | None = None
    tasks: list[Task] = field(default_factory=list)
    semantic_warnings: list[str] = field(default_factory=list)
    semantic_errors: list[str] = field(default_factory=list)
    message: str = ""


@dataclass
class BootstrapReport:
    success: bool = True
    findings: int = 0
    nodes_created: int = 0
    duplicates_skipped: int = 0
    edges_created: int = 0
    agents: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


__all__ = [
    "BootstrapReport",
    "ClarifyRequest",
    "ClarifyResult",
    "GenerateRequest",
    "GenerateResult",
    "KGContext",
    "NO_RELEVANT_MEMORY",
    "ScoredNode",
]
