"""Public agent registry served by ``GET /api/agents``."""
from __future__ import annotations

from dataclasses import dataclass

from .specs import CLARIFYING_AGENT, CODE_AGENT, EXPLAIN_AGENT, PLANNING_AGENT


@dataclass(frozen=True)
class AgentInfo:
    id: str
    name: str
    description: str


AGENTS: tuple[AgentInfo, ...] = (
    AgentInfo("doc", "Documentation", "Reads README, ARCHITECTURE and docs/ markdown into documentation nodes"),
    AgentInfo(CODE_AGENT.name, "Code Analysis", CODE_AGENT.description),
    AgentInfo(CLARIFYING_AGENT.name, "Goal Clarification", CLARIFYING_AGENT.description),
    AgentInfo(PLANNING_AGENT.name, "Task Planning", PLANNING_AGENT.description),
    AgentInfo(EXPLAIN_AGENT.name, "Explain", EXPLAIN_AGENT.description),
)


def list_agents() -> list[AgentInfo]:
    return list(AGENTS)


__all__ = ["AGENTS", "AgentInfo", "list_agents"]
