"""Non-blocking semantic validation of planning agent output."""
from __future__ import annotations

import shlex
from dataclasses import dataclass, field

from ..agents.specs import ASSIGNABLE_AGENTS, TaskProposal

TITLE_LIMIT = 200


@dataclass
class ValidatedTask:
    proposal: TaskProposal
    depends_on: list[int] = field(default_factory=list)


@dataclass
class ValidationReport:
    tasks: list[ValidatedTask] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def warn(self, index: int, kind: str, message: str) -> None:
        self.warnings.append(f"[Task {index + 1}] {kind}: {message}")

    def error(self, index: int, kind: str, message: str) -> None:
        self.errors.append(f"[Task {index + 1}] {kind}: {message}")


def _reaches(graph: list[list[int]], start: int, target: int) -> bool:
    stack, seen = [start], set()
    while stack:
        current = stack.pop()
        if current == target:
            return True
        if current in seen:
            continue
        seen.add(current)
        stack.extend(graph[current])
    return False


def _resolve(reference: str, titles: dict[str, int], count: int) -> int | None:
    ref = reference.strip()
    if ref.isdigit():
        position = int(ref) - 1
        return position if 0 <= position < count else None
    return titles.get(ref.lower())


def validate_tasks(proposals: list[TaskProposal]) -> ValidationReport:
    """Normalize proposals, resolve dependency references and report problems.

    Dependencies name other tasks by title or 1-based index. Unknown references
    are dropped with a warning; self-references and edges that would close a
    cycle are dropped with an error. Earlier edges win.
    """
    report = ValidationReport()
    titles: dict[str, int] = {}

    for index, original in enumerate(proposals):
        proposal = original.model_copy(deep=True)
        title = " ".join(proposal.title.split())
        if not title:
            title = f"Task {index + 1}"
            report.warn(index, "empty_title", f"task has no title; using '{title}'")
        if len(title) > TITLE_LIMIT:
            report.warn(index, "title_too_long", f"title truncated to {TITLE_LIMIT} characters")
            title = title[:TITLE_LIMIT]
        proposal.title = title
        if not proposal.description.strip():
            report.warn(index, "empty_description", "task has no description")
        if not proposal.acceptance_criteria:
            report.warn(index, "missing_acceptance_criteria", "task has no acceptance criteria")
        if not 0 <= proposal.priority <= 100:
            clamped = min(max(proposal.priority, 0), 100)
            report.warn(index, "priority_out_of_range", f"priority {proposal.priority} clamped to {clamped}")
            proposal.priority = clamped
        if proposal.assigned_agent and proposal.assigned_agent not in ASSIGNABLE_AGENTS:
            report.warn(index, "unexpected_agent", f"assigned agent '{proposal.assigned_agent}' is not one of {', '.join(ASSIGNABLE_AGENTS)}")
        for step in proposal.validation_steps:
            try:
                shlex.split(step)
            except ValueError as exc:
                report.warn(index, "invalid_command", f"cannot parse '{step}': {exc}")
        key = title.lower()
        if key in titles:
            report.warn(index, "duplicate_title", f"title duplicates task {titles[key] + 1}")
        else:
            titles[key] = index
        report.tasks.append(ValidatedTask(proposal))

    graph: list[list[int]] = [[] for _ in report.tasks]
    for index, validated in enumerate(report.tasks):
        for reference in validated.proposal.dependencies:
            target = _resolve(reference, titles, len(report.tasks))
            if target is None:
                report.warn(index, "unknown_dependency", f"dependency '{reference}' does not match any task; dropped")
                continue
            if target == index:
                report.error(index, "self_dependency", "task depends on itself; dependency dropped")
                continue
            if target in graph[index]:
                continue
            if _reaches(graph, target, index):
                report.error(index, "dependency_cycle", f"dependency on task {target + 1} would create a cycle; dropped")
                continue
            graph[index].append(target)
        validated.depends_on = graph[index]
    return report


__all__ = ["ValidatedTask", "ValidationReport", "validate_tasks"]
