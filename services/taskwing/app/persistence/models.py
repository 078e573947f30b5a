"""SQLAlchemy models for the knowledge store."""
from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Enum, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def short_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


class Base(DeclarativeBase):
    pass


class NodeType(enum.Enum):
    decision = "decision"
    feature = "feature"
    constraint = "constraint"
    pattern = "pattern"
    plan = "plan"
    note = "note"
    metadata = "metadata"
    documentation = "documentation"


class PlanStatus(enum.Enum):
    active = "active"
    done = "done"
    cancelled = "cancelled"


class TaskStatus(enum.Enum):
    pending = "pending"
    in_progress = "in_progress"
    done = "done"
    blocked = "blocked"


class ActivityType(enum.Enum):
    file_change = "file_change"
    agent_run = "agent_run"
    finding = "finding"
    error = "error"
    plan = "plan"


class Node(Base):
    __tablename__ = "nodes"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    type: Mapped[NodeType] = mapped_column(Enum(NodeType), nullable=False, index=True)
    summary: Mapped[str] = mapped_column(String(200), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    embedding: Mapped[list[float] | None] = mapped_column(JSON(none_as_null=True))
    source_agent: Mapped[str] = mapped_column(String, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class NodeEdge(Base):
    __tablename__ = "node_edges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    from_node: Mapped[str] = mapped_column(ForeignKey("nodes.id", ondelete="CASCADE"), nullable=False, index=True)
    to_node: Mapped[str] = mapped_column(ForeignKey("nodes.id", ondelete="CASCADE"), nullable=False, index=True)
    relation: Mapped[str] = mapped_column(String, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    properties: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (UniqueConstraint("from_node", "to_node", "relation", name="uq_edge_from_to_relation"),)


class Plan(Base):
    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: short_id("plan"))
    goal: Mapped[str] = mapped_column(Text, nullable=False)
    enriched_goal: Mapped[str] = mapped_column(Text, nullable=False, default="")
    goal_summary: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    status: Mapped[PlanStatus] = mapped_column(Enum(PlanStatus), nullable=False, default=PlanStatus.active)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class Task(Base):
    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: short_id("task"))
    plan_id: Mapped[str] = mapped_column(ForeignKey("plans.id", ondelete="CASCADE"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[TaskStatus] = mapped_column(Enum(TaskStatus), nullable=False, default=TaskStatus.pending)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    complexity: Mapped[str | None] = mapped_column(String)
    assigned_agent: Mapped[str | None] = mapped_column(String)
    acceptance_criteria: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    validation_steps: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    depends_on: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    scope: Mapped[str | None] = mapped_column(String)
    keywords: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    suggested_recall_queries: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class ClarifySession(Base):
    __tablename__ = "clarify_sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    goal: Mapped[str] = mapped_column(Text, nullable=False)
    rounds: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    max_rounds: Mapped[int] = mapped_column(Integer, nullable=False)
    is_ready_to_plan: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    final_enriched_goal: Mapped[str] = mapped_column(Text, nullable=False, default="")
    goal_summary: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    context_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    context_strategy: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String, nullable=False, default="open")
    plan_id: Mapped[str | None] = mapped_column(String)
    last_result: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class ActivityEntry(Base):
    __tablename__ = "activity_log"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    type: Mapped[ActivityType] = mapped_column(Enum(ActivityType), nullable=False)
    category: Mapped[str | None] = mapped_column(String)
    path: Mapped[str | None] = mapped_column(String)
    agent: Mapped[str | None] = mapped_column(String)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)


class StoreMetadata(Base):
    __tablename__ = "store_metadata"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(String, nullable=False)


__all__ = [
    "ActivityEntry",
    "ActivityType",
    "Base",
    "ClarifySession",
    "Node",
    "NodeEdge",
    "NodeType",
    "Plan",
    "PlanStatus",
    "StoreMetadata",
    "Task",
    "TaskStatus",
    "short_id",
    "utcnow",
]
