"""Typed stream events emitted by agent runs."""
from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable


class EventKind(str, enum.Enum):
    RUN_START = "run_start"
    NODE_START = "node_start"
    TOKEN = "token"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    RETRY = "retry"
    AGENT_COMPLETE = "agent_complete"
    AGENT_ERROR = "agent_error"


TERMINAL_KINDS = frozenset({EventKind.AGENT_COMPLETE, EventKind.AGENT_ERROR})


class RunState(str, enum.Enum):
    WAITING = "waiting"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    run_id: str
    agent: str
    seq: int
    kind: EventKind
    stage: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    def as_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "agent": self.agent,
            "seq": self.seq,
            "kind": self.kind.value,
            "stage": self.stage,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


EventHandler = Callable[[StreamEvent], Awaitable[None]]


__all__ = ["EventHandler", "EventKind", "RunState", "StreamEvent", "TERMINAL_KINDS"]
