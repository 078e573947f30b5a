"""Agent runtime: Prompt -> Model -> Parser with retry and ordered stream events."""
from __future__ import annotations

import asyncio
import itertools
import random
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Sequence, TypeVar

import structlog
from pydantic import BaseModel

from ..cancellation import CancelToken, guarded
from ..config import LLMSettings
from ..errors import Cancelled, RateLimited, SchemaValidationError, TaskWingError, Timeout, UpstreamError
from ..llm.gateway import LLMGateway
from ..llm.types import ChatMessage, Usage, parse_structured
from ..observability.otel import agent_runs, tracer
from .events import EventHandler, EventKind, RunState, StreamEvent

logger = structlog.get_logger(__name__)

OutputT = TypeVar("OutputT", bound=BaseModel)

REPAIR_PROMPT = (
    "Your last response did not match the required schema.\n"
    "Return ONLY a valid JSON object for the schema. Do not add extra keys or prose.\n"
    "Validation/parsing error: {error}"
)


@dataclass
class Finding:
    type: str
    title: str
    description: str
    why: str = ""
    tradeoffs: str = ""
    source_agent: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Tool:
    """Declared tool for ReAct-style agents; core agents declare none."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AgentSpec(Generic[OutputT]):
    name: str
    description: str
    system_prompt: str
    prompt_template: str
    input_schema: type[BaseModel]
    output_schema: type[OutputT]
    findings: Callable[[OutputT], list[Finding]] | None = None
    warning: Callable[[OutputT], str | None] | None = None
    tools: tuple[Tool, ...] = ()

    def render(self, inputs: BaseModel | dict[str, Any]) -> list[ChatMessage]:
        if not isinstance(inputs, self.input_schema):
            inputs = self.input_schema.model_validate(inputs if isinstance(inputs, dict) else inputs.model_dump())
        fields = inputs.model_dump()
        return [
            ChatMessage("system", self.system_prompt),
            ChatMessage("user", self.prompt_template.format(**fields)),
        ]


@dataclass
class AgentOutput(Generic[OutputT]):
    """Completed run payload; ``error`` is a warning and never a failure."""

    agent_name: str
    result: OutputT
    findings: list[Finding] = field(default_factory=list)
    error: str | None = None
    usage: Usage = field(default_factory=Usage)


@dataclass
class AgentRun(Generic[OutputT]):
    run_id: str
    agent_name: str
    state: RunState = RunState.WAITING
    output: AgentOutput[OutputT] | None = None
    error: TaskWingError | None = None
    attempts: int = 0
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.state is RunState.DONE and self.output is not None

    @property
    def warning(self) -> str | None:
        return self.output.error if self.output else None


class AgentRuntime:
    def __init__(self, gateway: LLMGateway, settings: LLMSettings) -> None:
        self._gateway = gateway
        self._settings = settings
        self._handlers: list[EventHandler] = []

    def add_handler(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def remove_handler(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def run(
        self,
        spec: AgentSpec[OutputT],
        inputs: BaseModel | dict[str, Any],
        *,
        handler: EventHandler | None = None,
        cancel: CancelToken | None = None,
    ) -> AgentRun[OutputT]:
        """Run ``spec`` once.

        Exhausted retries and non-retryable upstream errors end the run in
        ``RunState.ERROR`` and are returned. ``Timeout`` and ``Cancelled`` are
        raised after the terminal event is emitted.
        """
        run: AgentRun[OutputT] = AgentRun(run_id=uuid.uuid4().hex[:12], agent_name=spec.name)
        handlers = [*self._handlers, handler] if handler is not None else list(self._handlers)
        sequence = itertools.count(1)

        async def emit(kind: EventKind, stage: str | None = None, **payload: Any) -> None:
            event = StreamEvent(run.run_id, spec.name, next(sequence), kind, stage, payload)
            for receiver in handlers:
                await receiver(event)

        start = time.perf_counter()
        with tracer.start_as_current_span("agent.run", attributes={"agent.name": spec.name}) as span:
            run.state = RunState.RUNNING
            try:
                await emit(EventKind.RUN_START)
                run.output = await self._execute(spec, inputs, run, emit, cancel, stream=handler is not None)
            except (Timeout, Cancelled) as exc:
                run.state = RunState.ERROR
                run.error = exc
                await emit(EventKind.AGENT_ERROR, error=str(exc), error_type=type(exc).__name__)
                raise
            except asyncio.CancelledError:
                run.state = RunState.ERROR
                raise
            except TaskWingError as exc:
                run.state = RunState.ERROR
                run.error = exc
                logger.warning("agent.failed", agent=spec.name, run_id=run.run_id, attempts=run.attempts, error=str(exc))
                await emit(EventKind.AGENT_ERROR, error=str(exc), error_type=type(exc).__name__)
            else:
                run.state = RunState.DONE
                await emit(
                    EventKind.AGENT_COMPLETE,
                    findings=len(run.output.findings),
                    warning=run.output.error,
                )
            finally:
                run.duration_ms = int((time.perf_counter() - start) * 1000)
                span.set_attribute("agent.state", run.state.value)
                span.set_attribute("agent.attempts", run.attempts)
                agent_runs.add(1, {"agent": spec.name, "state": run.state.value})
        logger.info(
            "agent.run",
            agent=spec.name,
            run_id=run.run_id,
            state=run.state.value,
            attempts=run.attempts,
            duration_ms=run.duration_ms,
        )
        return run

    async def _execute(
        self,
        spec: AgentSpec[OutputT],
        inputs: BaseModel | dict[str, Any],
        run: AgentRun[OutputT],
        emit: Callable[..., Any],
        cancel: CancelToken | None,
        stream: bool,
    ) -> AgentOutput[OutputT]:
        base_messages = spec.render(inputs)
        await emit(EventKind.NODE_START, "prompt", messages=len(base_messages))
        messages: Sequence[ChatMessage] = base_messages
        usage = Usage()

        async def on_token(text: str) -> None:
            await emit(EventKind.TOKEN, "model", text=text)

        while True:
            run.attempts += 1
            try:
                await emit(EventKind.NODE_START, "model", attempt=run.attempts)
                text, call_usage = await guarded(
                    self._gateway.complete(messages, json_output=True, on_token=on_token if stream else None),
                    cancel,
                    self._settings.timeout,
                    f"{spec.name} agent",
                )
                usage = usage + call_usage
                await emit(EventKind.NODE_START, "parser", attempt=run.attempts)
                result = parse_structured(text, spec.output_schema)
            except (SchemaValidationError, UpstreamError) as exc:
                if not self._retryable(exc) or run.attempts > self._settings.max_retries:
                    raise
                delay = self._backoff(run.attempts, exc)
                logger.info(
                    "agent.retry",
                    agent=spec.name,
                    run_id=run.run_id,
                    attempt=run.attempts,
                    delay_s=round(delay, 3),
                    error=str(exc),
                )
                await emit(
                    EventKind.RETRY,
                    attempt=run.attempts,
                    delay=delay,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                if isinstance(exc, SchemaValidationError):
                    messages = [
                        *base_messages,
                        ChatMessage("assistant", exc.raw[:4000]),
                        ChatMessage("system", REPAIR_PROMPT.format(error=str(exc)[:900])),
                    ]
                if delay > 0:
                    await guarded(asyncio.sleep(delay), cancel, None, f"{spec.name} retry backoff")
                continue

            findings = spec.findings(result) if spec.findings else []
            for finding in findings:
                finding.source_agent = finding.source_agent or spec.name
            warning = spec.warning(result) if spec.warning else None
            return AgentOutput(agent_name=spec.name, result=result, findings=findings, error=warning, usage=usage)

    @staticmethod
    def _retryable(exc: TaskWingError) -> bool:
        if isinstance(exc, (SchemaValidationError, RateLimited)):
            return True
        return isinstance(exc, UpstreamError) and exc.transient

    def _backoff(self, attempt: int, exc: TaskWingError) -> float:
        base = self._settings.retry_base_delay
        delay = min(self._settings.retry_max_delay, base * (2 ** (attempt - 1)))
        delay *= random.uniform(0.5, 1.5)
        if isinstance(exc, RateLimited) and exc.retry_after:
            delay = max(delay, min(exc.retry_after, self._settings.retry_max_delay))
        return delay


__all__ = ["AgentOutput", "AgentRun", "AgentRuntime", "AgentSpec", "Finding", "Tool"]
