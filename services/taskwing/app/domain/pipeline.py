"""Composition root: every pipeline component built from one settings value."""
from __future__ import annotations

from dataclasses import dataclass

import structlog

from ..agents.events import EventHandler, EventKind, StreamEvent
from ..agents.runtime import AgentRun, AgentRuntime
from ..agents.specs import EXPLAIN_AGENT, ExplainInput, ExplainOutput
from ..cancellation import CancelToken
from ..config import TaskWingSettings
from ..errors import StorageError
from ..llm.gateway import LLMGateway, build_gateway
from ..llm.rerank import Reranker, TEIReranker
from ..persistence.db import Database
from ..persistence.models import ActivityType
from ..persistence.store import KnowledgeStore
from .bootstrap import BootstrapRunner
from .clarify import ClarifyEngine
from .plan_generator import PlanGenerator
from .retrieval import RetrievalService
from .types import KGContext

logger = structlog.get_logger(__name__)


class ActivityRecorder:
    """Runtime handler that writes agent outcomes to the activity log."""

    def __init__(self, store: KnowledgeStore) -> None:
        self._store = store

    async def __call__(self, event: StreamEvent) -> None:
        if event.kind is EventKind.AGENT_COMPLETE:
            activity, message = ActivityType.agent_run, f"{event.agent} agent completed"
        elif event.kind is EventKind.AGENT_ERROR:
            activity, message = ActivityType.error, f"{event.agent} agent failed: {event.payload.get('error', '')}"
        else:
            return
        try:
            await self._store.record_activity(
                activity,
                message,
                agent=event.agent,
                details={"runId": event.run_id, **event.payload},
            )
        except StorageError as exc:
            logger.warning("activity.record_failed", agent=event.agent, error=str(exc))


@dataclass
class TaskWingPipeline:
    settings: TaskWingSettings
    database: Database
    store: KnowledgeStore
    gateway: LLMGateway
    runtime: AgentRuntime
    retrieval: RetrievalService
    clarify: ClarifyEngine
    generator: PlanGenerator
    bootstrap: BootstrapRunner

    async def start(self) -> None:
        self.settings.storage.memory_dir.mkdir(parents=True, exist_ok=True)
        await self.database.init()
        logger.info("pipeline.started", memory_dir=str(self.settings.storage.memory_dir), provider=self.gateway.provider)

    async def close(self) -> None:
        await self.database.dispose()

    def require_llm(self) -> None:
        """Raise ``ConfigError`` when the configured provider needs a key and has none."""
        self.settings.llm.require_api_key()

    async def explain(
        self,
        query: str,
        handler: EventHandler | None = None,
        cancel: CancelToken | None = None,
    ) -> tuple[KGContext, AgentRun[ExplainOutput]]:
        context = await self.retrieval.retrieve(query, cancel=cancel)
        inputs = ExplainInput(goal=query, context=context.context_text or "(no stored project knowledge)")
        run = await self.runtime.run(EXPLAIN_AGENT, inputs, handler=handler, cancel=cancel)
        return context, run


def build_pipeline(
    settings: TaskWingSettings,
    gateway: LLMGateway | None = None,
    reranker: Reranker | None = None,
) -> TaskWingPipeline:
    database = Database(settings.storage.resolved_database_url())
    store = KnowledgeStore(database)
    gateway = gateway or build_gateway(settings)
    if reranker is None and settings.rerank.enabled:
        reranker = TEIReranker(settings.rerank)
    runtime = AgentRuntime(gateway, settings.llm)
    runtime.add_handler(ActivityRecorder(store))
    retrieval = RetrievalService(
        store,
        gateway,
        settings.retrieval,
        reranker=reranker,
        architecture_path=settings.storage.architecture_path,
    )
    return TaskWingPipeline(
        settings=settings,
        database=database,
        store=store,
        gateway=gateway,
        runtime=runtime,
        retrieval=retrieval,
        clarify=ClarifyEngine(store, runtime, retrieval, settings.clarify),
        generator=PlanGenerator(store, runtime, retrieval, settings.retrieval),
        bootstrap=BootstrapRunner(store, runtime, gateway, settings.retrieval),
    )


__all__ = ["ActivityRecorder", "TaskWingPipeline", "build_pipeline"]
