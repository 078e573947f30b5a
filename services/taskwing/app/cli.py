"""Command line interface: serve, bootstrap, plan, ask/search, list, explain."""
from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Sequence

import structlog

from .agents.bus import Producer, StreamBus
from .agents.events import EventKind, StreamEvent
from .cancellation import CancelToken
from .config import TaskWingSettings, get_settings
from .domain.pipeline import TaskWingPipeline, build_pipeline
from .domain.types import ClarifyRequest, ClarifyResult, GenerateRequest
from .errors import Cancelled, TaskWingError
from .observability.logging import configure_logging

logger = structlog.get_logger(__name__)

EXIT_CANCELLED = 130


class _ArgumentParser(argparse.ArgumentParser):
    """Argument parser whose usage errors exit with status 1."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(prog="taskwing", description="Architecture-aware planning for your repository")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging and stage progress")
    commands = parser.add_subparsers(dest="command", required=True, parser_class=_ArgumentParser)

    serve = commands.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    bootstrap = commands.add_parser("bootstrap", help="Extract architectural knowledge from a project")
    bootstrap.add_argument("--project-path", default=".", help="Project root to analyze")
    bootstrap.add_argument("--clear", action="store_true", help="Clear stored knowledge before ingesting")
    bootstrap.add_argument("--agents", default=None, help="Comma separated agents (doc,code)")

    plan = commands.add_parser("plan", help="Clarify a goal and generate a plan")
    plan.add_argument("goal")
    plan.add_argument("--max-rounds", type=int, default=None)
    plan.add_argument("--auto-answer", action="store_true", help="Answer clarification questions from project knowledge")

    for name in ("ask", "search"):
        query = commands.add_parser(name, help="Search project knowledge")
        query.add_argument("query")
        query.add_argument("--limit", type=int, default=5)
        query.add_argument("--answer", action="store_true", help="Also generate an answer from the results")

    listing = commands.add_parser("list", help="List stored knowledge or plans")
    listing.add_argument("--type", default=None, help="Only nodes of this type")
    listing.add_argument("--plans", action="store_true", help="List plans instead of knowledge nodes")

    explain = commands.add_parser("explain", help="Explain a concept using project knowledge")
    explain.add_argument("query")
    return parser


class LiveCommand:
    """Event handler and cancel token shared by every pipeline call of one command.

    While installed, Ctrl-C fires the token instead of raising ``KeyboardInterrupt``,
    so in-flight calls stop with ``Cancelled`` and open transactions roll back.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, handler: Producer) -> None:
        self._loop = loop
        self.handler = handler
        self.cancel = CancelToken()
        self._installed = False

    def install(self) -> None:
        try:
            self._loop.add_signal_handler(signal.SIGINT, self.cancel.cancel)
        except (NotImplementedError, RuntimeError):
            # no loop signal support; Ctrl-C surfaces as KeyboardInterrupt in main()
            logger.debug("cli.signal_handler_unavailable")
            return
        self._installed = True

    def uninstall(self) -> None:
        if self._installed:
            self._loop.remove_signal_handler(signal.SIGINT)
            self._installed = False

    def prompt(self, text: str) -> str:
        """Blocking read from stdin; Ctrl-C or end of input cancels the command."""
        installed = self._installed
        self.uninstall()
        try:
            return input(text)
        except (KeyboardInterrupt, EOFError) as exc:
            self.cancel.cancel()
            raise Cancelled(self.cancel.reason) from exc
        finally:
            if installed:
                self.install()


def _progress_line(event: StreamEvent) -> str:
    line = f"[{event.agent}] {event.kind.value}"
    if event.stage:
        line += f" {event.stage}"
    if event.kind in (EventKind.RETRY, EventKind.AGENT_ERROR) and event.payload.get("error"):
        line += f": {event.payload['error']}"
    return line


async def _report_progress(bus: StreamBus, verbose: bool) -> None:
    async for event in bus:
        if verbose and event.kind is not EventKind.TOKEN:
            print(_progress_line(event), file=sys.stderr, flush=True)


@asynccontextmanager
async def _live(command: str, verbose: bool) -> AsyncIterator[LiveCommand]:
    bus = StreamBus()
    live = LiveCommand(asyncio.get_running_loop(), bus.producer(command))
    consumer = asyncio.create_task(_report_progress(bus, verbose))
    live.install()
    try:
        yield live
    finally:
        live.uninstall()
        live.handler.deregister()
        await bus.wait_idle()
        bus.close()
        await consumer


def _print_questions(result: ClarifyResult) -> None:
    print(f"\nRound {result.round}: {result.goal_summary}")
    for number, question in enumerate(result.questions, start=1):
        print(f"  {number}. {question}")


def _ask_user(live: LiveCommand, questions: list[str]) -> list[str]:
    return [live.prompt(f"[{number}] {question}\n> ").strip() for number, question in enumerate(questions, start=1)]


async def _plan(pipeline: TaskWingPipeline, args: argparse.Namespace, live: LiveCommand) -> int:
    pipeline.require_llm()
    result = await pipeline.clarify.clarify(
        ClarifyRequest(goal=args.goal, max_rounds=args.max_rounds), live.handler, live.cancel
    )
    while result.success and not result.is_ready_to_plan:
        _print_questions(result)
        if args.auto_answer:
            request = ClarifyRequest(session_id=result.clarify_session_id, auto_answer=True)
        else:
            request = ClarifyRequest(session_id=result.clarify_session_id, answers=_ask_user(live, result.questions))
        result = await pipeline.clarify.clarify(request, live.handler, live.cancel)
    if not result.success:
        print(f"clarification failed: {result.message}", file=sys.stderr)
        return 2

    print(f"\nSpecification ({result.round} rounds):\n{result.enriched_goal}\n")
    generated = await pipeline.generator.generate(
        GenerateRequest(session_id=result.clarify_session_id), live.handler, live.cancel
    )
    if not generated.success:
        print(f"plan generation failed: {generated.message}", file=sys.stderr)
        return 2
    print(f"Plan {generated.plan_id}: {generated.goal_summary}")
    titles = {task.id: index for index, task in enumerate(generated.tasks, start=1)}
    for index, task in enumerate(generated.tasks, start=1):
        after = ", ".join(str(titles[dep]) for dep in task.depends_on if dep in titles)
        suffix = f" (after {after})" if after else ""
        print(f"  {index}. [{task.priority}] {task.title}{suffix}")
    for warning in generated.semantic_warnings:
        print(f"warning: {warning}")
    for error in generated.semantic_errors:
        print(f"error: {error}")
    return 0


async def _search(pipeline: TaskWingPipeline, args: argparse.Namespace, live: LiveCommand) -> int:
    pipeline.require_llm()
    nodes = await pipeline.retrieval.search(args.query, args.limit, cancel=live.cancel)
    if not nodes:
        print("No relevant knowledge found.")
        return 0
    for item in nodes:
        via = f" via {item.expanded_from}" if item.expanded_from else ""
        print(f"{item.score:.3f}  [{item.node.type.value}] {item.node.summary}{via}")
    if args.answer:
        print("\n" + await pipeline.retrieval.answer(args.query, nodes, cancel=live.cancel))
    return 0


async def _bootstrap(pipeline: TaskWingPipeline, args: argparse.Namespace, live: LiveCommand) -> int:
    pipeline.require_llm()
    agents = [name.strip() for name in args.agents.split(",") if name.strip()] if args.agents else None
    report = await pipeline.bootstrap.run(
        args.project_path, agents=agents, clear=args.clear, handler=live.handler, cancel=live.cancel
    )
    print(
        f"findings={report.findings} nodes={report.nodes_created} "
        f"duplicates={report.duplicates_skipped} edges={report.edges_created}"
    )
    for error in report.errors:
        print(f"error: {error}", file=sys.stderr)
    return 0 if report.success else 2


async def _list(pipeline: TaskWingPipeline, args: argparse.Namespace, live: LiveCommand) -> int:
    if args.plans:
        for plan, count in await pipeline.store.list_plans():
            print(f"{plan.id}  {plan.status.value:<9} tasks={count}  {plan.goal_summary or plan.goal}")
        return 0
    for node in await pipeline.store.list_nodes(args.type):
        print(f"{node.id}  [{node.type.value}] {node.summary}")
    return 0


async def _explain(pipeline: TaskWingPipeline, args: argparse.Namespace, live: LiveCommand) -> int:
    pipeline.require_llm()
    context, run = await pipeline.explain(args.query, handler=live.handler, cancel=live.cancel)
    if not run.ok:
        raise run.error
    print(run.output.result.explanation)
    for point in run.output.result.key_points:
        print(f"- {point}")
    if context.empty:
        print("\n(no stored project knowledge was relevant)")
    return 0


COMMANDS = {
    "plan": _plan,
    "ask": _search,
    "search": _search,
    "bootstrap": _bootstrap,
    "list": _list,
    "explain": _explain,
}


async def _dispatch(settings: TaskWingSettings, args: argparse.Namespace) -> int:
    pipeline = build_pipeline(settings)
    await pipeline.start()
    try:
        async with _live(args.command, args.verbose) as live:
            return await COMMANDS[args.command](pipeline, args, live)
    finally:
        await pipeline.close()


def _serve(settings: TaskWingSettings, args: argparse.Namespace) -> int:
    import uvicorn

    from .main import create_app

    uvicorn.run(
        create_app(settings),
        host=args.host or settings.server.host,
        port=args.port or settings.server.port,
        log_level=settings.observability.log_level.lower(),
    )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = get_settings()
        configure_logging(settings, verbose=args.verbose)
        if args.command == "serve":
            return _serve(settings, args)
        return asyncio.run(_dispatch(settings, args))
    except KeyboardInterrupt:
        print("cancelled", file=sys.stderr)
        return EXIT_CANCELLED
    except TaskWingError as exc:
        logger.debug("cli.failed", command=args.command, error_type=type(exc).__name__)
        print(f"error: {exc.message}", file=sys.stderr)
        return exc.exit_code


__all__ = ["LiveCommand", "build_parser", "main"]


if __name__ == "__main__":
    sys.exit(main())
