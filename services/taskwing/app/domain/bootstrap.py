"""Bootstrap: run ingestion agents over a project and ingest their findings."""
from __future__ import annotations

import asyncio
import os
from pathlib import Path

import structlog

from ..agents.events import EventHandler
from ..agents.runtime import AgentRuntime, Finding
from ..agents.specs import CODE_AGENT, ProjectDigestInput, RelationshipItem
from ..cancellation import CancelToken, guarded
from ..config import RetrievalSettings
from ..errors import Cancelled, StorageError, TaskWingError, Timeout, UserError
from ..llm.gateway import LLMGateway
from ..persistence.models import ActivityType, Node, NodeType
from ..persistence.store import KnowledgeStore, NewEdge, NewNode, cosine_similarity
from .types import BootstrapReport

logger = structlog.get_logger(__name__)

DOC_AGENT = "doc"
DEFAULT_AGENTS = (DOC_AGENT, CODE_AGENT.name)
DEDUPE_PREFIX = 200
ROOT_DOC_LIMIT = 4000
NESTED_DOC_LIMIT = 3000
KEY_FILE_LIMIT = 2500
TREE_DEPTH = 2
KEY_FILES = (
    "README.md",
    "pyproject.toml",
    "setup.cfg",
    "requirements.txt",
    "package.json",
    "go.mod",
    "Cargo.toml",
    "Makefile",
    "Dockerfile",
)
SKIP_DIRS = frozenset({"node_modules", "vendor", "__pycache__", "dist", "build", "venv", ".venv"})


def node_content(finding: Finding) -> str:
    content = f"{finding.title}\n{finding.description}".strip()
    if finding.why:
        content += f"\n\nWhy: {finding.why}"
    if finding.tradeoffs:
        content += f"\nTradeoffs: {finding.tradeoffs}"
    return content


def dedupe_key(content: str) -> str:
    return content.strip()[:DEDUPE_PREFIX]


def _read(path: Path, limit: int) -> str:
    text = path.read_text(encoding="utf-8", errors="replace")
    return text if len(text) <= limit else text[:limit] + "\n...[truncated]"


def scan_documents(root: Path) -> list[Finding]:
    """Read markdown files at the project root and under ``docs/`` as documentation findings."""
    findings = []
    for directory, limit in ((root, ROOT_DOC_LIMIT), (root / "docs", NESTED_DOC_LIMIT)):
        if not directory.is_dir():
            continue
        for path in sorted(directory.iterdir()):
            if not path.is_file() or path.suffix.lower() != ".md":
                continue
            text = _read(path, limit).strip()
            if not text:
                continue
            relative = path.relative_to(root).as_posix()
            heading = next((line.lstrip("#").strip() for line in text.splitlines() if line.startswith("#")), "")
            findings.append(
                Finding(
                    type=NodeType.documentation.value,
                    title=f"{relative}: {heading}" if heading else relative,
                    description=text,
                    source_agent=DOC_AGENT,
                    metadata={"path": relative},
                )
            )
    return findings


def directory_tree(root: Path, max_depth: int = TREE_DEPTH) -> str:
    lines = []
    for current, dirs, files in os.walk(root):
        depth = len(Path(current).relative_to(root).parts)
        dirs[:] = sorted(d for d in dirs if not d.startswith(".") and d not in SKIP_DIRS)
        if depth >= max_depth:
            dirs[:] = []
        indent = "  " * depth
        if depth:
            lines.append(f"{indent[:-2]}{Path(current).name}/")
        lines.extend(f"{indent}{name}" for name in sorted(files) if not name.startswith("."))
    return "\n".join(lines)


def project_digest(root: Path) -> str:
    sections = [f"## Directory tree\n{directory_tree(root)}"]
    for name in KEY_FILES:
        path = root / name
        if path.is_file():
            sections.append(f"## {name}\n{_read(path, KEY_FILE_LIMIT)}")
    return "\n\n".join(sections)


class BootstrapRunner:
    def __init__(
        self,
        store: KnowledgeStore,
        runtime: AgentRuntime,
        gateway: LLMGateway,
        settings: RetrievalSettings,
    ) -> None:
        self._store = store
        self._runtime = runtime
        self._gateway = gateway
        self._settings = settings

    async def run(
        self,
        project_path: str | Path,
        agents: list[str] | None = None,
        clear: bool = False,
        handler: EventHandler | None = None,
        cancel: CancelToken | None = None,
    ) -> BootstrapReport:
        root = Path(project_path).expanduser()
        if not root.is_dir():
            raise UserError(f"project path does not exist: {project_path}")
        selected = list(dict.fromkeys(agents or DEFAULT_AGENTS))
        unknown = [name for name in selected if name not in DEFAULT_AGENTS]
        if unknown:
            raise UserError(f"unknown bootstrap agents: {', '.join(unknown)} (available: {', '.join(DEFAULT_AGENTS)})")

        report = BootstrapReport(agents=selected)
        outcomes = await asyncio.gather(*(self._run_agent(name, root, handler, cancel) for name in selected))
        findings: list[Finding] = []
        relationships: list[RelationshipItem] = []
        for name, (agent_findings, agent_relationships, error) in zip(selected, outcomes):
            if error:
                report.errors.append(f"{name}: {error}")
            findings.extend(agent_findings)
            relationships.extend(agent_relationships)
        report.findings = len(findings)

        if clear:
            await self._store.clear_all_knowledge()
        await self._ingest(findings, relationships, report, cancel)
        report.success = not report.errors
        logger.info(
            "bootstrap.done",
            path=str(root),
            findings=report.findings,
            nodes=report.nodes_created,
            duplicates=report.duplicates_skipped,
            edges=report.edges_created,
            errors=len(report.errors),
        )
        return report

    async def _run_agent(
        self,
        name: str,
        root: Path,
        handler: EventHandler | None,
        cancel: CancelToken | None,
    ) -> tuple[list[Finding], list[RelationshipItem], str | None]:
        if name == DOC_AGENT:
            findings = scan_documents(root)
            await self._store.record_activity(
                ActivityType.agent_run, f"doc agent read {len(findings)} documents", agent=DOC_AGENT
            )
            return findings, [], None
        run = await self._runtime.run(CODE_AGENT, ProjectDigestInput(context=project_digest(root)), handler=handler, cancel=cancel)
        if not run.ok:
            return [], [], str(run.error)
        return run.output.findings, run.output.result.relationships, None

    async def _ingest(
        self,
        findings: list[Finding],
        relationships: list[RelationshipItem],
        report: BootstrapReport,
        cancel: CancelToken | None,
    ) -> None:
        existing = await self._store.list_nodes()
        seen = {dedupe_key(node.content) for node in existing}
        drafts: list[NewNode] = []
        kept: list[Finding] = []
        for finding in findings:
            content = node_content(finding)
            key = dedupe_key(content)
            if key in seen:
                report.duplicates_skipped += 1
                continue
            seen.add(key)
            drafts.append(NewNode(finding.type, finding.title, content, source_agent=finding.source_agent))
            kept.append(finding)
        if not drafts:
            return

        try:
            vectors = await guarded(self._gateway.embed([d.content for d in drafts]), cancel, None, "bootstrap embedding")
        except (Cancelled, Timeout):
            raise
        except TaskWingError as exc:
            logger.warning("bootstrap.embedding_failed", error=str(exc))
            report.errors.append(f"embedding: {exc}")
            vectors = [None] * len(drafts)
        for draft, vector in zip(drafts, vectors):
            draft.embedding = vector
        nodes = await self._store.create_nodes(drafts)
        report.nodes_created = len(nodes)

        edges = self._semantic_edges(nodes, [n for n in existing if n.embedding])
        edges.extend(self._relationship_edges(relationships, [*existing, *nodes]))
        report.edges_created = await self._store.link_nodes(edges)
        await self._record_findings(kept)

    def _semantic_edges(self, created: list[Node], existing: list[Node]) -> list[NewEdge]:
        threshold = self._settings.semantic_link_threshold
        edges = []
        for index, node in enumerate(created):
            if not node.embedding:
                continue
            for other in [*created[index + 1 :], *existing]:
                if not other.embedding:
                    continue
                similarity = cosine_similarity(node.embedding, other.embedding)
                if similarity >= threshold:
                    edges.append(
                        NewEdge(
                            node.id,
                            other.id,
                            "semantically_similar",
                            confidence=round(similarity, 4),
                            properties={"similarity": round(similarity, 4)},
                        )
                    )
        return edges

    @staticmethod
    def _relationship_edges(relationships: list[RelationshipItem], nodes: list[Node]) -> list[NewEdge]:
        by_title = {}
        for node in nodes:
            by_title.setdefault(node.summary.strip().lower(), node.id)
        edges = []
        for item in relationships:
            source = by_title.get(item.from_title.strip().lower())
            target = by_title.get(item.to_title.strip().lower())
            if source and target:
                edges.append(NewEdge(source, target, "relates_to", properties={"relation": item.relation}))
        return edges

    async def _record_findings(self, findings: list[Finding]) -> None:
        for finding in findings:
            if finding.type == NodeType.documentation.value:
                continue
            try:
                await self._store.record_activity(
                    ActivityType.finding,
                    f"{finding.type}: {finding.title}",
                    agent=finding.source_agent,
                    category=finding.type,
                )
            except StorageError as exc:
                logger.warning("bootstrap.activity_failed", error=str(exc))
                return


__all__ = ["BootstrapRunner", "DEFAULT_AGENTS", "dedupe_key", "node_content", "project_digest", "scan_documents"]
