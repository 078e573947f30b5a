"""Text helpers: goal summaries and task keyword, scope and recall-query enrichment."""
from __future__ import annotations

import re

SUMMARY_LIMIT = 100
ELLIPSIS = "…"
MAX_KEYWORDS = 10
MIN_KEYWORD_LENGTH = 3
MIN_SCOPE_WORD_LENGTH = 2
DEFAULT_SCOPE = "general"

STOPWORDS = frozenset(
    """
    the a an and or but in on at to for of with by from as is was are be been being
    have has had do does did will would could should may might must shall can need
    this that these those it its i we you he she they them their what which who whom
    when where why how all each every both few more most other some such no nor not
    only own same so than too very just also
    """.split()
)

SCOPE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "auth": ("auth", "authentication", "login", "logout", "session", "cookie", "jwt", "token", "password", "credential", "oauth", "sso"),
    "api": ("api", "endpoint", "handler", "route", "rest", "graphql", "grpc", "request", "response", "middleware"),
    "database": ("database", "db", "sql", "sqlite", "postgres", "mysql", "migration", "schema", "query", "table", "index"),
    "vectorsearch": ("vector", "embedding", "lancedb", "similarity", "semantic", "search", "rag", "retrieval"),
    "llm": ("llm", "openai", "claude", "gemini", "ollama", "prompt", "completion", "chat", "model", "inference"),
    "cli": ("cli", "command", "flag", "cobra", "terminal", "argument", "subcommand"),
    "mcp": ("mcp", "tool", "protocol", "context", "stdio", "jsonrpc"),
    "bootstrap": ("bootstrap", "scan", "analyze", "extract", "discover", "pattern"),
    "ui": ("ui", "tui", "interface", "display", "render", "bubbletea", "lipgloss"),
    "test": ("test", "testing", "mock", "fixture", "assert", "benchmark", "coverage"),
}

_NON_WORD = re.compile(r"[^a-z0-9\s]")


def summarize(text: str, limit: int = SUMMARY_LIMIT) -> str:
    """Collapse whitespace and hard-truncate to ``limit`` characters, ending in an ellipsis."""
    collapsed = " ".join((text or "").split())
    if len(collapsed) <= limit:
        return collapsed
    return collapsed[: limit - 1].rstrip() + ELLIPSIS


def _words(text: str) -> list[str]:
    return _NON_WORD.sub(" ", text.lower()).split()


def extract_keywords(title: str, description: str = "", limit: int = MAX_KEYWORDS) -> list[str]:
    keywords: list[str] = []
    for word in _words(f"{title} {description}"):
        if len(word) < MIN_KEYWORD_LENGTH or word in STOPWORDS or word in keywords:
            continue
        keywords.append(word)
        if len(keywords) == limit:
            break
    return keywords


def infer_scope(title: str, description: str = "") -> str:
    words = {w for w in _words(f"{title} {description}") if len(w) >= MIN_SCOPE_WORD_LENGTH and w not in STOPWORDS}
    best, best_hits = DEFAULT_SCOPE, 0
    for scope, vocabulary in SCOPE_KEYWORDS.items():
        hits = sum(1 for keyword in vocabulary if keyword in words)
        if hits > best_hits:
            best, best_hits = scope, hits
    return best


def recall_queries(title: str, scope: str, keywords: list[str]) -> list[str]:
    queries = [f"{scope} patterns constraints decisions"]
    if keywords:
        queries.append(" ".join(keywords[:5]))
    title_words = [w for w in _words(title) if len(w) >= MIN_KEYWORD_LENGTH and w not in STOPWORDS]
    if title_words:
        queries.append(" ".join(title_words[:4]))
    return queries


def enrich_task_fields(title: str, description: str = "") -> tuple[str, list[str], list[str]]:
    """Return ``(scope, keywords, suggested_recall_queries)`` for a task."""
    keywords = extract_keywords(title, description)
    scope = infer_scope(title, description)
    return scope, keywords, recall_queries(title, scope, keywords)


__all__ = [
    "SCOPE_KEYWORDS",
    "STOPWORDS",
    "enrich_task_fields",
    "extract_keywords",
    "infer_scope",
    "recall_queries",
    "summarize",
]
