import pytest

from services.taskwing.app.domain.text import (
    enrich_task_fields,
    extract_keywords,
    infer_scope,
    recall_queries,
    summarize,
)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Short goal", "Short goal"),
        ("  spaced \n\t out  ", "spaced out"),
        ("a" * 100, "a" * 100),
        ("a" * 101, "a" * 99 + "…"),
    ],
)
def test_summarize(text, expected):
    assert summarize(text) == expected


def test_summarize_never_exceeds_limit():
    summary = summarize("lorem ipsum " * 30, limit=40)
    assert len(summary) <= 40
    assert summary.endswith("…")


def test_extract_keywords_skips_stopwords_short_words_and_repeats():
    assert extract_keywords("Add the API key to the API config", "it is in a db") == ["add", "api", "key", "config"]
    assert len(extract_keywords(" ".join(f"word{n}" for n in range(20)))) == 10


@pytest.mark.parametrize(
    "title, description, scope",
    [
        ("Add JWT login", "", "auth"),
        ("Create migration for users table", "", "database"),
        ("Add REST endpoint", "returns a response", "api"),
        ("Polish the README", "", "general"),
        ("Add a mock fixture for the login handler", "", "test"),
    ],
)
def test_infer_scope(title, description, scope):
    assert infer_scope(title, description) == scope


def test_scope_ties_go_to_the_earlier_scope():
    # one auth hit and one api hit
    assert infer_scope("session endpoint") == "auth"


def test_recall_queries_and_enrichment():
    assert recall_queries("Add JWT login endpoint", "auth", ["add", "jwt", "login", "endpoint", "token", "issue"]) == [
        "auth patterns constraints decisions",
        "add jwt login endpoint token",
        "add jwt login endpoint",
    ]
    scope, keywords, queries = enrich_task_fields("Add JWT login endpoint")
    assert scope == "auth"
    assert keywords == ["add", "jwt", "login", "endpoint"]
    assert queries[0] == "auth patterns constraints decisions"
