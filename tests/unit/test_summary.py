from unittest.mock import AsyncMock

import pytest

from domain.errors import FatalError
from domain.generation.summary import (
    ParsedSummary, SummaryParseFailure, extract_keywords, parse_summary
)


def test_valid_json_is_parsed():
    outcome = parse_summary(
        '{"summary": "Discussed X", "actions": ["do A"], "artifacts": [], "keywords": ["X", "Y"]}'
    )

    assert isinstance(outcome, ParsedSummary)
    assert outcome.resolve().summary == "Discussed X"
    assert outcome.resolve().actions == ["do A"]


def test_code_fenced_json_is_parsed():
    outcome = parse_summary(
        '```json\n{"summary": "Fenced", "actions": [], "artifacts": [], "keywords": []}\n```'
    )

    assert outcome.kind == "parsed"
    assert outcome.resolve().summary == "Fenced"


@pytest.mark.parametrize("raw", [
    "Not JSON at all, just a paragraph about caching layers",
    '{"summary": "", "actions": [], "artifacts": [], "keywords": []}',
    '{"summary": "ok", "actions": "do A", "artifacts": [], "keywords": []}',
    '{"summary": "ok", "actions": [1, 2], "artifacts": [], "keywords": []}',
    '{"summary": "ok"}',
])
def test_schema_violations_become_parse_failures(raw):
    outcome = parse_summary(raw)

    assert isinstance(outcome, SummaryParseFailure)
    assert outcome.raw == raw


def test_degrade_truncates_raw_text_and_extracts_keywords():
    raw = "The caching layer invalidation discussion covered eviction policies. " * 20

    summary = SummaryParseFailure(raw=raw, reason="not json").degrade()

    assert summary.summary == raw[:500]
    assert summary.actions == []
    assert summary.artifacts == []
    assert summary.keywords[0] == "invalidation"
    assert len(summary.keywords) <= 10


def test_extract_keywords_drops_stop_words_and_short_words():
    keywords = extract_keywords("This would have been the best plan for the database migration, and that is all")

    assert "would" not in keywords
    assert "this" not in keywords
    assert "all" not in keywords
    assert keywords[:2] == ["migration", "database"]


def test_extract_keywords_keeps_first_seen_order_for_equal_lengths():
    assert extract_keywords("alpha gamma delta alpha") == ["alpha", "gamma", "delta"]


async def test_summarize_structured_returns_failure_variant_for_bad_shape(make_provider):
    provider = make_provider(summary_response="I could not produce JSON, sorry")

    outcome = await provider.summarize_structured("[t] User: hi")

    assert outcome.kind == "failed"
    assert outcome.resolve().summary == "I could not produce JSON, sorry"


async def test_summarize_structured_raises_when_provider_gives_nothing(make_provider):
    provider = make_provider(summary_response="")

    with pytest.raises(FatalError) as excinfo:
        await provider.summarize_structured("[t] User: hi")

    assert excinfo.value.code == "SUMMARY_GENERATION_FAILED"


async def test_summarize_structured_raises_when_provider_call_fails(make_provider):
    provider = make_provider()
    provider._complete = AsyncMock(side_effect=TimeoutError("upstream timeout"))

    with pytest.raises(FatalError) as excinfo:
        await provider.summarize_structured("[t] User: hi")

    assert excinfo.value.code == "SUMMARY_GENERATION_FAILED"
