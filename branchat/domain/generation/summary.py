"""Structured summaries of sub-conversation transcripts.

Model output is validated against a strict schema. A response that does not
fit becomes a ``SummaryParseFailure`` whose ``degrade()`` branch derives a
usable summary heuristically, so a bad shape never aborts a merge.
"""

from typing import List, Literal, Union
import re

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = structlog.get_logger(__name__)

SUMMARY_SYSTEM_PROMPT = (
    "You are a helpful assistant that creates structured summaries of "
    "conversations. Always respond with valid JSON."
)

SUMMARY_PROMPT = """Please analyze the following conversation transcript and provide a structured summary in JSON format with the following fields:
- summary: A concise overview of the main discussion points and outcomes
- actions: An array of specific action items or decisions made
- artifacts: An array of any code, documents, or deliverables mentioned or created
- keywords: An array of important keywords and topics for future reference

Transcript:
{transcript}

Please respond with valid JSON only:"""

FALLBACK_SUMMARY_CHARS = 500
FALLBACK_KEYWORD_LIMIT = 10

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "is", "are", "was", "were", "be", "been", "have", "has",
    "had", "do", "does", "did", "will", "would", "could", "should", "may",
    "might", "can", "this", "that", "these", "those",
})

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class StructuredSummary(BaseModel):
    """Summary, actions, artifacts and keywords of a transcript"""
    model_config = ConfigDict(strict=True)

    summary: str = Field(min_length=1)
    actions: List[str]
    artifacts: List[str]
    keywords: List[str]


class ParsedSummary(BaseModel):
    """Model output that matched the schema"""
    kind: Literal["parsed"] = "parsed"
    value: StructuredSummary

    def resolve(self) -> StructuredSummary:
        return self.value


class SummaryParseFailure(BaseModel):
    """Model output that did not match the schema"""
    kind: Literal["failed"] = "failed"
    raw: str
    reason: str

    def degrade(self) -> StructuredSummary:
        """Heuristic summary built from the raw response"""
        return StructuredSummary(
            summary=self.raw[:FALLBACK_SUMMARY_CHARS] or "Discussion occurred",
            actions=[],
            artifacts=[],
            keywords=extract_keywords(self.raw),
        )

    def resolve(self) -> StructuredSummary:
        return self.degrade()


SummaryOutcome = Union[ParsedSummary, SummaryParseFailure]


def extract_keywords(text: str, limit: int = FALLBACK_KEYWORD_LIMIT) -> List[str]:
    """Longest distinct non-stop-words of a text"""

    words = re.sub(r"[^\w\s]", " ", text.lower()).split()
    candidates = [w for w in dict.fromkeys(words) if len(w) > 3 and w not in STOP_WORDS]

    # sorted() is stable, so equal lengths keep first-seen order
    return sorted(candidates, key=len, reverse=True)[:limit]


def parse_summary(raw: str) -> SummaryOutcome:
    """Validate a model response against the summary schema"""

    text = raw.strip()
    fenced = _FENCE.match(text)
    if fenced:
        text = fenced.group(1)

    try:
        return ParsedSummary(value=StructuredSummary.model_validate_json(text))
    except ValidationError as e:
        logger.warning(
            "Summary response did not match schema",
            errors=e.error_count(),
            response_length=len(raw)
        )
        return SummaryParseFailure(raw=raw, reason=str(e))
