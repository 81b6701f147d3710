from typing import Dict, List, Sequence, Tuple
import re

import numpy as np


_WORD = re.compile(r'\w+')


def tokenize(text: str) -> List[str]:
    """Lowercased word tokens"""
    return _WORD.findall(text.lower())


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors, 0.0 for empty, zero or mismatched ones"""

    if not a or not b or len(a) != len(b):
        return 0.0

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0

    return float(np.dot(va, vb) / denom)


def allowed_edits(term: str) -> int:
    """AUTO fuzziness: exact for 1-2 chars, one edit for 3-5, two beyond"""
    if len(term) <= 2:
        return 0
    if len(term) <= 5:
        return 1
    return 2


def edit_distance(a: str, b: str, limit: int) -> int:
    """Levenshtein distance, returning limit + 1 as soon as it is exceeded"""

    if abs(len(a) - len(b)) > limit:
        return limit + 1

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb)
            ))
        if min(current) > limit:
            return limit + 1
        previous = current

    return previous[-1]


class ContextRanker:
    """Ranks candidate text by lexical relevance to a query"""

    def term_match(self, term: str, candidates: Sequence[str]) -> float:
        """Best match weight of one query term against a field's tokens"""

        best = 0.0
        limit = allowed_edits(term)
        for candidate in candidates:
            if candidate == term:
                return 1.0
            if limit == 0:
                continue
            distance = edit_distance(term, candidate, limit)
            if distance <= limit:
                # Fuzzy hits count less than exact ones
                best = max(best, 1.0 - distance / (len(term) + 1))
        return best

    def score_field(self, query_terms: List[str], text: str) -> float:
        """Fraction of query terms matched in a field, fuzzily"""

        if not query_terms:
            return 0.0

        field_terms = set(tokenize(text))
        if not field_terms:
            return 0.0

        matched = sum(self.term_match(term, field_terms) for term in query_terms)
        return matched / len(query_terms)

    def score_fields(self, query: str, fields: Dict[str, Tuple[str, float]]) -> float:
        """Best-field score: the highest boosted field score wins"""

        query_terms = list(dict.fromkeys(tokenize(query)))
        best = 0.0
        for text, boost in fields.values():
            best = max(best, self.score_field(query_terms, text) * boost)
        return best
