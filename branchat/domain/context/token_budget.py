import math


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters"""
    return math.ceil(len(text) / 4)


class ContextBudget:
    """Running token estimate for one assembly call"""

    SEMANTIC_ATTEMPT = 0.5
    SEMANTIC_STOP = 0.6
    SUBCHAT_ATTEMPT = 0.7
    SUBCHAT_KEEP = 0.8
    PREVIOUS_ATTEMPT = 0.85
    PREVIOUS_KEEP = 0.95

    def __init__(self, max_tokens: int):
        self.max_tokens = max_tokens
        self.estimated = 0

    def limit(self, fraction: float) -> float:
        return self.max_tokens * fraction

    def below(self, fraction: float) -> bool:
        """True while the running estimate is under the given share of the budget"""
        return self.estimated < self.limit(fraction)

    def fits(self, text: str, fraction: float) -> bool:
        """True if adding ``text`` keeps the estimate under the given share"""
        return self.estimated + estimate_tokens(text) < self.limit(fraction)

    def add(self, text: str) -> int:
        tokens = estimate_tokens(text)
        self.estimated += tokens
        return tokens

    @property
    def truncated(self) -> bool:
        return self.estimated >= self.max_tokens
