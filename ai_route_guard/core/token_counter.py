"""
Token usage of a single routed provider call.

The SDK builds one ``TokenUsage`` from the provider's response and prices
it twice: the absolute cost goes to the call ledger for budget tracking,
and the per-1K-token cost feeds the arm's cost posterior.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenUsage:
    """Prompt and completion tokens of one routed call.

    Counts are the exact figures reported by the provider, never
    estimates. A failed call has no usage and is recorded unpriced.
    """
    prompt_tokens: int
    completion_tokens: int

    def __post_init__(self):
        if self.prompt_tokens < 0 or self.completion_tokens < 0:
            raise ValueError("token counts cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Denominator of ``cost_per_1k``."""
        return self.prompt_tokens + self.completion_tokens
