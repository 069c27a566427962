"""
Pricing calculations and rate management.

Turns token usage into call cost and the blended cost per 1K tokens that
the routing statistics track.
"""

from dataclasses import dataclass
from typing import Dict
from decimal import Decimal, ROUND_UP

from .token_counter import TokenUsage

# Six decimals keeps sub-cent calls distinguishable.
COST_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    prompt_cost_per_1k: Decimal  # USD per 1K prompt tokens
    completion_cost_per_1k: Decimal  # USD per 1K completion tokens


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model

        Raises:
            ValueError: If model is not supported
        """
        if model not in self.prices:
            raise ValueError(f"Unsupported model: {model}")
        return self.prices[model]

    def supports(self, model: str) -> bool:
        return model in self.prices


# Fixed pricing table - no dynamic fetching, no defaults
PRICING_TABLE = PricingTable({
    "gpt-4o": ModelPricing(
        prompt_cost_per_1k=Decimal("0.0025"),
        completion_cost_per_1k=Decimal("0.01")
    ),
    "gpt-4o-mini": ModelPricing(
        prompt_cost_per_1k=Decimal("0.00015"),
        completion_cost_per_1k=Decimal("0.0006")
    ),
    "gpt-4": ModelPricing(
        prompt_cost_per_1k=Decimal("0.03"),
        completion_cost_per_1k=Decimal("0.06")
    ),
    "gpt-3.5-turbo": ModelPricing(
        prompt_cost_per_1k=Decimal("0.0005"),
        completion_cost_per_1k=Decimal("0.0015")
    ),
})


def _exact_cost(model: str, usage: TokenUsage) -> Decimal:
    pricing = PRICING_TABLE.get_pricing(model)
    prompt_cost = (Decimal(usage.prompt_tokens) / Decimal("1000")) * pricing.prompt_cost_per_1k
    completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * pricing.completion_cost_per_1k
    return prompt_cost + completion_cost


def calculate_cost(model: str, usage: TokenUsage) -> float:
    """Calculate total cost for model usage with conservative rounding.

    Args:
        model: Model identifier
        usage: Token usage data

    Returns:
        Total cost rounded UP to six decimal places

    Raises:
        ValueError: If model is not supported
    """
    return float(_exact_cost(model, usage).quantize(COST_QUANTUM, rounding=ROUND_UP))


def cost_per_1k(model: str, usage: TokenUsage) -> float:
    """Blended cost per 1K tokens of one call (0 for an empty call).

    Raises:
        ValueError: If model is not supported
    """
    if usage.total_tokens == 0:
        PRICING_TABLE.get_pricing(model)
        return 0.0
    blended = _exact_cost(model, usage) * Decimal("1000") / Decimal(usage.total_tokens)
    return float(blended.quantize(COST_QUANTUM, rounding=ROUND_UP))
