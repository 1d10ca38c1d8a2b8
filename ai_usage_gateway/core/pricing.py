"""
Pricing calculations and rate management.

Prices are in cents per one million tokens.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType
from typing import Mapping

logger = logging.getLogger(__name__)

PRIMARY_MODEL = "gpt-4o"
FAST_MODEL = "gpt-4o-mini"
EMBEDDING_MODEL = "text-embedding-3-small"

_ONE_MILLION = Decimal("1000000")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_cents_per_1m: Decimal
    output_cents_per_1m: Decimal


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Mapping[str, ModelPricing]

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


# Fixed pricing table - no dynamic fetching
PRICING_TABLE = PricingTable(MappingProxyType({
    PRIMARY_MODEL: ModelPricing(
        input_cents_per_1m=Decimal("250"),
        output_cents_per_1m=Decimal("1000")
    ),
    FAST_MODEL: ModelPricing(
        input_cents_per_1m=Decimal("15"),
        output_cents_per_1m=Decimal("60")
    ),
    EMBEDDING_MODEL: ModelPricing(
        input_cents_per_1m=Decimal("2"),
        output_cents_per_1m=Decimal("0")
    ),
}))


def calculate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Calculate the cost of one invocation in cents.

    An unknown model is priced at zero with a warning; pricing must never
    fail a call that already happened.

    Args:
        model: Model identifier
        prompt_tokens: Input tokens consumed
        completion_tokens: Output tokens produced

    Returns:
        Cost in cents rounded to 4 decimal places
    """
    try:
        pricing = PRICING_TABLE.get_pricing(model)
    except ValueError:
        logger.warning("Unknown model pricing for: %s", model)
        return 0.0

    input_cost = (Decimal(prompt_tokens) / _ONE_MILLION) * pricing.input_cents_per_1m
    output_cost = (Decimal(completion_tokens) / _ONE_MILLION) * pricing.output_cents_per_1m

    total_cost = input_cost + output_cost
    return float(total_cost.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP))
