"""
Pricing calculations and rate management.

Maps AI model identifiers to per-million-token prices and computes the
cost of a call. The table is an immutable value built once at startup and
passed to whatever needs it.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import List, Mapping, Optional, Tuple

_ONE_MILLION = Decimal("1000000")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model (USD per 1M tokens)."""
    input_per_million: Decimal
    output_per_million: Decimal

    def __post_init__(self):
        """Validate prices are not negative."""
        if self.input_per_million < 0:
            raise ValueError("input_per_million cannot be negative")
        if self.output_per_million < 0:
            raise ValueError("output_per_million cannot be negative")


@dataclass(frozen=True)
class PricingTable:
    """Read-only pricing table keyed by model identifier."""
    prices: Mapping[str, ModelPricing] = field(default_factory=dict)

    def __post_init__(self):
        # Keys are matched case-insensitively; store them lowercased
        normalized = {key.lower(): value for key, value in self.prices.items()}
        object.__setattr__(self, "prices", MappingProxyType(normalized))

    def lookup(self, model: str) -> Optional[ModelPricing]:
        """Find pricing for a model.

        Exact (case-insensitive) matches win. Otherwise the longest table key
        that prefixes the model name is used, so dated snapshots such as
        ``gpt-4o-mini-2024-07-18`` resolve to ``gpt-4o-mini``.

        Args:
            model: Model identifier as reported by the provider

        Returns:
            ModelPricing, or None when the model is unknown
        """
        if not model:
            return None
        name = model.lower()
        if name in self.prices:
            return self.prices[name]

        candidates = [key for key in self.prices if name.startswith(key)]
        if not candidates:
            return None
        return self.prices[max(candidates, key=len)]

    def compute_cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        """Compute the cost of a call in USD.

        Unknown models cost 0 rather than raising, so usage rows for new
        models still show up in reports.
        """
        pricing = self.lookup(model)
        if pricing is None:
            return 0.0

        total = (
            Decimal(input_tokens) * pricing.input_per_million
            + Decimal(output_tokens) * pricing.output_per_million
        ) / _ONE_MILLION
        return float(total)

    def entries(self) -> List[Tuple[str, ModelPricing]]:
        """Return all (model, pricing) pairs sorted by model for display."""
        return sorted(self.prices.items())

    def merged(self, overrides: Mapping[str, ModelPricing]) -> "PricingTable":
        """Return a new table with ``overrides`` added or replacing entries."""
        combined = dict(self.prices)
        combined.update({key.lower(): value for key, value in overrides.items()})
        return PricingTable(combined)


def _price(input_per_million: str, output_per_million: str) -> ModelPricing:
    return ModelPricing(Decimal(input_per_million), Decimal(output_per_million))


# Built-in prices; corrections ship with a release
DEFAULT_PRICING_TABLE = PricingTable({
    # GPT-5.x series
    "gpt-5.2": _price("1.75", "14.00"),
    "gpt-5-mini": _price("0.30", "1.00"),
    # GPT-4.1 series
    "gpt-4.1": _price("2.00", "8.00"),
    "gpt-4.1-mini": _price("0.40", "1.60"),
    "gpt-4.1-nano": _price("0.10", "0.40"),
    # GPT-4o series
    "gpt-4o": _price("2.50", "10.00"),
    "gpt-4o-mini": _price("0.15", "0.60"),
    # o-series reasoning models
    "o4-mini": _price("1.10", "4.40"),
    "o3-mini": _price("1.10", "4.40"),
    "o1-mini": _price("3.00", "12.00"),
    # Legacy
    "gpt-4-turbo": _price("10.00", "30.00"),
    "gpt-3.5-turbo": _price("0.50", "1.50"),
})


def compute_cost(
    model: str,
    input_tokens: int,
    output_tokens: int,
    table: PricingTable = DEFAULT_PRICING_TABLE,
) -> float:
    """Compute the cost of a call against ``table`` (defaults to the built-in prices)."""
    return table.compute_cost(model, input_tokens, output_tokens)
