"""Token and cost estimation for model calls."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float

    def cost_usd(self, *, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens / 1_000_000) * self.input_per_1m + (
            output_tokens / 1_000_000
        ) * self.output_per_1m


PRO_PRICING = ModelPricing(input_per_1m=2.00, output_per_1m=12.00)
FLASH_PRICING = ModelPricing(input_per_1m=0.50, output_per_1m=3.00)
DEFAULT_PRICING = ModelPricing(input_per_1m=0.50, output_per_1m=2.00)


@dataclass(slots=True)
class PriceTable:
    """Model → pricing lookup with a catch-all default."""

    prices: dict[str, ModelPricing] = field(default_factory=dict)
    default: ModelPricing = field(default_factory=lambda: DEFAULT_PRICING)

    @classmethod
    def build(cls, *, pro_model: str, flash_model: str, overrides: str = "") -> PriceTable:
        """Built-in prices for the configured models, then `overrides` on top."""

        prices = {pro_model: PRO_PRICING, flash_model: FLASH_PRICING}
        default = DEFAULT_PRICING
        for model, pricing in parse_pricing_overrides(overrides).items():
            if model == "*":
                default = pricing
            else:
                prices[model] = pricing
        return cls(prices=prices, default=default)

    def lookup(self, model: str) -> ModelPricing:
        return self.prices.get(model.strip(), self.default)

    def estimate_cost_usd(self, *, model: str, input_tokens: int, output_tokens: int) -> float:
        return self.lookup(model).cost_usd(input_tokens=input_tokens, output_tokens=output_tokens)


def estimate_tokens(text: str) -> int:
    """Character-based token estimate used when the backend reports no usage."""

    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def parse_pricing_overrides(raw: str) -> dict[str, ModelPricing]:
    """Parse `COURSEGEN_LLM_PRICING` mapping.

    Format:
    - `model:input_per_1m:output_per_1m`
    - multiple entries separated by `,`
    - `*` as model sets the default price
    """

    parsed: dict[str, ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        model, sep, output_price = value.rpartition(":")
        model, sep2, input_price = model.rpartition(":")
        if not sep or not sep2 or not model.strip():
            logger.warning("Ignoring malformed pricing entry %r", value)
            continue
        try:
            input_per_1m = float(input_price)
            output_per_1m = float(output_price)
        except ValueError:
            logger.warning("Ignoring pricing entry with non-numeric price %r", value)
            continue
        parsed[model.strip()] = ModelPricing(
            input_per_1m=input_per_1m,
            output_per_1m=output_per_1m,
        )
    return parsed
