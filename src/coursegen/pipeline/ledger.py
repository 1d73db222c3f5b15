"""Per-job cost accounting across stages and loop iterations."""

from __future__ import annotations

import logging
from typing import Any

from coursegen.backend.base import TokenUsage
from coursegen.pipeline.models import CostEntry
from coursegen.pipeline.pricing import PriceTable, estimate_tokens

logger = logging.getLogger(__name__)


class CostLedger:
    """Accumulates usage per stage; the total is always the sum of the breakdown."""

    def __init__(self, prices: PriceTable, entries: dict[str, CostEntry] | None = None) -> None:
        self._prices = prices
        self._entries: dict[str, CostEntry] = dict(entries or {})

    @classmethod
    def from_payload(cls, prices: PriceTable, payload: dict[str, Any] | None) -> CostLedger:
        """Rebuild a ledger from persisted `cost_details` so resumed jobs keep earlier spend."""

        entries: dict[str, CostEntry] = {}
        for stage, raw in ((payload or {}).get("stages") or {}).items():
            if not isinstance(raw, dict):
                continue
            entries[stage] = CostEntry(
                stage=stage,
                model=str(raw.get("model", "")),
                input_tokens=int(raw.get("input_tokens", 0)),
                output_tokens=int(raw.get("output_tokens", 0)),
                cost=float(raw.get("cost", 0.0)),
                calls=int(raw.get("calls", 0)),
            )
        return cls(prices, entries)

    def record(self, *, stage: str, model: str, input_tokens: int, output_tokens: int) -> float:
        """Add one call's usage under `stage`; returns that call's cost."""

        cost = self._prices.estimate_cost_usd(
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )
        entry = self._entries.get(stage)
        if entry is None:
            entry = self._entries[stage] = CostEntry(stage=stage, model=model)
        entry.model = model
        entry.input_tokens += input_tokens
        entry.output_tokens += output_tokens
        entry.cost += cost
        entry.calls += 1
        logger.debug("Cost %s/%s: +%.6f USD", stage, model, cost)
        return cost

    def record_call(
        self,
        *,
        stage: str,
        model: str,
        prompt_text: str,
        output_text: str,
        usage: TokenUsage | None,
    ) -> float:
        """Record using provider usage when reported, else the character estimate."""

        if usage is not None and usage.is_reported:
            return self.record(
                stage=stage,
                model=model,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
            )
        return self.record(
            stage=stage,
            model=model,
            input_tokens=estimate_tokens(prompt_text),
            output_tokens=estimate_tokens(output_text),
        )

    @property
    def total_cost(self) -> float:
        return sum(entry.cost for entry in self._entries.values())

    @property
    def entries(self) -> dict[str, CostEntry]:
        return dict(self._entries)

    def to_payload(self) -> dict[str, Any]:
        stages = {
            stage: {
                "model": entry.model,
                "input_tokens": entry.input_tokens,
                "output_tokens": entry.output_tokens,
                "cost": entry.cost,
                "calls": entry.calls,
            }
            for stage, entry in self._entries.items()
        }
        return {
            "stages": stages,
            "total_input_tokens": sum(entry.input_tokens for entry in self._entries.values()),
            "total_output_tokens": sum(entry.output_tokens for entry in self._entries.values()),
            "total_cost": self.total_cost,
        }
