from __future__ import annotations

import allure
import pytest

from coursegen.backend.base import TokenUsage
from coursegen.pipeline.ledger import CostLedger
from coursegen.pipeline.pricing import (
    DEFAULT_PRICING,
    FLASH_PRICING,
    PRO_PRICING,
    ModelPricing,
    PriceTable,
    estimate_tokens,
    parse_pricing_overrides,
)

pytestmark = [
    allure.epic("Generation Pipeline"),
    allure.feature("Cost Accounting"),
]

PRO = "gemini-2.5-pro"
FLASH = "gemini-2.5-flash"


def _prices() -> PriceTable:
    return PriceTable.build(pro_model=PRO, flash_model=FLASH)


def test_builtin_prices_per_million_tokens() -> None:
    prices = _prices()

    assert prices.lookup(PRO) == PRO_PRICING
    assert prices.lookup(FLASH) == FLASH_PRICING
    assert prices.lookup("some-other-model") == DEFAULT_PRICING
    assert prices.estimate_cost_usd(
        model=PRO,
        input_tokens=1_000_000,
        output_tokens=1_000_000,
    ) == pytest.approx(14.0)


def test_overrides_replace_model_and_default_prices() -> None:
    prices = PriceTable.build(
        pro_model=PRO,
        flash_model=FLASH,
        overrides=f"{PRO}:1.25:10, *:0.1:0.4",
    )

    assert prices.lookup(PRO) == ModelPricing(input_per_1m=1.25, output_per_1m=10.0)
    assert prices.lookup("unknown") == ModelPricing(input_per_1m=0.1, output_per_1m=0.4)
    assert prices.lookup(FLASH) == FLASH_PRICING


def test_malformed_overrides_are_skipped() -> None:
    parsed = parse_pricing_overrides("broken, model-a:x:1, :1:2, model-b:0.5:1.5,")

    assert parsed == {"model-b": ModelPricing(input_per_1m=0.5, output_per_1m=1.5)}
    assert parse_pricing_overrides("   ") == {}


def test_token_estimate_rounds_up_quarter_of_characters() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_ledger_total_is_sum_of_stage_breakdown() -> None:
    ledger = CostLedger(_prices())

    ledger.record(stage="Creator", model=PRO, input_tokens=10_000, output_tokens=4_000)
    ledger.record(stage="Reviewer", model=FLASH, input_tokens=3_000, output_tokens=200)
    ledger.record(stage="Reviewer", model=FLASH, input_tokens=3_100, output_tokens=150)

    payload = ledger.to_payload()
    stages = payload["stages"]
    assert set(stages) == {"Creator", "Reviewer"}
    assert stages["Reviewer"]["calls"] == 2
    assert stages["Reviewer"]["input_tokens"] == 6_100
    assert payload["total_input_tokens"] == 16_100
    assert payload["total_output_tokens"] == 4_350
    assert ledger.total_cost == pytest.approx(sum(entry["cost"] for entry in stages.values()))
    assert payload["total_cost"] == pytest.approx(ledger.total_cost)


def test_ledger_prefers_reported_usage_over_estimate() -> None:
    ledger = CostLedger(_prices())

    ledger.record_call(
        stage="Creator",
        model=PRO,
        prompt_text="x" * 400,
        output_text="y" * 40,
        usage=TokenUsage(input_tokens=1_000, output_tokens=500),
    )
    ledger.record_call(
        stage="Sanitizer",
        model=FLASH,
        prompt_text="x" * 400,
        output_text="y" * 40,
        usage=TokenUsage(),
    )

    entries = ledger.entries
    assert (entries["Creator"].input_tokens, entries["Creator"].output_tokens) == (1_000, 500)
    assert (entries["Sanitizer"].input_tokens, entries["Sanitizer"].output_tokens) == (100, 10)


def test_ledger_resumes_from_persisted_breakdown() -> None:
    first = CostLedger(_prices())
    first.record(stage="CourseDetector", model=FLASH, input_tokens=2_000, output_tokens=300)

    resumed = CostLedger.from_payload(_prices(), first.to_payload())
    resumed.record(stage="Creator", model=PRO, input_tokens=8_000, output_tokens=2_000)

    assert set(resumed.entries) == {"CourseDetector", "Creator"}
    assert resumed.total_cost == pytest.approx(
        first.total_cost + PRO_PRICING.cost_usd(input_tokens=8_000, output_tokens=2_000),
    )
    assert CostLedger.from_payload(_prices(), None).total_cost == 0.0
