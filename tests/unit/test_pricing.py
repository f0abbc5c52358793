"""Unit tests for PricingCalculator."""

from __future__ import annotations

from decimal import Decimal

import pytest

from task_market_service.core.exceptions import ValidationError
from task_market_service.services.pricing import PricingCalculator, compute_fee_cents

pytestmark = pytest.mark.unit


def test_quote_adds_ten_percent_fee(pricing: PricingCalculator) -> None:
    quote = pricing.quote(2500)
    assert quote.price_cents == 2500
    assert quote.fee_cents == 250
    assert quote.total_cents == 2750


@pytest.mark.parametrize(
    ("price_cents", "expected_fee"),
    [
        (5, 1),  # 0.5 rounds up
        (15, 2),  # 1.5 rounds up
        (25, 3),  # 2.5 rounds up, not to even
        (14, 1),
        (1, 0),
    ],
)
def test_fee_rounds_half_up(price_cents: int, expected_fee: int) -> None:
    assert compute_fee_cents(price_cents, Decimal("0.10")) == expected_fee


def test_total_is_always_price_plus_fee(pricing: PricingCalculator) -> None:
    for price in (1, 7, 99, 1001, 123457):
        quote = pricing.quote(price)
        assert quote.total_cents == quote.price_cents + quote.fee_cents


@pytest.mark.parametrize("bad_price", [0, -100, None, "100", 10.5, True])
def test_quote_rejects_non_positive_or_non_integer_price(
    pricing: PricingCalculator, bad_price: object
) -> None:
    with pytest.raises(ValidationError) as exc_info:
        pricing.quote(bad_price)
    assert exc_info.value.error == "VALIDATION_ERROR"
    assert exc_info.value.status_code == 400


def test_ensure_pricing_returns_stored_values_unchanged(pricing: PricingCalculator) -> None:
    """Stored fee and total are never recomputed, even if the rate would differ."""
    task = {"price_cents": 1000, "fee_cents": 150, "total_cents": 1150}
    result = pricing.ensure_pricing(task)
    assert result.as_dict() == {"price_cents": 1000, "fee_cents": 150, "total_cents": 1150}


def test_ensure_pricing_computes_when_unset(pricing: PricingCalculator) -> None:
    task = {"price_cents": 1000, "fee_cents": None, "total_cents": None}
    result = pricing.ensure_pricing(task)
    assert result.fee_cents == 100
    assert result.total_cents == 1100


def test_ensure_pricing_rejects_zero_price(pricing: PricingCalculator) -> None:
    with pytest.raises(ValidationError):
        pricing.ensure_pricing({"price_cents": 0, "fee_cents": None, "total_cents": None})


def test_fee_rate_must_be_a_fraction() -> None:
    with pytest.raises(ValueError, match="fee_rate"):
        PricingCalculator(Decimal("1.5"))
    assert PricingCalculator(Decimal("0")).quote(100).fee_cents == 0
