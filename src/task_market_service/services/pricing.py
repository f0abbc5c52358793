"""Platform fee and total charge calculation."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from task_market_service.core.exceptions import ValidationError


@dataclass(frozen=True)
class Pricing:
    """Monetary breakdown of a task, all values in cents."""

    price_cents: int
    fee_cents: int
    total_cents: int

    def as_dict(self) -> dict[str, int]:
        return {
            "price_cents": self.price_cents,
            "fee_cents": self.fee_cents,
            "total_cents": self.total_cents,
        }


def compute_fee_cents(price_cents: int, fee_rate: Decimal) -> int:
    """Fee for a price, rounded half-up to a whole cent."""
    fee = (Decimal(price_cents) * fee_rate).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(fee)


class PricingCalculator:
    """
    Derives the platform fee and total charge from a worker price.

    The fee rate is a configured fraction. Amounts are computed in
    ``Decimal`` and rounded half-up, so 0.5 cent always rounds away
    from zero regardless of parity.
    """

    def __init__(self, fee_rate: Decimal) -> None:
        if fee_rate < 0 or fee_rate >= 1:
            msg = "fee_rate must be in [0, 1)"
            raise ValueError(msg)
        self._fee_rate = fee_rate

    @property
    def fee_rate(self) -> Decimal:
        return self._fee_rate

    def quote(self, price_cents: object) -> Pricing:
        """
        Compute pricing for a price.

        Raises:
            ValidationError: price is missing, not an integer, or not positive
        """
        if not isinstance(price_cents, int) or isinstance(price_cents, bool) or price_cents <= 0:
            raise ValidationError("Task price must be a positive integer number of cents")
        fee_cents = compute_fee_cents(price_cents, self._fee_rate)
        return Pricing(
            price_cents=price_cents,
            fee_cents=fee_cents,
            total_cents=price_cents + fee_cents,
        )

    def ensure_pricing(self, task: dict[str, Any]) -> Pricing:
        """
        Return the task's pricing, computing it only if it was never set.

        Stored fee and total are authoritative once present, so a later
        change of fee rate never alters what a requester is charged.
        """
        price_cents = task.get("price_cents")
        fee_cents = task.get("fee_cents")
        total_cents = task.get("total_cents")
        if fee_cents is not None and total_cents is not None:
            if not isinstance(price_cents, int) or price_cents <= 0:
                raise ValidationError("Task price must be a positive integer number of cents")
            return Pricing(
                price_cents=price_cents,
                fee_cents=int(fee_cents),
                total_cents=int(total_cents),
            )
        return self.quote(price_cents)
