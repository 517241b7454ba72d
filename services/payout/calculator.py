"""
services/payout/calculator.py
Commission / payout split for a completed booking.

Amounts are decimal major units (rupees). Commission is always taken on the
full total (service amount plus additional charges), and every figure is
rounded half-up to 2 places.
"""

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Union

from config.settings import settings

TWO_PLACES = Decimal("0.01")

Amount = Union[Decimal, int, float, str]


def to_money(value: Amount) -> Decimal:
    """Decimal rounded half-up to 2 places. Floats go through str() to avoid binary noise."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _charge_amount(charge: Any) -> Decimal:
    if isinstance(charge, dict):
        return to_money(charge["amount"])
    if hasattr(charge, "amount"):
        return to_money(charge.amount)
    return to_money(charge)


@dataclass(frozen=True)
class PayoutBreakdown:
    service_amount: Decimal
    additional_amount: Decimal
    total_amount: Decimal
    platform_commission: Decimal
    professional_payout: Decimal

    def as_dict(self) -> dict:
        return asdict(self)


def additional_total(additional_charges: Iterable[Any]) -> Decimal:
    return to_money(sum((_charge_amount(c) for c in additional_charges), Decimal("0")))


def breakdown(
    service_amount: Amount,
    additional_charges: Iterable[Any] = (),
    commission_rate: Amount = settings.PLATFORM_COMMISSION_RATE,
) -> PayoutBreakdown:
    """
    breakdown(500, [{"amount": 50}, {"amount": 100}], 0.15)
      -> service 500.00, additional 150.00, total 650.00,
         commission 97.50, payout 552.50
    """
    service = to_money(service_amount)
    rate = Decimal(str(commission_rate))
    if service < 0 or rate < 0 or rate > 1:
        raise ValueError("service_amount must be >= 0 and commission_rate within [0, 1]")

    additional = additional_total(additional_charges)
    total = to_money(service + additional)
    commission = to_money(total * rate)
    payout = to_money(total - commission)

    return PayoutBreakdown(
        service_amount=service,
        additional_amount=additional,
        total_amount=total,
        platform_commission=commission,
        professional_payout=payout,
    )
