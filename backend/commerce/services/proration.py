"""Pro-rata credit and cost of switching plans part-way through a billing period."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

from django.utils import timezone

from commerce.conf import default_currency

CENTS = Decimal("0.01")
SAME_PRICE_TOLERANCE = Decimal("0.01")
FALLBACK_PERIOD_DAYS = {"monthly": 30, "yearly": 365}


def _money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ProrationResult:
    days_remaining: int
    total_period_days: int
    used_percentage: Decimal
    current_plan_price: Decimal
    new_plan_price: Decimal
    credit_amount: Decimal
    prorated_new_plan_cost: Decimal
    net_amount: Decimal
    currency: str = "GBP"

    @property
    def is_upgrade(self) -> bool:
        return self.new_plan_price > self.current_plan_price

    @property
    def is_downgrade(self) -> bool:
        return self.new_plan_price < self.current_plan_price

    @property
    def is_same_price(self) -> bool:
        return abs(self.new_plan_price - self.current_plan_price) < SAME_PRICE_TOLERANCE

    @property
    def requires_payment(self) -> bool:
        return self.net_amount > 0

    @property
    def has_credit(self) -> bool:
        return self.net_amount < 0

    @property
    def credit_balance(self) -> Decimal:
        return abs(self.net_amount) if self.net_amount < 0 else Decimal("0.00")

    @property
    def amount_due(self) -> Decimal:
        return max(Decimal("0.00"), self.net_amount)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "days_remaining": self.days_remaining,
            "total_period_days": self.total_period_days,
            "used_percentage": str((self.used_percentage * 100).quantize(CENTS, rounding=ROUND_HALF_UP)),
            "current_plan_price": str(self.current_plan_price),
            "new_plan_price": str(self.new_plan_price),
            "credit_amount": str(self.credit_amount),
            "prorated_new_plan_cost": str(self.prorated_new_plan_cost),
            "net_amount": str(self.net_amount),
            "currency": self.currency,
            "is_upgrade": self.is_upgrade,
            "is_downgrade": self.is_downgrade,
            "requires_payment": self.requires_payment,
            "credit_balance": str(self.credit_balance),
            "amount_due": str(self.amount_due),
        }


def prorate_period(
    period_start: datetime,
    period_end: datetime,
    current_price,
    new_price,
    *,
    now: Optional[datetime] = None,
    billing_cycle: str = "monthly",
    currency: Optional[str] = None,
) -> ProrationResult:
    now = now or timezone.now()
    current_price = Decimal(current_price)
    new_price = Decimal(new_price)

    days_remaining = max(0, (period_end - now).days)
    total_period_days = (period_end - period_start).days
    if total_period_days <= 0:
        total_period_days = FALLBACK_PERIOD_DAYS.get(billing_cycle, 30)

    used = Decimal(total_period_days - days_remaining) / Decimal(total_period_days)
    used = min(Decimal(1), max(Decimal(0), used))
    remaining = Decimal(1) - used

    credit_amount = _money(current_price * remaining)
    prorated_new_plan_cost = _money(new_price * remaining)
    net_amount = _money(prorated_new_plan_cost - credit_amount)

    return ProrationResult(
        days_remaining=days_remaining,
        total_period_days=total_period_days,
        used_percentage=used.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP),
        current_plan_price=_money(current_price),
        new_plan_price=_money(new_price),
        credit_amount=credit_amount,
        prorated_new_plan_cost=prorated_new_plan_cost,
        net_amount=net_amount,
        currency=(currency or default_currency()).upper(),
    )


def calculate_proration(subscription, current_price, new_price, now=None,
                        currency: Optional[str] = None) -> ProrationResult:
    """Proration over the subscription's current billing period."""
    return prorate_period(
        subscription.current_period_start,
        subscription.current_period_end,
        current_price,
        new_price,
        now=now,
        billing_cycle=subscription.billing_cycle,
        currency=currency,
    )
