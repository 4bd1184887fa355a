"""Coupon lookup, validation and usage accounting.

Validation returns a :class:`CouponValidationResult`; a bad code is an
expected input and never raises.
"""
from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from django.db import transaction
from django.db.models import F, Sum

from commerce.models import ZERO, Coupon, CouponUsage, Order, Package

logger = logging.getLogger(__name__)

MIN_CODE_LENGTH = 3
MAX_CODE_LENGTH = 50
VALID_CODE_PATTERN = re.compile(r"^[A-Z0-9\-_]+$")
GENERATED_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


@dataclass(frozen=True)
class CouponValidationResult:
    is_valid: bool
    coupon: Optional[Coupon] = None
    error: Optional[str] = None

    @classmethod
    def valid(cls, coupon: Coupon) -> "CouponValidationResult":
        return cls(is_valid=True, coupon=coupon)

    @classmethod
    def invalid(cls, error: str) -> "CouponValidationResult":
        return cls(is_valid=False, error=error)


def sanitise_code(code: Optional[str]) -> Optional[str]:
    """Trimmed, upper-cased code, or None when the format is not acceptable."""
    sanitised = (code or "").strip().upper()
    if not MIN_CODE_LENGTH <= len(sanitised) <= MAX_CODE_LENGTH:
        return None
    if not VALID_CODE_PATTERN.match(sanitised):
        return None
    return sanitised


def find_by_code(code: Optional[str]) -> Optional[Coupon]:
    sanitised = sanitise_code(code)
    if sanitised is None:
        return None
    return Coupon.objects.filter(code=sanitised).first()


def workspace_usage_count(coupon: Coupon, workspace) -> int:
    return CouponUsage.objects.filter(coupon=coupon, workspace=workspace).count()


def validate(coupon: Coupon, workspace, package: Optional[Package] = None) -> CouponValidationResult:
    if not coupon.is_valid():
        return CouponValidationResult.invalid("This coupon is no longer valid")
    if workspace_usage_count(coupon, workspace) >= coupon.max_uses_per_workspace:
        return CouponValidationResult.invalid("You have already used this coupon")
    if package is not None and not coupon.applies_to_package(package.pk):
        return CouponValidationResult.invalid("This coupon does not apply to the selected plan")
    return CouponValidationResult.valid(coupon)


def validate_by_code(code: Optional[str], workspace, package: Optional[Package] = None) -> CouponValidationResult:
    sanitised = sanitise_code(code)
    if sanitised is None:
        return CouponValidationResult.invalid("Invalid coupon code format")
    coupon = Coupon.objects.filter(code=sanitised).first()
    if coupon is None:
        return CouponValidationResult.invalid("Invalid coupon code")
    return validate(coupon, workspace, package)


def calculate_discount(coupon: Coupon, amount: Decimal) -> Decimal:
    amount = Decimal(amount)
    if coupon.min_amount and amount < coupon.min_amount:
        return ZERO
    if coupon.is_percentage:
        discount = (amount * coupon.value / Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    else:
        discount = coupon.value
    if coupon.max_discount and discount > coupon.max_discount:
        discount = coupon.max_discount
    return min(discount, amount)


def record_usage(coupon: Coupon, workspace, order: Order, discount_amount: Decimal) -> CouponUsage:
    """Record a redemption once per order and bump the global counter."""
    with transaction.atomic():
        usage, created = CouponUsage.objects.get_or_create(
            coupon=coupon,
            order=order,
            defaults={"workspace": workspace, "discount_amount": discount_amount},
        )
        if created:
            Coupon.objects.filter(pk=coupon.pk).update(used_count=F("used_count") + 1)
    return usage


def total_discount_amount(coupon: Coupon) -> Decimal:
    return coupon.usages.aggregate(total=Sum("discount_amount"))["total"] or ZERO


def generate_code(length: int = 8) -> str:
    while True:
        code = "".join(secrets.choice(GENERATED_CODE_ALPHABET) for _ in range(length))
        if not Coupon.objects.filter(code=code).exists():
            return code


def generate_bulk(count: int, prefix: str = "", **attributes) -> List[Coupon]:
    """Create up to 100 coupons sharing ``attributes`` with unique codes."""
    count = min(max(count, 1), 100)
    prefix = (prefix or "").upper()
    coupons = []
    with transaction.atomic():
        for _ in range(count):
            code = generate_code()
            if prefix:
                code = f"{prefix}-{code}"
            coupons.append(Coupon.objects.create(code=code, **attributes))
    return coupons
