"""Referral commissions: creation on paid orders, maturation and payouts."""
from __future__ import annotations

import logging
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from commerce.exceptions import PayoutError
from commerce.models import (
    CRYPTO_GATEWAYS,
    ZERO,
    Order,
    Referral,
    ReferralCommission,
    ReferralPayout,
)

logger = logging.getLogger(__name__)


def active_referral_for(user) -> Optional[Referral]:
    if user is None:
        return None
    return (
        Referral.objects.filter(referee=user)
        .exclude(status=Referral.Status.DISQUALIFIED)
        .order_by("-created_at")
        .first()
    )


def maturation_days(gateway: Optional[str]) -> int:
    if (gateway or "stripe") in CRYPTO_GATEWAYS:
        return ReferralCommission.MATURATION_CRYPTO_DAYS
    return ReferralCommission.MATURATION_CARD_DAYS


def create_commission_for_order(order: Order) -> Optional[ReferralCommission]:
    """Commission for the referrer of the order's user; at most one per order."""
    if order.user_id is None or order.total <= 0:
        return None
    referral = active_referral_for(order.user)
    if referral is None:
        return None

    existing = ReferralCommission.objects.filter(order=order).first()
    if existing is not None:
        return existing

    rate = referral.commission_rate if referral.commission_rate is not None else (
        ReferralCommission.DEFAULT_COMMISSION_RATE
    )
    net_amount = (order.subtotal or ZERO) - (order.discount_amount or ZERO)
    commission_amount = (net_amount * rate / Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    now = timezone.now()
    commission = ReferralCommission.objects.create(
        referral=referral,
        referrer_id=referral.referrer_id,
        order=order,
        invoice=order.invoices.order_by("created_at").first(),
        order_amount=net_amount,
        commission_rate=rate,
        commission_amount=commission_amount,
        currency=order.currency,
        matures_at=now + timedelta(days=maturation_days(order.gateway)),
    )

    if referral.status != Referral.Status.QUALIFIED:
        referral.status = Referral.Status.QUALIFIED
        referral.first_purchase_at = referral.first_purchase_at or now
        referral.qualified_at = now
        referral.save(update_fields=["status", "first_purchase_at", "qualified_at"])

    logger.info(
        "Referral commission %s created for order %s (amount=%s)",
        commission.pk,
        order.order_number,
        commission_amount,
    )
    return commission


def mature_ready_commissions(now=None, dry_run: bool = False) -> int:
    now = now or timezone.now()
    ready = ReferralCommission.objects.filter(
        status=ReferralCommission.Status.PENDING,
        matures_at__lte=now,
    ).select_related("referral")
    if dry_run:
        return ready.count()

    count = 0
    for commission in ready:
        commission.status = ReferralCommission.Status.MATURED
        commission.matured_at = now
        commission.save(update_fields=["status", "matured_at"])
        referral = commission.referral
        if referral.matured_at is None:
            referral.matured_at = now
            referral.save(update_fields=["matured_at"])
        count += 1
    if count:
        logger.info("Matured %s referral commissions", count)
    return count


def cancel_commission_for_order(order: Order, reason: str = "Order refunded") -> Optional[ReferralCommission]:
    commission = ReferralCommission.objects.filter(order=order).first()
    if commission is None or commission.status in (
        ReferralCommission.Status.PAID,
        ReferralCommission.Status.CANCELLED,
    ):
        return commission
    commission.status = ReferralCommission.Status.CANCELLED
    commission.notes = reason
    commission.save(update_fields=["status", "notes"])
    logger.info("Referral commission %s cancelled (%s)", commission.pk, reason)
    return commission


def get_available_balance(user) -> Decimal:
    """Matured commissions not yet assigned to a payout."""
    total = ReferralCommission.objects.filter(
        referrer=user,
        status=ReferralCommission.Status.MATURED,
        payout__isnull=True,
    ).aggregate(total=Sum("commission_amount"))["total"]
    return total or ZERO


def get_pending_balance(user) -> Decimal:
    total = ReferralCommission.objects.filter(
        referrer=user,
        status=ReferralCommission.Status.PENDING,
    ).aggregate(total=Sum("commission_amount"))["total"]
    return total or ZERO


def request_payout(user, method: str, amount: Optional[Decimal] = None,
                   btc_address: Optional[str] = None) -> ReferralPayout:
    if method not in ReferralPayout.Method.values:
        raise PayoutError(f"Unsupported payout method '{method}'")

    with transaction.atomic():
        commissions = list(
            ReferralCommission.objects.select_for_update()
            .filter(referrer=user, status=ReferralCommission.Status.MATURED, payout__isnull=True)
            .order_by("matured_at", "pk")
        )
        available = sum((commission.commission_amount for commission in commissions), ZERO)
        amount = Decimal(amount) if amount is not None else available

        minimum = ReferralPayout.MINIMUM_PAYOUT[method]
        if amount < minimum:
            raise PayoutError(f"Minimum payout amount is {minimum} for {method}")
        if amount > available:
            raise PayoutError(f"Requested amount exceeds available balance of {available}")
        if method == ReferralPayout.Method.BTC and not btc_address:
            raise PayoutError("BTC address is required for Bitcoin payouts")

        payout = ReferralPayout.objects.create(
            user=user,
            payout_number=ReferralPayout.generate_payout_number(),
            method=method,
            btc_address=btc_address or "",
            amount=amount,
        )
        assigned = ZERO
        for commission in commissions:
            if assigned >= amount:
                break
            commission.payout = payout
            commission.save(update_fields=["payout"])
            assigned += commission.commission_amount

    logger.info("Referral payout %s requested (method=%s, amount=%s)", payout.payout_number, method, amount)
    return payout
