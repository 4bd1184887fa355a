"""Metered usage: recording, summaries and reporting to Stripe."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from django.db import IntegrityError, transaction
from django.db.models import Sum
from django.utils import timezone

from commerce.conf import usage_billing_settings
from commerce.exceptions import GatewayError
from commerce.models import Gateway, Subscription, SubscriptionUsage, UsageMeter, ZERO

logger = logging.getLogger(__name__)


def usage_billing_enabled() -> bool:
    return bool(usage_billing_settings()["enabled"])


def record_usage(subscription: Subscription, meter_code: str, quantity: int = 1,
                 idempotency_key: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None
                 ) -> Optional[SubscriptionUsage]:
    """Record usage against the subscription's current period.

    Returns ``None`` when usage billing is off or the meter is unknown. A
    repeated ``idempotency_key`` returns the row recorded the first time.
    """
    if not usage_billing_enabled():
        return None
    if quantity <= 0:
        raise ValueError("Usage quantity must be positive")

    meter = UsageMeter.objects.filter(code=meter_code, is_active=True).first()
    if meter is None:
        logger.warning("Usage meter %s not found or inactive (subscription=%s)", meter_code, subscription.pk)
        return None

    if idempotency_key:
        existing = SubscriptionUsage.objects.filter(idempotency_key=idempotency_key).first()
        if existing is not None:
            logger.info("Duplicate usage record skipped (key=%s)", idempotency_key)
            return existing

    try:
        with transaction.atomic():
            usage = SubscriptionUsage.objects.create(
                subscription=subscription,
                meter=meter,
                quantity=quantity,
                period_start=subscription.current_period_start,
                period_end=subscription.current_period_end,
                idempotency_key=idempotency_key or None,
                metadata=metadata or {},
            )
    except IntegrityError:
        return SubscriptionUsage.objects.get(idempotency_key=idempotency_key)

    logger.debug("Usage recorded: subscription=%s meter=%s quantity=%s", subscription.pk, meter.code, quantity)
    return usage


def current_usage(subscription: Subscription):
    return SubscriptionUsage.objects.filter(
        subscription=subscription,
        period_start__gte=subscription.current_period_start,
        period_end__lte=subscription.current_period_end,
    ).select_related("meter")


def calculate_charge(meter: UsageMeter, quantity: int) -> Decimal:
    return (meter.unit_price * quantity).quantize(Decimal("0.01"))


def get_usage_summary(subscription: Subscription) -> List[Dict[str, Any]]:
    """Totals per meter for the current period."""
    rows = (
        current_usage(subscription)
        .values("meter_id")
        .annotate(total=Sum("quantity"))
        .order_by("meter_id")
    )
    meters = UsageMeter.objects.in_bulk([row["meter_id"] for row in rows])
    summary = []
    for row in rows:
        meter = meters[row["meter_id"]]
        summary.append({
            "meter_code": meter.code,
            "meter_name": meter.name,
            "quantity": row["total"] or 0,
            "unit_label": meter.unit_label,
            "estimated_charge": calculate_charge(meter, row["total"] or 0),
            "currency": meter.currency,
            "period_start": subscription.current_period_start.isoformat(),
            "period_end": subscription.current_period_end.isoformat(),
        })
    return summary


def calculate_pending_charges(subscription: Subscription, now=None) -> Decimal:
    """Charges for closed periods that have not been invoiced yet."""
    now = now or timezone.now()
    total = ZERO
    for usage in SubscriptionUsage.objects.filter(
        subscription=subscription, billed=False, period_end__lte=now,
    ).select_related("meter"):
        total += calculate_charge(usage.meter, usage.quantity)
    return total


def unsynced_usage(subscription: Subscription):
    return SubscriptionUsage.objects.filter(
        subscription=subscription,
        synced_at__isnull=True,
        quantity__gt=0,
    ).exclude(meter__stripe_price_id="").select_related("meter").order_by("created_at")


def subscriptions_to_sync():
    """Stripe subscriptions with usage not yet reported."""
    return Subscription.objects.filter(
        gateway=Gateway.STRIPE,
        gateway_subscription_id__isnull=False,
        status__in=Subscription.LIVE_STATUSES,
        usage_records__synced_at__isnull=True,
    ).distinct()


def sync_to_stripe(subscription: Subscription, gateway, dry_run: bool = False) -> int:
    """Report unsynced usage for one subscription; returns the number of records reported.

    A gateway failure stops the subscription's sync and propagates, leaving the
    remaining rows for the next run.
    """
    if subscription.gateway != Gateway.STRIPE or not subscription.gateway_subscription_id:
        return 0
    if not gateway.is_enabled():
        return 0

    rows = list(unsynced_usage(subscription))
    if dry_run:
        return len(rows)

    item_ids: Dict[str, Optional[str]] = {}
    synced = 0
    for usage in rows:
        price_id = usage.meter.stripe_price_id
        if price_id not in item_ids:
            item_ids[price_id] = gateway.subscription_item_for_price(subscription, price_id)
        item_id = item_ids[price_id]
        if not item_id:
            logger.warning("No Stripe subscription item for price %s on subscription %s",
                           price_id, subscription.pk)
            continue
        try:
            record_id = gateway.report_usage(
                item_id,
                usage.quantity,
                timestamp=usage.created_at,
                idempotency_key=f"usage-{usage.pk}",
            )
        except GatewayError:
            logger.error("Failed to sync usage %s for subscription %s", usage.pk, subscription.pk)
            raise
        usage.stripe_usage_record_id = record_id
        usage.synced_at = timezone.now()
        usage.save(update_fields=["stripe_usage_record_id", "synced_at"])
        synced += 1
    return synced


def sync_all(subscription_id=None, gateway=None, dry_run: bool = False) -> Dict[str, int]:
    """Sync every subscription with pending usage; per-subscription failures are isolated."""
    stats = {"subscriptions": 0, "synced": 0, "errors": 0}
    if not usage_billing_enabled() or not usage_billing_settings().get("sync_to_stripe", True):
        return stats
    if gateway is None:
        from commerce.services.gateways import get_gateway

        gateway = get_gateway(Gateway.STRIPE)

    subscriptions = subscriptions_to_sync()
    if subscription_id is not None:
        subscriptions = Subscription.objects.filter(pk=subscription_id)
    for subscription in subscriptions:
        stats["subscriptions"] += 1
        try:
            stats["synced"] += sync_to_stripe(subscription, gateway, dry_run=dry_run)
        except Exception:
            logger.exception("Usage sync failed for subscription %s", subscription.pk)
            stats["errors"] += 1
    return stats
