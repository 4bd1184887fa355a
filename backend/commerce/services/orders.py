"""Order state transitions: fulfilment after payment and housekeeping of stale checkouts."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Dict, Optional

from django.db import transaction
from django.utils import timezone

from commerce.conf import checkout_ttl_minutes
from commerce.models import Invoice, Order, Payment
from commerce.observability.logging import log_commerce_event
from commerce.services import coupons, referrals

logger = logging.getLogger(__name__)

UNPAID_ORDER_STATUSES = (Order.Status.PENDING, Order.Status.PROCESSING)


def _lock(order: Order) -> Order:
    return Order.objects.select_for_update().select_related("workspace", "coupon").get(pk=order.pk)


def fulfil_order(order: Order, payment: Optional[Payment] = None, *, entitlements=None,
                 invoices=None) -> Optional[Invoice]:
    """Mark the order paid, invoice it, record the coupon, grant packages and credit the referrer.

    All of it commits together or not at all. An order that is already paid is
    left untouched and its existing invoice is returned.
    """
    if entitlements is None or invoices is None:
        from commerce.services.collaborators import get_entitlement_service, get_tax_calculator
        from commerce.services.invoices import InvoiceService

        entitlements = entitlements or get_entitlement_service()
        invoices = invoices or InvoiceService(get_tax_calculator())

    with transaction.atomic():
        locked = _lock(order)
        if locked.status == Order.Status.PAID:
            return locked.invoices.order_by("created_at").first()

        locked.status = Order.Status.PAID
        locked.paid_at = timezone.now()
        locked.failure_reason = ""
        locked.save(update_fields=["status", "paid_at", "failure_reason", "updated_at"])

        if payment is not None and payment.order_id is None:
            payment.order = locked
            payment.save(update_fields=["order"])

        invoice = invoices.create_from_order(locked, payment)

        if locked.coupon_id:
            coupons.record_usage(locked.coupon, locked.workspace, locked, locked.discount_amount)

        for item in locked.items.select_related("package"):
            if item.package is not None:
                entitlements.grant_package(locked.workspace, item.package, source="order")

        referrals.create_commission_for_order(locked)

    log_commerce_event(
        message="order.fulfilled",
        workspace_id=locked.workspace_id,
        extra={"order_number": locked.order_number, "invoice": invoice.invoice_number},
    )
    return invoice


def mark_processing(order: Order) -> Order:
    with transaction.atomic():
        locked = _lock(order)
        if locked.status == Order.Status.PENDING:
            locked.status = Order.Status.PROCESSING
            locked.save(update_fields=["status", "updated_at"])
    return locked


def mark_failed(order: Order, reason: str = "") -> Order:
    """Fail an unpaid order; paid or cancelled orders are left alone."""
    with transaction.atomic():
        locked = _lock(order)
        if locked.status in UNPAID_ORDER_STATUSES:
            locked.status = Order.Status.FAILED
            locked.failure_reason = (reason or "")[:255]
            locked.save(update_fields=["status", "failure_reason", "updated_at"])
    return locked


def select_expired_orders(ttl_minutes: Optional[int] = None, now=None):
    ttl_minutes = checkout_ttl_minutes() if ttl_minutes is None else ttl_minutes
    cutoff = (now or timezone.now()) - timedelta(minutes=ttl_minutes)
    return Order.objects.filter(status=Order.Status.PENDING, created_at__lt=cutoff).order_by("created_at")


def cancel_expired_orders(ttl_minutes: Optional[int] = None, dry_run: bool = False, now=None) -> Dict[str, int]:
    """Cancel checkouts that were never paid within the session TTL."""
    expired = list(select_expired_orders(ttl_minutes, now))
    stats = {"selected": len(expired), "cancelled": 0, "failed": 0}
    if dry_run:
        return stats

    for order in expired:
        try:
            updated = Order.objects.filter(pk=order.pk, status=Order.Status.PENDING).update(
                status=Order.Status.CANCELLED,
                failure_reason="Checkout session expired",
                updated_at=timezone.now(),
            )
        except Exception:
            logger.exception("Failed to cancel expired order %s", order.order_number)
            stats["failed"] += 1
            continue
        stats["cancelled"] += updated
    if stats["cancelled"]:
        logger.info("Cancelled %s expired orders", stats["cancelled"])
    return stats
