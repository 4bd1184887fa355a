"""Stripe webhook handlers."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from django.db import transaction
from django.utils import timezone

from commerce.exceptions import GatewayError
from commerce.models import Gateway, Order, Payment, PaymentMethod, Refund, Subscription, WorkspacePackage
from commerce.observability.metrics import PAYMENT_FAILURE_COUNT, PAYMENT_SUCCESS_COUNT
from commerce.services import notifications, orders, referrals
from commerce.services.gateways.base import CanonicalEvent, from_cents
from commerce.services.subscriptions import period_length
from commerce.services.gateways.stripe_gateway import (
    coerce_timestamp,
    map_subscription_status,
    subscription_period,
    upsert_payment_method,
)
from workspace.models import Workspace

from .engine import HandlerResult, WebhookContext

logger = logging.getLogger(__name__)

FIRST_INVOICE_REASON = "subscription_create"


def _find_subscription(gateway_subscription_id: Optional[str]) -> Optional[Subscription]:
    if not gateway_subscription_id:
        return None
    return (
        Subscription.objects.filter(gateway=Gateway.STRIPE, gateway_subscription_id=gateway_subscription_id)
        .select_related("workspace")
        .first()
    )


def _workspace_for_customer(customer_id: Optional[str]) -> Optional[Workspace]:
    if not customer_id:
        return None
    return Workspace.objects.filter(stripe_customer_id=customer_id).first()


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    """Subscription id of an invoice; newer API versions nest it under ``parent``."""
    subscription_id = invoice.get("subscription")
    if isinstance(subscription_id, dict):
        subscription_id = subscription_id.get("id")
    if subscription_id:
        return subscription_id
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return details.get("subscription")


def invoice_period(invoice: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Coverage window of an invoice, widened by its line item periods."""
    period_start = None
    period_end = None
    for line in (invoice.get("lines") or {}).get("data") or []:
        if not isinstance(line, dict):
            continue
        line_period = line.get("period") or {}
        line_start = coerce_timestamp(line_period.get("start"))
        line_end = coerce_timestamp(line_period.get("end"))
        if line_start and (period_start is None or line_start < period_start):
            period_start = line_start
        if line_end and (period_end is None or line_end > period_end):
            period_end = line_end
    return (
        period_start or coerce_timestamp(invoice.get("period_start")),
        period_end or coerce_timestamp(invoice.get("period_end")),
    )


def _package_item(order: Order):
    return order.items.filter(package__isnull=False).select_related("package").first()


# Checkout


def handle_checkout_completed(event: CanonicalEvent, context: WebhookContext) -> HandlerResult:
    session = event.data_object
    order_id = (session.get("metadata") or {}).get("order_id")
    order = None
    if order_id:
        order = Order.objects.filter(pk=order_id).first()
    if order is None and session.get("id"):
        order = Order.objects.filter(gateway=Gateway.STRIPE, gateway_session_id=session["id"]).first()
    if order is None:
        logger.warning("Stripe checkout.session.completed: order not found (session=%s)", session.get("id"))
        return HandlerResult.skipped("order not found")
    if order.is_paid:
        return HandlerResult.skipped("already paid", order=order)

    gateway_subscription_id = session.get("subscription")
    if isinstance(gateway_subscription_id, dict):
        gateway_subscription_id = gateway_subscription_id.get("id")
    remote_subscription = None
    if gateway_subscription_id and _find_subscription(gateway_subscription_id) is None:
        remote_subscription = context.gateway.retrieve_subscription(gateway_subscription_id)

    with transaction.atomic():
        order = Order.objects.select_for_update().get(pk=order.pk)
        if order.is_paid:
            return HandlerResult.skipped("already paid", order=order)

        payment, _ = Payment.objects.get_or_create(
            gateway=Gateway.STRIPE,
            gateway_payment_id=session.get("payment_intent") or session.get("id"),
            defaults={
                "workspace_id": order.workspace_id,
                "order": order,
                "amount": from_cents(session.get("amount_total")),
                "currency": (session.get("currency") or order.currency).upper(),
                "gateway_customer_id": session.get("customer") or "",
                "status": Payment.Status.SUCCEEDED,
                "paid_at": timezone.now(),
                "gateway_response": session,
            },
        )
        orders.fulfil_order(order, payment, entitlements=context.entitlements, invoices=context.invoices)

        subscription = None
        if gateway_subscription_id:
            subscription = _find_subscription(gateway_subscription_id)
            if subscription is None:
                subscription = _create_subscription_from_session(order, session, remote_subscription or {})

    PAYMENT_SUCCESS_COUNT.labels(gateway=Gateway.STRIPE).inc()
    logger.info("Stripe order %s fulfilled", order.order_number)
    return HandlerResult.processed("fulfilled", order=order, subscription=subscription)


def _create_subscription_from_session(order: Order, session: Dict[str, Any], remote: Dict[str, Any]) -> Subscription:
    item = _package_item(order)
    package = item.package if item is not None else None
    grant = None
    if package is not None:
        grant = WorkspacePackage.objects.filter(workspace_id=order.workspace_id, package=package).first()

    period_start, period_end = subscription_period(remote)
    now = timezone.now()
    billing_cycle = item.billing_cycle if item is not None and item.billing_cycle else order.billing_cycle
    price_items = (remote.get("items") or {}).get("data") or []
    price_id = ((price_items[0].get("price") or {}).get("id")) if price_items else None
    return Subscription.objects.create(
        workspace_id=order.workspace_id,
        package=package,
        workspace_package=grant,
        gateway=Gateway.STRIPE,
        gateway_subscription_id=remote.get("id") or session.get("subscription"),
        gateway_customer_id=session.get("customer"),
        gateway_price_id=price_id,
        status=map_subscription_status(remote.get("status") or "active"),
        billing_cycle=billing_cycle,
        current_period_start=period_start or now,
        current_period_end=period_end or (period_start or now) + period_length(billing_cycle),
        trial_ends_at=coerce_timestamp(remote.get("trial_end")),
    )


# Invoices


def handle_invoice_paid(event: CanonicalEvent, context: WebhookContext) -> HandlerResult:
    invoice = event.data_object
    gateway_subscription_id = invoice_subscription_id(invoice)
    if not gateway_subscription_id:
        return HandlerResult.skipped("one-off invoice")
    subscription = _find_subscription(gateway_subscription_id)
    if subscription is None:
        logger.warning("Stripe invoice.paid: subscription %s not found", gateway_subscription_id)
        return HandlerResult.skipped("subscription not found")
    if invoice.get("billing_reason") == FIRST_INVOICE_REASON:
        return HandlerResult.skipped("first invoice is settled by checkout", subscription=subscription)

    payment_reference = invoice.get("payment_intent") or invoice.get("id")
    if isinstance(payment_reference, dict):
        payment_reference = payment_reference.get("id")
    if Payment.objects.filter(gateway=Gateway.STRIPE, gateway_payment_id=payment_reference).exists():
        return HandlerResult.skipped("payment already recorded", subscription=subscription)

    period_start, period_end = invoice_period(invoice)
    currency = (invoice.get("currency") or "gbp").upper()
    with transaction.atomic():
        subscription = context.subscriptions.renew(subscription, period_start, period_end)
        payment = Payment.objects.create(
            workspace_id=subscription.workspace_id,
            gateway=Gateway.STRIPE,
            gateway_payment_id=payment_reference,
            gateway_customer_id=invoice.get("customer") or "",
            amount=from_cents(invoice.get("amount_paid")),
            currency=currency,
            status=Payment.Status.SUCCEEDED,
            paid_at=timezone.now(),
            gateway_response=invoice,
        )
        context.invoices.create_for_renewal(
            subscription.workspace,
            payment.amount,
            "Subscription renewal",
            payment=payment,
            subscription=subscription,
            currency=currency,
        )

    PAYMENT_SUCCESS_COUNT.labels(gateway=Gateway.STRIPE).inc()
    return HandlerResult.processed("renewed", subscription=subscription)


def handle_invoice_payment_failed(event: CanonicalEvent, context: WebhookContext) -> HandlerResult:
    invoice = event.data_object
    subscription = _find_subscription(invoice_subscription_id(invoice))
    if subscription is None:
        return HandlerResult.skipped("no subscription")

    subscription = context.subscriptions.mark_past_due(subscription)
    transaction.on_commit(lambda: context.notifier.notify_workspace_owner(
        subscription.workspace,
        notifications.PAYMENT_FAILED,
        {"subscription_id": subscription.pk, "attempt": invoice.get("attempt_count")},
    ))
    PAYMENT_FAILURE_COUNT.labels(gateway=Gateway.STRIPE, reason="invoice_payment_failed").inc()
    return HandlerResult.processed(subscription.status, subscription=subscription)


# Subscriptions


def handle_subscription_updated(event: CanonicalEvent, context: WebhookContext) -> HandlerResult:
    remote = event.data_object
    subscription = _find_subscription(remote.get("id"))
    if subscription is None:
        return HandlerResult.skipped("subscription not found")

    period_start, period_end = subscription_period(remote)
    with transaction.atomic():
        locked = Subscription.objects.select_for_update().get(pk=subscription.pk)
        locked.status = map_subscription_status(remote.get("status"))
        locked.cancel_at_period_end = bool(remote.get("cancel_at_period_end"))
        update_fields = ["status", "cancel_at_period_end", "updated_at"]
        if period_start and period_end:
            locked.current_period_start = period_start
            locked.current_period_end = period_end
            update_fields += ["current_period_start", "current_period_end"]
        if remote.get("canceled_at") and not locked.cancelled_at:
            locked.cancelled_at = coerce_timestamp(remote["canceled_at"])
            update_fields.append("cancelled_at")
        locked.save(update_fields=update_fields)
    return HandlerResult.processed(locked.status, subscription=locked)


def handle_subscription_deleted(event: CanonicalEvent, context: WebhookContext) -> HandlerResult:
    remote = event.data_object
    subscription = _find_subscription(remote.get("id"))
    if subscription is None:
        return HandlerResult.skipped("subscription not found")

    with transaction.atomic():
        locked = Subscription.objects.select_for_update().select_related("workspace").get(pk=subscription.pk)
        if locked.status in (Subscription.Status.CANCELLED, Subscription.Status.EXPIRED) and locked.ended_at:
            return HandlerResult.skipped("already ended", subscription=locked)
        now = timezone.now()
        locked.status = Subscription.Status.CANCELLED
        locked.ended_at = now
        locked.cancelled_at = locked.cancelled_at or now
        locked.save(update_fields=["status", "ended_at", "cancelled_at", "updated_at"])
        package = context.subscriptions.current_package(locked)
        if package is not None:
            context.entitlements.revoke_package(locked.workspace, package, reason="subscription_deleted")
        transaction.on_commit(lambda: context.notifier.notify_workspace_owner(
            locked.workspace, notifications.SUBSCRIPTION_CANCELLED, {"subscription_id": locked.pk},
        ))
    return HandlerResult.processed("cancelled", subscription=locked)


# Payment methods


def handle_payment_method_attached(event: CanonicalEvent, context: WebhookContext) -> HandlerResult:
    data = event.data_object
    workspace = _workspace_for_customer(data.get("customer"))
    if workspace is None:
        return HandlerResult.skipped("workspace not found")
    with transaction.atomic():
        method = upsert_payment_method(workspace, data)
    return HandlerResult.processed(f"payment method {method.pk}")


def handle_payment_method_updated(event: CanonicalEvent, context: WebhookContext) -> HandlerResult:
    data = event.data_object
    method = PaymentMethod.objects.filter(gateway=Gateway.STRIPE, gateway_payment_method_id=data.get("id")).first()
    if method is None:
        return handle_payment_method_attached(event, context)
    card = data.get("card") or {}
    method.brand = card.get("brand") or method.brand
    method.last_four = card.get("last4") or method.last_four
    method.exp_month = card.get("exp_month") or method.exp_month
    method.exp_year = card.get("exp_year") or method.exp_year
    method.save(update_fields=["brand", "last_four", "exp_month", "exp_year", "updated_at"])
    return HandlerResult.processed(f"payment method {method.pk}")


def handle_payment_method_detached(event: CanonicalEvent, context: WebhookContext) -> HandlerResult:
    data = event.data_object
    updated = PaymentMethod.objects.filter(
        gateway=Gateway.STRIPE,
        gateway_payment_method_id=data.get("id"),
        is_active=True,
    ).update(is_active=False, is_default=False, updated_at=timezone.now())
    if not updated:
        return HandlerResult.skipped("payment method not active")
    return HandlerResult.processed("payment method deactivated")


def handle_setup_intent_succeeded(event: CanonicalEvent, context: WebhookContext) -> HandlerResult:
    intent = event.data_object
    payment_method_id = intent.get("payment_method")
    workspace = _workspace_for_customer(intent.get("customer"))
    if not payment_method_id or workspace is None:
        return HandlerResult.skipped("workspace or payment method missing")
    if PaymentMethod.objects.filter(gateway=Gateway.STRIPE, gateway_payment_method_id=payment_method_id).exists():
        return HandlerResult.skipped("payment method already linked")
    try:
        method = context.gateway.attach_payment_method(workspace, payment_method_id)
    except GatewayError as exc:
        logger.warning("Could not attach payment method %s for workspace %s: %s",
                       payment_method_id, workspace.pk, exc)
        return HandlerResult.skipped("attach failed")
    return HandlerResult.processed(f"payment method {method.pk}")


# Refunds


def handle_charge_refunded(event: CanonicalEvent, context: WebhookContext) -> HandlerResult:
    charge = event.data_object
    payment = (
        Payment.objects.filter(gateway=Gateway.STRIPE, gateway_payment_id=charge.get("payment_intent"))
        .select_related("order")
        .first()
    )
    if payment is None:
        return HandlerResult.skipped("payment not found")

    with transaction.atomic():
        payment = Payment.objects.select_for_update().get(pk=payment.pk)
        for refund in (charge.get("refunds") or {}).get("data") or []:
            Refund.objects.update_or_create(
                gateway_refund_id=refund.get("id"),
                defaults={
                    "payment": payment,
                    "amount": from_cents(refund.get("amount")),
                    "currency": (refund.get("currency") or payment.currency).upper(),
                    "status": Refund.Status.SUCCEEDED if refund.get("status") == "succeeded"
                    else Refund.Status.PENDING,
                    "reason": refund.get("reason") or "",
                    "gateway_response": refund,
                },
            )
        payment.refunded_amount = from_cents(charge.get("amount_refunded"))
        update_fields = ["refunded_amount"]
        if charge.get("refunded"):
            payment.status = Payment.Status.REFUNDED
            update_fields.append("status")
        payment.save(update_fields=update_fields)
        if payment.order_id:
            referrals.cancel_commission_for_order(payment.order, "Order refunded")
    return HandlerResult.processed("refund recorded", order=payment.order)


HANDLERS = {
    "checkout.session.completed": handle_checkout_completed,
    "invoice.paid": handle_invoice_paid,
    "invoice.payment_succeeded": handle_invoice_paid,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "customer.subscription.created": handle_subscription_updated,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "payment_method.attached": handle_payment_method_attached,
    "payment_method.updated": handle_payment_method_updated,
    "payment_method.detached": handle_payment_method_detached,
    "setup_intent.succeeded": handle_setup_intent_succeeded,
    "charge.refunded": handle_charge_refunded,
}
