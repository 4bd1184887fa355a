"""BTCPay invoice webhook handlers."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from django.db import transaction
from django.utils import timezone

from commerce.models import Gateway, Order, Payment
from commerce.observability.metrics import PAYMENT_FAILURE_COUNT, PAYMENT_SUCCESS_COUNT
from commerce.services import notifications, orders
from commerce.services.gateways.base import CanonicalEvent, to_decimal

from .engine import HandlerResult, WebhookContext

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")

UNDERPAID = "underpaid"
OVERPAID = "overpaid"
CURRENCY_MISMATCH = "currency_mismatch"


def find_order(event: CanonicalEvent) -> Optional[Order]:
    """Order whose checkout created this BTCPay invoice."""
    if event.id:
        order = Order.objects.filter(gateway=Gateway.BTCPAY, gateway_session_id=event.id).first()
        if order is not None:
            return order
    order_id = (event.metadata or {}).get("order_id")
    if order_id:
        return Order.objects.filter(pk=order_id, gateway=Gateway.BTCPAY).first()
    return None


def verify_payment_amount(order: Order, invoice: Dict[str, Any]) -> Dict[str, Any]:
    """Compare the settled BTCPay invoice with the order; currency is checked first."""
    paid_amount = to_decimal(invoice.get("amount"))
    paid_currency = (invoice.get("currency") or "").upper() or None
    if paid_currency and paid_currency != order.currency.upper():
        return {"valid": False, "reason": CURRENCY_MISMATCH, "paid_amount": paid_amount,
                "received_currency": paid_currency}

    discrepancy = paid_amount - order.total
    if paid_amount < order.total - AMOUNT_TOLERANCE:
        return {"valid": False, "reason": UNDERPAID, "paid_amount": paid_amount, "discrepancy": discrepancy}
    if paid_amount > order.total + AMOUNT_TOLERANCE:
        return {"valid": True, "reason": OVERPAID, "paid_amount": paid_amount, "discrepancy": discrepancy}
    return {"valid": True, "reason": None, "paid_amount": paid_amount, "discrepancy": Decimal("0.00")}


def handle_invoice_created(event: CanonicalEvent, context: WebhookContext) -> HandlerResult:
    return HandlerResult.processed("acknowledged")


def handle_payment_incoming(event: CanonicalEvent, context: WebhookContext) -> HandlerResult:
    order = find_order(event)
    if order is None:
        return HandlerResult.skipped("order not found")
    order = orders.mark_processing(order)
    return HandlerResult.processed(f"order {order.status}", order=order)


def handle_settled(event: CanonicalEvent, context: WebhookContext) -> HandlerResult:
    order = find_order(event)
    if order is None:
        logger.warning("BTCPay webhook: order not found for invoice %s", event.id)
        return HandlerResult.skipped("order not found")
    if order.is_paid:
        return HandlerResult.skipped("already paid", order=order)

    invoice = context.gateway.get_invoice(event.id)
    check = verify_payment_amount(order, invoice)

    with transaction.atomic():
        order = Order.objects.select_for_update().get(pk=order.pk)
        if order.is_paid:
            return HandlerResult.skipped("already paid", order=order)

        if check["reason"] == CURRENCY_MISMATCH:
            logger.warning("BTCPay webhook: currency mismatch for order %s (%s != %s)",
                           order.order_number, check["received_currency"], order.currency)
            orders.mark_failed(order, f"Currency mismatch: received {check['received_currency']}, "
                                      f"expected {order.currency}")
            PAYMENT_FAILURE_COUNT.labels(gateway=Gateway.BTCPAY, reason=CURRENCY_MISMATCH).inc()
            return HandlerResult.processed("currency mismatch", order=order)

        if check["reason"] == UNDERPAID:
            logger.warning("BTCPay webhook: order %s underpaid (paid=%s, total=%s)",
                           order.order_number, check["paid_amount"], order.total)
            orders.mark_failed(order, f"Underpaid: received {check['paid_amount']} {order.currency}, "
                                      f"expected {order.total} {order.currency}")
            Payment.objects.get_or_create(
                gateway=Gateway.BTCPAY,
                gateway_payment_id=event.id,
                defaults={
                    "workspace_id": order.workspace_id,
                    "order": order,
                    "amount": check["paid_amount"],
                    "currency": order.currency,
                    "status": Payment.Status.UNDERPAID,
                    "paid_at": timezone.now(),
                    "gateway_response": invoice,
                },
            )
            transaction.on_commit(lambda: context.notifier.notify_workspace_owner(
                order.workspace, notifications.ORDER_UNDERPAID, {"order": order.order_number},
            ))
            PAYMENT_FAILURE_COUNT.labels(gateway=Gateway.BTCPAY, reason=UNDERPAID).inc()
            return HandlerResult.processed("underpaid", order=order)

        if check["reason"] == OVERPAID:
            logger.info("BTCPay webhook: order %s overpaid by %s", order.order_number, check["discrepancy"])

        payment, _ = Payment.objects.get_or_create(
            gateway=Gateway.BTCPAY,
            gateway_payment_id=event.id,
            defaults={
                "workspace_id": order.workspace_id,
                "order": order,
                "amount": check["paid_amount"],
                "currency": order.currency,
                "status": Payment.Status.SUCCEEDED,
                "paid_at": timezone.now(),
                "gateway_response": invoice,
            },
        )
        orders.fulfil_order(order, payment, entitlements=context.entitlements, invoices=context.invoices)

    PAYMENT_SUCCESS_COUNT.labels(gateway=Gateway.BTCPAY).inc()
    logger.info("BTCPay order %s fulfilled (payment=%s)", order.order_number, payment.pk)
    return HandlerResult.processed("fulfilled", order=order)


def handle_expired_or_failed(event: CanonicalEvent, context: WebhookContext) -> HandlerResult:
    order = find_order(event)
    if order is None:
        return HandlerResult.skipped("order not found")
    if order.is_paid:
        return HandlerResult.skipped("already paid", order=order)
    reason = "Payment expired" if event.type == "invoice.expired" else "Payment invalid"
    order = orders.mark_failed(order, reason)
    return HandlerResult.processed(reason.lower(), order=order)


HANDLERS = {
    "invoice.created": handle_invoice_created,
    "invoice.payment_received": handle_payment_incoming,
    "invoice.processing": handle_payment_incoming,
    "invoice.paid": handle_settled,
    "payment.settled": handle_settled,
    "invoice.expired": handle_expired_or_failed,
    "invoice.failed": handle_expired_or_failed,
}
