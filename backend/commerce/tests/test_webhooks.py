import hashlib
import hmac
import json
import time
from datetime import timedelta
from decimal import Decimal
from unittest import mock

import pytest
from django.test import Client, override_settings
from django.utils import timezone

from commerce.models import (
    Invoice,
    Order,
    OrderItem,
    Payment,
    Subscription,
    WebhookEvent,
    WorkspacePackage,
)
from commerce.services.gateways import StripeGateway
from commerce.throttling import webhook_limit
from commerce.webhooks import WebhookLogger, cleanup_webhook_events, reconcile

from .conftest import make_subscription, sign_btcpay


def btcpay_body(event_type="InvoiceSettled", invoice_id="inv_123", delivery_id="dlv_1", **extra):
    payload = {"deliveryId": delivery_id, "type": event_type, "invoiceId": invoice_id, "metadata": {}}
    payload.update(extra)
    return json.dumps(payload).encode("utf-8")


def create_btcpay_order(workspace, package, total="20.00", currency="GBP", invoice_id="inv_123"):
    order = Order.objects.create(
        workspace=workspace,
        user=workspace.owner,
        gateway="btcpay",
        gateway_session_id=invoice_id,
        currency=currency,
        subtotal=Decimal(total),
        total=Decimal(total),
    )
    OrderItem.objects.create(
        order=order,
        package=package,
        sku=package.code.upper(),
        name=package.name,
        unit_price=Decimal(total),
        line_total=Decimal(total),
    )
    return order


@pytest.mark.django_db
def test_btcpay_signature_accepts_prefixed_and_bare_digest(btcpay_gateway_factory):
    gateway = btcpay_gateway_factory()
    body = btcpay_body()
    signature = sign_btcpay(body)

    assert gateway.verify_webhook_signature(body, signature)
    assert gateway.verify_webhook_signature(body, signature[len("sha256="):])
    assert not gateway.verify_webhook_signature(body, sign_btcpay(body, "other-secret"))
    assert not gateway.verify_webhook_signature(body, "")


@pytest.mark.django_db
def test_btcpay_signature_with_non_ascii_or_garbage_fails_closed(btcpay_gateway_factory):
    gateway = btcpay_gateway_factory()
    body = btcpay_body()

    assert not gateway.verify_webhook_signature(body, "sha256=\u00ff\u00ff")
    assert not gateway.verify_webhook_signature(body, "sha256=")
    assert not gateway.verify_webhook_signature(body, "not-a-digest")

    response = reconcile("btcpay", gateway, body, "sha256=\u00e9t\u00e9")
    assert response.status_code == 401
    assert not WebhookEvent.objects.exists()


@pytest.mark.django_db
def test_invalid_signature_is_rejected_without_recording(btcpay_gateway_factory):
    response = reconcile("btcpay", btcpay_gateway_factory(), btcpay_body(), "sha256=deadbeef")

    assert response.status_code == 401
    assert response.body == {"error": "invalid_signature"}
    assert not WebhookEvent.objects.exists()


@pytest.mark.django_db
def test_malformed_json_is_acknowledged(btcpay_gateway_factory):
    body = b"{not json"

    response = reconcile("btcpay", btcpay_gateway_factory(), body, sign_btcpay(body))

    assert response.status_code == 200
    assert response.body["status"] == "ignored"
    assert not WebhookEvent.objects.exists()


@pytest.mark.django_db
def test_settled_invoice_fulfils_order(workspace, pro_package, btcpay_gateway_factory):
    order = create_btcpay_order(workspace, pro_package)
    gateway = btcpay_gateway_factory({"id": "inv_123", "amount": "20.00", "currency": "GBP", "status": "Settled"})
    body = btcpay_body()

    response = reconcile("btcpay", gateway, body, sign_btcpay(body))

    assert response.status_code == 200
    assert response.body["status"] == "processed"
    order.refresh_from_db()
    assert order.status == Order.Status.PAID
    payment = Payment.objects.get(gateway="btcpay", gateway_payment_id="inv_123")
    assert payment.status == Payment.Status.SUCCEEDED
    invoice = Invoice.objects.get(order=order)
    assert invoice.status == Invoice.Status.PAID
    assert invoice.invoice_number == f"INV-{timezone.now().year}-000001"
    assert WorkspacePackage.objects.get(workspace=workspace, package=pro_package).status == "active"
    event = WebhookEvent.objects.get(gateway="btcpay", event_id="dlv_1")
    assert event.status == WebhookEvent.Status.PROCESSED
    assert event.order_id == order.pk


@pytest.mark.django_db
def test_duplicate_delivery_is_not_processed_twice(workspace, pro_package, btcpay_gateway_factory):
    create_btcpay_order(workspace, pro_package)
    gateway = btcpay_gateway_factory({"id": "inv_123", "amount": "20.00", "currency": "GBP"})
    body = btcpay_body()

    first = reconcile("btcpay", gateway, body, sign_btcpay(body))
    second = reconcile("btcpay", gateway, body, sign_btcpay(body))

    assert first.body["status"] == "processed"
    assert second.status_code == 200
    assert second.body == {"status": "duplicate"}
    assert Payment.objects.filter(gateway="btcpay").count() == 1
    assert Invoice.objects.count() == 1


@pytest.mark.django_db
def test_underpaid_invoice_fails_order(workspace, pro_package, btcpay_gateway_factory):
    order = create_btcpay_order(workspace, pro_package)
    gateway = btcpay_gateway_factory({"id": "inv_123", "amount": "15.00", "currency": "GBP"})
    body = btcpay_body()

    response = reconcile("btcpay", gateway, body, sign_btcpay(body))

    assert response.body == {"status": "processed", "detail": "underpaid"}
    order.refresh_from_db()
    assert order.status == Order.Status.FAILED
    assert "Underpaid" in order.failure_reason
    assert Payment.objects.get(gateway_payment_id="inv_123").status == Payment.Status.UNDERPAID
    assert not Invoice.objects.exists()
    assert not WorkspacePackage.objects.filter(workspace=workspace).exists()


@pytest.mark.django_db
def test_currency_mismatch_fails_order_without_payment(workspace, pro_package, btcpay_gateway_factory):
    order = create_btcpay_order(workspace, pro_package)
    gateway = btcpay_gateway_factory({"id": "inv_123", "amount": "20.00", "currency": "USD"})
    body = btcpay_body()

    response = reconcile("btcpay", gateway, body, sign_btcpay(body))

    assert response.body["detail"] == "currency mismatch"
    order.refresh_from_db()
    assert order.status == Order.Status.FAILED
    assert not Payment.objects.exists()


@pytest.mark.django_db
def test_overpaid_invoice_is_still_fulfilled(workspace, pro_package, btcpay_gateway_factory):
    order = create_btcpay_order(workspace, pro_package)
    gateway = btcpay_gateway_factory({"id": "inv_123", "amount": "25.00", "currency": "GBP"})
    body = btcpay_body()

    reconcile("btcpay", gateway, body, sign_btcpay(body))

    order.refresh_from_db()
    assert order.status == Order.Status.PAID
    assert Payment.objects.get(gateway_payment_id="inv_123").amount == Decimal("25.00")


@pytest.mark.django_db
def test_unhandled_event_type_is_skipped(btcpay_gateway_factory):
    body = btcpay_body(event_type="InvoicePaymentRefunded")

    response = reconcile("btcpay", btcpay_gateway_factory(), body, sign_btcpay(body))

    assert response.body == {"status": "skipped", "reason": "unhandled event type"}
    assert WebhookEvent.objects.get(event_id="dlv_1").status == WebhookEvent.Status.SKIPPED


@pytest.mark.django_db
def test_event_id_falls_back_to_invoice_and_type(btcpay_gateway_factory):
    gateway = btcpay_gateway_factory()
    event = gateway.parse_webhook_event(json.dumps({"type": "InvoiceExpired", "invoiceId": "inv_9"}).encode())

    assert event.type == "invoice.expired"
    assert gateway.webhook_event_id(event) == "inv_9:InvoiceExpired"


@pytest.mark.django_db
def test_handler_error_returns_500_and_allows_redelivery(btcpay_gateway_factory):
    body = btcpay_body(event_type="InvoiceCreated")

    def explode(event, context):
        raise RuntimeError("boom")

    failed = reconcile("btcpay", btcpay_gateway_factory(), body, sign_btcpay(body),
                       handlers={"invoice.created": explode}, context=mock.Mock())
    retried = reconcile("btcpay", btcpay_gateway_factory(), body, sign_btcpay(body),
                        handlers={"invoice.created": lambda event, context: _processed()},
                        context=mock.Mock())

    assert failed.status_code == 500
    assert failed.body == {"error": "processing_error"}
    assert retried.body["status"] == "processed"
    event = WebhookEvent.objects.get(event_id="dlv_1")
    assert event.status == WebhookEvent.Status.PROCESSED
    assert event.attempts == 2


def _processed():
    from commerce.webhooks import HandlerResult

    return HandlerResult.processed("ok")


@pytest.mark.django_db
def test_pending_row_inside_inflight_window_counts_as_duplicate():
    WebhookEvent.objects.create(gateway="btcpay", event_id="dlv_7", status=WebhookEvent.Status.PENDING)
    event_log = WebhookLogger(inflight_seconds=300)

    record, created = event_log.start("btcpay", "dlv_7", "invoice.paid", b"{}")

    assert created is False
    assert event_log.is_duplicate(record, created)


@pytest.mark.django_db
def test_webhook_view_passes_signature_header(workspace, pro_package, btcpay_gateway_factory):
    order = create_btcpay_order(workspace, pro_package)
    gateway = btcpay_gateway_factory({"id": "inv_123", "amount": "20.00", "currency": "GBP"})
    body = btcpay_body()

    with mock.patch("commerce.views.webhooks.get_gateway", return_value=gateway):
        response = Client().post(
            "/webhooks/btcpay",
            data=body,
            content_type="application/json",
            HTTP_BTCPAY_SIG=sign_btcpay(body),
        )

    assert response.status_code == 200
    assert response.json()["status"] == "processed"
    order.refresh_from_db()
    assert order.is_paid


@pytest.mark.django_db
def test_webhook_view_rejects_missing_signature(btcpay_gateway_factory):
    with mock.patch("commerce.views.webhooks.get_gateway", return_value=btcpay_gateway_factory()):
        response = Client().post("/webhooks/btcpay", data=btcpay_body(), content_type="application/json")

    assert response.status_code == 401
    assert response.json() == {"error": "invalid_signature"}


WEBHOOK_LIMITS = {
    "rate_limits": {"default": 2, "trusted": 4},
    "trusted_ips": {"btcpay": ["198.51.100.0/24"]},
}


def post_unsigned(client, address):
    return client.post("/webhooks/btcpay", data=btcpay_body(), content_type="application/json", REMOTE_ADDR=address)


@pytest.mark.django_db
@override_settings(COMMERCE_WEBHOOKS=WEBHOOK_LIMITS)
def test_webhook_view_rate_limits_each_source_address(btcpay_gateway_factory):
    client = Client()
    with mock.patch("commerce.views.webhooks.get_gateway", return_value=btcpay_gateway_factory()):
        statuses = [post_unsigned(client, "203.0.113.9").status_code for _ in range(3)]
        throttled = post_unsigned(client, "203.0.113.9")
        neighbour = post_unsigned(client, "203.0.113.10")

    assert statuses == [401, 401, 429]
    assert throttled.status_code == 429
    assert int(throttled["Retry-After"]) > 0
    assert neighbour.status_code == 401


@pytest.mark.django_db
@override_settings(COMMERCE_WEBHOOKS=WEBHOOK_LIMITS)
def test_trusted_gateway_addresses_get_the_higher_limit(btcpay_gateway_factory):
    client = Client()
    with mock.patch("commerce.views.webhooks.get_gateway", return_value=btcpay_gateway_factory()):
        statuses = [post_unsigned(client, "198.51.100.7").status_code for _ in range(5)]

    assert statuses == [401, 401, 401, 401, 429]


@override_settings(COMMERCE_WEBHOOKS={
    "rate_limits": {"default": 10, "trusted": 50, "stripe": {"default": 20}},
    "trusted_ips": {"global": ["10.0.0.1", "not-an-ip"], "stripe": ["2001:db8::/32"]},
})
def test_webhook_limit_resolution():
    assert webhook_limit("btcpay", "192.0.2.1") == 10
    assert webhook_limit("btcpay", "10.0.0.1") == 50
    assert webhook_limit("stripe", "192.0.2.1") == 20
    assert webhook_limit("stripe", "2001:db8::5") == 50
    assert webhook_limit("btcpay", "2001:db8::5") == 10
    assert webhook_limit("btcpay", "") == 10


@pytest.mark.django_db
def test_cleanup_removes_only_old_finished_events():
    old = timezone.now() - timedelta(days=45)
    WebhookEvent.objects.create(gateway="stripe", event_id="evt_old", status="processed", received_at=old)
    WebhookEvent.objects.create(gateway="stripe", event_id="evt_failed", status="failed", received_at=old)
    WebhookEvent.objects.create(gateway="stripe", event_id="evt_new", status="processed")

    deleted = cleanup_webhook_events(retention_days=30)

    assert deleted == 1
    assert set(WebhookEvent.objects.values_list("event_id", flat=True)) == {"evt_failed", "evt_new"}


def stripe_signature(body: bytes, secret: str) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.".encode("utf-8") + body
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.mark.django_db
def test_stripe_payment_failed_marks_subscription_past_due(workspace, pro_package):
    subscription = make_subscription(workspace, pro_package, gateway_subscription_id="sub_123")
    gateway = StripeGateway(secret="sk_test_123", webhook_secret="whsec_test")
    body = json.dumps({
        "id": "evt_1",
        "type": "invoice.payment_failed",
        "data": {"object": {"id": "in_1", "object": "invoice", "subscription": "sub_123", "attempt_count": 1}},
    }).encode("utf-8")

    response = reconcile("stripe", gateway, body, stripe_signature(body, "whsec_test"))

    assert response.status_code == 200
    assert response.body["detail"] == Subscription.Status.PAST_DUE
    subscription.refresh_from_db()
    assert subscription.status == Subscription.Status.PAST_DUE
    assert WebhookEvent.objects.get(gateway="stripe", event_id="evt_1").subscription_id == subscription.pk


@pytest.mark.django_db
def test_stripe_first_subscription_invoice_is_left_to_checkout(workspace, pro_package):
    make_subscription(workspace, pro_package, gateway_subscription_id="sub_123")
    gateway = StripeGateway(secret="sk_test_123", webhook_secret="whsec_test")
    body = json.dumps({
        "id": "evt_2",
        "type": "invoice.paid",
        "data": {"object": {
            "id": "in_2",
            "object": "invoice",
            "subscription": "sub_123",
            "billing_reason": "subscription_create",
            "amount_paid": 2000,
        }},
    }).encode("utf-8")

    response = reconcile("stripe", gateway, body, stripe_signature(body, "whsec_test"))

    assert response.body["status"] == "skipped"
    assert not Payment.objects.exists()
