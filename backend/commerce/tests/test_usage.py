from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from commerce.exceptions import GatewayConnectionError
from commerce.models import SubscriptionUsage, UsageMeter
from commerce.services import usage

from .conftest import FakeCardGateway, make_subscription


@pytest.fixture
def usage_enabled(settings):
    settings.COMMERCE_USAGE_BILLING = {"enabled": True, "sync_to_stripe": True}


@pytest.fixture
def api_calls(db):
    return UsageMeter.objects.create(code="api_calls", name="API calls", stripe_price_id="price_api",
                                     unit_price=Decimal("0.0100"), unit_label="call")


@pytest.fixture
def subscription(workspace, pro_package):
    return make_subscription(workspace, pro_package, gateway_subscription_id="sub_123")


@pytest.mark.django_db
def test_nothing_recorded_while_disabled(subscription, api_calls):
    assert usage.record_usage(subscription, "api_calls", 5) is None
    assert not SubscriptionUsage.objects.exists()


@pytest.mark.django_db
def test_quantity_must_be_positive(usage_enabled, subscription, api_calls):
    with pytest.raises(ValueError):
        usage.record_usage(subscription, "api_calls", 0)


@pytest.mark.django_db
def test_unknown_meter_is_ignored(usage_enabled, subscription):
    assert usage.record_usage(subscription, "exports", 1) is None


@pytest.mark.django_db
def test_idempotency_key_returns_first_record(usage_enabled, subscription, api_calls):
    first = usage.record_usage(subscription, "api_calls", 5, idempotency_key="req-1")
    again = usage.record_usage(subscription, "api_calls", 9, idempotency_key="req-1")

    assert again.pk == first.pk
    assert again.quantity == 5
    assert first.period_end == subscription.current_period_end


@pytest.mark.django_db
def test_summary_totals_current_period(usage_enabled, subscription, api_calls):
    usage.record_usage(subscription, "api_calls", 150)
    usage.record_usage(subscription, "api_calls", 50)

    [row] = usage.get_usage_summary(subscription)

    assert row["meter_code"] == "api_calls"
    assert row["quantity"] == 200
    assert row["estimated_charge"] == Decimal("2.00")


@pytest.mark.django_db
def test_pending_charges_cover_closed_unbilled_periods(usage_enabled, subscription, api_calls):
    now = timezone.now()
    SubscriptionUsage.objects.create(subscription=subscription, meter=api_calls, quantity=300,
                                     period_start=now - timedelta(days=40), period_end=now - timedelta(days=10))
    SubscriptionUsage.objects.create(subscription=subscription, meter=api_calls, quantity=100, billed=True,
                                     period_start=now - timedelta(days=40), period_end=now - timedelta(days=10))
    usage.record_usage(subscription, "api_calls", 999)

    assert usage.calculate_pending_charges(subscription) == Decimal("3.00")


@pytest.mark.django_db
def test_sync_reports_each_record_once(usage_enabled, subscription, api_calls):
    gateway = FakeCardGateway()
    gateway.price_items["price_api"] = "si_api"
    record = usage.record_usage(subscription, "api_calls", 7)

    assert usage.sync_to_stripe(subscription, gateway) == 1
    assert usage.sync_to_stripe(subscription, gateway) == 0

    assert gateway.usage_reports == [("si_api", 7, f"usage-{record.pk}")]
    record.refresh_from_db()
    assert record.stripe_usage_record_id == "mbur_1"
    assert record.synced_at is not None


@pytest.mark.django_db
def test_sync_skips_meters_without_subscription_item(usage_enabled, subscription, api_calls):
    gateway = FakeCardGateway()
    usage.record_usage(subscription, "api_calls", 7)

    assert usage.sync_to_stripe(subscription, gateway) == 0
    assert SubscriptionUsage.objects.filter(synced_at__isnull=True).count() == 1


@pytest.mark.django_db
def test_sync_ignores_non_stripe_subscriptions(usage_enabled, workspace, pro_package, api_calls):
    crypto = make_subscription(workspace, pro_package, gateway="btcpay", gateway_subscription_id="sub_btc")
    usage.record_usage(crypto, "api_calls", 3)

    assert usage.sync_to_stripe(crypto, FakeCardGateway()) == 0


@pytest.mark.django_db
def test_sync_all_isolates_gateway_failures(usage_enabled, subscription, api_calls):
    gateway = FakeCardGateway(error=GatewayConnectionError("timeout"))
    gateway.price_items["price_api"] = "si_api"
    usage.record_usage(subscription, "api_calls", 2)

    stats = usage.sync_all(gateway=gateway)

    assert stats == {"subscriptions": 1, "synced": 0, "errors": 1}
    assert SubscriptionUsage.objects.get().synced_at is None


@pytest.mark.django_db
def test_sync_all_dry_run_counts_pending(usage_enabled, subscription, api_calls):
    gateway = FakeCardGateway()
    gateway.price_items["price_api"] = "si_api"
    usage.record_usage(subscription, "api_calls", 2)
    usage.record_usage(subscription, "api_calls", 4)

    stats = usage.sync_all(subscription_id=subscription.pk, gateway=gateway, dry_run=True)

    assert stats == {"subscriptions": 1, "synced": 2, "errors": 0}
    assert gateway.usage_reports == []


@pytest.mark.django_db
def test_sync_all_does_nothing_when_disabled(subscription):
    assert usage.sync_all(gateway=FakeCardGateway()) == {"subscriptions": 0, "synced": 0, "errors": 0}
