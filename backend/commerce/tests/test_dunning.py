from datetime import timedelta
from decimal import Decimal
from io import StringIO

import pytest
from django.core.management import CommandError, call_command
from django.utils import timezone

from commerce.conf import DunningConfig
from commerce.exceptions import GatewayConnectionError
from commerce.models import Invoice, PaymentMethod, Subscription, WorkspacePackage
from commerce.services.dunning import SKIPPED, STAGES, build_dunning_service
from commerce.services.entitlements import DatabaseEntitlementService

from .conftest import FakeCardGateway, make_subscription


def make_invoice(workspace, subscription=None, **overrides):
    fields = {
        "workspace": workspace,
        "subscription": subscription,
        "invoice_number": f"INV-TEST-{Invoice.objects.count() + 1:04d}",
        "status": Invoice.Status.OVERDUE,
        "currency": "GBP",
        "subtotal": Decimal("20.00"),
        "total": Decimal("20.00"),
        "due_date": timezone.now().date() - timedelta(days=2),
        "charge_attempts": 1,
        "last_charge_attempt": timezone.now() - timedelta(days=2),
        "next_charge_attempt": timezone.now() - timedelta(minutes=5),
    }
    fields.update(overrides)
    return Invoice.objects.create(**fields)


def make_card(workspace, gateway="stripe"):
    return PaymentMethod.objects.create(
        workspace=workspace,
        gateway=gateway,
        gateway_payment_method_id=f"pm_{gateway}_{workspace.pk.hex[:6]}",
        is_default=True,
    )


def service_with(gateway, **config):
    return build_dunning_service(DunningConfig(**config), gateway_resolver=lambda name: gateway)


def test_retry_schedule_follows_configured_days():
    service = service_with(FakeCardGateway())
    now = timezone.now()

    assert service.calculate_next_retry(1, now) == now + timedelta(hours=24)
    assert service.calculate_next_retry(2, now) == now + timedelta(days=3)
    assert service.calculate_next_retry(3, now) is None
    assert service.calculate_next_retry(4, now) is None


def test_shorter_schedule_stops_after_its_last_day():
    service = service_with(FakeCardGateway(), retry_days=(2, 5))
    now = timezone.now()

    assert service.calculate_next_retry(1, now) == now + timedelta(hours=48)
    assert service.calculate_next_retry(2, now) is None


def test_initial_retry_respects_longer_grace_period():
    service = service_with(FakeCardGateway(), initial_grace_hours=72)
    now = timezone.now()

    assert service.calculate_initial_retry(now) == now + timedelta(hours=72)


@pytest.mark.django_db
def test_payment_failure_schedules_retry_and_marks_past_due(workspace, pro_package):
    subscription = make_subscription(workspace, pro_package)
    invoice = make_invoice(workspace, subscription, status=Invoice.Status.PENDING, charge_attempts=0,
                           next_charge_attempt=None, last_charge_attempt=None)
    service = service_with(FakeCardGateway())

    before = timezone.now()
    updated = service.handle_payment_failure(invoice)

    assert updated.charge_attempts == 1
    assert updated.status == Invoice.Status.OVERDUE
    assert updated.next_charge_attempt >= before + timedelta(hours=24)
    subscription.refresh_from_db()
    assert subscription.status == Subscription.Status.PAST_DUE


@pytest.mark.django_db
def test_successful_retry_recovers_subscription(workspace, pro_package, card_gateway):
    subscription = make_subscription(workspace, pro_package, status=Subscription.Status.PAST_DUE)
    invoice = make_invoice(workspace, subscription)
    make_card(workspace)

    report = service_with(card_gateway).run_stage("retry")

    assert (report.selected, report.succeeded, report.failed) == (1, 1, 0)
    invoice.refresh_from_db()
    assert invoice.status == Invoice.Status.PAID
    assert invoice.next_charge_attempt is None
    assert invoice.payment is not None
    subscription.refresh_from_db()
    assert subscription.status == Subscription.Status.ACTIVE
    assert card_gateway.charges[0][1] == Decimal("20.00")


@pytest.mark.django_db
def test_declined_retry_advances_schedule(workspace, pro_package, failing_gateway):
    subscription = make_subscription(workspace, pro_package, status=Subscription.Status.PAST_DUE)
    invoice = make_invoice(workspace, subscription)
    make_card(workspace)

    before = timezone.now()
    report = service_with(failing_gateway).run_stage("retry")

    assert report.failed == 1
    invoice.refresh_from_db()
    assert invoice.charge_attempts == 2
    assert invoice.status == Invoice.Status.OVERDUE
    assert invoice.next_charge_attempt >= before + timedelta(days=3)


@pytest.mark.django_db
def test_last_failed_retry_exhausts_schedule(workspace, pro_package, failing_gateway):
    subscription = make_subscription(workspace, pro_package, status=Subscription.Status.PAST_DUE)
    invoice = make_invoice(workspace, subscription, charge_attempts=2)
    make_card(workspace)

    service_with(failing_gateway).run_stage("retry")

    invoice.refresh_from_db()
    assert invoice.charge_attempts == 3
    assert invoice.next_charge_attempt is None


@pytest.mark.django_db
def test_invoice_at_max_attempts_is_not_charged_again(workspace, pro_package, card_gateway):
    subscription = make_subscription(workspace, pro_package, status=Subscription.Status.PAST_DUE)
    invoice = make_invoice(workspace, subscription, charge_attempts=3)
    make_card(workspace)
    service = service_with(card_gateway)

    assert list(service.select_retry_invoices()) == []
    report = service.run_stage("retry")

    assert report.selected == 0
    assert card_gateway.charges == []
    invoice.refresh_from_db()
    assert invoice.charge_attempts == 3
    assert list(service.select_pausable_subscriptions()) == [subscription]


@pytest.mark.django_db
def test_retry_without_payment_method_counts_as_failure(workspace, pro_package, card_gateway):
    subscription = make_subscription(workspace, pro_package, status=Subscription.Status.PAST_DUE)
    invoice = make_invoice(workspace, subscription)

    report = service_with(card_gateway).run_stage("retry")

    assert report.failed == 1
    assert card_gateway.charges == []
    invoice.refresh_from_db()
    assert invoice.charge_attempts == 2


@pytest.mark.django_db
def test_connection_error_defers_without_consuming_attempt(workspace, pro_package):
    subscription = make_subscription(workspace, pro_package, status=Subscription.Status.PAST_DUE)
    invoice = make_invoice(workspace, subscription)
    scheduled = invoice.next_charge_attempt
    make_card(workspace)
    gateway = FakeCardGateway(error=GatewayConnectionError("timeout"))

    report = service_with(gateway).run_stage("retry")

    assert (report.skipped, report.failed) == (1, 0)
    invoice.refresh_from_db()
    assert invoice.charge_attempts == 1
    assert invoice.next_charge_attempt == scheduled


@pytest.mark.django_db
def test_crypto_invoice_is_skipped_and_rescheduled(workspace, pro_package, card_gateway):
    subscription = make_subscription(workspace, pro_package, gateway="btcpay", status=Subscription.Status.PAST_DUE)
    invoice = make_invoice(workspace, subscription)

    service = service_with(card_gateway)
    assert service.retry_payment(invoice) == SKIPPED

    invoice.refresh_from_db()
    assert invoice.charge_attempts == 2
    assert invoice.next_charge_attempt > timezone.now()
    assert card_gateway.charges == []


@pytest.mark.django_db
def test_pause_stage_pauses_subscription_with_exhausted_invoice(workspace, pro_package, card_gateway):
    subscription = make_subscription(workspace, pro_package, status=Subscription.Status.PAST_DUE)
    make_invoice(workspace, subscription, charge_attempts=4, next_charge_attempt=None)

    report = service_with(card_gateway).run_stage("pause")

    assert report.succeeded == 1
    subscription.refresh_from_db()
    assert subscription.status == Subscription.Status.PAUSED
    assert subscription.paused_at is not None
    assert subscription.pause_count == 1


@pytest.mark.django_db
def test_pause_waits_a_day_after_last_attempt(workspace, pro_package, card_gateway):
    subscription = make_subscription(workspace, pro_package, status=Subscription.Status.PAST_DUE)
    make_invoice(workspace, subscription, charge_attempts=4, next_charge_attempt=None,
                 last_charge_attempt=timezone.now() - timedelta(hours=2))

    report = service_with(card_gateway).run_stage("pause")

    assert report.selected == 0


@pytest.mark.django_db
def test_suspend_stage_is_idempotent(workspace, pro_package, card_gateway):
    DatabaseEntitlementService().grant_package(workspace, pro_package, source="stripe")
    make_subscription(workspace, pro_package, status=Subscription.Status.PAUSED,
                      paused_at=timezone.now() - timedelta(days=15))
    service = service_with(card_gateway)

    first = service.run_stage("suspend")
    second = service.run_stage("suspend")

    assert first.succeeded == 1
    assert second.selected == 0
    workspace.refresh_from_db()
    assert workspace.is_active is False
    assert workspace.suspension_reason == "dunning"
    assert WorkspacePackage.objects.get(workspace=workspace).status == WorkspacePackage.Status.SUSPENDED


@pytest.mark.django_db
def test_cancel_stage_ends_long_paused_subscription(workspace, pro_package, card_gateway):
    DatabaseEntitlementService().grant_package(workspace, pro_package, source="stripe")
    subscription = make_subscription(workspace, pro_package, status=Subscription.Status.PAUSED,
                                     paused_at=timezone.now() - timedelta(days=31))

    report = service_with(card_gateway).run_stage("cancel")

    assert report.succeeded == 1
    subscription.refresh_from_db()
    assert subscription.status == Subscription.Status.EXPIRED
    assert subscription.cancellation_reason == "Non-payment"
    assert subscription.ended_at is not None
    assert WorkspacePackage.objects.get(workspace=workspace).status == WorkspacePackage.Status.REVOKED


@pytest.mark.django_db
def test_expire_stage_ends_lapsed_cancelled_subscription(workspace, pro_package, card_gateway):
    now = timezone.now()
    subscription = make_subscription(
        workspace,
        pro_package,
        cancelled_at=now - timedelta(days=20),
        cancel_at_period_end=True,
        current_period_start=now - timedelta(days=31),
        current_period_end=now - timedelta(days=1),
    )

    report = service_with(card_gateway).run_stage("expire")

    assert report.succeeded == 1
    subscription.refresh_from_db()
    assert subscription.status == Subscription.Status.EXPIRED


@pytest.mark.django_db
def test_dry_run_reports_same_selection_without_changes(workspace, pro_package, failing_gateway):
    paused = make_subscription(workspace, pro_package, status=Subscription.Status.PAUSED,
                               paused_at=timezone.now() - timedelta(days=15))
    invoice = make_invoice(workspace, paused, status=Invoice.Status.PENDING)
    make_card(workspace)
    service = service_with(failing_gateway)

    dry = service.run(dry_run=True)

    assert [stage.stage for stage in dry.stages] == list(STAGES)
    assert all(stage.dry_run for stage in dry.stages)
    assert dry.totals()["succeeded"] == 0
    invoice.refresh_from_db()
    paused.refresh_from_db()
    workspace.refresh_from_db()
    assert invoice.charge_attempts == 1
    assert paused.status == Subscription.Status.PAUSED
    assert workspace.is_active
    assert failing_gateway.charges == []

    real = service.run()
    assert [stage.selected for stage in real.stages] == [stage.selected for stage in dry.stages]


@pytest.mark.django_db
def test_disabled_dunning_does_nothing(workspace, pro_package, card_gateway):
    subscription = make_subscription(workspace, pro_package, status=Subscription.Status.PAST_DUE)
    make_invoice(workspace, subscription)

    report = service_with(card_gateway, enabled=False).run()

    assert report.enabled is False
    assert report.stages == []


@pytest.mark.django_db
def test_unknown_stage_is_rejected(card_gateway):
    with pytest.raises(ValueError):
        service_with(card_gateway).run_stage("refund")


@pytest.mark.django_db
def test_dunning_status_reports_retry_stage(workspace, pro_package, card_gateway):
    subscription = make_subscription(workspace, pro_package, status=Subscription.Status.PAST_DUE)
    invoice = make_invoice(workspace, subscription)

    status = service_with(card_gateway).get_dunning_status(subscription)

    assert status["stage"] == "retry"
    assert status["next_action"] == "retry"
    assert status["days_overdue"] == 2
    assert status["next_action_date"] == invoice.next_charge_attempt


@pytest.mark.django_db
def test_process_dunning_command_dry_run_lists_items(workspace, pro_package):
    paused = make_subscription(workspace, pro_package, status=Subscription.Status.PAUSED,
                               paused_at=timezone.now() - timedelta(days=15))
    out = StringIO()

    call_command("process_dunning", "--dry-run", "--stage", "suspend", stdout=out)

    output = out.getvalue()
    assert "DRY RUN MODE" in output
    assert "suspend" in output
    assert str(paused.pk) in output
    workspace.refresh_from_db()
    assert workspace.is_active


@pytest.mark.django_db
def test_process_dunning_command_fails_on_item_errors(workspace, pro_package):
    subscription = make_subscription(workspace, pro_package, status=Subscription.Status.PAST_DUE)
    make_invoice(workspace, subscription)

    with pytest.raises(CommandError):
        call_command("process_dunning", "--stage", "retry", stdout=StringIO())
