from datetime import datetime, timedelta
from datetime import timezone as dt_timezone
from decimal import Decimal

import pytest
from django.utils import timezone

from commerce.exceptions import PauseLimitExceeded, SubscriptionError
from commerce.models import CreditNote, Invoice, Subscription, WorkspacePackage
from commerce.services.collaborators import build_subscription_service
from commerce.services.proration import prorate_period
from commerce.services.entitlements import DatabaseEntitlementService
from commerce.services.subscriptions import LAST_RENEWAL_REMINDER, PENDING_PLAN_CHANGE, SubscriptionService

from .conftest import RecordingNotifier, make_subscription

PERIOD_START = datetime(2024, 1, 1, tzinfo=dt_timezone.utc)
PERIOD_END = datetime(2024, 1, 31, tzinfo=dt_timezone.utc)


def test_upgrade_mid_period_credits_unused_time():
    result = prorate_period(PERIOD_START, PERIOD_END, "10.00", "20.00", now=datetime(2024, 1, 11, tzinfo=dt_timezone.utc))

    assert result.days_remaining == 20
    assert result.total_period_days == 30
    assert result.credit_amount == Decimal("6.67")
    assert result.prorated_new_plan_cost == Decimal("13.33")
    assert result.net_amount == Decimal("6.66")
    assert result.is_upgrade
    assert result.requires_payment
    assert result.amount_due == Decimal("6.66")


def test_downgrade_produces_credit_balance():
    result = prorate_period(PERIOD_START, PERIOD_END, "20.00", "10.00", now=datetime(2024, 1, 11, tzinfo=dt_timezone.utc))

    assert result.net_amount == Decimal("-6.66")
    assert result.has_credit
    assert result.credit_balance == Decimal("6.66")
    assert result.amount_due == Decimal("0.00")


def test_partial_days_are_truncated():
    now = datetime(2024, 1, 11, 18, 0, tzinfo=dt_timezone.utc)

    result = prorate_period(PERIOD_START, PERIOD_END, "10.00", "20.00", now=now)

    assert result.days_remaining == 19


def test_period_already_over_charges_nothing():
    result = prorate_period(PERIOD_START, PERIOD_END, "10.00", "20.00", now=datetime(2024, 2, 5, tzinfo=dt_timezone.utc))

    assert result.days_remaining == 0
    assert result.net_amount == Decimal("0.00")
    assert result.used_percentage == Decimal("1.0000")


def test_degenerate_period_uses_cycle_length():
    result = prorate_period(PERIOD_START, PERIOD_START, "10.00", "20.00", now=PERIOD_START, billing_cycle="yearly")

    assert result.total_period_days == 365


def test_proration_to_dict_is_serialisable():
    payload = prorate_period(PERIOD_START, PERIOD_END, "10.00", "20.00",
                             now=datetime(2024, 1, 11, tzinfo=dt_timezone.utc), currency="gbp").to_dict()

    assert payload["currency"] == "GBP"
    assert payload["net_amount"] == "6.66"
    assert payload["used_percentage"] == "33.33"


@pytest.fixture
def service(card_gateway):
    return build_subscription_service(gateway_resolver=lambda name: card_gateway)


@pytest.mark.django_db
def test_create_grants_package(service, workspace, pro_package):
    subscription = service.create(workspace, pro_package, "stripe", trial_days=7)

    assert subscription.status == Subscription.Status.TRIALING
    assert subscription.workspace_package.status == WorkspacePackage.Status.ACTIVE
    assert (subscription.current_period_end - subscription.current_period_start).days == 30


@pytest.mark.django_db
def test_cancel_at_period_end_keeps_access(service, workspace, pro_package):
    subscription = service.create(workspace, pro_package, "stripe")

    cancelled = service.cancel(subscription, reason="too expensive")

    assert cancelled.status == Subscription.Status.ACTIVE
    assert cancelled.cancel_at_period_end
    assert cancelled.on_grace_period()
    assert WorkspacePackage.objects.get(workspace=workspace).status == WorkspacePackage.Status.ACTIVE


@pytest.mark.django_db
def test_cancel_immediately_revokes_and_resume_restores(service, workspace, pro_package):
    subscription = service.create(workspace, pro_package, "stripe")

    cancelled = service.cancel(subscription, immediately=True)
    assert cancelled.status == Subscription.Status.CANCELLED
    assert WorkspacePackage.objects.get(workspace=workspace).status == WorkspacePackage.Status.REVOKED

    resumed = service.resume(cancelled)
    assert resumed.status == Subscription.Status.ACTIVE
    assert resumed.cancelled_at is None
    assert WorkspacePackage.objects.get(workspace=workspace).status == WorkspacePackage.Status.ACTIVE


@pytest.mark.django_db
def test_resume_after_period_end_is_rejected(service, workspace, pro_package):
    subscription = make_subscription(
        workspace,
        pro_package,
        cancelled_at=timezone.now() - timedelta(days=5),
        current_period_end=timezone.now() - timedelta(days=1),
    )

    with pytest.raises(SubscriptionError):
        service.resume(subscription)


@pytest.mark.django_db
def test_pause_limit_applies_unless_forced(service, workspace, pro_package, settings):
    settings.COMMERCE_SUBSCRIPTIONS = {"max_pause_cycles": 1}
    subscription = make_subscription(workspace, pro_package, pause_count=1)

    with pytest.raises(PauseLimitExceeded):
        service.pause(subscription)

    paused = service.pause(subscription, force=True)
    assert paused.status == Subscription.Status.PAUSED
    assert paused.pause_count == 2


@pytest.mark.django_db
def test_renew_clears_dunning_state(service, workspace, pro_package):
    service.entitlements.suspend_workspace(workspace, reason="dunning")
    subscription = make_subscription(workspace, pro_package, status=Subscription.Status.PAUSED,
                                     paused_at=timezone.now())

    renewed = service.renew(subscription)

    assert renewed.status == Subscription.Status.ACTIVE
    assert renewed.paused_at is None
    workspace.refresh_from_db()
    assert workspace.is_active


@pytest.mark.django_db
def test_immediate_btcpay_upgrade_invoices_the_difference(service, workspace, basic_package, pro_package):
    subscription = make_subscription(workspace, basic_package, gateway="btcpay")

    result = service.change_plan(subscription, pro_package, immediate=True)

    assert result.immediate
    assert result.subscription.package == pro_package
    assert result.proration.is_upgrade
    assert result.invoice is not None
    assert result.invoice.status == Invoice.Status.PENDING
    assert result.invoice.subtotal == result.proration.amount_due
    assert service.entitlements.has_package(workspace, "pro")


@pytest.mark.django_db
def test_downgrade_issues_credit_note(service, workspace, basic_package, pro_package):
    subscription = make_subscription(workspace, pro_package, gateway="btcpay")

    result = service.change_plan(subscription, basic_package, immediate=True)

    assert result.invoice is None
    note = result.credit_note
    assert note.reason == CreditNote.Reason.PLAN_DOWNGRADE
    assert note.status == CreditNote.Status.ISSUED
    assert note.amount == result.proration.credit_balance
    assert note.subscription == subscription
    assert "credit_balance" not in result.subscription.metadata


@pytest.mark.django_db
def test_downgrade_credit_is_spent_on_the_next_upgrade_invoice(service, workspace, basic_package, pro_package):
    subscription = make_subscription(workspace, pro_package, gateway="btcpay")
    note = service.change_plan(subscription, basic_package, immediate=True).credit_note

    invoice = service.change_plan(subscription, pro_package, immediate=True).invoice

    applied = min(note.amount, invoice.total)
    assert invoice.credit_applied == applied
    assert invoice.amount_due == invoice.total - applied
    note.refresh_from_db()
    assert note.amount_used == applied
    assert note.applied_to_invoice == invoice


@pytest.mark.django_db
def test_scheduled_plan_change_applies_at_period_end(service, workspace, basic_package, pro_package):
    subscription = make_subscription(workspace, basic_package)

    result = service.change_plan(subscription, pro_package)
    assert result.immediate is False
    assert result.subscription.metadata[PENDING_PLAN_CHANGE]["to_package_code"] == "pro"

    stats = service.apply_scheduled_plan_changes(now=subscription.current_period_end + timedelta(minutes=1))

    assert stats["applied"] == 1
    subscription.refresh_from_db()
    assert subscription.package == pro_package
    assert PENDING_PLAN_CHANGE not in subscription.metadata


@pytest.mark.django_db
def test_change_to_same_plan_is_rejected(service, workspace, pro_package):
    subscription = make_subscription(workspace, pro_package)

    with pytest.raises(SubscriptionError):
        service.change_plan(subscription, pro_package, immediate=True)


@pytest.mark.django_db
def test_process_expired_only_touches_lapsed_cancellations(service, workspace, pro_package):
    now = timezone.now()
    lapsed = make_subscription(workspace, pro_package, cancelled_at=now - timedelta(days=3),
                               current_period_end=now - timedelta(hours=1))
    running = make_subscription(workspace, pro_package)

    stats = service.process_expired()

    assert stats == {"expired": 1, "failed": 0}
    lapsed.refresh_from_db()
    running.refresh_from_db()
    assert lapsed.status == Subscription.Status.EXPIRED
    assert running.status == Subscription.Status.ACTIVE


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def reminder_service(notifier, card_gateway):
    return SubscriptionService(DatabaseEntitlementService(), notifier, gateway_resolver=lambda name: card_gateway)


@pytest.mark.django_db
def test_renewal_reminders_go_out_once_per_window(reminder_service, notifier, workspace, owner, pro_package):
    now = timezone.now()
    due = make_subscription(workspace, pro_package, current_period_end=now + timedelta(days=3))
    make_subscription(workspace, pro_package, current_period_end=now + timedelta(days=20))
    make_subscription(workspace, pro_package, current_period_end=now + timedelta(days=2), cancelled_at=now)

    first = reminder_service.send_renewal_reminders(days=7, now=now)
    second = reminder_service.send_renewal_reminders(days=7, now=now + timedelta(hours=1))

    assert first == {"selected": 1, "sent": 1, "skipped": 0, "failed": 0}
    assert second["sent"] == 0
    user, template, context = notifier.sent[0]
    assert (user, template) == (owner, "upcoming_renewal")
    assert context["subscription_id"] == due.pk
    assert context["amount"] == "20.00"
    due.refresh_from_db()
    assert due.metadata[LAST_RENEWAL_REMINDER] == now.isoformat()


@pytest.mark.django_db
def test_renewal_reminder_dry_run_sends_nothing(reminder_service, notifier, workspace, pro_package):
    subscription = make_subscription(workspace, pro_package, current_period_end=timezone.now() + timedelta(days=1))

    stats = reminder_service.send_renewal_reminders(days=7, dry_run=True)

    assert stats["selected"] == 1
    assert stats["sent"] == 0
    assert notifier.sent == []
    subscription.refresh_from_db()
    assert LAST_RENEWAL_REMINDER not in subscription.metadata


@pytest.mark.django_db
def test_stale_reminder_does_not_block_the_next_period(reminder_service, notifier, workspace, pro_package):
    now = timezone.now()
    make_subscription(workspace, pro_package, current_period_end=now + timedelta(days=2),
                      metadata={LAST_RENEWAL_REMINDER: (now - timedelta(days=30)).isoformat()})

    assert reminder_service.send_renewal_reminders(days=7, now=now)["sent"] == 1
