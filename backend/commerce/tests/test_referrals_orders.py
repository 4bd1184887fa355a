from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from commerce.exceptions import PayoutError
from commerce.models import (
    Coupon,
    CouponUsage,
    Invoice,
    Order,
    OrderItem,
    Payment,
    Referral,
    ReferralCommission,
    ReferralPayout,
    WorkspacePackage,
)
from commerce.services import orders, referrals

from .conftest import create_user


@pytest.fixture
def referrer(db):
    return create_user("referrer")


@pytest.fixture
def referral(referrer, owner):
    return Referral.objects.create(referrer=referrer, referee=owner, code="FRIEND",
                                   status=Referral.Status.CONVERTED)


def make_order(workspace, package, user=None, gateway="stripe", subtotal="100.00", discount="0.00", **extra):
    order = Order.objects.create(
        workspace=workspace,
        user=user,
        gateway=gateway,
        subtotal=Decimal(subtotal),
        discount_amount=Decimal(discount),
        total=Decimal(subtotal) - Decimal(discount),
        currency="GBP",
        **extra,
    )
    OrderItem.objects.create(order=order, package=package, name=package.name, unit_price=Decimal(subtotal),
                             line_total=Decimal(subtotal))
    return order


@pytest.mark.django_db
def test_fulfil_order_invoices_grants_and_credits_referrer(workspace, owner, pro_package, referral):
    coupon = Coupon.objects.create(code="TENOFF", type=Coupon.Type.FIXED_AMOUNT, value=Decimal("10.00"))
    order = make_order(workspace, pro_package, user=owner, discount="10.00", coupon=coupon)
    payment = Payment.objects.create(workspace=workspace, gateway="stripe", gateway_payment_id="pi_order",
                                     amount=Decimal("90.00"), currency="GBP", status=Payment.Status.SUCCEEDED)

    invoice = orders.fulfil_order(order, payment)

    order.refresh_from_db()
    assert order.status == Order.Status.PAID
    assert invoice.status == Invoice.Status.PAID
    assert invoice.total == Decimal("90.00")
    payment.refresh_from_db()
    assert payment.order == order and payment.invoice == invoice
    assert WorkspacePackage.objects.get(workspace=workspace, package=pro_package).status == "active"
    assert CouponUsage.objects.filter(coupon=coupon, order=order).exists()

    commission = ReferralCommission.objects.get(order=order)
    assert commission.order_amount == Decimal("90.00")
    assert commission.commission_amount == Decimal("9.00")
    assert commission.matures_at - timezone.now() > timedelta(days=89)
    referral.refresh_from_db()
    assert referral.status == Referral.Status.QUALIFIED
    assert referral.qualified_at is not None


@pytest.mark.django_db
def test_fulfilling_twice_keeps_one_invoice(workspace, owner, basic_package):
    order = make_order(workspace, basic_package, user=owner)

    first = orders.fulfil_order(order)
    second = orders.fulfil_order(order)

    assert first == second
    assert Invoice.objects.filter(order=order).count() == 1


@pytest.mark.django_db
def test_crypto_commission_matures_sooner_at_custom_rate(workspace, owner, basic_package, referral):
    referral.commission_rate = Decimal("25.00")
    referral.save()
    order = make_order(workspace, basic_package, user=owner, gateway="btcpay", subtotal="40.00")

    orders.fulfil_order(order)

    commission = ReferralCommission.objects.get(order=order)
    assert commission.commission_amount == Decimal("10.00")
    assert commission.matures_at - timezone.now() < timedelta(days=15)


@pytest.mark.django_db
def test_no_commission_without_referral(workspace, owner, basic_package):
    order = make_order(workspace, basic_package, user=owner)

    orders.fulfil_order(order)

    assert not ReferralCommission.objects.exists()


@pytest.mark.django_db
def test_commissions_mature_after_holding_period(workspace, owner, basic_package, referral):
    orders.fulfil_order(make_order(workspace, basic_package, user=owner, gateway="btcpay"))
    later = timezone.now() + timedelta(days=15)

    assert referrals.mature_ready_commissions(now=timezone.now()) == 0
    assert referrals.mature_ready_commissions(now=later, dry_run=True) == 1
    assert referrals.mature_ready_commissions(now=later) == 1

    commission = ReferralCommission.objects.get()
    assert commission.status == ReferralCommission.Status.MATURED
    assert referrals.get_available_balance(referral.referrer) == Decimal("10.00")
    assert referrals.get_pending_balance(referral.referrer) == Decimal("0.00")


@pytest.fixture
def matured_balance(workspace, owner, basic_package, referral):
    orders.fulfil_order(make_order(workspace, basic_package, user=owner, gateway="btcpay", subtotal="150.00"))
    referrals.mature_ready_commissions(now=timezone.now() + timedelta(days=15))
    return referral.referrer


@pytest.mark.parametrize(
    "method, amount, address, message",
    [
        ("paypal", None, None, "Unsupported payout method"),
        ("btc", Decimal("5.00"), "bc1qexample", "Minimum payout amount"),
        ("account_credit", Decimal("99.00"), None, "exceeds available balance"),
        ("btc", Decimal("15.00"), None, "BTC address is required"),
    ],
)
@pytest.mark.django_db
def test_payout_rejections(matured_balance, method, amount, address, message):
    with pytest.raises(PayoutError, match=message):
        referrals.request_payout(matured_balance, method, amount, btc_address=address)

    assert not ReferralPayout.objects.exists()


@pytest.mark.django_db
def test_payout_claims_matured_commissions(matured_balance):
    payout = referrals.request_payout(matured_balance, "btc", btc_address="bc1qexample")

    assert payout.amount == Decimal("15.00")
    assert payout.payout_number.startswith("PAY-")
    assert ReferralCommission.objects.get().payout == payout
    assert referrals.get_available_balance(matured_balance) == Decimal("0.00")


@pytest.mark.django_db
def test_refund_cancels_pending_commission(workspace, owner, basic_package, referral):
    order = make_order(workspace, basic_package, user=owner)
    orders.fulfil_order(order)

    commission = referrals.cancel_commission_for_order(order)

    assert commission.status == ReferralCommission.Status.CANCELLED
    assert commission.notes == "Order refunded"


@pytest.mark.django_db
def test_failed_status_only_applies_to_unpaid_orders(workspace, basic_package):
    pending = make_order(workspace, basic_package)
    assert orders.mark_processing(pending).status == Order.Status.PROCESSING
    assert orders.mark_failed(pending, "card declined").failure_reason == "card declined"

    paid = make_order(workspace, basic_package)
    orders.fulfil_order(paid)
    assert orders.mark_failed(paid, "late failure").status == Order.Status.PAID


@pytest.mark.django_db
def test_cancel_expired_orders(workspace, basic_package):
    stale = make_order(workspace, basic_package)
    fresh = make_order(workspace, basic_package)
    Order.objects.filter(pk=stale.pk).update(created_at=timezone.now() - timedelta(hours=2))

    assert orders.cancel_expired_orders(ttl_minutes=60, dry_run=True) == {"selected": 1, "cancelled": 0, "failed": 0}
    assert orders.cancel_expired_orders(ttl_minutes=60) == {"selected": 1, "cancelled": 1, "failed": 0}

    stale.refresh_from_db()
    fresh.refresh_from_db()
    assert stale.status == Order.Status.CANCELLED
    assert stale.failure_reason == "Checkout session expired"
    assert fresh.status == Order.Status.PENDING
