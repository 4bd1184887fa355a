import hashlib
import hmac
import itertools
import json
from datetime import timedelta
from decimal import Decimal

import pytest
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.utils import timezone
from rest_framework.test import APIClient

from commerce.exceptions import GatewayError
from commerce.models import Package, Payment, Subscription
from commerce.services.gateways import BTCPayGateway
from workspace.models import Membership, Workspace

BTCPAY_SECRET = "btcpay-webhook-secret"

_payment_ids = itertools.count(1)


def create_user(username, **extra):
    return get_user_model().objects.create_user(
        username=username,
        email=f"{username}@example.com",
        password="pass1234",
        **extra,
    )


def auth_client(user):
    client = APIClient()
    client.force_authenticate(user=user)
    return client


def add_member(workspace, user, role="member"):
    return Membership.objects.create(workspace=workspace, user=user, role=role, is_active=True)


def make_subscription(workspace, package, **overrides):
    now = timezone.now()
    fields = {
        "workspace": workspace,
        "package": package,
        "gateway": "stripe",
        "status": Subscription.Status.ACTIVE,
        "current_period_start": now - timedelta(days=10),
        "current_period_end": now + timedelta(days=20),
    }
    fields.update(overrides)
    return Subscription.objects.create(**fields)


def sign_btcpay(body: bytes, secret: str = BTCPAY_SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.status_code = status_code
        self._payload = payload
        self.content = json.dumps(payload).encode("utf-8") if payload is not None else b""
        self.headers = {}

    def json(self):
        return self._payload


class FakeSession:
    """Stands in for ``requests.Session``; answers every call with one canned invoice."""

    def __init__(self, invoice=None, status_code=200):
        self.invoice = invoice or {}
        self.status_code = status_code
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        return FakeResponse(self.invoice, self.status_code)


class FakeCardGateway:
    """Stripe-like gateway whose charge outcome is set per test."""

    name = "stripe"

    def __init__(self, outcome=Payment.Status.SUCCEEDED, error=None):
        self.outcome = outcome
        self.error = error
        self.charges = []
        self.usage_reports = []
        self.price_items = {}
        self.enabled = True

    def is_enabled(self):
        return self.enabled

    def charge_payment_method(self, payment_method, amount, currency, metadata=None):
        self.charges.append((payment_method.pk, Decimal(amount), currency, metadata))
        if self.error is not None:
            raise self.error
        return Payment.objects.create(
            workspace=payment_method.workspace,
            gateway="stripe",
            gateway_payment_id=f"pi_test_{next(_payment_ids)}",
            amount=amount,
            currency=currency,
            status=self.outcome,
            paid_at=timezone.now(),
        )

    def subscription_item_for_price(self, subscription, price_id):
        return self.price_items.get(price_id)

    def report_usage(self, subscription_item_id, quantity, timestamp=None, idempotency_key=None):
        if self.error is not None:
            raise self.error
        self.usage_reports.append((subscription_item_id, quantity, idempotency_key))
        return f"mbur_{len(self.usage_reports)}"

    def cancel_subscription(self, subscription, immediately=False):
        return None

    def pause_subscription(self, subscription):
        return None

    def resume_subscription(self, subscription):
        return None

    def update_subscription(self, subscription, options):
        return subscription


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, user, template, context=None):
        self.sent.append((user, template, context or {}))

    def notify_workspace_owner(self, workspace, template, context=None):
        self.notify(workspace.owner, template, context)


@pytest.fixture(autouse=True)
def clear_cache():
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def owner(db):
    return create_user("owner")


@pytest.fixture
def workspace(owner):
    return Workspace.objects.create(name="Acme", owner=owner)


@pytest.fixture
def basic_package(db):
    return Package.objects.create(
        code="basic",
        name="Basic",
        monthly_price=Decimal("10.00"),
        yearly_price=Decimal("100.00"),
        currency="GBP",
        features={"seats": 3, "exports": False},
    )


@pytest.fixture
def pro_package(db):
    return Package.objects.create(
        code="pro",
        name="Pro",
        monthly_price=Decimal("20.00"),
        yearly_price=Decimal("200.00"),
        currency="GBP",
        features={"seats": 10, "exports": True},
    )


@pytest.fixture
def card_gateway():
    return FakeCardGateway()


@pytest.fixture
def btcpay_gateway_factory():
    def build(invoice=None, status_code=200):
        return BTCPayGateway(
            url="https://btcpay.example.com",
            store_id="store-1",
            api_key="api-key",
            webhook_secret=BTCPAY_SECRET,
            enabled=True,
            session=FakeSession(invoice, status_code),
        )

    return build


@pytest.fixture
def failing_gateway():
    return FakeCardGateway(error=GatewayError("declined upstream"))
