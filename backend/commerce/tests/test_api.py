from datetime import timedelta
from decimal import Decimal

import pytest
from django.test import override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from commerce.models import Invoice, Order, Subscription, WorkspacePackage
from workspace.models import Workspace

from .conftest import add_member, auth_client, create_user, make_subscription

API_SECRET = "provisioning-secret"


def workspace_url(workspace, suffix):
    return f"/api/commerce/workspaces/{workspace.pk}/{suffix}"


@pytest.fixture
def owner_client(owner):
    return auth_client(owner)


@pytest.fixture
def member_client(workspace):
    member = create_user("member")
    add_member(workspace, member, role="member")
    return auth_client(member)


# Access


@pytest.mark.django_db
def test_owner_membership_created_with_workspace(workspace, owner):
    membership = workspace.memberships.get()

    assert membership.user == owner
    assert membership.role == "owner"
    assert membership.can_manage_billing


@pytest.mark.django_db
def test_anonymous_requests_are_rejected(workspace):
    response = APIClient().get(workspace_url(workspace, "orders/"))

    assert response.status_code in (401, 403)


@pytest.mark.django_db
def test_non_member_gets_404(workspace):
    outsider = auth_client(create_user("outsider"))
    Workspace.objects.create(name="Other", owner=create_user("other-owner"))

    assert outsider.get(workspace_url(workspace, "orders/")).status_code == 404
    assert outsider.get(workspace_url(workspace, "subscription/")).status_code == 404


@pytest.mark.django_db
def test_member_can_view_but_not_manage(workspace, basic_package, pro_package, member_client):
    make_subscription(workspace, basic_package)

    assert member_client.get(workspace_url(workspace, "subscription/")).status_code == 200
    response = member_client.post(workspace_url(workspace, "subscription/plan-change/"), {"package": "pro"},
                                  format="json")
    assert response.status_code == 403


# Listings


@pytest.mark.django_db
def test_orders_are_scoped_and_filterable(workspace, owner, owner_client):
    Order.objects.create(workspace=workspace, status=Order.Status.PAID, total=Decimal("10.00"))
    Order.objects.create(workspace=workspace, status=Order.Status.PENDING, total=Decimal("20.00"))
    other = Workspace.objects.create(name="Other", owner=create_user("other-owner"))
    Order.objects.create(workspace=other, total=Decimal("99.00"))

    everything = owner_client.get(workspace_url(workspace, "orders/")).json()
    paid = owner_client.get(workspace_url(workspace, "orders/"), {"status": "PAID"}).json()

    assert everything["count"] == 2
    assert paid["count"] == 1
    assert paid["results"][0]["total"] == "10.00"


@pytest.mark.django_db
def test_invoices_and_payments_list(workspace, owner_client):
    assert owner_client.get(workspace_url(workspace, "invoices/")).json()["count"] == 0
    assert owner_client.get(workspace_url(workspace, "payments/")).json()["count"] == 0


@pytest.mark.django_db
def test_invoices_filter_unpaid(workspace, owner_client):
    Invoice.objects.create(workspace=workspace, invoice_number="INV-T-1", status=Invoice.Status.PAID)
    Invoice.objects.create(workspace=workspace, invoice_number="INV-T-2", status=Invoice.Status.OVERDUE,
                           total=Decimal("5.00"), amount_due=Decimal("5.00"))

    body = owner_client.get(workspace_url(workspace, "invoices/"), {"unpaid": "true"}).json()

    assert body["count"] == 1
    assert body["pages"] == 1
    assert body["results"][0]["invoice_number"] == "INV-T-2"


# Subscription


@pytest.mark.django_db
def test_subscription_absent_returns_204(workspace, owner_client):
    assert owner_client.get(workspace_url(workspace, "subscription/")).status_code == 204


@pytest.mark.django_db
def test_subscription_includes_dunning_status(workspace, basic_package, owner_client):
    make_subscription(workspace, basic_package)

    body = owner_client.get(workspace_url(workspace, "subscription/")).json()

    assert body["status"] == Subscription.Status.ACTIVE
    assert body["package"]["code"] == "basic"
    assert body["dunning"]["stage"] == "none"


@pytest.mark.django_db
def test_plan_change_preview(workspace, basic_package, pro_package, owner_client):
    make_subscription(workspace, basic_package)

    response = owner_client.post(workspace_url(workspace, "subscription/plan-change/preview/"),
                                 {"package": "pro"}, format="json")

    assert response.status_code == 200
    body = response.json()
    assert body["is_upgrade"] is True
    assert Decimal(body["net_amount"]) > 0


@pytest.mark.django_db
def test_plan_change_preview_rejects_unknown_package(workspace, basic_package, owner_client):
    make_subscription(workspace, basic_package)

    response = owner_client.post(workspace_url(workspace, "subscription/plan-change/preview/"),
                                 {"package": "enterprise"}, format="json")

    assert response.status_code == 400


@pytest.mark.django_db
def test_plan_change_is_scheduled_by_default(workspace, basic_package, pro_package, owner_client):
    subscription = make_subscription(workspace, basic_package)

    response = owner_client.post(workspace_url(workspace, "subscription/plan-change/"), {"package": "pro"},
                                 format="json")

    assert response.status_code == 202
    assert response.json()["subscription"]["pending_plan_change"]["to_package_code"] == "pro"
    subscription.refresh_from_db()
    assert subscription.package == basic_package


@pytest.mark.django_db
def test_immediate_crypto_upgrade_returns_invoice(workspace, basic_package, pro_package, owner_client):
    make_subscription(workspace, basic_package, gateway="btcpay")

    response = owner_client.post(workspace_url(workspace, "subscription/plan-change/"),
                                 {"package": "pro", "immediate": True}, format="json")

    assert response.status_code == 200
    body = response.json()
    assert body["immediate"] is True
    assert body["invoice_number"].startswith("INV-")
    assert body["subscription"]["package"]["code"] == "pro"


@pytest.mark.django_db
def test_plan_change_to_current_plan_is_a_client_error(workspace, basic_package, owner_client):
    make_subscription(workspace, basic_package)

    response = owner_client.post(workspace_url(workspace, "subscription/plan-change/"),
                                 {"package": "basic", "immediate": True}, format="json")

    assert response.status_code == 400
    assert response.json()["error"] == "subscription_error"


@pytest.mark.django_db
def test_cancel_then_resume(workspace, basic_package, owner_client):
    make_subscription(workspace, basic_package)

    cancelled = owner_client.post(workspace_url(workspace, "subscription/cancel/"),
                                  {"reason": "budget"}, format="json")
    assert cancelled.status_code == 200
    assert cancelled.json()["cancel_at_period_end"] is True

    resumed = owner_client.post(workspace_url(workspace, "subscription/resume/"), format="json")
    assert resumed.status_code == 200
    assert resumed.json()["cancelled_at"] is None


@pytest.mark.django_db
def test_resume_after_subscription_ended_conflicts(workspace, basic_package, owner_client):
    now = timezone.now()
    make_subscription(workspace, basic_package, status=Subscription.Status.CANCELLED,
                      cancelled_at=now - timedelta(days=1), ended_at=now - timedelta(days=1))

    response = owner_client.post(workspace_url(workspace, "subscription/resume/"), format="json")

    assert response.status_code == 409
    assert response.json()["error"] == "subscription_ended"


@pytest.mark.django_db
def test_usage_endpoint_without_subscription(workspace, owner_client):
    body = owner_client.get(workspace_url(workspace, "usage/")).json()

    assert body == {"enabled": False, "meters": [], "pending_charges": "0.00"}


# Provisioning


def provisioning_client(token=API_SECRET):
    client = APIClient()
    if token is not None:
        client.credentials(HTTP_AUTHORIZATION=f"Bearer {token}")
    return client


@pytest.mark.django_db
@override_settings(COMMERCE_API_SECRET=API_SECRET)
def test_provisioning_requires_valid_bearer_token(workspace):
    url = f"/api/commerce/provisioning/workspaces/{workspace.pk}/"

    assert provisioning_client(None).get(url).status_code == 401
    assert provisioning_client("wrong").get(url).status_code == 401
    assert provisioning_client().get(url).status_code == 200


@pytest.mark.django_db
@override_settings(COMMERCE_API_SECRET="")
def test_provisioning_without_configured_secret_is_server_error(workspace):
    response = provisioning_client("anything").get(f"/api/commerce/provisioning/workspaces/{workspace.pk}/")

    assert response.status_code == 500


@pytest.mark.django_db
@override_settings(COMMERCE_API_SECRET=API_SECRET)
def test_provisioning_grant_status_and_revoke(workspace, pro_package):
    client = provisioning_client()
    payload = {"workspace_id": str(workspace.pk), "package": "pro", "reason": "sales deal"}

    granted = client.post("/api/commerce/provisioning/packages/grant/", payload, format="json")
    assert granted.status_code == 201
    assert granted.json()["status"] == WorkspacePackage.Status.ACTIVE

    status = client.get(f"/api/commerce/provisioning/workspaces/{workspace.pk}/").json()
    assert status["is_active"] is True
    assert [package["code"] for package in status["packages"]] == ["pro"]
    assert status["entitlements"] == {"seats": 10, "exports": True}
    assert status["unpaid_invoices"] == 0

    revoked = client.post("/api/commerce/provisioning/packages/revoke/", payload, format="json")
    assert revoked.json()["revoked"] == 1
    assert not WorkspacePackage.objects.filter(workspace=workspace, status=WorkspacePackage.Status.ACTIVE).exists()


@pytest.mark.django_db
@override_settings(COMMERCE_API_SECRET=API_SECRET)
def test_provisioning_unknown_workspace_is_404(pro_package):
    response = provisioning_client().post(
        "/api/commerce/provisioning/packages/grant/",
        {"workspace_id": "00000000-0000-0000-0000-000000000000", "package": "pro"},
        format="json",
    )

    assert response.status_code == 404


# Operational endpoints


@pytest.mark.django_db
def test_health_check_touches_database():
    response = APIClient().get("/health/")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_metrics_expose_commerce_counters(client):
    response = client.get("/metrics/billing/")

    assert response.status_code == 200
    body = response.content.decode()
    assert "commerce_webhook_events_total" in body
    assert "commerce_dunning_transitions_total" in body
