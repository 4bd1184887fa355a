import pytest
from django.test import RequestFactory, override_settings

from commerce.exceptions import PermissionLocked
from commerce.models import Entity, PermissionMatrix, PermissionRequest
from commerce.services.permission_matrix import PermissionMatrixService

from .conftest import auth_client, create_user, make_subscription

KEY = "orders.refund"

MATRIX_ON = {
    "enabled": True,
    "gated_paths": ["/api/commerce/"],
    "training_mode": False,
    "strict_mode": True,
    "log_all_checks": False,
    "log_denials": True,
    "default_allow": False,
}


@pytest.fixture
def tree(db):
    master = Entity.create_master("acme", "Acme Group")
    facade = master.create_child("shop", "Acme Shop")
    dropship = facade.create_child("drop", "Drop Partner")
    return master, facade, dropship


@pytest.fixture
def matrix():
    return PermissionMatrixService(training_mode=False, strict_mode=True, log_all_checks=False,
                                   log_denials=True, default_allow=False)


def test_child_paths_follow_the_tree(tree):
    master, facade, dropship = tree

    assert dropship.path == "ACME/SHOP/DROP"
    assert dropship.depth == 2
    assert dropship.ancestor_paths() == ["ACME", "ACME/SHOP", "ACME/SHOP/DROP"]
    assert list(dropship.get_ancestors()) == [master, facade]
    assert dropship.sku_prefix() == "ACME-SHOP-DROP"


def test_unknown_key_is_undefined(tree, matrix):
    result = matrix.can(tree[2], KEY)

    assert result.is_undefined


def test_nearest_row_wins_without_locks(tree, matrix):
    master, facade, dropship = tree
    matrix.set_permission(master, KEY, True)
    matrix.set_permission(facade, KEY, False)

    assert matrix.can(master, KEY).is_allowed
    own = matrix.can(facade, KEY)
    assert own.is_denied and own.reason == "Denied by own policy"
    inherited = matrix.can(dropship, KEY)
    assert inherited.is_denied
    assert inherited.reason == "Denied by Acme Shop"
    assert not inherited.is_locked


def test_ancestor_lock_overrides_descendant_rows(tree, matrix):
    master, facade, dropship = tree
    matrix.set_permission(dropship, KEY, True)

    matrix.lock(master, KEY, False)

    result = matrix.can(dropship, KEY)
    assert result.is_denied
    assert result.locked_by == master
    assert result.reason == "Locked by Acme Group"
    assert result.to_dict()["locked_by"] == "Acme Group"


def test_unscoped_lock_outranks_a_scoped_row_on_the_same_entity(tree, matrix):
    master, _, dropship = tree
    matrix.set_permission(master, KEY, True, scope="42")
    matrix.lock(master, KEY, False)
    PermissionMatrix.objects.create(entity=dropship, key=KEY, scope="42", allowed=True)

    result = matrix.can(dropship, KEY, "42")

    assert result.is_denied
    assert result.locked_by == master
    with pytest.raises(PermissionLocked):
        matrix.set_permission(dropship, KEY, True, scope="42")


def test_scoped_row_still_beats_unscoped_without_locks(tree, matrix):
    master, _, dropship = tree
    matrix.set_permission(master, KEY, False)
    matrix.set_permission(master, KEY, True, scope="42")

    assert matrix.can(dropship, KEY, "42").is_allowed
    assert matrix.can(dropship, KEY, "7").is_denied


def test_training_against_a_lock_is_rejected(tree, matrix):
    master, facade, _ = tree
    matrix.lock(master, KEY, False)

    with pytest.raises(PermissionLocked):
        matrix.train(facade, KEY, None, True)

    row = matrix.train(facade, KEY, None, False, route="/api/commerce/orders/")
    assert row.source == PermissionMatrix.Source.TRAINED
    assert row.trained_route == "/api/commerce/orders/"


def test_unlock_restores_descendant_decisions(tree, matrix):
    master, _, dropship = tree
    matrix.set_permission(dropship, KEY, True)
    matrix.lock(master, KEY, False)
    inherited = PermissionMatrix.objects.create(
        entity=tree[1], key=KEY, allowed=False, locked=False,
        source=PermissionMatrix.Source.INHERITED, set_by_entity=master,
    )

    assert matrix.unlock(master, KEY) == 1

    assert matrix.can(dropship, KEY).is_allowed
    assert not PermissionMatrix.objects.filter(pk=inherited.pk).exists()
    assert PermissionMatrix.objects.get(entity=master, key=KEY).locked is False


def test_unlock_without_a_row_changes_nothing(tree, matrix):
    assert matrix.unlock(tree[0], KEY) == 0


def test_scoped_row_beats_unscoped_row_of_same_entity(tree, matrix):
    _, facade, _ = tree
    matrix.set_permission(facade, KEY, False)
    matrix.set_permission(facade, KEY, True, scope="42")

    assert matrix.can(facade, KEY, "42").is_allowed
    assert matrix.can(facade, KEY, "7").is_denied
    assert matrix.can(facade, KEY).is_denied


def test_effective_permissions_include_inherited_rows(tree, matrix):
    master, facade, dropship = tree
    matrix.set_permission(master, "catalog.view", True)
    matrix.set_permission(facade, KEY, False, scope="9")

    effective = matrix.get_effective_permissions(dropship)

    assert effective["catalog.view"].entity == master
    assert effective[f"{KEY}:9"].entity == facade


def test_training_mode_logs_pending_request(tree):
    request = RequestFactory().post("/api/commerce/orders/", {"note": "x", "password": "secret"})
    service = PermissionMatrixService(training_mode=True, strict_mode=True, log_all_checks=False,
                                      log_denials=True, default_allow=False)

    result = service.gate_request(request, tree[1], KEY)

    assert result.is_pending
    assert result.training_url.startswith("/api/commerce/matrix/train/?")
    logged = PermissionRequest.objects.get()
    assert logged.status == PermissionRequest.Status.PENDING
    assert logged.request_data == {"note": "x"}
    assert list(service.get_pending_requests(tree[1])) == [logged]

    assert service.mark_requests_trained(tree[1], KEY) == 1
    assert not service.get_pending_requests(tree[1]).exists()


def test_strict_mode_denies_and_logs_undefined(tree, matrix):
    request = RequestFactory().get("/api/commerce/orders/")

    result = matrix.gate_request(request, tree[1], KEY)

    assert result.is_denied
    assert PermissionRequest.objects.get().status == PermissionRequest.Status.DENIED


def test_default_allow_applies_outside_strict_mode(tree):
    request = RequestFactory().get("/api/commerce/orders/")
    service = PermissionMatrixService(training_mode=False, strict_mode=False, log_all_checks=True,
                                      log_denials=True, default_allow=True)

    result = service.gate_request(request, tree[1], KEY)

    assert result.is_allowed
    assert PermissionRequest.objects.get().status == PermissionRequest.Status.ALLOWED


# Middleware


def _plan_change_url(workspace):
    return f"/api/commerce/workspaces/{workspace.pk}/subscription/plan-change/"


@pytest.mark.django_db
def test_gate_denies_locked_action_with_json(tree, workspace, owner, basic_package, pro_package):
    make_subscription(workspace, basic_package)
    PermissionMatrixService().lock(tree[0], "subscription.plan_change", False)
    client = auth_client(owner)

    with override_settings(COMMERCE_MATRIX=MATRIX_ON):
        response = client.post(_plan_change_url(workspace), {"package": "pro"}, format="json",
                               HTTP_X_COMMERCE_ENTITY="SHOP")

    assert response.status_code == 403
    assert response.json()["error"] == "permission_denied"
    assert response.json()["locked_by"] == "Acme Group"


@pytest.mark.django_db
def test_gate_requires_training_for_undefined_action(tree, workspace, owner, basic_package):
    make_subscription(workspace, basic_package)
    client = auth_client(owner)

    with override_settings(COMMERCE_MATRIX={**MATRIX_ON, "training_mode": True}):
        response = client.post(_plan_change_url(workspace), {"package": "pro"}, format="json",
                               HTTP_X_COMMERCE_ENTITY=str(tree[1].pk))

    assert response.status_code == 428
    body = response.json()
    assert body["error"] == "training_required"
    assert body["key"] == "subscription.plan_change"
    assert PermissionRequest.objects.filter(entity=tree[1], status=PermissionRequest.Status.PENDING).count() == 1


@pytest.mark.django_db
def test_gate_lets_allowed_action_reach_the_view(tree, workspace, owner, basic_package, pro_package):
    make_subscription(workspace, basic_package, gateway="btcpay")
    PermissionMatrixService().set_permission(tree[1], "subscription.plan_change", True)
    client = auth_client(owner)

    with override_settings(COMMERCE_MATRIX=MATRIX_ON):
        response = client.post(_plan_change_url(workspace), {"package": "pro"}, format="json",
                               HTTP_X_COMMERCE_ENTITY="SHOP")

    assert response.status_code == 202


@pytest.mark.django_db
def test_gate_skips_requests_without_entity(workspace, owner, basic_package):
    make_subscription(workspace, basic_package)
    client = auth_client(owner)

    with override_settings(COMMERCE_MATRIX=MATRIX_ON):
        response = client.get(f"/api/commerce/workspaces/{workspace.pk}/subscription/")

    assert response.status_code == 200


# Operator endpoints


@pytest.fixture
def staff_client(db):
    return auth_client(create_user("operator", is_staff=True))


@pytest.mark.django_db
def test_matrix_endpoints_require_staff(owner):
    response = auth_client(owner).get("/api/commerce/matrix/pending/")

    assert response.status_code == 403


@pytest.mark.django_db
def test_train_endpoint_records_decision(tree, staff_client):
    PermissionRequest.objects.create(entity=tree[1], method="POST", route="/api/commerce/x/", action=KEY)

    response = staff_client.post(
        "/api/commerce/matrix/train/",
        {"entity": tree[1].pk, "key": KEY, "allowed": True},
        format="json",
    )

    assert response.status_code == 201
    assert response.json()["requests_trained"] == 1
    assert response.json()["permission"]["source"] == PermissionMatrix.Source.TRAINED


@pytest.mark.django_db
def test_train_endpoint_reports_lock_conflict(tree, staff_client):
    PermissionMatrixService().lock(tree[0], KEY, False)

    response = staff_client.post(
        "/api/commerce/matrix/train/",
        {"entity": tree[2].pk, "key": KEY, "allowed": True},
        format="json",
    )

    assert response.status_code == 409
    assert response.json()["error"] == "permission_locked"


@pytest.mark.django_db
def test_lock_and_unlock_endpoints(tree, staff_client):
    locked = staff_client.post("/api/commerce/matrix/lock/",
                               {"entity": tree[0].pk, "key": KEY, "allowed": False}, format="json")
    assert locked.status_code == 200
    assert locked.json()["locked"] is True

    unlocked = staff_client.post("/api/commerce/matrix/unlock/", {"entity": tree[0].pk, "key": KEY}, format="json")
    assert unlocked.json() == {"unlocked": 1}

    missing = staff_client.post("/api/commerce/matrix/unlock/", {"entity": tree[1].pk, "key": KEY}, format="json")
    assert missing.status_code == 404


@pytest.mark.django_db
def test_entity_permissions_endpoint(tree, staff_client):
    PermissionMatrixService().set_permission(tree[0], KEY, True)

    response = staff_client.get(f"/api/commerce/matrix/entities/{tree[2].pk}/")

    assert response.status_code == 200
    body = response.json()
    assert body["entity"] == "DROP"
    assert body["own"] == []
    assert body["effective"][KEY]["entity_code"] == "ACME"
