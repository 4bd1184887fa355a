"""URL routes for commerce API endpoints."""
from django.urls import path

from .views.billing import (
    CancelSubscriptionView,
    PlanChangePreviewView,
    PlanChangeView,
    ResumeSubscriptionView,
    WorkspaceCreditNoteViewSet,
    WorkspaceInvoiceViewSet,
    WorkspaceOrderViewSet,
    WorkspacePaymentViewSet,
    WorkspaceSubscriptionView,
    WorkspaceUsageView,
)
from .views.matrix import (
    EntityPermissionsView,
    MatrixLockView,
    MatrixTrainView,
    MatrixUnlockView,
    PendingRequestListView,
)
from .views.provisioning import GrantPackageView, RevokePackageView, WorkspaceBillingStatusView

app_name = "commerce"

urlpatterns = [
    path(
        "workspaces/<uuid:workspace_id>/orders/",
        WorkspaceOrderViewSet.as_view({"get": "list"}),
        name="workspace-orders",
    ),
    path(
        "workspaces/<uuid:workspace_id>/orders/<int:pk>/",
        WorkspaceOrderViewSet.as_view({"get": "retrieve"}),
        name="workspace-order-detail",
    ),
    path(
        "workspaces/<uuid:workspace_id>/invoices/",
        WorkspaceInvoiceViewSet.as_view({"get": "list"}),
        name="workspace-invoices",
    ),
    path(
        "workspaces/<uuid:workspace_id>/invoices/<int:pk>/",
        WorkspaceInvoiceViewSet.as_view({"get": "retrieve"}),
        name="workspace-invoice-detail",
    ),
    path(
        "workspaces/<uuid:workspace_id>/payments/",
        WorkspacePaymentViewSet.as_view({"get": "list"}),
        name="workspace-payments",
    ),
    path(
        "workspaces/<uuid:workspace_id>/credit-notes/",
        WorkspaceCreditNoteViewSet.as_view({"get": "list"}),
        name="workspace-credit-notes",
    ),
    path(
        "workspaces/<uuid:workspace_id>/subscription/",
        WorkspaceSubscriptionView.as_view(),
        name="workspace-subscription",
    ),
    path(
        "workspaces/<uuid:workspace_id>/subscription/plan-change/preview/",
        PlanChangePreviewView.as_view(),
        name="workspace-plan-change-preview",
    ),
    path(
        "workspaces/<uuid:workspace_id>/subscription/plan-change/",
        PlanChangeView.as_view(),
        name="workspace-plan-change",
    ),
    path(
        "workspaces/<uuid:workspace_id>/subscription/cancel/",
        CancelSubscriptionView.as_view(),
        name="workspace-subscription-cancel",
    ),
    path(
        "workspaces/<uuid:workspace_id>/subscription/resume/",
        ResumeSubscriptionView.as_view(),
        name="workspace-subscription-resume",
    ),
    path("workspaces/<uuid:workspace_id>/usage/", WorkspaceUsageView.as_view(), name="workspace-usage"),
    # Permission matrix training
    path("matrix/pending/", PendingRequestListView.as_view(), name="matrix-pending"),
    path("matrix/train/", MatrixTrainView.as_view(), name="matrix-train"),
    path("matrix/lock/", MatrixLockView.as_view(), name="matrix-lock"),
    path("matrix/unlock/", MatrixUnlockView.as_view(), name="matrix-unlock"),
    path("matrix/entities/<int:entity>/", EntityPermissionsView.as_view(), name="matrix-entity"),
    # Provisioning (bearer token)
    path(
        "provisioning/workspaces/<uuid:workspace_id>/",
        WorkspaceBillingStatusView.as_view(),
        name="provisioning-workspace-status",
    ),
    path("provisioning/packages/grant/", GrantPackageView.as_view(), name="provisioning-package-grant"),
    path("provisioning/packages/revoke/", RevokePackageView.as_view(), name="provisioning-package-revoke"),
]
