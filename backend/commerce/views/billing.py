"""Workspace billing endpoints: orders, invoices, payments, subscription and usage."""
from __future__ import annotations

import logging
from typing import Optional

from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView
from rest_framework.viewsets import ReadOnlyModelViewSet

from commerce.exceptions import CommerceError
from commerce.filters import InvoiceFilter, OrderFilter, PaymentFilter
from commerce.models import CreditNote, Invoice, Order, Payment, Subscription
from commerce.pagination import BillingHistoryPagination
from commerce.permissions import BillingAccess, get_workspace_for_member
from commerce.serializers import (
    CancelSubscriptionSerializer,
    CreditNoteSerializer,
    InvoiceSerializer,
    OrderSerializer,
    PaymentSerializer,
    PlanChangeSerializer,
    SubscriptionSerializer,
)
from commerce.services import credit_notes, usage
from commerce.services.collaborators import build_subscription_service
from commerce.services.dunning import build_dunning_service

from . import commerce_error_response

logger = logging.getLogger(__name__)


def current_subscription(workspace) -> Optional[Subscription]:
    """Most recent subscription that still governs the workspace's access."""
    return (
        Subscription.objects.filter(workspace=workspace)
        .exclude(status__in=(Subscription.Status.EXPIRED, Subscription.Status.INCOMPLETE))
        .select_related("package", "workspace_package__package", "workspace")
        .order_by("-created_at")
        .first()
    )


class WorkspaceScopedViewSet(ReadOnlyModelViewSet):
    permission_classes = [IsAuthenticated]
    pagination_class = BillingHistoryPagination
    model = None

    def get_workspace(self):
        workspace = get_workspace_for_member(self.request.user, self.kwargs["workspace_id"])
        self.request.workspace = workspace
        return workspace

    def get_queryset(self):
        return self.model.objects.filter(workspace=self.get_workspace())


class WorkspaceOrderViewSet(WorkspaceScopedViewSet):
    model = Order
    serializer_class = OrderSerializer
    filterset_class = OrderFilter
    ordering_fields = ("created_at", "total")
    ordering = ("-created_at",)

    def get_queryset(self):
        return super().get_queryset().prefetch_related("items").order_by("-created_at")


class WorkspaceInvoiceViewSet(WorkspaceScopedViewSet):
    model = Invoice
    serializer_class = InvoiceSerializer
    filterset_class = InvoiceFilter
    ordering_fields = ("issue_date", "due_date", "total")
    ordering = ("-issue_date", "-created_at")

    def get_queryset(self):
        return super().get_queryset().prefetch_related("items").order_by("-issue_date", "-created_at")


class WorkspacePaymentViewSet(WorkspaceScopedViewSet):
    model = Payment
    serializer_class = PaymentSerializer
    filterset_class = PaymentFilter
    ordering_fields = ("created_at", "amount")
    ordering = ("-created_at",)

    def get_queryset(self):
        return super().get_queryset().order_by("-created_at")


class WorkspaceCreditNoteViewSet(WorkspaceScopedViewSet):
    model = CreditNote
    serializer_class = CreditNoteSerializer
    ordering_fields = ("created_at", "amount")
    ordering = ("-created_at",)

    def get_queryset(self):
        return super().get_queryset().order_by("-created_at", "-pk")

    def list(self, request, *args, **kwargs):
        response = super().list(request, *args, **kwargs)
        response.data["available_credit"] = str(credit_notes.total_credit(request.workspace))
        return response


class SubscriptionAPIView(APIView):
    permission_classes = [IsAuthenticated]
    access = BillingAccess.VIEW

    def load(self, request, workspace_id):
        workspace = get_workspace_for_member(request.user, workspace_id, self.access)
        request.workspace = workspace
        return workspace, current_subscription(workspace)


class WorkspaceSubscriptionView(SubscriptionAPIView):
    def get(self, request, workspace_id):
        workspace, subscription = self.load(request, workspace_id)
        if subscription is None:
            return Response(status=status.HTTP_204_NO_CONTENT)
        payload = SubscriptionSerializer(subscription).data
        payload["dunning"] = build_dunning_service().get_dunning_status(subscription)
        return Response(payload)


class PlanChangePreviewView(SubscriptionAPIView):
    matrix_action = "subscription.plan_change.preview"

    def post(self, request, workspace_id):
        workspace, subscription = self.load(request, workspace_id)
        if subscription is None:
            return Response({"error": "no_subscription"}, status=status.HTTP_404_NOT_FOUND)
        serializer = PlanChangeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            proration = build_subscription_service().preview_plan_change(
                subscription,
                serializer.validated_data["package"],
                serializer.validated_data.get("billing_cycle"),
            )
        except CommerceError as exc:
            return commerce_error_response(exc)
        return Response(proration.to_dict())


class PlanChangeView(SubscriptionAPIView):
    access = BillingAccess.MANAGE
    matrix_action = "subscription.plan_change"

    def post(self, request, workspace_id):
        workspace, subscription = self.load(request, workspace_id)
        if subscription is None:
            return Response({"error": "no_subscription"}, status=status.HTTP_404_NOT_FOUND)
        serializer = PlanChangeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            result = build_subscription_service().change_plan(
                subscription,
                serializer.validated_data["package"],
                prorate=serializer.validated_data["prorate"],
                immediate=serializer.validated_data["immediate"],
            )
        except CommerceError as exc:
            logger.info("Plan change rejected for workspace %s: %s", workspace.pk, exc)
            return commerce_error_response(exc)

        payload = {
            "subscription": SubscriptionSerializer(result.subscription).data,
            "immediate": result.immediate,
            "proration": result.proration.to_dict() if result.proration else None,
            "invoice_number": result.invoice.invoice_number if result.invoice else None,
            "credit_note": result.credit_note.reference_number if result.credit_note else None,
        }
        return Response(payload, status=status.HTTP_200_OK if result.immediate else status.HTTP_202_ACCEPTED)


class CancelSubscriptionView(SubscriptionAPIView):
    access = BillingAccess.MANAGE
    matrix_action = "subscription.cancel"

    def post(self, request, workspace_id):
        workspace, subscription = self.load(request, workspace_id)
        if subscription is None:
            return Response({"error": "no_subscription"}, status=status.HTTP_404_NOT_FOUND)
        serializer = CancelSubscriptionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            subscription = build_subscription_service().cancel(
                subscription,
                reason=serializer.validated_data["reason"],
                immediately=serializer.validated_data["immediately"],
            )
        except CommerceError as exc:
            return commerce_error_response(exc)
        return Response(SubscriptionSerializer(subscription).data)


class ResumeSubscriptionView(SubscriptionAPIView):
    access = BillingAccess.MANAGE
    matrix_action = "subscription.resume"

    def post(self, request, workspace_id):
        workspace, subscription = self.load(request, workspace_id)
        if subscription is None:
            return Response({"error": "no_subscription"}, status=status.HTTP_404_NOT_FOUND)
        if subscription.ended_at:
            return Response(
                {"error": "subscription_ended", "message": "The subscription has already ended."},
                status=status.HTTP_409_CONFLICT,
            )
        try:
            subscription = build_subscription_service().resume(subscription)
        except CommerceError as exc:
            return commerce_error_response(exc)
        return Response(SubscriptionSerializer(subscription).data)


class WorkspaceUsageView(SubscriptionAPIView):
    def get(self, request, workspace_id):
        workspace, subscription = self.load(request, workspace_id)
        if subscription is None:
            return Response({"enabled": usage.usage_billing_enabled(), "meters": [], "pending_charges": "0.00"})
        return Response({
            "enabled": usage.usage_billing_enabled(),
            "meters": usage.get_usage_summary(subscription),
            "pending_charges": str(usage.calculate_pending_charges(subscription)),
        })
