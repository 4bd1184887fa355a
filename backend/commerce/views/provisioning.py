"""Service-to-service provisioning endpoints authenticated with the commerce API secret."""
from __future__ import annotations

import logging

from django.shortcuts import get_object_or_404
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from commerce.authentication import CommerceApiTokenAuthentication
from commerce.models import Invoice, WorkspacePackage
from commerce.serializers import PackageGrantSerializer, SubscriptionSerializer
from commerce.observability.logging import log_commerce_event
from commerce.services.collaborators import get_entitlement_service
from workspace.models import Workspace

from .billing import current_subscription

logger = logging.getLogger(__name__)


class ProvisioningAPIView(APIView):
    authentication_classes = [CommerceApiTokenAuthentication]
    permission_classes = []
    matrix_exempt = True


class WorkspaceBillingStatusView(ProvisioningAPIView):
    def get(self, request, workspace_id):
        workspace = get_object_or_404(Workspace, pk=workspace_id)
        subscription = current_subscription(workspace)
        packages = (
            WorkspacePackage.objects.filter(workspace=workspace, status=WorkspacePackage.Status.ACTIVE)
            .select_related("package")
            .order_by("package__code")
        )
        return Response({
            "workspace_id": str(workspace.pk),
            "is_active": workspace.is_active,
            "suspension_reason": workspace.suspension_reason,
            "subscription": SubscriptionSerializer(subscription).data if subscription else None,
            "packages": [
                {"code": grant.package.code, "expires_at": grant.expires_at, "source": grant.source}
                for grant in packages
            ],
            "entitlements": get_entitlement_service().get_entitlements(workspace),
            "unpaid_invoices": Invoice.objects.filter(
                workspace=workspace, status__in=Invoice.UNPAID_STATUSES,
            ).count(),
        })


class GrantPackageView(ProvisioningAPIView):
    def post(self, request):
        serializer = PackageGrantSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        workspace = get_object_or_404(Workspace, pk=data["workspace_id"])
        grant = get_entitlement_service().grant_package(
            workspace, data["package"], source="api", expires_at=data.get("expires_at"),
        )
        log_commerce_event(
            message="provisioning.package_granted",
            workspace_id=workspace.pk,
            actor=str(request.user),
            extra={"package": data["package"].code, "reason": data["reason"]},
        )
        return Response(
            {"workspace_id": str(workspace.pk), "package": grant.package.code, "status": grant.status},
            status=status.HTTP_201_CREATED,
        )


class RevokePackageView(ProvisioningAPIView):
    def post(self, request):
        serializer = PackageGrantSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        workspace = get_object_or_404(Workspace, pk=data["workspace_id"])
        revoked = get_entitlement_service().revoke_package(
            workspace, data["package"], reason=data["reason"] or "api",
        )
        log_commerce_event(
            message="provisioning.package_revoked",
            workspace_id=workspace.pk,
            actor=str(request.user),
            extra={"package": data["package"].code, "revoked": revoked},
        )
        return Response({"workspace_id": str(workspace.pk), "package": data["package"].code, "revoked": revoked})
