"""Operator endpoints for training and locking the permission matrix."""
from __future__ import annotations

import logging

from django.shortcuts import get_object_or_404
from rest_framework import status
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView

from commerce.exceptions import PermissionLocked
from commerce.models import Entity
from commerce.pagination import BillingHistoryPagination
from commerce.serializers import (
    MatrixDecisionSerializer,
    MatrixUnlockSerializer,
    PermissionMatrixSerializer,
    PermissionRequestSerializer,
)
from commerce.services.permission_matrix import PermissionMatrixService

from . import commerce_error_response

logger = logging.getLogger(__name__)


class MatrixAPIView(APIView):
    permission_classes = [IsAdminUser]
    matrix_exempt = True

    def get_service(self) -> PermissionMatrixService:
        return PermissionMatrixService()


class PendingRequestListView(MatrixAPIView):
    def get(self, request):
        entity = None
        if request.query_params.get("entity"):
            entity = get_object_or_404(Entity, pk=request.query_params["entity"])
        paginator = BillingHistoryPagination()
        page = paginator.paginate_queryset(self.get_service().get_pending_requests(entity), request, view=self)
        return paginator.get_paginated_response(PermissionRequestSerializer(page, many=True).data)


class MatrixTrainView(MatrixAPIView):
    """GET describes the pending decision; POST records it."""

    def get(self, request):
        entity = get_object_or_404(Entity, pk=request.query_params.get("entity"))
        key = request.query_params.get("key", "")
        scope = request.query_params.get("scope") or None
        service = self.get_service()
        return Response({
            "entity": {"id": entity.pk, "code": entity.code, "name": entity.name},
            "key": key,
            "scope": scope,
            "current": service.can(entity, key, scope).to_dict(),
            "pending_requests": PermissionRequestSerializer(
                service.get_pending_requests(entity).filter(action=key), many=True,
            ).data,
        })

    def post(self, request):
        serializer = MatrixDecisionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        entity = get_object_or_404(Entity, pk=data["entity"])
        service = self.get_service()
        try:
            permission = service.train(entity, data["key"], data["scope"], data["allowed"], data["route"])
        except PermissionLocked as exc:
            return commerce_error_response(exc, status.HTTP_409_CONFLICT)
        trained = service.mark_requests_trained(entity, data["key"], data["scope"])
        return Response(
            {"permission": PermissionMatrixSerializer(permission).data, "requests_trained": trained},
            status=status.HTTP_201_CREATED,
        )


class MatrixLockView(MatrixAPIView):
    def post(self, request):
        serializer = MatrixDecisionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        entity = get_object_or_404(Entity, pk=data["entity"])
        try:
            permission = self.get_service().lock(entity, data["key"], data["allowed"], data["scope"])
        except PermissionLocked as exc:
            return commerce_error_response(exc, status.HTTP_409_CONFLICT)
        logger.info("User %s locked %s at entity %s", request.user.pk, data["key"], entity.code)
        return Response(PermissionMatrixSerializer(permission).data)


class MatrixUnlockView(MatrixAPIView):
    def post(self, request):
        serializer = MatrixUnlockSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        entity = get_object_or_404(Entity, pk=data["entity"])
        unlocked = self.get_service().unlock(entity, data["key"], data["scope"])
        if not unlocked:
            return Response({"error": "not_found", "message": "No permission to unlock."},
                            status=status.HTTP_404_NOT_FOUND)
        return Response({"unlocked": unlocked})


class EntityPermissionsView(MatrixAPIView):
    def get(self, request, entity):
        entity = get_object_or_404(Entity, pk=entity)
        effective = self.get_service().get_effective_permissions(entity)
        return Response({
            "entity": entity.code,
            "own": PermissionMatrixSerializer(self.get_service().get_permissions(entity), many=True).data,
            "effective": {
                label: PermissionMatrixSerializer(row).data for label, row in sorted(effective.items())
            },
        })
