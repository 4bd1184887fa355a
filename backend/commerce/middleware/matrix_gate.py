"""Middleware gating commerce routes through the permission matrix."""
from __future__ import annotations

import logging
from typing import Optional

from django.core.exceptions import PermissionDenied
from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

from commerce.conf import matrix_settings
from commerce.models import Entity

logger = logging.getLogger(__name__)

ENTITY_HEADER = "X-Commerce-Entity"
ENTITY_SESSION_KEY = "commerce_entity_id"


class CommerceMatrixGateMiddleware(MiddlewareMixin):
    """Check the (entity, action) pair of each gated request against the matrix.

    Requests whose entity or action cannot be resolved pass through unchecked.
    Views opt out with ``matrix_exempt = True``.
    """

    def __init__(self, get_response=None):
        super().__init__(get_response)
        self._service = None

    @property
    def service(self):
        if self._service is None:
            from commerce.services.permission_matrix import PermissionMatrixService

            self._service = PermissionMatrixService()
        return self._service

    def process_view(self, request, view_func, view_args, view_kwargs):
        config = matrix_settings()
        if not config.get("enabled"):
            return None
        if not any(request.path.startswith(prefix) for prefix in config.get("gated_paths") or ()):
            return None
        if _view_attr(view_func, "matrix_exempt", False):
            return None

        entity = self.resolve_entity(request, view_kwargs)
        action = self.resolve_action(request, view_func)
        if entity is None or not action:
            return None

        result = self.service.gate_request(request, entity, action)
        request.commerce_entity = entity
        request.commerce_permission = result

        if result.is_denied:
            if _is_api_request(request):
                return JsonResponse(
                    {"error": "permission_denied", "message": result.reason, **result.to_dict()},
                    status=403,
                )
            raise PermissionDenied(result.reason)
        if result.is_pending:
            return JsonResponse(
                {
                    "error": "training_required",
                    "message": f"Permission '{action}' needs an operator decision.",
                    **result.to_dict(),
                },
                status=428,
            )
        return None

    # Entity resolution, first match wins: route kwarg, header, domain, workspace, session.

    def resolve_entity(self, request, view_kwargs) -> Optional[Entity]:
        for resolver in (
            lambda: _entity_by_reference(view_kwargs.get("entity")),
            lambda: _entity_by_reference(request.headers.get(ENTITY_HEADER)),
            lambda: _entity_by_domain(request),
            lambda: _entity_by_workspace(request),
            lambda: _entity_by_reference(_session_value(request)),
        ):
            entity = resolver()
            if entity is not None:
                return entity
        return None

    @staticmethod
    def resolve_action(request, view_func) -> Optional[str]:
        action = _view_attr(view_func, "matrix_action", None)
        if action:
            return action
        match = getattr(request, "resolver_match", None)
        if match is not None and match.url_name:
            return match.url_name
        segments = [segment for segment in request.path.split("/") if segment]
        if not segments:
            return None
        return f"{request.method.lower()}.{segments[-1]}"


def _view_attr(view_func, name: str, default):
    for target in (view_func, getattr(view_func, "cls", None), getattr(view_func, "view_class", None)):
        if target is not None and hasattr(target, name):
            return getattr(target, name)
    return default


def _is_api_request(request) -> bool:
    if request.path.startswith("/api/"):
        return True
    return "application/json" in request.headers.get("Accept", "")


def _entity_by_reference(reference) -> Optional[Entity]:
    if reference is None or reference == "":
        return None
    if isinstance(reference, Entity):
        return reference
    reference = str(reference).strip()
    query = Entity.objects.filter(is_active=True)
    if reference.isdigit():
        entity = query.filter(pk=int(reference)).first()
        if entity is not None:
            return entity
    return query.filter(code=reference.upper()).first()


def _entity_by_domain(request) -> Optional[Entity]:
    host = request.get_host().split(":")[0].lower()
    if not host:
        return None
    return Entity.objects.filter(domain=host, is_active=True).first()


def _entity_by_workspace(request) -> Optional[Entity]:
    workspace = getattr(request, "workspace", None)
    if workspace is not None:
        return Entity.objects.filter(workspace=workspace, is_active=True).first()
    user = getattr(request, "user", None)
    if user is None or not user.is_authenticated:
        return None
    return (
        Entity.objects.filter(
            is_active=True,
            workspace__memberships__user=user,
            workspace__memberships__is_active=True,
        )
        .order_by("depth", "pk")
        .first()
    )


def _session_value(request):
    session = getattr(request, "session", None)
    if session is None:
        return None
    return session.get(ENTITY_SESSION_KEY)
