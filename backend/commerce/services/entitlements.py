"""Database-backed entitlement service.

Packages are granted to workspaces as ``WorkspacePackage`` rows and the merged
feature map is cached per workspace. Other implementations can be plugged in
through ``COMMERCE_ENTITLEMENT_SERVICE``; they only need the public methods
of :class:`DatabaseEntitlementService`.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from django.core.cache import cache
from django.db import transaction
from django.utils import timezone

from commerce.models import Package, WorkspacePackage
from commerce.observability.logging import log_commerce_event

logger = logging.getLogger(__name__)

CACHE_KEY = "commerce:entitlements:{workspace_id}"
CACHE_TTL_SECONDS = 300


class DatabaseEntitlementService:
    def grant_package(self, workspace, package: Package, *, source: str = "", expires_at=None) -> WorkspacePackage:
        with transaction.atomic():
            grant, created = WorkspacePackage.objects.select_for_update().get_or_create(
                workspace=workspace,
                package=package,
                defaults={"source": source, "expires_at": expires_at},
            )
            if not created:
                grant.status = WorkspacePackage.Status.ACTIVE
                grant.granted_at = timezone.now()
                grant.suspended_at = None
                grant.revoked_at = None
                grant.expires_at = expires_at
                grant.source = source or grant.source
                grant.save(update_fields=[
                    "status",
                    "granted_at",
                    "suspended_at",
                    "revoked_at",
                    "expires_at",
                    "source",
                    "updated_at",
                ])
        self.invalidate_cache(workspace)
        log_commerce_event(
            message="entitlement.package_granted",
            workspace_id=workspace.pk,
            extra={"package": package.code, "source": source},
        )
        return grant

    def revoke_package(self, workspace, package: Optional[Package], *, reason: str = "") -> int:
        """Revoke one package, or every package of the workspace when ``package`` is None."""
        grants = WorkspacePackage.objects.filter(workspace=workspace).exclude(status=WorkspacePackage.Status.REVOKED)
        if package is not None:
            grants = grants.filter(package=package)
        revoked = grants.update(status=WorkspacePackage.Status.REVOKED, revoked_at=timezone.now())
        self.invalidate_cache(workspace)
        log_commerce_event(
            message="entitlement.package_revoked",
            workspace_id=workspace.pk,
            extra={"package": getattr(package, "code", None), "reason": reason, "count": revoked},
        )
        return revoked

    def suspend_workspace(self, workspace, *, reason: str = "") -> None:
        """Restrict a workspace to read-only access without cancelling anything."""
        WorkspacePackage.objects.filter(workspace=workspace, status=WorkspacePackage.Status.ACTIVE).update(
            status=WorkspacePackage.Status.SUSPENDED,
            suspended_at=timezone.now(),
        )
        workspace.suspend(reason)
        self.invalidate_cache(workspace)
        log_commerce_event(message="entitlement.workspace_suspended", workspace_id=workspace.pk,
                           extra={"reason": reason})

    def restore_workspace(self, workspace) -> None:
        WorkspacePackage.objects.filter(workspace=workspace, status=WorkspacePackage.Status.SUSPENDED).update(
            status=WorkspacePackage.Status.ACTIVE,
            suspended_at=None,
        )
        workspace.reactivate()
        self.invalidate_cache(workspace)

    def expire_cycle_bound_boosts(self, workspace) -> int:
        cleared = 0
        for grant in WorkspacePackage.objects.filter(workspace=workspace).exclude(cycle_boosts={}):
            grant.cycle_boosts = {}
            grant.save(update_fields=["cycle_boosts", "updated_at"])
            cleared += 1
        return cleared

    def invalidate_cache(self, workspace) -> None:
        cache.delete(CACHE_KEY.format(workspace_id=workspace.pk))

    def get_entitlements(self, workspace) -> Dict[str, Any]:
        """Merged feature limits of all active grants; numeric limits add up."""
        key = CACHE_KEY.format(workspace_id=workspace.pk)
        cached = cache.get(key)
        if cached is not None:
            return cached

        features: Dict[str, Any] = {}
        grants = WorkspacePackage.objects.filter(
            workspace=workspace,
            status=WorkspacePackage.Status.ACTIVE,
        ).select_related("package")
        for grant in grants:
            for name, value in {**(grant.package.features or {}), **(grant.cycle_boosts or {})}.items():
                current = features.get(name)
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    features[name] = value or current
                else:
                    features[name] = (current or 0) + value
        cache.set(key, features, CACHE_TTL_SECONDS)
        return features

    def has_package(self, workspace, package_code: str) -> bool:
        return WorkspacePackage.objects.filter(
            workspace=workspace,
            package__code=package_code,
            status=WorkspacePackage.Status.ACTIVE,
        ).exists()
