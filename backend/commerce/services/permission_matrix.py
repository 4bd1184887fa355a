"""Hierarchical permission matrix for the reseller entity tree.

Decisions are resolved at read time from the rows held by an entity and its
ancestors. A locked row on an ancestor is authoritative for every descendant,
so locking never has to rewrite descendant rows.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlencode

from django.db import transaction
from django.db.models import Q
from django.urls import NoReverseMatch, reverse
from django.utils import timezone

from commerce.conf import matrix_settings
from commerce.exceptions import PermissionLocked
from commerce.models import Entity, PermissionMatrix, PermissionRequest
from commerce.observability.metrics import PERMISSION_DECISIONS

logger = logging.getLogger(__name__)

SCOPE_ROUTE_PARAMS = ("id", "product", "order", "customer")
TRAINING_ROUTE_NAME = "commerce:matrix-train"


@dataclass(frozen=True)
class PermissionResult:
    status: str
    reason: Optional[str] = None
    locked_by: Optional[Entity] = None
    key: Optional[str] = None
    scope: Optional[str] = None
    training_url: Optional[str] = None

    ALLOWED = "allowed"
    DENIED = "denied"
    PENDING = "pending"
    UNDEFINED = "undefined"

    @classmethod
    def allowed(cls, key: Optional[str] = None, scope: Optional[str] = None) -> "PermissionResult":
        return cls(status=cls.ALLOWED, key=key, scope=scope)

    @classmethod
    def denied(cls, reason: str, locked_by: Optional[Entity] = None, key: Optional[str] = None,
               scope: Optional[str] = None) -> "PermissionResult":
        return cls(status=cls.DENIED, reason=reason, locked_by=locked_by, key=key, scope=scope)

    @classmethod
    def pending(cls, key: str, scope: Optional[str], training_url: str) -> "PermissionResult":
        return cls(status=cls.PENDING, key=key, scope=scope, training_url=training_url)

    @classmethod
    def undefined(cls, key: str, scope: Optional[str]) -> "PermissionResult":
        return cls(status=cls.UNDEFINED, key=key, scope=scope)

    @property
    def is_allowed(self) -> bool:
        return self.status == self.ALLOWED

    @property
    def is_denied(self) -> bool:
        return self.status == self.DENIED

    @property
    def is_pending(self) -> bool:
        return self.status == self.PENDING

    @property
    def is_undefined(self) -> bool:
        return self.status == self.UNDEFINED

    @property
    def is_locked(self) -> bool:
        return self.locked_by is not None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "status": self.status,
            "reason": self.reason,
            "locked_by": self.locked_by.name if self.locked_by is not None else None,
            "key": self.key,
            "scope": self.scope,
            "training_url": self.training_url,
        }
        return {name: value for name, value in data.items() if value is not None}


def _precedence(row: PermissionMatrix) -> Tuple[bool, bool]:
    return bool(row.locked), row.scope is not None


def _chain_rows(entity: Entity, key: str, scope: Optional[str]) -> List[PermissionMatrix]:
    """Rows for ``key`` on the entity and its ancestors, root first, one row per entity.

    A locked row beats an unlocked one held by the same entity; otherwise a
    scoped row beats the unscoped one.
    """
    scope_filter = Q(scope__isnull=True)
    if scope is not None:
        scope_filter |= Q(scope=scope)
    rows = (
        PermissionMatrix.objects.filter(entity__path__in=entity.ancestor_paths(), key=key)
        .filter(scope_filter)
        .select_related("entity")
    )
    by_entity: Dict[int, PermissionMatrix] = {}
    for row in rows:
        current = by_entity.get(row.entity_id)
        if current is None or _precedence(row) > _precedence(current):
            by_entity[row.entity_id] = row
    return sorted(by_entity.values(), key=lambda row: row.entity.depth)


def resolve_rows(rows: Iterable[PermissionMatrix], entity: Entity) -> Optional[PermissionMatrix]:
    """Decisive row: the topmost locked one, otherwise the nearest to ``entity``."""
    rows = list(rows)
    for row in rows:
        if row.locked:
            return row
    return rows[-1] if rows else None


class PermissionMatrixService:
    def __init__(self, training_mode: Optional[bool] = None, strict_mode: Optional[bool] = None,
                 log_all_checks: Optional[bool] = None, log_denials: Optional[bool] = None,
                 default_allow: Optional[bool] = None):
        config = matrix_settings()
        self.training_mode = bool(config["training_mode"] if training_mode is None else training_mode)
        self.strict_mode = bool(config["strict_mode"] if strict_mode is None else strict_mode)
        self.log_all_checks = bool(config["log_all_checks"] if log_all_checks is None else log_all_checks)
        self.log_denials = bool(config["log_denials"] if log_denials is None else log_denials)
        self.default_allow = bool(config["default_allow"] if default_allow is None else default_allow)

    # Resolution

    def can(self, entity: Entity, key: str, scope: Optional[str] = None) -> PermissionResult:
        row = resolve_rows(_chain_rows(entity, key, scope), entity)
        if row is None:
            return PermissionResult.undefined(key=key, scope=scope)
        if row.allowed:
            return PermissionResult.allowed(key=key, scope=scope)
        if row.locked and row.entity_id != entity.pk:
            return PermissionResult.denied(f"Locked by {row.entity.name}", locked_by=row.entity, key=key, scope=scope)
        if row.entity_id == entity.pk:
            reason = "Denied by own policy"
        else:
            reason = f"Denied by {row.entity.name}"
        return PermissionResult.denied(reason, locked_by=row.entity if row.locked else None, key=key, scope=scope)

    def gate_request(self, request, entity: Entity, action: str) -> PermissionResult:
        """Evaluate a request against the matrix, applying training and strict modes."""
        scope = extract_scope(request)
        result = self.can(entity, action, scope)

        if result.is_undefined and self.training_mode:
            log_request(request, entity, action, scope, PermissionRequest.Status.PENDING)
            result = PermissionResult.pending(action, scope, training_url(entity, action, scope))
        else:
            if result.is_undefined:
                if self.strict_mode or not self.default_allow:
                    result = PermissionResult.denied(f"No permission defined for {action}", key=action, scope=scope)
                else:
                    result = PermissionResult.allowed(key=action, scope=scope)
            if self.log_all_checks or (self.log_denials and result.is_denied):
                status = PermissionRequest.Status.ALLOWED if result.is_allowed else PermissionRequest.Status.DENIED
                log_request(request, entity, action, scope, status)

        PERMISSION_DECISIONS.labels(status=result.status).inc()
        if result.is_denied:
            logger.info("Matrix denied %s for entity %s: %s", action, entity.code, result.reason)
        return result

    # Writes

    def _locking_row(self, entity: Entity, key: str, scope: Optional[str]) -> Optional[PermissionMatrix]:
        for row in _chain_rows(entity, key, scope):
            if row.locked and row.entity_id != entity.pk:
                return row
        return None

    def train(self, entity: Entity, key: str, scope: Optional[str], allow: bool,
              route: Optional[str] = None) -> PermissionMatrix:
        """Record an operator decision; an ancestor lock with a different decision wins."""
        locking = self._locking_row(entity, key, scope)
        if locking is not None and locking.allowed != allow:
            raise PermissionLocked(key, locked_by=locking.entity)
        permission, _ = PermissionMatrix.objects.update_or_create(
            entity=entity,
            key=key,
            scope=scope,
            defaults={
                "allowed": allow,
                "locked": False,
                "source": PermissionMatrix.Source.TRAINED,
                "trained_at": timezone.now(),
                "trained_route": route or "",
            },
        )
        logger.info("Matrix trained %s=%s for entity %s", key, allow, entity.code)
        return permission

    def set_permission(self, entity: Entity, key: str, allowed: bool, scope: Optional[str] = None) -> PermissionMatrix:
        locking = self._locking_row(entity, key, scope)
        if locking is not None and locking.allowed != allowed:
            raise PermissionLocked(key, locked_by=locking.entity)
        permission, _ = PermissionMatrix.objects.update_or_create(
            entity=entity,
            key=key,
            scope=scope,
            defaults={"allowed": allowed, "locked": False, "source": PermissionMatrix.Source.EXPLICIT},
        )
        return permission

    def lock(self, entity: Entity, key: str, allowed: bool, scope: Optional[str] = None) -> PermissionMatrix:
        """Lock a decision for the entity and, through resolution, all its descendants."""
        locking = self._locking_row(entity, key, scope)
        if locking is not None and locking.allowed != allowed:
            raise PermissionLocked(key, locked_by=locking.entity)
        permission, _ = PermissionMatrix.objects.update_or_create(
            entity=entity,
            key=key,
            scope=scope,
            defaults={
                "allowed": allowed,
                "locked": True,
                "source": PermissionMatrix.Source.EXPLICIT,
                "set_by_entity": entity,
            },
        )
        logger.info("Matrix locked %s=%s at entity %s", key, allowed, entity.code)
        return permission

    def unlock(self, entity: Entity, key: str, scope: Optional[str] = None) -> int:
        """Unlock the entity's row and drop rows it pushed onto descendants."""
        with transaction.atomic():
            updated = PermissionMatrix.objects.filter(entity=entity, key=key, scope=scope).update(
                locked=False,
                source=PermissionMatrix.Source.EXPLICIT,
                updated_at=timezone.now(),
            )
            PermissionMatrix.objects.filter(
                entity__path__startswith=f"{entity.path}/",
                key=key,
                scope=scope,
                source=PermissionMatrix.Source.INHERITED,
                set_by_entity=entity,
            ).delete()
        return updated

    # Reads

    @staticmethod
    def get_permissions(entity: Entity):
        return PermissionMatrix.objects.filter(entity=entity).order_by("key", "scope")

    def get_effective_permissions(self, entity: Entity) -> Dict[str, PermissionMatrix]:
        """Decisive row per key (and scope) for the entity, inherited rows included."""
        rows = (
            PermissionMatrix.objects.filter(entity__path__in=entity.ancestor_paths())
            .select_related("entity")
            .order_by("entity__depth", "key")
        )
        grouped: Dict[str, List[PermissionMatrix]] = {}
        for row in rows:
            label = row.key if row.scope is None else f"{row.key}:{row.scope}"
            grouped.setdefault(label, []).append(row)
        return {label: resolve_rows(chain, entity) for label, chain in grouped.items()}

    @staticmethod
    def get_pending_requests(entity: Optional[Entity] = None):
        query = PermissionRequest.objects.filter(status=PermissionRequest.Status.PENDING, was_trained=False)
        if entity is not None:
            query = query.filter(entity=entity)
        return query.select_related("entity").order_by("-created_at")

    @staticmethod
    def mark_requests_trained(entity: Entity, action: str, scope: Optional[str] = None) -> int:
        query = PermissionRequest.objects.filter(
            entity=entity,
            action=action,
            status=PermissionRequest.Status.PENDING,
            was_trained=False,
        )
        query = query.filter(scope__isnull=True) if scope is None else query.filter(scope=scope)
        return query.update(was_trained=True, trained_at=timezone.now())


def extract_scope(request) -> Optional[str]:
    match = getattr(request, "resolver_match", None)
    kwargs = getattr(match, "kwargs", None) or {}
    for param in SCOPE_ROUTE_PARAMS:
        value = kwargs.get(param)
        if value:
            return str(getattr(value, "pk", value))
    return None


def training_url(entity: Entity, key: str, scope: Optional[str]) -> str:
    try:
        base = reverse(TRAINING_ROUTE_NAME)
    except NoReverseMatch:
        base = "/api/commerce/matrix/train/"
    params = {"entity": entity.pk, "key": key}
    if scope is not None:
        params["scope"] = scope
    return f"{base}?{urlencode(params)}"


def _client_ip(request) -> Optional[str]:
    forwarded = request.META.get("HTTP_X_FORWARDED_FOR")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.META.get("REMOTE_ADDR") or None


def log_request(request, entity: Entity, action: str, scope: Optional[str], status: str) -> PermissionRequest:
    user = getattr(request, "user", None)
    data = request.GET.dict()
    if request.method in ("POST", "PUT", "PATCH") and hasattr(request, "POST"):
        data.update(request.POST.dict())
    return PermissionRequest.objects.create(
        entity=entity,
        method=request.method or "",
        route=request.path[:500],
        action=action,
        scope=scope,
        request_data=PermissionRequest.sanitise_request_data(data),
        user_agent=request.META.get("HTTP_USER_AGENT", ""),
        ip_address=_client_ip(request),
        user=user if getattr(user, "is_authenticated", False) else None,
        status=status,
    )
