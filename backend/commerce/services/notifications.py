"""Notification dispatch used by dunning, webhooks and plan changes."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from commerce.observability.logging import log_commerce_event

logger = logging.getLogger(__name__)

# Templates the engine emits; rendering them is the host application's job.
PAYMENT_FAILED = "payment_failed"
PAYMENT_RETRY_FAILED = "payment_retry_failed"
PAYMENT_RETRY_SUCCEEDED = "payment_retry_succeeded"
MANUAL_PAYMENT_REQUIRED = "manual_payment_required"
SUBSCRIPTION_PAUSED = "subscription_paused"
SUBSCRIPTION_SUSPENDED = "subscription_suspended"
SUBSCRIPTION_CANCELLED = "subscription_cancelled"
SUBSCRIPTION_EXPIRED = "subscription_expired"
PLAN_CHANGED = "plan_changed"
UPCOMING_RENEWAL = "upcoming_renewal"
ORDER_UNDERPAID = "order_underpaid"


class LoggingNotifier:
    """Records notifications on the commerce logger instead of delivering them."""

    def notify(self, user, template: str, context: Optional[Dict[str, Any]] = None) -> None:
        if user is None:
            logger.warning("Notification %s dropped: no recipient", template)
            return
        log_commerce_event(
            message=f"notification.{template}",
            actor=getattr(user, "email", None) or str(getattr(user, "pk", "")),
            extra={"template": template, "context": _printable(context or {})},
        )

    def notify_workspace_owner(self, workspace, template: str, context: Optional[Dict[str, Any]] = None) -> None:
        self.notify(getattr(workspace, "owner", None), template, {"workspace_id": str(workspace.pk), **(context or {})})


def _printable(context: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value if isinstance(value, (str, int, float, bool, type(None))) else str(value)
            for key, value in context.items()}
