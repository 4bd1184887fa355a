"""Subscription lifecycle: create, cancel, resume, renew, pause, expire and plan changes.

Every mutation re-reads the subscription with ``select_for_update`` inside a
transaction, so a dunning sweep and a webhook cannot overwrite each other.
Gateway calls happen before the lock is taken.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from django.db import transaction
from django.utils import timezone

from commerce.conf import max_pause_cycles
from commerce.exceptions import PauseLimitExceeded, SubscriptionError
from commerce.models import BillingCycle, CreditNote, Gateway, Invoice, Package, Subscription
from commerce.observability.logging import log_commerce_event
from commerce.services import credit_notes, notifications
from commerce.services.proration import ProrationResult, calculate_proration

logger = logging.getLogger(__name__)

PERIOD_DAYS = {BillingCycle.MONTHLY: 30, BillingCycle.YEARLY: 365}
PENDING_PLAN_CHANGE = "pending_plan_change"
LAST_RENEWAL_REMINDER = "last_renewal_reminder"
DUNNING_SUSPENSION_REASON = "dunning"


def period_length(billing_cycle: str) -> timedelta:
    return timedelta(days=PERIOD_DAYS.get(billing_cycle, 30))


@dataclass(frozen=True)
class PlanChangeResult:
    subscription: Subscription
    proration: Optional[ProrationResult] = None
    immediate: bool = True
    invoice: Optional[Invoice] = None
    credit_note: Optional[CreditNote] = None


def _lock(subscription: Subscription) -> Subscription:
    return (
        Subscription.objects.select_for_update()
        .select_related("workspace", "package", "workspace_package")
        .get(pk=subscription.pk)
    )


class SubscriptionService:
    def __init__(self, entitlements, notifier, gateway_resolver: Optional[Callable] = None, invoices=None):
        if gateway_resolver is None:
            from commerce.services.gateways import get_gateway

            gateway_resolver = get_gateway
        if invoices is None:
            from commerce.services.invoices import InvoiceService

            invoices = InvoiceService()
        self.entitlements = entitlements
        self.notifier = notifier
        self.gateway_resolver = gateway_resolver
        self.invoices = invoices

    def _gateway_for(self, subscription: Subscription):
        if not subscription.gateway_subscription_id or subscription.gateway != Gateway.STRIPE:
            return None
        return self.gateway_resolver(subscription.gateway)

    @staticmethod
    def current_package(subscription: Subscription) -> Optional[Package]:
        if subscription.package_id:
            return subscription.package
        if subscription.workspace_package_id:
            return subscription.workspace_package.package
        return None

    # Lifecycle

    def create(self, workspace, package: Package, gateway: str, billing_cycle: str = BillingCycle.MONTHLY, *,
               gateway_subscription_id: Optional[str] = None, gateway_customer_id: Optional[str] = None,
               gateway_price_id: Optional[str] = None, trial_days: int = 0,
               period_start: Optional[datetime] = None, period_end: Optional[datetime] = None) -> Subscription:
        now = timezone.now()
        start = period_start or now
        end = period_end or start + period_length(billing_cycle)
        with transaction.atomic():
            grant = self.entitlements.grant_package(workspace, package, source=gateway)
            subscription = Subscription.objects.create(
                workspace=workspace,
                package=package,
                workspace_package=grant,
                gateway=gateway,
                gateway_subscription_id=gateway_subscription_id,
                gateway_customer_id=gateway_customer_id,
                gateway_price_id=gateway_price_id or package.stripe_price_for_cycle(billing_cycle) or None,
                status=Subscription.Status.TRIALING if trial_days > 0 else Subscription.Status.ACTIVE,
                billing_cycle=billing_cycle,
                current_period_start=start,
                current_period_end=end,
                trial_ends_at=now + timedelta(days=trial_days) if trial_days > 0 else None,
            )
        log_commerce_event(
            message="subscription.created",
            workspace_id=workspace.pk,
            extra={"subscription_id": subscription.pk, "package": package.code, "gateway": gateway},
        )
        return subscription

    def cancel(self, subscription: Subscription, reason: str = "", immediately: bool = False,
               sync_gateway: bool = True) -> Subscription:
        """Stop renewal at period end, or end the subscription now when ``immediately``."""
        gateway = self._gateway_for(subscription) if sync_gateway else None
        if gateway is not None:
            gateway.cancel_subscription(subscription, immediately=immediately)

        now = timezone.now()
        with transaction.atomic():
            locked = _lock(subscription)
            locked.cancelled_at = locked.cancelled_at or now
            locked.cancellation_reason = reason or ""
            locked.cancel_at_period_end = True
            update_fields = ["cancelled_at", "cancellation_reason", "cancel_at_period_end", "updated_at"]
            if immediately:
                locked.status = Subscription.Status.CANCELLED
                locked.ended_at = now
                update_fields += ["status", "ended_at"]
            locked.save(update_fields=update_fields)
            if immediately:
                self.entitlements.revoke_package(locked.workspace, self.current_package(locked), reason=reason)

        log_commerce_event(
            message="subscription.cancelled",
            workspace_id=locked.workspace_id,
            extra={"subscription_id": locked.pk, "reason": reason, "immediately": immediately},
        )
        return locked

    def resume(self, subscription: Subscription, sync_gateway: bool = True) -> Subscription:
        """Undo a cancellation while the paid period is still running."""
        if not subscription.cancelled_at:
            return subscription
        if subscription.current_period_end <= timezone.now():
            raise SubscriptionError("The billing period has ended; start a new subscription instead.")

        gateway = self._gateway_for(subscription) if sync_gateway else None
        if gateway is not None:
            gateway.resume_subscription(subscription)

        with transaction.atomic():
            locked = _lock(subscription)
            locked.cancelled_at = None
            locked.cancellation_reason = ""
            locked.cancel_at_period_end = False
            update_fields = ["cancelled_at", "cancellation_reason", "cancel_at_period_end", "updated_at"]
            if locked.status == Subscription.Status.CANCELLED:
                locked.status = Subscription.Status.ACTIVE
                locked.ended_at = None
                update_fields += ["status", "ended_at"]
                package = self.current_package(locked)
                if package is not None:
                    self.entitlements.grant_package(locked.workspace, package, source=locked.gateway)
            locked.save(update_fields=update_fields)
        return locked

    def renew(self, subscription: Subscription, period_start: Optional[datetime] = None,
              period_end: Optional[datetime] = None) -> Subscription:
        """Start the next period; dates come from the gateway when it supplies them."""
        with transaction.atomic():
            locked = _lock(subscription)
            start = period_start or locked.current_period_end or timezone.now()
            end = period_end or start + period_length(locked.billing_cycle)
            locked.current_period_start = start
            locked.current_period_end = end
            locked.cancelled_at = None
            locked.cancellation_reason = ""
            locked.cancel_at_period_end = False
            update_fields = [
                "current_period_start",
                "current_period_end",
                "cancelled_at",
                "cancellation_reason",
                "cancel_at_period_end",
                "updated_at",
            ]
            if locked.status in (Subscription.Status.TRIALING, Subscription.Status.PAST_DUE,
                                 Subscription.Status.PAUSED):
                locked.status = Subscription.Status.ACTIVE
                locked.paused_at = None
                update_fields += ["status", "paused_at"]
            locked.save(update_fields=update_fields)

            workspace = locked.workspace
            if not workspace.is_active and workspace.suspension_reason == DUNNING_SUSPENSION_REASON:
                self.entitlements.restore_workspace(workspace)
            self.entitlements.expire_cycle_bound_boosts(workspace)
            self.entitlements.invalidate_cache(workspace)

        log_commerce_event(
            message="subscription.renewed",
            workspace_id=locked.workspace_id,
            extra={"subscription_id": locked.pk, "period_end": end.isoformat()},
        )
        return locked

    def mark_past_due(self, subscription: Subscription) -> Subscription:
        """Flag a failed renewal; pausing and cancelling are left to the dunning sweep."""
        with transaction.atomic():
            locked = _lock(subscription)
            if locked.status in (Subscription.Status.ACTIVE, Subscription.Status.TRIALING):
                locked.status = Subscription.Status.PAST_DUE
                locked.save(update_fields=["status", "updated_at"])
        return locked

    def pause(self, subscription: Subscription, force: bool = False, sync_gateway: bool = True) -> Subscription:
        """Pause billing; ``force`` skips the pause-cycle limit (dunning uses it)."""
        if subscription.status not in (Subscription.Status.ACTIVE, Subscription.Status.PAST_DUE):
            return subscription
        limit = max_pause_cycles()
        if not force and not subscription.can_pause(limit):
            raise PauseLimitExceeded(subscription.pause_count, limit)

        gateway = self._gateway_for(subscription) if sync_gateway else None
        if gateway is not None:
            gateway.pause_subscription(subscription)

        with transaction.atomic():
            locked = _lock(subscription)
            if locked.status not in (Subscription.Status.ACTIVE, Subscription.Status.PAST_DUE):
                return locked
            locked.status = Subscription.Status.PAUSED
            locked.paused_at = timezone.now()
            locked.pause_count = (locked.pause_count or 0) + 1
            locked.save(update_fields=["status", "paused_at", "pause_count", "updated_at"])

        logger.info("Subscription %s paused (pause_count=%s, forced=%s)", locked.pk, locked.pause_count, force)
        return locked

    def unpause(self, subscription: Subscription, sync_gateway: bool = True) -> Subscription:
        if subscription.status != Subscription.Status.PAUSED:
            return subscription
        gateway = self._gateway_for(subscription) if sync_gateway else None
        if gateway is not None:
            gateway.resume_subscription(subscription)

        with transaction.atomic():
            locked = _lock(subscription)
            if locked.status != Subscription.Status.PAUSED:
                return locked
            locked.status = Subscription.Status.ACTIVE
            locked.paused_at = None
            locked.save(update_fields=["status", "paused_at", "updated_at"])
        return locked

    def expire(self, subscription: Subscription) -> Subscription:
        with transaction.atomic():
            locked = _lock(subscription)
            if locked.status == Subscription.Status.EXPIRED:
                return locked
            locked.status = Subscription.Status.EXPIRED
            locked.ended_at = locked.ended_at or timezone.now()
            locked.save(update_fields=["status", "ended_at", "updated_at"])
            package = self.current_package(locked)
            if package is not None:
                self.entitlements.revoke_package(locked.workspace, package, reason="expired")

        log_commerce_event(
            message="subscription.expired",
            workspace_id=locked.workspace_id,
            extra={"subscription_id": locked.pk},
        )
        return locked

    # Plan changes

    def preview_plan_change(self, subscription: Subscription, new_package: Package,
                            billing_cycle: Optional[str] = None) -> ProrationResult:
        current = self.current_package(subscription)
        if current is None:
            raise SubscriptionError("Subscription has no current package.")
        cycle = billing_cycle or subscription.billing_cycle
        return calculate_proration(
            subscription,
            current.price_for_cycle(cycle),
            new_package.price_for_cycle(cycle),
            currency=new_package.currency,
        )

    def change_plan(self, subscription: Subscription, new_package: Package, prorate: bool = True,
                    immediate: bool = False) -> PlanChangeResult:
        """Swap packages now, or schedule the swap for the end of the current period."""
        current = self.current_package(subscription)
        if current is not None and current.pk == new_package.pk:
            raise SubscriptionError("Workspace is already on the requested plan.")
        if not subscription.is_valid():
            raise SubscriptionError("Only live subscriptions can change plan.")

        if not immediate:
            return PlanChangeResult(subscription=self._schedule_plan_change(subscription, new_package),
                                    immediate=False)

        proration = None
        if prorate and current is not None:
            proration = self.preview_plan_change(subscription, new_package)

        new_price_id = new_package.stripe_price_for_cycle(subscription.billing_cycle)
        gateway = self._gateway_for(subscription)
        if gateway is not None and new_price_id:
            gateway.update_subscription(subscription, {"price_id": new_price_id, "prorate": prorate})

        invoice = credit_note = None
        with transaction.atomic():
            locked = _lock(subscription)
            workspace = locked.workspace
            grant = self.entitlements.grant_package(workspace, new_package, source=locked.gateway)
            if current is not None:
                self.entitlements.revoke_package(workspace, current, reason="plan_change")

            metadata = dict(locked.metadata or {})
            metadata.pop(PENDING_PLAN_CHANGE, None)
            metadata["plan_change"] = {
                "from": getattr(current, "code", None),
                "to": new_package.code,
                "changed_at": timezone.now().isoformat(),
                "proration": proration.to_dict() if proration else None,
            }
            # Stripe prorates on its own invoice; other gateways settle the difference locally.
            if proration is not None and locked.gateway != Gateway.STRIPE:
                if proration.requires_payment:
                    invoice = self.invoices.create_for_renewal(
                        workspace,
                        proration.amount_due,
                        f"Plan change: {getattr(current, 'name', '')} to {new_package.name}",
                        subscription=locked,
                        currency=proration.currency,
                    )
                elif proration.has_credit:
                    credit_note = credit_notes.create(
                        workspace,
                        proration.credit_balance,
                        CreditNote.Reason.PLAN_DOWNGRADE,
                        description=f"Plan change: {getattr(current, 'name', '')} to {new_package.name}",
                        currency=proration.currency,
                        subscription=locked,
                    )

            locked.package = new_package
            locked.workspace_package = grant
            locked.gateway_price_id = new_price_id or locked.gateway_price_id
            locked.metadata = metadata
            locked.save(update_fields=["package", "workspace_package", "gateway_price_id", "metadata", "updated_at"])

        log_commerce_event(
            message="subscription.plan_changed",
            workspace_id=locked.workspace_id,
            extra={
                "subscription_id": locked.pk,
                "from_package": getattr(current, "code", None),
                "to_package": new_package.code,
                "net_amount": str(proration.net_amount) if proration else None,
            },
        )
        self.notifier.notify_workspace_owner(workspace, "plan_changed", {"package": new_package.code})
        return PlanChangeResult(subscription=locked, proration=proration, immediate=True, invoice=invoice,
                                credit_note=credit_note)

    def _schedule_plan_change(self, subscription: Subscription, new_package: Package) -> Subscription:
        with transaction.atomic():
            locked = _lock(subscription)
            metadata = dict(locked.metadata or {})
            metadata[PENDING_PLAN_CHANGE] = {
                "to_package_id": new_package.pk,
                "to_package_code": new_package.code,
                "scheduled_for": locked.current_period_end.isoformat(),
            }
            locked.metadata = metadata
            locked.save(update_fields=["metadata", "updated_at"])
        logger.info("Plan change to %s scheduled for subscription %s", new_package.code, locked.pk)
        return locked

    @staticmethod
    def pending_plan_change(subscription: Subscription) -> Optional[Dict]:
        return (subscription.metadata or {}).get(PENDING_PLAN_CHANGE)

    def apply_scheduled_plan_change(self, subscription: Subscription) -> Optional[Subscription]:
        pending = self.pending_plan_change(subscription)
        if not pending:
            return None
        new_package = Package.objects.filter(pk=pending.get("to_package_id")).first()
        if new_package is None:
            logger.warning(
                "Scheduled plan change for subscription %s failed: package %s not found",
                subscription.pk,
                pending.get("to_package_id"),
            )
            return None
        current = self.current_package(subscription)
        if current is not None and current.pk == new_package.pk:
            return self.cancel_scheduled_plan_change(subscription)
        return self.change_plan(subscription, new_package, prorate=False, immediate=True).subscription

    def cancel_scheduled_plan_change(self, subscription: Subscription) -> Subscription:
        with transaction.atomic():
            locked = _lock(subscription)
            metadata = dict(locked.metadata or {})
            if metadata.pop(PENDING_PLAN_CHANGE, None) is not None:
                locked.metadata = metadata
                locked.save(update_fields=["metadata", "updated_at"])
        return locked

    # Sweeps

    @staticmethod
    def get_expiring_soon(days: int = 7, now: Optional[datetime] = None):
        now = now or timezone.now()
        return Subscription.objects.filter(
            status=Subscription.Status.ACTIVE,
            cancelled_at__isnull=True,
            current_period_end__gt=now,
            current_period_end__lte=now + timedelta(days=days),
        ).select_related("workspace", "package")

    @staticmethod
    def reminded_recently(subscription: Subscription, days: int, now: datetime) -> bool:
        sent = (subscription.metadata or {}).get(LAST_RENEWAL_REMINDER)
        if not sent:
            return False
        try:
            sent_at = datetime.fromisoformat(sent)
        except (TypeError, ValueError):
            return False
        return sent_at >= now - timedelta(days=days)

    def send_renewal_reminders(self, days: int = 7, dry_run: bool = False,
                               now: Optional[datetime] = None) -> Dict[str, int]:
        """Tell owners about renewals due within ``days``; at most one reminder per window."""
        now = now or timezone.now()
        stats = {"selected": 0, "sent": 0, "skipped": 0, "failed": 0}
        for subscription in self.get_expiring_soon(days, now).order_by("current_period_end", "pk"):
            if self.reminded_recently(subscription, days, now):
                continue
            stats["selected"] += 1
            if subscription.workspace.owner_id is None:
                logger.warning("Renewal reminder for subscription %s skipped: no workspace owner", subscription.pk)
                stats["skipped"] += 1
                continue
            if dry_run:
                continue

            package = subscription.package
            try:
                self.notifier.notify_workspace_owner(subscription.workspace, notifications.UPCOMING_RENEWAL, {
                    "subscription_id": subscription.pk,
                    "package": getattr(package, "code", None),
                    "amount": str(package.price_for_cycle(subscription.billing_cycle)) if package else None,
                    "currency": getattr(package, "currency", None),
                    "renews_at": subscription.current_period_end.isoformat(),
                })
            except Exception:
                logger.exception("Renewal reminder failed for subscription %s", subscription.pk)
                stats["failed"] += 1
                continue

            metadata = dict(subscription.metadata or {})
            metadata[LAST_RENEWAL_REMINDER] = now.isoformat()
            Subscription.objects.filter(pk=subscription.pk).update(metadata=metadata, updated_at=now)
            stats["sent"] += 1
        return stats

    @staticmethod
    def select_expired(now: Optional[datetime] = None):
        """Cancelled subscriptions whose paid period has lapsed."""
        now = now or timezone.now()
        return Subscription.objects.filter(
            status__in=(*Subscription.LIVE_STATUSES, Subscription.Status.CANCELLED),
            cancelled_at__isnull=False,
            current_period_end__lte=now,
        ).order_by("current_period_end", "pk")

    def process_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        stats = {"expired": 0, "failed": 0}
        for subscription in self.select_expired(now):
            try:
                self.expire(subscription)
                stats["expired"] += 1
            except Exception:
                logger.exception("Failed to expire subscription %s", subscription.pk)
                stats["failed"] += 1
        return stats

    def apply_scheduled_plan_changes(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or timezone.now()
        stats = {"applied": 0, "skipped": 0, "failed": 0}
        due = Subscription.objects.filter(
            status__in=Subscription.LIVE_STATUSES,
            metadata__has_key=PENDING_PLAN_CHANGE,
            current_period_end__lte=now,
        )
        for subscription in due:
            try:
                if self.apply_scheduled_plan_change(subscription) is None:
                    stats["skipped"] += 1
                else:
                    stats["applied"] += 1
            except Exception:
                logger.exception("Failed to apply scheduled plan change for subscription %s", subscription.pk)
                stats["failed"] += 1
        return stats
