"""Failed-payment recovery: retry, pause, suspend, cancel and expire.

Each stage is a pure selection query plus an executor. Dry runs call the same
selection functions and report what would happen. Every selection only
matches rows still in the stage's source state, so reruns are harmless.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from django.db import transaction
from django.db.models import Exists, OuterRef, Q
from django.utils import timezone

from commerce.conf import DunningConfig
from commerce.exceptions import GatewayConnectionError, GatewayError, GatewayRateLimitError
from commerce.models import CRYPTO_GATEWAYS, Invoice, Payment, PaymentMethod, Subscription
from commerce.observability.logging import log_commerce_event
from commerce.observability.metrics import DUNNING_TRANSITIONS, PAYMENT_FAILURE_COUNT, PAYMENT_SUCCESS_COUNT
from commerce.services import notifications
from commerce.services.subscriptions import DUNNING_SUSPENSION_REASON

logger = logging.getLogger(__name__)

STAGES = ("retry", "pause", "suspend", "cancel", "expire")

SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"
DEFERRED = "deferred"


@dataclass
class StageReport:
    stage: str
    dry_run: bool = False
    selected: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    item_ids: List[Any] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def record(self, outcome: str) -> None:
        if outcome == SUCCEEDED:
            self.succeeded += 1
        elif outcome == SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "dry_run": self.dry_run,
            "selected": self.selected,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
        }


@dataclass
class DunningReport:
    stages: List[StageReport] = field(default_factory=list)
    enabled: bool = True

    @property
    def has_failures(self) -> bool:
        return any(stage.failed for stage in self.stages)

    def totals(self) -> Dict[str, int]:
        return {
            key: sum(getattr(stage, key) for stage in self.stages)
            for key in ("selected", "succeeded", "failed", "skipped")
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "stages": [stage.to_dict() for stage in self.stages],
            "totals": self.totals(),
        }


class DunningService:
    def __init__(self, config: DunningConfig, subscriptions, gateway_resolver: Optional[Callable] = None,
                 notifier=None):
        if gateway_resolver is None:
            from commerce.services.gateways import get_gateway

            gateway_resolver = get_gateway
        self.config = config
        self.subscriptions = subscriptions
        self.gateway_resolver = gateway_resolver
        self.notifier = notifier or subscriptions.notifier

    @property
    def entitlements(self):
        return self.subscriptions.entitlements

    def _notify(self, workspace, template: str, context: Optional[Dict[str, Any]] = None) -> None:
        if self.config.send_notifications and workspace is not None:
            self.notifier.notify_workspace_owner(workspace, template, context)

    # Schedule

    def calculate_initial_retry(self, now: Optional[datetime] = None) -> datetime:
        now = now or timezone.now()
        first_retry_days = self.config.retry_days[0] if self.config.retry_days else 1
        hours = max(self.config.initial_grace_hours, first_retry_days * 24)
        return now + timedelta(hours=hours)

    def calculate_next_retry(self, attempts: int, now: Optional[datetime] = None) -> Optional[datetime]:
        """When to charge again after ``attempts`` failed charges; None once retries are exhausted."""
        now = now or timezone.now()
        if attempts >= self.config.max_attempts:
            return None
        if attempts <= 1:
            return self.calculate_initial_retry(now)
        return now + timedelta(days=self.config.retry_days[attempts - 1])

    # Entry points from webhooks and charge flows

    def handle_payment_failure(self, invoice: Invoice, subscription: Optional[Subscription] = None) -> Invoice:
        now = timezone.now()
        with transaction.atomic():
            locked = Invoice.objects.select_for_update().get(pk=invoice.pk)
            locked.charge_attempts = (locked.charge_attempts or 0) + 1
            locked.status = Invoice.Status.OVERDUE
            locked.last_charge_attempt = now
            locked.next_charge_attempt = self.calculate_next_retry(locked.charge_attempts, now)
            locked.save(update_fields=[
                "charge_attempts",
                "status",
                "last_charge_attempt",
                "next_charge_attempt",
                "updated_at",
            ])
            subscription = subscription or self.find_subscription_for_invoice(locked)
            if subscription is not None:
                self.subscriptions.mark_past_due(subscription)

        self._notify(locked.workspace, notifications.PAYMENT_FAILED, {"invoice": locked.invoice_number})
        log_commerce_event(
            message="dunning.payment_failed",
            workspace_id=locked.workspace_id,
            extra={
                "invoice_id": locked.pk,
                "attempt": locked.charge_attempts,
                "next_retry": locked.next_charge_attempt.isoformat() if locked.next_charge_attempt else None,
            },
        )
        return locked

    @staticmethod
    def find_subscription_for_invoice(invoice: Invoice) -> Optional[Subscription]:
        if invoice.subscription_id:
            return invoice.subscription
        return (
            Subscription.objects.filter(
                workspace_id=invoice.workspace_id,
                status__in=(Subscription.Status.ACTIVE, Subscription.Status.PAST_DUE, Subscription.Status.PAUSED),
            )
            .order_by("-created_at")
            .first()
        )

    def gateway_for_invoice(self, invoice: Invoice) -> str:
        subscription = self.find_subscription_for_invoice(invoice)
        if subscription is not None:
            return subscription.gateway
        if invoice.order_id and invoice.order.gateway:
            return invoice.order.gateway
        return "stripe"

    # Selection (side-effect free)

    def select_retry_invoices(self, now: Optional[datetime] = None):
        now = now or timezone.now()
        return (
            Invoice.objects.filter(
                status__in=Invoice.UNPAID_STATUSES,
                auto_charge=True,
                next_charge_attempt__isnull=False,
                next_charge_attempt__lte=now,
                charge_attempts__lt=self.config.max_attempts,
            )
            .select_related("workspace", "subscription", "order")
            .order_by("next_charge_attempt", "pk")
        )

    def select_pausable_subscriptions(self, now: Optional[datetime] = None):
        """Past-due subscriptions whose workspace holds an invoice with no retries left."""
        now = now or timezone.now()
        exhausted = Invoice.objects.filter(
            workspace_id=OuterRef("workspace_id"),
            status__in=Invoice.UNPAID_STATUSES,
            auto_charge=True,
            charge_attempts__gt=0,
            last_charge_attempt__lte=now - timedelta(days=1),
        ).filter(Q(next_charge_attempt__isnull=True) | Q(charge_attempts__gte=self.config.max_attempts))
        return (
            Subscription.objects.filter(status=Subscription.Status.PAST_DUE)
            .filter(Exists(exhausted))
            .select_related("workspace")
            .order_by("pk")
        )

    def select_suspendable_subscriptions(self, now: Optional[datetime] = None):
        now = now or timezone.now()
        return (
            Subscription.objects.filter(
                status=Subscription.Status.PAUSED,
                paused_at__lte=now - timedelta(days=self.config.suspend_after_days),
                workspace__is_active=True,
            )
            .select_related("workspace")
            .order_by("pk")
        )

    def select_cancellable_subscriptions(self, now: Optional[datetime] = None):
        now = now or timezone.now()
        return (
            Subscription.objects.filter(
                status=Subscription.Status.PAUSED,
                paused_at__lte=now - timedelta(days=self.config.cancel_after_days),
            )
            .select_related("workspace")
            .order_by("pk")
        )

    def select_expirable_subscriptions(self, now: Optional[datetime] = None):
        return self.subscriptions.select_expired(now).select_related("workspace")

    # Executors

    def retry_payment(self, invoice: Invoice) -> str:
        gateway_name = self.gateway_for_invoice(invoice)
        if gateway_name in CRYPTO_GATEWAYS:
            return self._skip_crypto_invoice(invoice)

        payment_method = (
            PaymentMethod.objects.filter(workspace_id=invoice.workspace_id, gateway=gateway_name, is_active=True)
            .order_by("-is_default", "-created_at")
            .first()
        )
        if payment_method is None:
            self._record_failed_retry(invoice, "no_payment_method")
            return FAILED

        gateway = self.gateway_resolver(gateway_name)
        try:
            payment = gateway.charge_payment_method(
                payment_method,
                invoice.amount_due,
                invoice.currency,
                metadata={"invoice_id": str(invoice.pk), "invoice_number": invoice.invoice_number},
            )
        except (GatewayConnectionError, GatewayRateLimitError) as exc:
            # Outcome unknown: leave the attempt counter alone and try again next run.
            logger.warning("Retry for invoice %s deferred: %s", invoice.pk, exc)
            PAYMENT_FAILURE_COUNT.labels(gateway=gateway_name, reason="ambiguous").inc()
            return DEFERRED
        except GatewayError as exc:
            self._record_failed_retry(invoice, getattr(exc, "code", "gateway_error"))
            return FAILED

        if payment.status != Payment.Status.SUCCEEDED:
            self._record_failed_retry(invoice, payment.status)
            return FAILED

        self._recover(invoice, payment)
        PAYMENT_SUCCESS_COUNT.labels(gateway=gateway_name).inc()
        return SUCCEEDED

    def _skip_crypto_invoice(self, invoice: Invoice) -> str:
        """Crypto cannot be charged unattended: advance the schedule and ask for a manual payment."""
        now = timezone.now()
        with transaction.atomic():
            locked = Invoice.objects.select_for_update().get(pk=invoice.pk)
            if locked.status not in Invoice.UNPAID_STATUSES:
                return SKIPPED
            locked.charge_attempts = (locked.charge_attempts or 0) + 1
            locked.last_charge_attempt = now
            locked.next_charge_attempt = self.calculate_next_retry(locked.charge_attempts, now)
            locked.save(update_fields=["charge_attempts", "last_charge_attempt", "next_charge_attempt", "updated_at"])
        self._notify(locked.workspace, notifications.MANUAL_PAYMENT_REQUIRED, {"invoice": locked.invoice_number})
        logger.info("Crypto invoice %s needs a manual payment (attempt %s)", locked.pk, locked.charge_attempts)
        return SKIPPED

    def _record_failed_retry(self, invoice: Invoice, reason: str) -> None:
        now = timezone.now()
        with transaction.atomic():
            locked = Invoice.objects.select_for_update().get(pk=invoice.pk)
            locked.charge_attempts = (locked.charge_attempts or 0) + 1
            locked.status = Invoice.Status.OVERDUE
            locked.last_charge_attempt = now
            locked.next_charge_attempt = self.calculate_next_retry(locked.charge_attempts, now)
            locked.save(update_fields=[
                "charge_attempts",
                "status",
                "last_charge_attempt",
                "next_charge_attempt",
                "updated_at",
            ])
        PAYMENT_FAILURE_COUNT.labels(gateway=self.gateway_for_invoice(locked), reason=reason).inc()
        self._notify(
            locked.workspace,
            notifications.PAYMENT_RETRY_FAILED,
            {"invoice": locked.invoice_number, "attempt": locked.charge_attempts,
             "max_attempts": self.config.max_attempts},
        )
        logger.info("Payment retry failed for invoice %s (attempt %s, reason=%s)",
                    locked.pk, locked.charge_attempts, reason)

    def _recover(self, invoice: Invoice, payment: Payment) -> None:
        with transaction.atomic():
            locked = Invoice.objects.select_for_update().get(pk=invoice.pk)
            if payment.invoice_id is None:
                payment.invoice = locked
                payment.save(update_fields=["invoice"])
            self.subscriptions.invoices.mark_paid(locked, payment)

            subscription = self.find_subscription_for_invoice(locked)
            if subscription is not None:
                if subscription.status == Subscription.Status.PAUSED:
                    self.subscriptions.unpause(subscription, sync_gateway=False)
                elif subscription.status == Subscription.Status.PAST_DUE:
                    Subscription.objects.filter(pk=subscription.pk, status=Subscription.Status.PAST_DUE).update(
                        status=Subscription.Status.ACTIVE,
                        updated_at=timezone.now(),
                    )
            workspace = locked.workspace
            if not workspace.is_active and workspace.suspension_reason == DUNNING_SUSPENSION_REASON:
                self.entitlements.restore_workspace(workspace)
        self._notify(locked.workspace, notifications.PAYMENT_RETRY_SUCCEEDED, {"invoice": locked.invoice_number})
        log_commerce_event(message="dunning.recovered", workspace_id=locked.workspace_id,
                           extra={"invoice_id": locked.pk})

    def pause_subscription(self, subscription: Subscription) -> str:
        paused = self.subscriptions.pause(subscription, force=True)
        if paused.status != Subscription.Status.PAUSED:
            return SKIPPED
        self._notify(paused.workspace, notifications.SUBSCRIPTION_PAUSED, {"subscription_id": paused.pk})
        log_commerce_event(message="dunning.paused", workspace_id=paused.workspace_id,
                           extra={"subscription_id": paused.pk})
        return SUCCEEDED

    def suspend_subscription(self, subscription: Subscription) -> str:
        workspace = subscription.workspace
        if not workspace.is_active:
            return SKIPPED
        self.entitlements.suspend_workspace(workspace, reason=DUNNING_SUSPENSION_REASON)
        self._notify(workspace, notifications.SUBSCRIPTION_SUSPENDED, {"subscription_id": subscription.pk})
        log_commerce_event(message="dunning.suspended", workspace_id=workspace.pk,
                           extra={"subscription_id": subscription.pk})
        return SUCCEEDED

    def cancel_subscription(self, subscription: Subscription) -> str:
        cancelled = self.subscriptions.cancel(subscription, reason="Non-payment", immediately=True)
        self.subscriptions.expire(cancelled)
        self._notify(cancelled.workspace, notifications.SUBSCRIPTION_CANCELLED, {"subscription_id": cancelled.pk})
        log_commerce_event(message="dunning.cancelled", workspace_id=cancelled.workspace_id,
                           extra={"subscription_id": cancelled.pk, "reason": "Non-payment"})
        return SUCCEEDED

    def expire_subscription(self, subscription: Subscription) -> str:
        expired = self.subscriptions.expire(subscription)
        self._notify(expired.workspace, notifications.SUBSCRIPTION_EXPIRED, {"subscription_id": expired.pk})
        return SUCCEEDED

    # Orchestration

    def _stage_plan(self, stage: str):
        return {
            "retry": (self.select_retry_invoices, self.retry_payment),
            "pause": (self.select_pausable_subscriptions, self.pause_subscription),
            "suspend": (self.select_suspendable_subscriptions, self.suspend_subscription),
            "cancel": (self.select_cancellable_subscriptions, self.cancel_subscription),
            "expire": (self.select_expirable_subscriptions, self.expire_subscription),
        }[stage]

    def run_stage(self, stage: str, dry_run: bool = False, now: Optional[datetime] = None) -> StageReport:
        if stage not in STAGES:
            raise ValueError(f"Unknown dunning stage '{stage}'")
        select, execute = self._stage_plan(stage)
        items = list(select(now))
        report = StageReport(stage=stage, dry_run=dry_run, selected=len(items))
        report.item_ids = [item.pk for item in items]
        if dry_run:
            return report

        for item in items:
            try:
                outcome = execute(item)
            except Exception as exc:
                logger.exception("Dunning %s failed for %s %s", stage, type(item).__name__, item.pk)
                report.errors.append(f"{type(item).__name__} {item.pk}: {exc}")
                outcome = FAILED
            if outcome == DEFERRED:
                outcome = SKIPPED
            report.record(outcome)
            DUNNING_TRANSITIONS.labels(stage=stage, outcome=outcome).inc()
        logger.info(
            "Dunning stage %s: selected=%s succeeded=%s failed=%s skipped=%s",
            stage, report.selected, report.succeeded, report.failed, report.skipped,
        )
        return report

    def run(self, stages: Optional[Sequence[str]] = None, dry_run: bool = False,
            now: Optional[datetime] = None) -> DunningReport:
        if not self.config.enabled:
            logger.info("Dunning is disabled; nothing to do")
            return DunningReport(enabled=False)
        report = DunningReport()
        for stage in stages or STAGES:
            report.stages.append(self.run_stage(stage, dry_run=dry_run, now=now))
        return report

    # Status

    def get_dunning_status(self, subscription: Subscription, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or timezone.now()
        overdue = (
            Invoice.objects.filter(
                workspace_id=subscription.workspace_id,
                status__in=Invoice.UNPAID_STATUSES,
                auto_charge=True,
            )
            .order_by("due_date", "pk")
            .first()
        )
        if overdue is None:
            return {"stage": "none", "days_overdue": 0, "next_action": "none", "next_action_date": None}

        days_overdue = max(0, (now.date() - overdue.due_date).days) if overdue.due_date else 0
        status = subscription.status
        if status in (Subscription.Status.ACTIVE, Subscription.Status.PAST_DUE, Subscription.Status.TRIALING):
            return {
                "stage": "retry",
                "days_overdue": days_overdue,
                "next_action": "retry" if overdue.next_charge_attempt else "pause",
                "next_action_date": overdue.next_charge_attempt,
            }
        if status == Subscription.Status.PAUSED:
            paused_at = subscription.paused_at or now
            if (now - paused_at).days < self.config.suspend_after_days:
                return {
                    "stage": "paused",
                    "days_overdue": days_overdue,
                    "next_action": "suspend",
                    "next_action_date": paused_at + timedelta(days=self.config.suspend_after_days),
                }
            return {
                "stage": "suspended",
                "days_overdue": days_overdue,
                "next_action": "cancel",
                "next_action_date": paused_at + timedelta(days=self.config.cancel_after_days),
            }
        return {"stage": "cancelled", "days_overdue": days_overdue, "next_action": "none", "next_action_date": None}


def build_dunning_service(config: Optional[DunningConfig] = None, gateway_resolver=None) -> DunningService:
    """Wire the service with the collaborators configured in settings."""
    from commerce.services.collaborators import build_subscription_service

    subscriptions = build_subscription_service(gateway_resolver)
    return DunningService(config or DunningConfig.from_settings(), subscriptions, gateway_resolver,
                          subscriptions.notifier)
