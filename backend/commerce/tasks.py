"""Celery tasks for scheduled commerce maintenance."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from celery import shared_task

from commerce.conf import renewal_reminder_settings
from commerce.services import currency, orders, referrals, usage
from commerce.services.collaborators import build_subscription_service
from commerce.services.dunning import build_dunning_service
from commerce.webhooks import cleanup_webhook_events as purge_webhook_events

logger = logging.getLogger(__name__)


@shared_task
def run_dunning(dry_run: bool = False) -> Dict[str, Any]:
    """Run every dunning stage once: retry, pause, suspend, cancel, then expire."""

    report = build_dunning_service().run(dry_run=dry_run)
    if report.has_failures:
        logger.warning("Dunning run finished with failures: %s", report.totals())
    return report.to_dict()


@shared_task
def process_expired_subscriptions() -> Dict[str, int]:
    """Expire subscriptions whose paid period has ended."""

    return build_subscription_service().process_expired()


@shared_task
def apply_scheduled_plan_changes() -> Dict[str, int]:
    """Apply end-of-period plan changes whose effective date has passed."""

    return build_subscription_service().apply_scheduled_plan_changes()


@shared_task
def refresh_exchange_rates(force: bool = False) -> Dict[str, Any]:
    if not force and not currency.needs_refresh():
        return {"refreshed": False, "rates": 0}
    rates = currency.refresh_exchange_rates()
    logger.info("Refreshed %s exchange rates", len(rates))
    return {"refreshed": True, "rates": len(rates)}


@shared_task
def cleanup_expired_orders(ttl_minutes: Optional[int] = None) -> Dict[str, int]:
    return orders.cancel_expired_orders(ttl_minutes=ttl_minutes)


@shared_task
def mature_referral_commissions() -> Dict[str, int]:
    return {"matured": referrals.mature_ready_commissions()}


@shared_task
def sync_usage_to_stripe(subscription_id: Optional[int] = None) -> Dict[str, int]:
    """Report unsynced metered usage to Stripe."""

    stats = usage.sync_all(subscription_id=subscription_id)
    if stats["errors"]:
        logger.warning("Usage sync finished with %s errors", stats["errors"])
    return stats


@shared_task
def cleanup_webhook_events(retention_days: Optional[int] = None) -> Dict[str, int]:
    return {"deleted": purge_webhook_events(retention_days=retention_days)}


@shared_task
def send_renewal_reminders(days: Optional[int] = None) -> Dict[str, int]:
    """Remind owners of subscriptions renewing within the configured window."""

    config = renewal_reminder_settings()
    if not config["enabled"]:
        return {"selected": 0, "sent": 0, "skipped": 0, "failed": 0}
    return build_subscription_service().send_renewal_reminders(days=days or int(config["days_before"]))
