"""Persistence of webhook deliveries and the duplicate-delivery rule."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional, Tuple

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from commerce.conf import webhook_settings
from commerce.models import WebhookEvent

logger = logging.getLogger(__name__)

RECORDED_HEADERS = (
    "Content-Type",
    "User-Agent",
    "Stripe-Signature",
    "BTCPay-Sig",
    "X-Forwarded-For",
)
SIGNATURE_HEADERS = {"stripe-signature", "btcpay-sig"}
SIGNATURE_PREVIEW_LENGTH = 20


def sanitise_headers(headers: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Keep a handful of diagnostic headers; signatures are truncated."""
    if not headers:
        return {}
    lowered = {str(key).lower(): str(value) for key, value in headers.items()}
    cleaned = {}
    for name in RECORDED_HEADERS:
        value = lowered.get(name.lower())
        if value is None:
            continue
        if name.lower() in SIGNATURE_HEADERS and len(value) > SIGNATURE_PREVIEW_LENGTH:
            value = f"{value[:SIGNATURE_PREVIEW_LENGTH]}..."
        cleaned[name] = value
    return cleaned


class WebhookLogger:
    """Records each (gateway, event id) once and decides whether a delivery is a duplicate.

    A delivery is a duplicate when its row is processed or skipped, or when it
    is still pending and was touched within ``inflight_seconds`` (another
    worker holds it). Failed rows and stale pending rows are claimed again with
    ``attempts + 1``.
    """

    def __init__(self, inflight_seconds: Optional[int] = None):
        if inflight_seconds is None:
            inflight_seconds = int(webhook_settings()["inflight_seconds"])
        self.inflight_seconds = inflight_seconds

    def start(self, gateway: str, event_id: str, event_type: str, payload, headers=None) -> Tuple[WebhookEvent, bool]:
        """Insert the delivery row; returns ``(row, created)``."""
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8", errors="replace")
        try:
            with transaction.atomic():
                event = WebhookEvent.objects.create(
                    gateway=gateway,
                    event_id=event_id,
                    event_type=event_type or "",
                    payload=payload or "",
                    headers=sanitise_headers(headers),
                    status=WebhookEvent.Status.PENDING,
                )
            return event, True
        except IntegrityError:
            event = WebhookEvent.objects.get(gateway=gateway, event_id=event_id)
            return event, False

    def is_duplicate(self, event: WebhookEvent, created: bool) -> bool:
        if created:
            return False
        if event.status in (WebhookEvent.Status.PROCESSED, WebhookEvent.Status.SKIPPED):
            return True
        now = timezone.now()
        if event.status == WebhookEvent.Status.PENDING and event.updated_at > now - timedelta(
            seconds=self.inflight_seconds
        ):
            return True
        return not self._claim(event, now)

    @staticmethod
    def _claim(event: WebhookEvent, now) -> bool:
        """Take over a failed or stale row; only one concurrent redelivery wins."""
        claimed = WebhookEvent.objects.filter(
            pk=event.pk,
            status=event.status,
            updated_at=event.updated_at,
        ).update(
            status=WebhookEvent.Status.PENDING,
            attempts=F("attempts") + 1,
            last_error="",
            updated_at=now,
        )
        if claimed:
            event.refresh_from_db()
            logger.info("Reprocessing webhook %s:%s (attempt %s)", event.gateway, event.event_id, event.attempts)
        return bool(claimed)

    @staticmethod
    def mark_processed(event: WebhookEvent, http_status_code: int = 200) -> None:
        event.status = WebhookEvent.Status.PROCESSED
        event.processed_at = timezone.now()
        event.http_status_code = http_status_code
        event.save(update_fields=["status", "processed_at", "http_status_code", "updated_at"])

    @staticmethod
    def mark_skipped(event: WebhookEvent, reason: str = "", http_status_code: int = 200) -> None:
        event.status = WebhookEvent.Status.SKIPPED
        event.processed_at = timezone.now()
        event.last_error = reason
        event.http_status_code = http_status_code
        event.save(update_fields=["status", "processed_at", "last_error", "http_status_code", "updated_at"])

    @staticmethod
    def mark_failed(event: WebhookEvent, error: str, http_status_code: int = 500) -> None:
        event.status = WebhookEvent.Status.FAILED
        event.last_error = error[:2000]
        event.http_status_code = http_status_code
        event.save(update_fields=["status", "last_error", "http_status_code", "updated_at"])

    @staticmethod
    def link_order(event: WebhookEvent, order) -> None:
        if order is not None and event.order_id != order.pk:
            event.order = order
            event.save(update_fields=["order", "updated_at"])

    @staticmethod
    def link_subscription(event: WebhookEvent, subscription) -> None:
        if subscription is not None and event.subscription_id != subscription.pk:
            event.subscription = subscription
            event.save(update_fields=["subscription", "updated_at"])


def cleanup_webhook_events(retention_days: Optional[int] = None, now=None) -> int:
    """Delete processed and skipped deliveries older than the retention window."""
    retention_days = retention_days if retention_days is not None else int(webhook_settings()["retention_days"])
    cutoff = (now or timezone.now()) - timedelta(days=retention_days)
    deleted, _ = WebhookEvent.objects.filter(
        status__in=(WebhookEvent.Status.PROCESSED, WebhookEvent.Status.SKIPPED),
        received_at__lt=cutoff,
    ).delete()
    return deleted
