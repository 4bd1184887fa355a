"""Gateway-agnostic webhook reconciliation.

``reconcile`` verifies the signature over the raw body, reduces the payload to a
:class:`CanonicalEvent`, records the delivery once per (gateway, event id) and
dispatches to a handler. Handlers do their network reads first and then apply
every mutation inside a single ``transaction.atomic`` block, so an exception
leaves nothing half-applied.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from commerce.observability.logging import log_commerce_event, mask_identifier
from commerce.observability.metrics import WEBHOOK_EVENT_COUNT, WEBHOOK_LATENCY
from commerce.services.gateways.base import CanonicalEvent

from .event_log import WebhookLogger

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("commerce.security")


@dataclass(frozen=True)
class WebhookResponse:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HandlerResult:
    """Outcome of a webhook handler invocation."""

    status: str
    detail: str = ""
    order: Any = None
    subscription: Any = None

    PROCESSED = "processed"
    SKIPPED = "skipped"

    @classmethod
    def processed(cls, detail: str = "", order=None, subscription=None) -> "HandlerResult":
        return cls(status=cls.PROCESSED, detail=detail, order=order, subscription=subscription)

    @classmethod
    def skipped(cls, detail: str = "", order=None, subscription=None) -> "HandlerResult":
        return cls(status=cls.SKIPPED, detail=detail, order=order, subscription=subscription)


@dataclass
class WebhookContext:
    """Collaborators handed to every webhook handler."""

    gateway: Any
    subscriptions: Any
    invoices: Any
    entitlements: Any
    notifier: Any

    @classmethod
    def build(cls, gateway) -> "WebhookContext":
        from commerce.services.collaborators import get_entitlement_service, get_notifier, get_tax_calculator
        from commerce.services.gateways import get_gateway
        from commerce.services.invoices import InvoiceService
        from commerce.services.subscriptions import SubscriptionService

        entitlements = get_entitlement_service()
        notifier = get_notifier()
        invoices = InvoiceService(get_tax_calculator())

        def resolve(name: str):
            return gateway if name == gateway.name else get_gateway(name)

        return cls(
            gateway=gateway,
            subscriptions=SubscriptionService(entitlements, notifier, gateway_resolver=resolve, invoices=invoices),
            invoices=invoices,
            entitlements=entitlements,
            notifier=notifier,
        )


Handler = Callable[[CanonicalEvent, WebhookContext], HandlerResult]


def _count(gateway_name: str, event_type: str, outcome: str) -> None:
    WEBHOOK_EVENT_COUNT.labels(gateway=gateway_name, event_type=event_type or "unknown", outcome=outcome).inc()


def reconcile(gateway_name: str, gateway, raw_body: bytes, signature: Optional[str],
              headers: Optional[Mapping[str, Any]] = None, *, handlers: Optional[Dict[str, Handler]] = None,
              context: Optional[WebhookContext] = None, event_log: Optional[WebhookLogger] = None
              ) -> WebhookResponse:
    """Verify, record, deduplicate and dispatch one webhook delivery."""
    with WEBHOOK_LATENCY.labels(gateway=gateway_name).time():
        return _reconcile(gateway_name, gateway, raw_body, signature, headers, handlers, context, event_log)


def _reconcile(gateway_name, gateway, raw_body, signature, headers, handlers, context, event_log) -> WebhookResponse:
    if not gateway.verify_webhook_signature(raw_body, signature or ""):
        security_logger.warning(
            "%s webhook rejected: invalid signature (signature=%s)",
            gateway_name,
            mask_identifier(signature) if signature else "<missing>",
        )
        _count(gateway_name, "unverified", "rejected")
        return WebhookResponse(401, {"error": "invalid_signature"})

    event = gateway.parse_webhook_event(raw_body)
    if event.is_unknown:
        logger.warning("%s webhook payload could not be parsed; acknowledging", gateway_name)
        _count(gateway_name, event.type, "skipped")
        return WebhookResponse(200, {"status": "ignored", "reason": "unparseable payload"})

    event_id = gateway.webhook_event_id(event)
    if not event_id:
        logger.warning("%s webhook %s has no event id; acknowledging", gateway_name, event.type)
        _count(gateway_name, event.type, "skipped")
        return WebhookResponse(200, {"status": "ignored", "reason": "missing event id"})

    event_log = event_log or WebhookLogger()
    record, created = event_log.start(gateway_name, event_id, event.type, raw_body, headers)
    if event_log.is_duplicate(record, created):
        logger.info("%s webhook %s (%s) is a duplicate delivery", gateway_name, event_id, event.type)
        _count(gateway_name, event.type, "duplicate")
        return WebhookResponse(200, {"status": "duplicate"})

    if handlers is None:
        from . import handlers_for

        handlers = handlers_for(gateway_name)
    handler = handlers.get(event.type)
    if handler is None:
        event_log.mark_skipped(record, f"Unhandled event type: {event.type}")
        _count(gateway_name, event.type, "skipped")
        return WebhookResponse(200, {"status": "skipped", "reason": "unhandled event type"})

    try:
        result = handler(event, context or WebhookContext.build(gateway))
    except Exception as exc:
        logger.exception("%s webhook %s (%s) failed", gateway_name, event_id, event.type)
        event_log.mark_failed(record, f"{type(exc).__name__}: {exc}")
        _count(gateway_name, event.type, "failed")
        return WebhookResponse(500, {"error": "processing_error"})

    event_log.link_order(record, result.order)
    event_log.link_subscription(record, result.subscription)
    if result.status == HandlerResult.SKIPPED:
        event_log.mark_skipped(record, result.detail)
    else:
        event_log.mark_processed(record)
    _count(gateway_name, event.type, result.status)
    log_commerce_event(
        message="webhook.reconciled",
        workspace_id=getattr(result.order or result.subscription, "workspace_id", None),
        extra={
            "gateway": gateway_name,
            "event_type": event.type,
            "event_id": event_id,
            "outcome": result.status,
            "detail": result.detail,
        },
    )
    return WebhookResponse(200, {"status": result.status, "detail": result.detail})
