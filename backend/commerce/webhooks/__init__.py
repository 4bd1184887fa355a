from .engine import HandlerResult, WebhookContext, WebhookResponse, reconcile
from .event_log import WebhookLogger, cleanup_webhook_events


def handlers_for(gateway_name: str):
    """Event type -> handler table for a gateway."""
    from commerce.models import Gateway

    if gateway_name == Gateway.BTCPAY:
        from .btcpay_events import HANDLERS
    elif gateway_name == Gateway.STRIPE:
        from .stripe_events import HANDLERS
    else:
        raise ValueError(f"Unknown gateway: {gateway_name}")
    return HANDLERS


__all__ = [
    "HandlerResult",
    "WebhookContext",
    "WebhookLogger",
    "WebhookResponse",
    "cleanup_webhook_events",
    "handlers_for",
    "reconcile",
]
