"""Payment gateway adapters and the factory that builds them from settings."""

from commerce.exceptions import GatewayConfigurationError

from .base import CanonicalEvent, CheckoutSession, PaymentGateway, RefundResult
from .btcpay import BTCPayGateway
from .stripe_gateway import StripeGateway

GATEWAY_CLASSES = {
    "stripe": StripeGateway,
    "btcpay": BTCPayGateway,
}


def get_gateway(name: str) -> PaymentGateway:
    """Build the named gateway from ``COMMERCE_GATEWAYS``."""
    try:
        gateway_class = GATEWAY_CLASSES[(name or "").lower()]
    except KeyError:
        raise GatewayConfigurationError(f"Unknown payment gateway '{name}'.") from None
    return gateway_class.from_settings()


__all__ = [
    "BTCPayGateway",
    "CanonicalEvent",
    "CheckoutSession",
    "GATEWAY_CLASSES",
    "PaymentGateway",
    "RefundResult",
    "StripeGateway",
    "get_gateway",
]
