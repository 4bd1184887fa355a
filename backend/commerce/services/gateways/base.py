"""Gateway contract shared by the Stripe and BTCPay adapters."""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from commerce.models import Order, Payment, PaymentMethod, Subscription
    from workspace.models import Workspace


UNKNOWN_EVENT_TYPE = "unknown"


@dataclass(frozen=True)
class CanonicalEvent:
    """Gateway-agnostic shape a webhook payload is reduced to before dispatch."""

    type: str
    id: Optional[str]
    status: str = "unknown"
    metadata: Mapping[str, Any] = field(default_factory=dict)
    raw: Mapping[str, Any] = field(default_factory=dict)
    object_type: Optional[str] = None

    @classmethod
    def unknown(cls) -> "CanonicalEvent":
        return cls(type=UNKNOWN_EVENT_TYPE, id=None, status="unknown", metadata={}, raw={})

    @property
    def is_unknown(self) -> bool:
        return self.type == UNKNOWN_EVENT_TYPE

    @property
    def data_object(self) -> Dict[str, Any]:
        """The ``data.object`` of a Stripe envelope; the raw body for flat payloads."""
        data = self.raw.get("data") if isinstance(self.raw, Mapping) else None
        if isinstance(data, Mapping) and isinstance(data.get("object"), Mapping):
            return dict(data["object"])
        return dict(self.raw or {})


@dataclass(frozen=True)
class CheckoutSession:
    session_id: Optional[str]
    url: Optional[str]
    status: str = "pending"
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    raw: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RefundResult:
    success: bool
    refund_id: Optional[str] = None
    error: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict)


@runtime_checkable
class PaymentGateway(Protocol):
    """Operations every gateway exposes; emulated ones are documented per adapter."""

    name: str

    def is_enabled(self) -> bool: ...

    def create_customer(self, workspace: "Workspace") -> str: ...

    def create_checkout_session(self, order: "Order", success_url: str, cancel_url: str) -> CheckoutSession: ...

    def get_checkout_session(self, session_id: str) -> CheckoutSession: ...

    def charge(self, workspace: "Workspace", amount: Decimal, currency: str,
               metadata: Optional[Dict[str, Any]] = None) -> "Payment": ...

    def charge_payment_method(self, payment_method: "PaymentMethod", amount: Decimal, currency: str,
                              metadata: Optional[Dict[str, Any]] = None) -> "Payment": ...

    def create_subscription(self, workspace: "Workspace", price_id: str,
                            options: Optional[Dict[str, Any]] = None) -> "Subscription": ...

    def update_subscription(self, subscription: "Subscription", options: Dict[str, Any]) -> "Subscription": ...

    def cancel_subscription(self, subscription: "Subscription", immediately: bool = False) -> None: ...

    def pause_subscription(self, subscription: "Subscription") -> None: ...

    def resume_subscription(self, subscription: "Subscription") -> None: ...

    def create_setup_session(self, workspace: "Workspace", return_url: str) -> Dict[str, Optional[str]]: ...

    def attach_payment_method(self, workspace: "Workspace", gateway_payment_method_id: str) -> "PaymentMethod": ...

    def detach_payment_method(self, payment_method: "PaymentMethod") -> None: ...

    def set_default_payment_method(self, payment_method: "PaymentMethod") -> None: ...

    def refund(self, payment: "Payment", amount: Decimal, reason: Optional[str] = None) -> RefundResult: ...

    def get_invoice(self, gateway_invoice_id: str) -> Dict[str, Any]: ...

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool: ...

    def parse_webhook_event(self, payload: bytes) -> CanonicalEvent: ...

    def webhook_event_id(self, event: CanonicalEvent) -> Optional[str]: ...


def to_decimal(value: Any, default: Decimal = Decimal("0.00")) -> Decimal:
    if value in (None, ""):
        return default
    try:
        return Decimal(str(value))
    except (ArithmeticError, ValueError):
        return default


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(value: Any) -> Decimal:
    return (Decimal(int(value or 0)) / Decimal(100)).quantize(Decimal("0.01"))


def set_default_payment_method_locally(payment_method: "PaymentMethod") -> None:
    from commerce.models import PaymentMethod

    PaymentMethod.objects.filter(workspace_id=payment_method.workspace_id).exclude(pk=payment_method.pk).update(
        is_default=False
    )
    payment_method.is_default = True
    payment_method.save(update_fields=["is_default", "updated_at"])
