"""Stripe gateway built on the official SDK.

Every SDK call goes through :meth:`StripeGateway._call`, which translates
Stripe exceptions into :mod:`commerce.exceptions` with a sanitised message;
the raw error stays in the server log.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone as dt_timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

import stripe
from django.utils import timezone

from commerce.conf import gateway_settings
from commerce.exceptions import (
    CardError,
    GatewayConfigurationError,
    GatewayConnectionError,
    GatewayError,
    GatewayRateLimitError,
)
from commerce.observability.logging import mask_identifier

from .base import (
    CanonicalEvent,
    CheckoutSession,
    RefundResult,
    from_cents,
    set_default_payment_method_locally,
    to_cents,
)

logger = logging.getLogger(__name__)

SUBSCRIPTION_STATUS_MAP = {
    "active": "active",
    "trialing": "trialing",
    "past_due": "past_due",
    "paused": "paused",
    "canceled": "cancelled",
    "incomplete": "incomplete",
    "incomplete_expired": "incomplete",
}

PAYMENT_INTENT_STATUS_MAP = {
    "succeeded": "succeeded",
    "processing": "processing",
    "requires_payment_method": "pending",
    "requires_confirmation": "pending",
    "requires_action": "pending",
    "requires_capture": "pending",
    "canceled": "failed",
}

SESSION_STATUS_MAP = {
    "complete": "succeeded",
    "expired": "expired",
    "open": "pending",
}

REFUND_REASONS = {"duplicate", "fraudulent"}


def map_subscription_status(status: Optional[str]) -> str:
    return SUBSCRIPTION_STATUS_MAP.get(status or "", "active")


def map_payment_intent_status(status: Optional[str]) -> str:
    return PAYMENT_INTENT_STATUS_MAP.get(status or "", "pending")


def map_session_status(status: Optional[str]) -> str:
    return SESSION_STATUS_MAP.get(status or "", "pending")


def map_refund_reason(reason: Optional[str]) -> str:
    return reason if reason in REFUND_REASONS else "requested_by_customer"


def to_dict(obj: Any) -> Dict[str, Any]:
    """Convert a Stripe object to a plain dictionary."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    try:
        return obj.to_dict()
    except AttributeError:
        return dict(obj)


def coerce_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, "", 0):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=dt_timezone.utc)
    except (TypeError, ValueError, OSError):
        return None


def subscription_period(data: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Read the current period, which newer API versions only report per subscription item."""
    start = data.get("current_period_start")
    end = data.get("current_period_end")
    if not (start and end):
        items = (data.get("items") or {}).get("data") or []
        if items:
            start = start or items[0].get("current_period_start")
            end = end or items[0].get("current_period_end")
    return coerce_timestamp(start), coerce_timestamp(end)


class StripeGateway:
    name = "stripe"

    def __init__(self, *, secret: str = "", webhook_secret: str = "", api_version: str = "", enabled: bool = True):
        self.secret = secret or ""
        self.webhook_secret = webhook_secret or ""
        self.api_version = api_version or ""
        self.enabled = enabled

    @classmethod
    def from_settings(cls) -> "StripeGateway":
        config = gateway_settings("stripe")
        return cls(
            secret=config.get("secret", ""),
            webhook_secret=config.get("webhook_secret", ""),
            api_version=config.get("api_version", ""),
            enabled=bool(config.get("enabled", True)),
        )

    def is_enabled(self) -> bool:
        return bool(self.enabled and self.secret)

    def _configure(self) -> None:
        if not self.secret:
            raise GatewayConfigurationError("STRIPE_SECRET_KEY is not configured.")
        stripe.api_key = self.secret
        if self.api_version:
            stripe.api_version = self.api_version

    def _call(self, operation: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        self._configure()
        try:
            return func(*args, **kwargs)
        except stripe.CardError as exc:
            logger.warning("Stripe %s failed: card error (%s)", operation, getattr(exc, "code", None))
            raise CardError(exc.user_message or "Your card was declined.",
                            decline_code=getattr(exc, "code", None)) from exc
        except stripe.RateLimitError as exc:
            logger.error("Stripe %s failed: rate limited", operation)
            raise GatewayRateLimitError("Payment service temporarily unavailable. Please try again.") from exc
        except stripe.AuthenticationError as exc:
            logger.critical("Stripe authentication failed during %s - check API keys", operation)
            raise GatewayConfigurationError("Payment service configuration error.") from exc
        except stripe.APIConnectionError as exc:
            logger.error("Stripe %s failed: connection error", operation, exc_info=True)
            raise GatewayConnectionError("Unable to connect to payment service.") from exc
        except stripe.InvalidRequestError as exc:
            logger.error("Stripe %s failed: invalid request (param=%s): %s", operation, exc.param, exc)
            raise GatewayError("The payment request was rejected.") from exc
        except stripe.StripeError as exc:
            logger.error("Stripe %s failed: %s", operation, exc, exc_info=True)
            raise GatewayError("Payment service error. Please try again or contact support.") from exc

    # Customers

    def create_customer(self, workspace) -> str:
        customer = self._call(
            "create_customer",
            stripe.Customer.create,
            name=workspace.billing_name or workspace.name,
            email=workspace.billing_contact_email or None,
            metadata={"workspace_id": str(workspace.pk)},
        )
        workspace.stripe_customer_id = customer.id
        workspace.save(update_fields=["stripe_customer_id", "updated_at"])
        return customer.id

    def _ensure_customer(self, workspace) -> str:
        return workspace.stripe_customer_id or self.create_customer(workspace)

    # Checkout

    def create_checkout_session(self, order, success_url: str, cancel_url: str) -> CheckoutSession:
        items = list(order.items.all())
        recurring = any(item.billing_cycle for item in items)
        params: Dict[str, Any] = {
            "customer": self._ensure_customer(order.workspace),
            "line_items": [self._line_item(order, item) for item in items],
            "mode": "subscription" if recurring else "payment",
            "success_url": f"{success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": cancel_url,
            "metadata": {
                "order_id": str(order.pk),
                "order_number": order.order_number,
                "workspace_id": str(order.workspace_id),
            },
            "automatic_tax": {"enabled": False},
            "allow_promotion_codes": False,
        }
        if order.discount_amount > 0 and order.coupon_id:
            coupon = self._call(
                "create_coupon",
                stripe.Coupon.create,
                amount_off=to_cents(order.discount_amount),
                currency=order.currency.lower(),
                duration="once",
                name=order.coupon.code,
            )
            params["discounts"] = [{"coupon": coupon.id}]

        session = self._call("create_checkout_session", stripe.checkout.Session.create, **params)
        order.gateway = self.name
        order.gateway_session_id = session.id
        order.save(update_fields=["gateway", "gateway_session_id", "updated_at"])
        return CheckoutSession(session_id=session.id, url=session.url, status="pending",
                               amount=order.total, currency=order.currency)

    @staticmethod
    def _line_item(order, item) -> Dict[str, Any]:
        product_data: Dict[str, Any] = {"name": item.name}
        if item.sku:
            product_data["metadata"] = {"sku": item.sku}
        price_data: Dict[str, Any] = {
            "currency": order.currency.lower(),
            "product_data": product_data,
            "unit_amount": to_cents(item.unit_price),
        }
        if item.billing_cycle:
            price_data["recurring"] = {"interval": "year" if item.billing_cycle == "yearly" else "month"}
        return {"price_data": price_data, "quantity": item.quantity}

    def get_checkout_session(self, session_id: str) -> CheckoutSession:
        session = to_dict(self._call(
            "get_checkout_session",
            stripe.checkout.Session.retrieve,
            session_id,
            expand=["payment_intent", "subscription"],
        ))
        return CheckoutSession(
            session_id=session.get("id"),
            url=session.get("url"),
            status=map_session_status(session.get("status")),
            amount=from_cents(session.get("amount_total")),
            currency=(session.get("currency") or "").upper(),
            metadata=session.get("metadata") or {},
            raw=session,
        )

    # Payments

    def charge(self, workspace, amount: Decimal, currency: str, metadata: Optional[Dict[str, Any]] = None):
        intent = self._call(
            "charge",
            stripe.PaymentIntent.create,
            amount=to_cents(amount),
            currency=currency.lower(),
            customer=self._ensure_customer(workspace),
            metadata={**(metadata or {}), "workspace_id": str(workspace.pk)},
            automatic_payment_methods={"enabled": True},
        )
        return self._record_payment(workspace, intent, amount, currency)

    def charge_payment_method(self, payment_method, amount: Decimal, currency: str,
                              metadata: Optional[Dict[str, Any]] = None):
        workspace = payment_method.workspace
        intent = self._call(
            "charge_payment_method",
            stripe.PaymentIntent.create,
            amount=to_cents(amount),
            currency=currency.lower(),
            customer=workspace.stripe_customer_id,
            payment_method=payment_method.gateway_payment_method_id,
            off_session=True,
            confirm=True,
            metadata={**(metadata or {}), "workspace_id": str(workspace.pk)},
        )
        payment = self._record_payment(workspace, intent, amount, currency)
        if payment_method.last_four and not payment.payment_method_last4:
            payment.payment_method_last4 = payment_method.last_four
            payment.payment_method_brand = payment_method.brand
            payment.save(update_fields=["payment_method_last4", "payment_method_brand"])
        return payment

    def _record_payment(self, workspace, intent, amount: Decimal, currency: str):
        from commerce.models import Payment

        data = to_dict(intent)
        status = map_payment_intent_status(data.get("status"))
        payment, _ = Payment.objects.get_or_create(
            gateway=self.name,
            gateway_payment_id=data.get("id"),
            defaults={
                "workspace": workspace,
                "amount": Decimal(amount),
                "currency": currency.upper(),
                "status": status,
                "gateway_customer_id": data.get("customer") or "",
                "paid_at": timezone.now() if status == Payment.Status.SUCCEEDED else None,
                "gateway_response": data,
            },
        )
        return payment

    # Subscriptions

    def create_subscription(self, workspace, price_id: str, options: Optional[Dict[str, Any]] = None):
        from commerce.models import Subscription

        options = options or {}
        customer_id = self._ensure_customer(workspace)
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "metadata": {"workspace_id": str(workspace.pk)},
        }
        if int(options.get("trial_days") or 0) > 0:
            params["trial_period_days"] = int(options["trial_days"])
        if options.get("coupon"):
            params["discounts"] = [{"coupon": options["coupon"]}]

        remote = to_dict(self._call("create_subscription", stripe.Subscription.create, **params))
        period_start, period_end = subscription_period(remote)
        return Subscription.objects.create(
            workspace=workspace,
            package=options.get("package"),
            gateway=self.name,
            gateway_subscription_id=remote.get("id"),
            gateway_customer_id=customer_id,
            gateway_price_id=price_id,
            status=map_subscription_status(remote.get("status")),
            billing_cycle=options.get("billing_cycle") or "monthly",
            current_period_start=period_start or timezone.now(),
            current_period_end=period_end or timezone.now(),
            trial_ends_at=coerce_timestamp(remote.get("trial_end")),
        )

    def update_subscription(self, subscription, options: Dict[str, Any]):
        params: Dict[str, Any] = {}
        if options.get("price_id"):
            params["items"] = [{"id": self._subscription_item_id(subscription), "price": options["price_id"]}]
            params["proration_behavior"] = "create_prorations" if options.get("prorate", True) else "none"
        if "cancel_at_period_end" in options:
            params["cancel_at_period_end"] = bool(options["cancel_at_period_end"])

        remote = to_dict(self._call(
            "update_subscription",
            stripe.Subscription.modify,
            subscription.gateway_subscription_id,
            **params,
        ))
        period_start, period_end = subscription_period(remote)
        subscription.gateway_price_id = options.get("price_id") or subscription.gateway_price_id
        subscription.status = map_subscription_status(remote.get("status"))
        subscription.cancel_at_period_end = bool(remote.get("cancel_at_period_end"))
        subscription.current_period_start = period_start or subscription.current_period_start
        subscription.current_period_end = period_end or subscription.current_period_end
        subscription.save(update_fields=[
            "gateway_price_id",
            "status",
            "cancel_at_period_end",
            "current_period_start",
            "current_period_end",
            "updated_at",
        ])
        return subscription

    def cancel_subscription(self, subscription, immediately: bool = False) -> None:
        if immediately:
            self._call("cancel_subscription", stripe.Subscription.cancel, subscription.gateway_subscription_id)
        else:
            self._call(
                "cancel_subscription",
                stripe.Subscription.modify,
                subscription.gateway_subscription_id,
                cancel_at_period_end=True,
            )

    def resume_subscription(self, subscription) -> None:
        self._call(
            "resume_subscription",
            stripe.Subscription.modify,
            subscription.gateway_subscription_id,
            cancel_at_period_end=False,
            pause_collection="",
        )

    def pause_subscription(self, subscription) -> None:
        self._call(
            "pause_subscription",
            stripe.Subscription.modify,
            subscription.gateway_subscription_id,
            pause_collection={"behavior": "void"},
        )

    def _subscription_item_id(self, subscription) -> str:
        remote = self.retrieve_subscription(subscription.gateway_subscription_id)
        items = (remote.get("items") or {}).get("data") or []
        if not items:
            raise GatewayError("Subscription has no items to update.")
        return items[0]["id"]

    # Payment methods

    def create_setup_session(self, workspace, return_url: str) -> Dict[str, Optional[str]]:
        session = self._call(
            "create_setup_session",
            stripe.checkout.Session.create,
            customer=self._ensure_customer(workspace),
            mode="setup",
            currency=(getattr(workspace, "currency", None) or "gbp").lower(),
            success_url=f"{return_url}?setup_intent={{SETUP_INTENT}}",
            cancel_url=return_url,
        )
        return {"session_id": session.id, "setup_url": session.url}

    def attach_payment_method(self, workspace, gateway_payment_method_id: str):
        remote = to_dict(self._call(
            "attach_payment_method",
            stripe.PaymentMethod.attach,
            gateway_payment_method_id,
            customer=self._ensure_customer(workspace),
        ))
        return upsert_payment_method(workspace, remote)

    def detach_payment_method(self, payment_method) -> None:
        self._call("detach_payment_method", stripe.PaymentMethod.detach, payment_method.gateway_payment_method_id)
        payment_method.is_active = False
        payment_method.is_default = False
        payment_method.save(update_fields=["is_active", "is_default", "updated_at"])

    def set_default_payment_method(self, payment_method) -> None:
        self._call(
            "set_default_payment_method",
            stripe.Customer.modify,
            payment_method.workspace.stripe_customer_id,
            invoice_settings={"default_payment_method": payment_method.gateway_payment_method_id},
        )
        set_default_payment_method_locally(payment_method)

    # Refunds

    def refund(self, payment, amount: Decimal, reason: Optional[str] = None) -> RefundResult:
        from commerce.models import Refund

        try:
            remote = to_dict(self._call(
                "refund",
                stripe.Refund.create,
                payment_intent=payment.gateway_payment_id,
                amount=to_cents(amount),
                reason=map_refund_reason(reason),
            ))
        except GatewayError as exc:
            return RefundResult(success=False, error=exc.safe_message)

        Refund.objects.update_or_create(
            gateway_refund_id=remote.get("id"),
            defaults={
                "payment": payment,
                "amount": Decimal(amount),
                "currency": payment.currency,
                "status": Refund.Status.SUCCEEDED if remote.get("status") == "succeeded" else Refund.Status.PENDING,
                "reason": reason or "",
                "gateway_response": remote,
            },
        )
        return RefundResult(success=True, refund_id=remote.get("id"), raw=remote)

    # Invoices

    def get_invoice(self, gateway_invoice_id: str) -> Dict[str, Any]:
        return to_dict(self._call("get_invoice", stripe.Invoice.retrieve, gateway_invoice_id))

    def retrieve_subscription(self, gateway_subscription_id: str) -> Dict[str, Any]:
        return to_dict(self._call("retrieve_subscription", stripe.Subscription.retrieve, gateway_subscription_id))

    # Extras

    def get_portal_url(self, workspace, return_url: str) -> Optional[str]:
        if not workspace.stripe_customer_id:
            return None
        session = self._call(
            "get_portal_url",
            stripe.billing_portal.Session.create,
            customer=workspace.stripe_customer_id,
            return_url=return_url,
        )
        return session.url

    def report_usage(self, subscription_item_id: str, quantity: int, timestamp: Optional[datetime] = None,
                     idempotency_key: Optional[str] = None) -> str:
        """Report metered usage against a subscription item; returns the usage record id."""
        when = int((timestamp or timezone.now()).timestamp())
        params: Dict[str, Any] = {"quantity": int(quantity), "timestamp": when, "action": "increment"}
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        record = self._call(
            "report_usage",
            stripe.SubscriptionItem.create_usage_record,
            subscription_item_id,
            **params,
        )
        return getattr(record, "id", "") or ""

    def subscription_item_for_price(self, subscription, price_id: str) -> Optional[str]:
        remote = self.retrieve_subscription(subscription.gateway_subscription_id)
        for item in (remote.get("items") or {}).get("data") or []:
            if (item.get("price") or {}).get("id") == price_id:
                return item.get("id")
        return None

    # Webhooks

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        if not self.webhook_secret or not signature:
            logger.warning("Stripe webhook: missing secret or signature")
            return False
        try:
            stripe.Webhook.construct_event(payload=payload, sig_header=signature, secret=self.webhook_secret)
        except (stripe.SignatureVerificationError, ValueError) as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            return False
        return True

    def parse_webhook_event(self, payload: bytes) -> CanonicalEvent:
        try:
            event = json.loads(payload)
        except (TypeError, ValueError) as exc:
            logger.warning("Stripe webhook: invalid JSON payload (%s)", exc)
            return CanonicalEvent.unknown()
        if not isinstance(event, dict):
            return CanonicalEvent.unknown()

        data_object = (event.get("data") or {}).get("object") or {}
        if not isinstance(data_object, dict):
            data_object = {}
        status = data_object.get("status")
        if data_object.get("object") == "payment_intent":
            status = map_payment_intent_status(status)
        elif data_object.get("object") == "subscription":
            status = map_subscription_status(status)
        elif data_object.get("object") == "checkout.session":
            status = map_session_status(status)
        return CanonicalEvent(
            type=event.get("type") or "unknown",
            id=data_object.get("id"),
            status=status or "unknown",
            metadata=data_object.get("metadata") or {},
            raw=event,
            object_type=data_object.get("object"),
        )

    def webhook_event_id(self, event: CanonicalEvent) -> Optional[str]:
        """Stripe events carry their own ``evt_`` id on the envelope."""
        event_id = event.raw.get("id")
        return str(event_id) if event_id else event.id

    def __repr__(self) -> str:
        return f"StripeGateway(key={mask_identifier(self.secret)})"


def upsert_payment_method(workspace, data: Dict[str, Any]):
    """Create or refresh the local record of a Stripe payment method."""
    from commerce.models import PaymentMethod

    card = data.get("card") or {}
    method, _ = PaymentMethod.objects.update_or_create(
        gateway="stripe",
        gateway_payment_method_id=data.get("id"),
        defaults={
            "workspace": workspace,
            "gateway_customer_id": data.get("customer") or "",
            "type": data.get("type") or "card",
            "brand": card.get("brand") or "",
            "last_four": card.get("last4") or "",
            "exp_month": card.get("exp_month"),
            "exp_year": card.get("exp_year"),
            "is_active": True,
        },
    )
    return method
