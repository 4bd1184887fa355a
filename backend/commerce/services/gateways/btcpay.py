"""BTCPay Server (Greenfield API) gateway.

BTCPay has no native recurring billing and no saved payment methods, so:

* subscriptions are local records with ``btcsub_`` ids, renewed by issuing a
  fresh invoice each period;
* ``charge_payment_method`` issues a pending invoice; funds only arrive when
  the customer pays it, so dunning never treats it as an automatic charge;
* ``create_setup_session`` returns the return URL unchanged.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

import requests
from django.utils import timezone

from commerce.conf import gateway_settings
from commerce.exceptions import GatewayConfigurationError, GatewayConnectionError, GatewayError, GatewayRateLimitError
from commerce.observability.logging import mask_identifier

from .base import CanonicalEvent, CheckoutSession, RefundResult, set_default_payment_method_locally, to_decimal

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 30
SIGNATURE_PREFIX = "sha256="

EVENT_TYPE_MAP = {
    "InvoiceCreated": "invoice.created",
    "InvoiceReceivedPayment": "invoice.payment_received",
    "InvoiceProcessing": "invoice.processing",
    "InvoiceExpired": "invoice.expired",
    "InvoiceSettled": "invoice.paid",
    "InvoiceInvalid": "invoice.failed",
    "InvoicePaymentSettled": "payment.settled",
}

INVOICE_STATUS_MAP = {
    "new": "pending",
    "processing": "processing",
    "expired": "expired",
    "invalid": "failed",
    "settled": "succeeded",
    "complete": "succeeded",
    "confirmed": "succeeded",
}

HTTP_ERROR_MESSAGES = {
    400: "Bad request",
    401: "Unauthorised - check API key",
    403: "Forbidden - insufficient permissions",
    404: "Resource not found",
    422: "Validation failed",
    429: "Rate limited",
}


def map_invoice_status(status: Optional[str]) -> str:
    return INVOICE_STATUS_MAP.get(str(status or "").lower(), "pending")


def map_event_type(event_type: str) -> str:
    return EVENT_TYPE_MAP.get(event_type, event_type)


class BTCPayGateway:
    name = "btcpay"

    def __init__(self, *, url: str = "", store_id: str = "", api_key: str = "", webhook_secret: str = "",
                 enabled: bool = False, session: Optional[requests.Session] = None):
        self.base_url = (url or "").rstrip("/")
        self.store_id = store_id or ""
        self.api_key = api_key or ""
        self.webhook_secret = webhook_secret or ""
        self.enabled = enabled
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls) -> "BTCPayGateway":
        config = gateway_settings("btcpay")
        return cls(
            url=config.get("url", ""),
            store_id=config.get("store_id", ""),
            api_key=config.get("api_key", ""),
            webhook_secret=config.get("webhook_secret", ""),
            enabled=bool(config.get("enabled", False)),
        )

    def is_enabled(self) -> bool:
        return bool(self.enabled and self.store_id and self.api_key)

    # Customers

    def create_customer(self, workspace) -> str:
        # BTCPay has no customer object; keep a local reference for correlation.
        customer_id = f"btc_cus_{uuid.uuid4().hex}"
        workspace.btcpay_customer_id = customer_id
        workspace.save(update_fields=["btcpay_customer_id", "updated_at"])
        return customer_id

    # Checkout

    def create_checkout_session(self, order, success_url: str, cancel_url: str) -> CheckoutSession:
        response = self._request(
            "POST",
            f"/api/v1/stores/{self.store_id}/invoices",
            {
                "amount": str(order.total),
                "currency": order.currency,
                "metadata": {
                    "order_id": order.pk,
                    "order_number": order.order_number,
                    "workspace_id": str(order.workspace_id),
                },
                "checkout": {
                    "redirectURL": success_url,
                    "redirectAutomatically": True,
                    "requiresRefundEmail": True,
                },
                "receipt": {"enabled": True, "showQr": True},
            },
        )
        invoice_id = response.get("id")
        if not invoice_id:
            logger.error("BTCPay checkout returned no invoice id for order %s", order.pk)
            raise GatewayError("Invalid response from payment service.")

        order.gateway = self.name
        order.gateway_session_id = invoice_id
        order.save(update_fields=["gateway", "gateway_session_id", "updated_at"])
        return CheckoutSession(
            session_id=invoice_id,
            url=f"{self.base_url}/i/{invoice_id}",
            status="pending",
            amount=order.total,
            currency=order.currency,
            raw=response,
        )

    def get_checkout_session(self, session_id: str) -> CheckoutSession:
        response = self.get_invoice(session_id)
        return CheckoutSession(
            session_id=response.get("id"),
            url=response.get("checkoutLink"),
            status=map_invoice_status(response.get("status")),
            amount=to_decimal(response.get("amount")),
            currency=response.get("currency"),
            metadata=response.get("metadata") or {},
            raw=response,
        )

    # Payments

    def charge(self, workspace, amount: Decimal, currency: str, metadata: Optional[Dict[str, Any]] = None):
        from commerce.models import Payment

        payload_metadata = dict(metadata or {})
        payload_metadata["workspace_id"] = str(workspace.pk)
        response = self._request(
            "POST",
            f"/api/v1/stores/{self.store_id}/invoices",
            {"amount": str(amount), "currency": currency, "metadata": payload_metadata},
        )
        return Payment.objects.create(
            workspace=workspace,
            gateway=self.name,
            gateway_payment_id=response.get("id") or f"btc_pending_{uuid.uuid4().hex}",
            amount=Decimal(amount),
            currency=currency,
            status=Payment.Status.PENDING,
            gateway_response=response,
        )

    def charge_payment_method(self, payment_method, amount: Decimal, currency: str,
                              metadata: Optional[Dict[str, Any]] = None):
        # Crypto needs the customer to send funds; this only issues the invoice.
        return self.charge(payment_method.workspace, amount, currency, metadata)

    # Subscriptions (emulated locally)

    def create_subscription(self, workspace, price_id: str, options: Optional[Dict[str, Any]] = None):
        from commerce.models import Subscription

        options = options or {}
        now = timezone.now()
        period_days = 365 if options.get("billing_cycle") == "yearly" else 30
        trial_days = int(options.get("trial_days") or 0)
        return Subscription.objects.create(
            workspace=workspace,
            package=options.get("package"),
            gateway=self.name,
            gateway_subscription_id=f"btcsub_{uuid.uuid4().hex}",
            gateway_customer_id=workspace.btcpay_customer_id,
            gateway_price_id=price_id,
            status=Subscription.Status.TRIALING if trial_days else Subscription.Status.ACTIVE,
            billing_cycle=options.get("billing_cycle") or "monthly",
            current_period_start=now,
            current_period_end=now + timedelta(days=period_days),
            trial_ends_at=now + timedelta(days=trial_days) if trial_days else None,
        )

    def update_subscription(self, subscription, options: Dict[str, Any]):
        if options.get("price_id"):
            subscription.gateway_price_id = options["price_id"]
            subscription.save(update_fields=["gateway_price_id", "updated_at"])
        return subscription

    def cancel_subscription(self, subscription, immediately: bool = False) -> None:
        # Local bookkeeping is done by SubscriptionService; nothing to call remotely.
        return None

    def pause_subscription(self, subscription) -> None:
        return None

    def resume_subscription(self, subscription) -> None:
        return None

    # Payment methods

    def create_setup_session(self, workspace, return_url: str) -> Dict[str, Optional[str]]:
        return {"session_id": None, "setup_url": return_url}

    def attach_payment_method(self, workspace, gateway_payment_method_id: str):
        from commerce.models import PaymentMethod

        method, _ = PaymentMethod.objects.update_or_create(
            gateway=self.name,
            gateway_payment_method_id=gateway_payment_method_id,
            defaults={"workspace": workspace, "type": "crypto", "is_default": True, "is_active": True},
        )
        return method

    def detach_payment_method(self, payment_method) -> None:
        payment_method.is_active = False
        payment_method.is_default = False
        payment_method.save(update_fields=["is_active", "is_default", "updated_at"])

    def set_default_payment_method(self, payment_method) -> None:
        set_default_payment_method_locally(payment_method)

    # Refunds

    def refund(self, payment, amount: Decimal, reason: Optional[str] = None) -> RefundResult:
        try:
            response = self._request(
                "POST",
                f"/api/v1/stores/{self.store_id}/invoices/{payment.gateway_payment_id}/refund",
                {
                    "refundVariant": "Custom",
                    "customAmount": str(amount),
                    "customCurrency": payment.currency,
                    "description": reason or "Refund requested",
                },
            )
        except GatewayError as exc:
            logger.warning("BTCPay refund failed for payment %s: %s", payment.pk, exc)
            return RefundResult(success=False, error=str(exc))
        return RefundResult(success=True, refund_id=response.get("id"), raw=response)

    # Invoices

    def get_invoice(self, gateway_invoice_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/v1/stores/{self.store_id}/invoices/{gateway_invoice_id}")

    # Webhooks

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        if not self.webhook_secret:
            logger.warning("BTCPay webhook: no webhook secret configured")
            return False
        if not signature:
            logger.warning("BTCPay webhook: empty signature provided")
            return False

        provided = signature[len(SIGNATURE_PREFIX):] if signature.startswith(SIGNATURE_PREFIX) else signature
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        expected = hmac.new(self.webhook_secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected.encode("ascii"), provided.encode("utf-8", "surrogateescape")):
            logger.warning("BTCPay webhook: signature mismatch")
            return False
        return True

    def parse_webhook_event(self, payload: bytes) -> CanonicalEvent:
        try:
            data = json.loads(payload)
        except (TypeError, ValueError) as exc:
            logger.warning("BTCPay webhook: invalid JSON payload (%s)", exc)
            return CanonicalEvent.unknown()
        if not isinstance(data, dict):
            logger.warning("BTCPay webhook: payload is not an object")
            return CanonicalEvent.unknown()

        invoice_id = data.get("invoiceId") or data.get("id")
        status = data.get("status") or data.get("afterExpiration") or "unknown"
        return CanonicalEvent(
            type=map_event_type(data.get("type") or "unknown"),
            id=invoice_id,
            status=map_invoice_status(status),
            metadata=data.get("metadata") or {},
            raw=data,
            object_type="invoice",
        )

    def webhook_event_id(self, event: CanonicalEvent) -> Optional[str]:
        """Delivery key: BTCPay reuses the invoice id across event types."""
        delivery_id = event.raw.get("deliveryId")
        if delivery_id:
            return str(delivery_id)
        if not event.id:
            return None
        return f"{event.id}:{event.raw.get('type', event.type)}"

    # Helpers

    def _request(self, method: str, endpoint: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.base_url or not self.api_key:
            raise GatewayConfigurationError("BTCPay is not configured. Check BTCPAY_URL and BTCPAY_API_KEY.")

        url = f"{self.base_url}{endpoint}"
        headers = {"Authorization": f"token {self.api_key}", "Content-Type": "application/json"}
        try:
            if method.upper() == "GET":
                response = self.session.request(method, url, params=data, headers=headers,
                                                timeout=REQUEST_TIMEOUT_SECONDS)
            else:
                response = self.session.request(method, url, json=data, headers=headers,
                                                timeout=REQUEST_TIMEOUT_SECONDS)
        except requests.Timeout as exc:
            logger.warning("BTCPay %s %s timed out", method, endpoint, exc_info=True)
            raise GatewayConnectionError("BTCPay request timed out.") from exc
        except requests.RequestException as exc:
            logger.warning("BTCPay %s %s failed to connect", method, endpoint, exc_info=True)
            raise GatewayConnectionError("BTCPay could not be reached.") from exc

        if response.status_code >= 400:
            message = self._sanitise_error(response)
            logger.error(
                "BTCPay API request failed",
                extra={"method": method, "endpoint": endpoint, "status": response.status_code, "error": message},
            )
            if response.status_code == 429:
                retry_after = response.headers.get("Retry-After")
                raise GatewayRateLimitError(
                    "BTCPay rate limited the request.",
                    retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
                )
            raise GatewayError(f"BTCPay API request failed ({response.status_code}): {message}")

        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {"items": body}

    @staticmethod
    def _sanitise_error(response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            if isinstance(body.get("message"), str):
                return body["message"]
            if "error" in body:
                return body["error"] if isinstance(body["error"], str) else "Unknown error"
        if response.status_code >= 500:
            return "Server error"
        return HTTP_ERROR_MESSAGES.get(response.status_code, "Request failed")

    def __repr__(self) -> str:
        return f"BTCPayGateway(store={mask_identifier(self.store_id)})"
