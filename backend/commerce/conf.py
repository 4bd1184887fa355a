"""Typed accessors over the ``COMMERCE_*`` Django settings."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Tuple

from django.conf import settings

DEFAULT_DUNNING = {
    "enabled": True,
    "retry_days": [1, 3, 7],
    "suspend_after_days": 14,
    "cancel_after_days": 30,
    "initial_grace_hours": 24,
    "send_notifications": True,
}

DEFAULT_MATRIX = {
    "enabled": False,
    "gated_paths": ["/api/commerce/"],
    "training_mode": False,
    "strict_mode": True,
    "log_all_checks": False,
    "log_denials": True,
    "default_allow": False,
}


def _section(name: str, defaults: Dict[str, Any] = None) -> Dict[str, Any]:
    values = dict(defaults or {})
    values.update(getattr(settings, name, None) or {})
    return values


@dataclass(frozen=True)
class DunningConfig:
    enabled: bool = True
    retry_days: Tuple[int, ...] = (1, 3, 7)
    suspend_after_days: int = 14
    cancel_after_days: int = 30
    initial_grace_hours: int = 24
    send_notifications: bool = True

    @property
    def max_attempts(self) -> int:
        return len(self.retry_days)

    @classmethod
    def from_settings(cls) -> "DunningConfig":
        values = _section("COMMERCE_DUNNING", DEFAULT_DUNNING)
        return cls(
            enabled=bool(values["enabled"]),
            retry_days=tuple(int(day) for day in values["retry_days"]),
            suspend_after_days=int(values["suspend_after_days"]),
            cancel_after_days=int(values["cancel_after_days"]),
            initial_grace_hours=int(values["initial_grace_hours"]),
            send_notifications=bool(values["send_notifications"]),
        )


def gateway_settings(name: str) -> Dict[str, Any]:
    return dict((getattr(settings, "COMMERCE_GATEWAYS", {}) or {}).get(name) or {})


def matrix_settings() -> Dict[str, Any]:
    return _section("COMMERCE_MATRIX", DEFAULT_MATRIX)


def max_pause_cycles() -> int:
    return int(_section("COMMERCE_SUBSCRIPTIONS", {"max_pause_cycles": 3})["max_pause_cycles"])


def default_currency() -> str:
    return getattr(settings, "COMMERCE_DEFAULT_CURRENCY", "GBP").upper()


def currency_settings() -> Dict[str, Any]:
    return _section(
        "COMMERCE_CURRENCY",
        {
            "base": default_currency(),
            "supported": [default_currency()],
            "provider": "ecb",
            "api_key": "",
            "cache_ttl_minutes": 60,
            "fixed": {},
        },
    )


def billing_settings() -> Dict[str, Any]:
    return _section(
        "COMMERCE_BILLING",
        {
            "invoice_due_days": 14,
            "invoice_prefix": "INV",
            "order_prefix": "ORD",
            "tax_rate": "0",
            "tax_country": "",
        },
    )


def renewal_reminder_settings() -> Dict[str, Any]:
    return _section("COMMERCE_RENEWAL_REMINDERS", {"enabled": True, "days_before": 7})


def checkout_ttl_minutes() -> int:
    return int(_section("COMMERCE_CHECKOUT", {"session_ttl_minutes": 30})["session_ttl_minutes"])


def usage_billing_settings() -> Dict[str, Any]:
    return _section("COMMERCE_USAGE_BILLING", {"enabled": False, "sync_to_stripe": True})


def webhook_settings() -> Dict[str, Any]:
    return _section(
        "COMMERCE_WEBHOOKS",
        {
            "inflight_seconds": 300,
            "retention_days": 30,
            "rate_limits": {"default": 60, "trusted": 300},
            "trusted_ips": {},
        },
    )


def api_secret() -> str:
    return getattr(settings, "COMMERCE_API_SECRET", "") or ""


def public_base_url() -> str:
    return getattr(settings, "COMMERCE_PUBLIC_BASE_URL", "") or ""


def tax_rate() -> Decimal:
    return Decimal(str(billing_settings()["tax_rate"] or "0"))


def supported_currencies() -> List[str]:
    return [code.upper() for code in currency_settings().get("supported") or []]
