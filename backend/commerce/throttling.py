"""Per-IP rate limiting for the public gateway webhook endpoints.

Limits are counted per gateway and source address in the Django cache.
Addresses listed under ``COMMERCE_WEBHOOKS['trusted_ips']`` (exact or CIDR)
get the higher ``trusted`` limit so a flood from elsewhere cannot starve the
gateway's own deliveries.
"""
from __future__ import annotations

import ipaddress
import logging
from typing import Iterable

from rest_framework.throttling import SimpleRateThrottle

from commerce.conf import webhook_settings
from commerce.observability.metrics import WEBHOOK_THROTTLED_COUNT

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 60
TRUSTED_LIMIT = 300


def ip_matches(address: str, trusted: Iterable[str]) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    for entry in trusted:
        try:
            if ip in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            logger.warning("Ignoring malformed trusted webhook address %r", entry)
    return False


def webhook_limit(gateway: str, address: str) -> int:
    """Requests per minute allowed from ``address`` to ``gateway``'s endpoint."""
    config = webhook_settings()
    limits = dict(config.get("rate_limits") or {})
    gateway_limits = limits.get(gateway)
    if isinstance(gateway_limits, dict):
        limits = {**limits, **gateway_limits}

    trusted_ips = config.get("trusted_ips") or {}
    trusted = [*(trusted_ips.get(gateway) or []), *(trusted_ips.get("global") or [])]
    if address and ip_matches(address, trusted):
        return int(limits.get("trusted", TRUSTED_LIMIT))
    return int(limits.get("default", DEFAULT_LIMIT))


class WebhookRateThrottle(SimpleRateThrottle):
    scope = "commerce_webhook"

    def get_rate(self):
        return f"{DEFAULT_LIMIT}/min"

    def allow_request(self, request, view):
        self.gateway = str(getattr(view, "gateway_name", "") or "unknown")
        self.rate = f"{webhook_limit(self.gateway, self.get_ident(request))}/min"
        self.num_requests, self.duration = self.parse_rate(self.rate)
        return super().allow_request(request, view)

    def get_cache_key(self, request, view):
        return self.cache_format % {"scope": f"{self.scope}_{self.gateway}", "ident": self.get_ident(request)}

    def throttle_failure(self):
        WEBHOOK_THROTTLED_COUNT.labels(gateway=self.gateway).inc()
        logger.warning("%s webhook rate limit reached (%s requests/min) for %s",
                       self.gateway, self.num_requests, self.key)
        return False
