"""Exchange-rate lookup, conversion and provider refresh."""
from __future__ import annotations

import logging
import xml.etree.ElementTree as ElementTree
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Iterable, Optional

import requests
from django.core.cache import cache
from django.utils import timezone

from commerce.conf import currency_settings, gateway_settings
from commerce.models import ExchangeRate

logger = logging.getLogger(__name__)

ECB_FEED_URL = "https://www.ecb.europa.eu/stats/eurofxref/eurofxref-daily.xml"
OPEN_EXCHANGE_RATES_URL = "https://openexchangerates.org/api/latest.json"
FEED_TIMEOUT_SECONDS = 10
RATE_PLACES = Decimal("0.00000001")


def _cache_key(base: str, target: str) -> str:
    return f"commerce:exchange_rate:{base}:{target}"


def _ttl_seconds() -> int:
    return int(currency_settings().get("cache_ttl_minutes", 60)) * 60


def _fixed_rate(base: str, target: str) -> Optional[Decimal]:
    fixed = currency_settings().get("fixed") or {}
    direct = fixed.get(f"{base}_{target}")
    if direct:
        return Decimal(str(direct))
    inverse = fixed.get(f"{target}_{base}")
    if inverse and Decimal(str(inverse)) > 0:
        return Decimal(1) / Decimal(str(inverse))
    return None


def get_rate(base: str, target: str) -> Optional[Decimal]:
    """Rate converting ``base`` into ``target``, or None when no source knows the pair."""
    base, target = base.upper(), target.upper()
    if base == target:
        return Decimal(1)

    key = _cache_key(base, target)
    cached = cache.get(key)
    if cached is not None:
        return Decimal(cached)

    rate = None
    stored = ExchangeRate.objects.filter(base_currency=base, target_currency=target).first()
    if stored is not None:
        rate = stored.rate
    else:
        inverse = ExchangeRate.objects.filter(base_currency=target, target_currency=base).first()
        if inverse is not None and inverse.rate > 0:
            rate = Decimal(1) / inverse.rate
        else:
            rate = _fixed_rate(base, target)

    if rate is not None:
        cache.set(key, str(rate), _ttl_seconds())
    return rate


def convert(amount: Decimal, base: str, target: str) -> Optional[Decimal]:
    rate = get_rate(base, target)
    if rate is None:
        return None
    return (Decimal(amount) * rate).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def convert_cents(amount: int, base: str, target: str) -> Optional[int]:
    rate = get_rate(base, target)
    if rate is None:
        return None
    return int((Decimal(amount) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def store_rate(base: str, target: str, rate, source: str = "manual") -> ExchangeRate:
    base, target = base.upper(), target.upper()
    exchange_rate, _ = ExchangeRate.objects.update_or_create(
        base_currency=base,
        target_currency=target,
        defaults={
            "rate": Decimal(str(rate)).quantize(RATE_PLACES, rounding=ROUND_HALF_UP),
            "source": source,
            "fetched_at": timezone.now(),
        },
    )
    cache.delete(_cache_key(base, target))
    cache.delete(_cache_key(target, base))
    return exchange_rate


def needs_refresh(source: Optional[str] = None) -> bool:
    threshold = timezone.now() - timedelta(seconds=_ttl_seconds())
    rates = ExchangeRate.objects.filter(fetched_at__gte=threshold)
    if source:
        rates = rates.filter(source=source)
    return not rates.exists()


def _targets(base: str, supported: Iterable[str]):
    return [code.upper() for code in supported if code.upper() != base]


def _store_cross_rates(base: str, targets, rates: Dict[str, Decimal], source: str) -> Dict[str, Decimal]:
    """Store rates quoted against a pivot currency as ``base -> target`` pairs."""
    base_rate = rates.get(base)
    if not base_rate:
        logger.warning("%s feed has no rate for base currency %s", source, base)
        return {}
    stored = {}
    for currency in targets:
        target_rate = rates.get(currency)
        if target_rate:
            rate = target_rate / base_rate
            store_rate(base, currency, rate, source)
            stored[currency] = rate
    return stored


def fetch_from_ecb(base: str, targets, session=None) -> Dict[str, Decimal]:
    http = session or requests
    try:
        response = http.get(ECB_FEED_URL, timeout=FEED_TIMEOUT_SECONDS)
    except requests.RequestException as exc:
        logger.error("ECB exchange rate fetch error: %s", exc)
        return {}
    if response.status_code != 200:
        logger.warning("ECB exchange rate fetch failed (status=%s)", response.status_code)
        return {}

    try:
        root = ElementTree.fromstring(response.content)
    except ElementTree.ParseError as exc:
        logger.error("ECB feed is not valid XML: %s", exc)
        return {}

    rates: Dict[str, Decimal] = {"EUR": Decimal(1)}
    for element in root.iter():
        currency = element.attrib.get("currency")
        if currency and element.attrib.get("rate"):
            try:
                rates[currency.upper()] = Decimal(element.attrib["rate"])
            except InvalidOperation:
                logger.warning("ECB feed has an invalid rate for %s", currency)
    stored = _store_cross_rates(base, targets, rates, "ecb")
    logger.info("ECB exchange rates updated (count=%s)", len(stored))
    return stored


def fetch_from_open_exchange_rates(base: str, targets, session=None) -> Dict[str, Decimal]:
    api_key = currency_settings().get("api_key")
    if not api_key:
        logger.warning("Open Exchange Rates requested but no API key configured")
        return load_fixed_rates(base, targets)

    http = session or requests
    try:
        response = http.get(
            OPEN_EXCHANGE_RATES_URL,
            params={"app_id": api_key, "base": "USD", "symbols": ",".join([base, *targets])},
            timeout=FEED_TIMEOUT_SECONDS,
        )
    except requests.RequestException as exc:
        logger.error("Open Exchange Rates fetch error: %s", exc)
        return {}
    if response.status_code != 200:
        logger.warning("Open Exchange Rates fetch failed (status=%s)", response.status_code)
        return {}

    try:
        payload = response.json()
    except ValueError:
        logger.error("Open Exchange Rates returned a non-JSON body")
        return {}
    rates = {code.upper(): Decimal(str(value)) for code, value in (payload.get("rates") or {}).items()}
    return _store_cross_rates(base, targets, rates, "openexchangerates")


def load_fixed_rates(base: str, targets) -> Dict[str, Decimal]:
    stored = {}
    for currency in targets:
        rate = _fixed_rate(base, currency)
        if rate is not None:
            store_rate(base, currency, rate, "fixed")
            stored[currency] = rate
    return stored


def refresh_exchange_rates(session=None) -> Dict[str, Decimal]:
    """Pull fresh rates from the configured provider; returns the stored ``{currency: rate}``."""
    config = currency_settings()
    base = (config.get("base") or "GBP").upper()
    targets = _targets(base, config.get("supported") or [])
    provider = config.get("provider", "ecb")

    if provider == "ecb":
        return fetch_from_ecb(base, targets, session=session)
    if provider == "openexchangerates":
        return fetch_from_open_exchange_rates(base, targets, session=session)
    if provider == "fixed":
        return load_fixed_rates(base, targets)
    if provider == "stripe":
        # Stripe has no public rate API; it only selects ECB when a key exists.
        if not gateway_settings("stripe").get("secret"):
            logger.warning("Stripe exchange rates requested but no API key configured")
            return load_fixed_rates(base, targets)
        logger.info("Stripe exchange rates: falling back to ECB")
        return fetch_from_ecb(base, targets, session=session)

    logger.warning("Unknown exchange rate provider %s", provider)
    return {}
