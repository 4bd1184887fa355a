"""Prometheus metrics helpers for the commerce domain."""
from __future__ import annotations

import os

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram, generate_latest, multiprocess

WEBHOOK_EVENT_COUNT = Counter(
    "commerce_webhook_events_total",
    "Webhook deliveries by gateway, canonical type and outcome",
    labelnames=("gateway", "event_type", "outcome"),
)

WEBHOOK_LATENCY = Histogram(
    "commerce_webhook_duration_seconds",
    "Time spent reconciling a webhook delivery",
    labelnames=("gateway",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)

WEBHOOK_THROTTLED_COUNT = Counter(
    "commerce_webhook_throttled_total",
    "Webhook deliveries rejected by the per-IP rate limit",
    labelnames=("gateway",),
)

DUNNING_TRANSITIONS = Counter(
    "commerce_dunning_transitions_total",
    "Dunning stage executions by outcome",
    labelnames=("stage", "outcome"),
)

PAYMENT_SUCCESS_COUNT = Counter(
    "commerce_payment_success_total",
    "Count of successful payments",
    labelnames=("gateway",),
)

PAYMENT_FAILURE_COUNT = Counter(
    "commerce_payment_failure_total",
    "Count of failed payment attempts",
    labelnames=("gateway", "reason"),
)

PERMISSION_DECISIONS = Counter(
    "commerce_permission_decisions_total",
    "Permission matrix gate decisions",
    labelnames=("status",),
)


def exposition_registry():
    """Registry to scrape: merged per-process files under gunicorn, the default one otherwise."""
    if os.environ.get("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        return registry
    return REGISTRY


def render_latest() -> bytes:
    return generate_latest(exposition_registry())
