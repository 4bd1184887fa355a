"""
Django settings for the commerce billing backend.

Values are read from the environment (optionally populated from a ``.env``
file next to ``manage.py``) so the same module serves development, CI and
production deployments.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR / ".env")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str = "") -> list:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "django-insecure-commerce-development-key")

DEBUG = _env_bool("DJANGO_DEBUG", False)

ALLOWED_HOSTS = _env_list("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1,testserver")

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "django_filters",
    "workspace",
    "commerce",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
    "commerce.middleware.matrix_gate.CommerceMatrixGateMiddleware",
]

ROOT_URLCONF = "backend.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

ASGI_APPLICATION = "backend.asgi.application"

DATABASES = {
    "default": {
        "ENGINE": os.getenv("DB_ENGINE", "django.db.backends.sqlite3"),
        "NAME": os.getenv("DB_NAME", str(BASE_DIR / "db.sqlite3")),
        "USER": os.getenv("DB_USER", ""),
        "PASSWORD": os.getenv("DB_PASSWORD", ""),
        "HOST": os.getenv("DB_HOST", ""),
        "PORT": os.getenv("DB_PORT", ""),
    }
}

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "commerce",
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-gb"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_FILTER_BACKENDS": [
        "django_filters.rest_framework.DjangoFilterBackend",
        "rest_framework.filters.OrderingFilter",
    ],
}

# Celery
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = _env_bool("CELERY_TASK_ALWAYS_EAGER", False)

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "verbose"},
    },
    "loggers": {
        "commerce": {"handlers": ["console"], "level": os.getenv("COMMERCE_LOG_LEVEL", "INFO"), "propagate": False},
    },
    "root": {"handlers": ["console"], "level": "WARNING"},
}

# ---------------------------------------------------------------------------
# Commerce configuration
# ---------------------------------------------------------------------------

COMMERCE_GATEWAYS = {
    "stripe": {
        "enabled": _env_bool("STRIPE_ENABLED", True),
        "secret": os.getenv("STRIPE_SECRET_KEY", ""),
        "webhook_secret": os.getenv("STRIPE_WEBHOOK_SECRET", ""),
        "api_version": os.getenv("STRIPE_API_VERSION", ""),
    },
    "btcpay": {
        "enabled": _env_bool("BTCPAY_ENABLED", False),
        "url": os.getenv("BTCPAY_URL", ""),
        "store_id": os.getenv("BTCPAY_STORE_ID", ""),
        "api_key": os.getenv("BTCPAY_API_KEY", ""),
        "webhook_secret": os.getenv("BTCPAY_WEBHOOK_SECRET", ""),
    },
}

COMMERCE_DEFAULT_CURRENCY = os.getenv("COMMERCE_CURRENCY", "GBP")

COMMERCE_DUNNING = {
    "enabled": _env_bool("COMMERCE_DUNNING_ENABLED", True),
    "retry_days": [int(day) for day in _env_list("COMMERCE_DUNNING_RETRY_DAYS", "1,3,7")],
    "suspend_after_days": int(os.getenv("COMMERCE_DUNNING_SUSPEND_AFTER_DAYS", "14")),
    "cancel_after_days": int(os.getenv("COMMERCE_DUNNING_CANCEL_AFTER_DAYS", "30")),
    "initial_grace_hours": int(os.getenv("COMMERCE_DUNNING_INITIAL_GRACE_HOURS", "24")),
    "send_notifications": _env_bool("COMMERCE_DUNNING_SEND_NOTIFICATIONS", True),
}

COMMERCE_SUBSCRIPTIONS = {
    "max_pause_cycles": int(os.getenv("COMMERCE_MAX_PAUSE_CYCLES", "3")),
}

COMMERCE_MATRIX = {
    "enabled": _env_bool("COMMERCE_MATRIX_ENABLED", False),
    "gated_paths": _env_list("COMMERCE_MATRIX_GATED_PATHS", "/api/commerce/"),
    "training_mode": _env_bool("COMMERCE_MATRIX_TRAINING", False),
    "strict_mode": _env_bool("COMMERCE_MATRIX_STRICT", True),
    "log_all_checks": _env_bool("COMMERCE_MATRIX_LOG_ALL", False),
    "log_denials": _env_bool("COMMERCE_MATRIX_LOG_DENIALS", True),
    "default_allow": _env_bool("COMMERCE_MATRIX_DEFAULT_ALLOW", False),
}

COMMERCE_CURRENCY = {
    "base": COMMERCE_DEFAULT_CURRENCY,
    "supported": _env_list("COMMERCE_SUPPORTED_CURRENCIES", "GBP,USD,EUR"),
    "provider": os.getenv("COMMERCE_EXCHANGE_PROVIDER", "ecb"),
    "api_key": os.getenv("OPEN_EXCHANGE_RATES_APP_ID", ""),
    "cache_ttl_minutes": int(os.getenv("COMMERCE_EXCHANGE_CACHE_TTL", "60")),
    "fixed": {
        "GBP_USD": 1.27,
        "GBP_EUR": 1.17,
    },
}

COMMERCE_RENEWAL_REMINDERS = {
    "enabled": _env_bool("COMMERCE_RENEWAL_REMINDERS", True),
    "days_before": int(os.getenv("COMMERCE_RENEWAL_REMINDER_DAYS", "7")),
}

COMMERCE_CHECKOUT = {
    "session_ttl_minutes": int(os.getenv("COMMERCE_CHECKOUT_TTL", "30")),
}

COMMERCE_BILLING = {
    "invoice_due_days": int(os.getenv("COMMERCE_INVOICE_DUE_DAYS", "14")),
    "invoice_prefix": os.getenv("COMMERCE_INVOICE_PREFIX", "INV"),
    "order_prefix": os.getenv("COMMERCE_ORDER_PREFIX", "ORD"),
    "tax_rate": os.getenv("COMMERCE_TAX_RATE", "0"),
    "tax_country": os.getenv("COMMERCE_TAX_COUNTRY", "GB"),
}

COMMERCE_USAGE_BILLING = {
    "enabled": _env_bool("COMMERCE_USAGE_BILLING", False),
    "sync_to_stripe": _env_bool("COMMERCE_USAGE_SYNC_TO_STRIPE", True),
}

COMMERCE_WEBHOOKS = {
    "inflight_seconds": int(os.getenv("COMMERCE_WEBHOOK_INFLIGHT_SECONDS", "300")),
    "retention_days": int(os.getenv("COMMERCE_WEBHOOK_RETENTION_DAYS", "30")),
    "rate_limits": {
        "default": int(os.getenv("COMMERCE_WEBHOOK_RATE_LIMIT", "60")),
        "trusted": int(os.getenv("COMMERCE_WEBHOOK_TRUSTED_RATE_LIMIT", "300")),
    },
    "trusted_ips": {
        "global": _env_list("COMMERCE_WEBHOOK_TRUSTED_IPS", ""),
        "stripe": _env_list("COMMERCE_STRIPE_WEBHOOK_IPS", ""),
        "btcpay": _env_list("COMMERCE_BTCPAY_WEBHOOK_IPS", ""),
    },
}

COMMERCE_API_SECRET = os.getenv("COMMERCE_API_SECRET", "")

COMMERCE_PUBLIC_BASE_URL = os.getenv("COMMERCE_PUBLIC_BASE_URL", "http://localhost:8000")

COMMERCE_ENTITLEMENT_SERVICE = "commerce.services.entitlements.DatabaseEntitlementService"
COMMERCE_NOTIFIER = "commerce.services.notifications.LoggingNotifier"
COMMERCE_TAX_CALCULATOR = "commerce.services.invoices.FlatRateTaxCalculator"
