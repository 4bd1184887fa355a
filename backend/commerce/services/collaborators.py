"""Build the pluggable collaborators named in settings.

Services accept these objects as constructor arguments; the helpers below
only supply the configured defaults at the outer edges (views, tasks,
management commands).
"""
from django.conf import settings
from django.utils.module_loading import import_string

DEFAULT_ENTITLEMENT_SERVICE = "commerce.services.entitlements.DatabaseEntitlementService"
DEFAULT_NOTIFIER = "commerce.services.notifications.LoggingNotifier"
DEFAULT_TAX_CALCULATOR = "commerce.services.invoices.FlatRateTaxCalculator"


def _build(setting_name: str, default: str):
    return import_string(getattr(settings, setting_name, None) or default)()


def get_entitlement_service():
    return _build("COMMERCE_ENTITLEMENT_SERVICE", DEFAULT_ENTITLEMENT_SERVICE)


def get_notifier():
    return _build("COMMERCE_NOTIFIER", DEFAULT_NOTIFIER)


def get_tax_calculator():
    return _build("COMMERCE_TAX_CALCULATOR", DEFAULT_TAX_CALCULATOR)


def build_subscription_service(gateway_resolver=None):
    from commerce.services.invoices import InvoiceService
    from commerce.services.subscriptions import SubscriptionService

    return SubscriptionService(
        get_entitlement_service(),
        get_notifier(),
        gateway_resolver=gateway_resolver,
        invoices=InvoiceService(get_tax_calculator()),
    )
