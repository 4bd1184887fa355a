"""
URL configuration for the billing backend.

Routes: admin, gateway webhooks, the commerce API, health and Prometheus metrics.
"""
from django.contrib import admin
from django.db import connection
from django.http import HttpResponse, JsonResponse
from django.urls import include, path
from prometheus_client import CONTENT_TYPE_LATEST

from commerce.observability.metrics import render_latest
from commerce.views.webhooks import BTCPayWebhookView, StripeWebhookView


def health_check(request):
    with connection.cursor() as cursor:
        cursor.execute("SELECT 1")
    return JsonResponse({"status": "ok"})


def billing_metrics(request):
    return HttpResponse(render_latest(), content_type=CONTENT_TYPE_LATEST)


urlpatterns = [
    path('admin/', admin.site.urls),
    path('webhooks/btcpay', BTCPayWebhookView.as_view(), name='btcpay-webhook'),
    path('webhooks/stripe', StripeWebhookView.as_view(), name='stripe-webhook'),
    path('api/commerce/', include('commerce.urls', namespace='commerce')),
    path('health/', health_check, name='health_check'),
    path('metrics/billing/', billing_metrics, name='billing_metrics'),
]
