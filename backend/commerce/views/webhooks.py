"""Inbound gateway webhook endpoints."""
from __future__ import annotations

import logging

from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework.response import Response
from rest_framework.views import APIView

from commerce.exceptions import GatewayConfigurationError
from commerce.models import Gateway
from commerce.services.gateways import get_gateway
from commerce.throttling import WebhookRateThrottle
from commerce.webhooks import reconcile

logger = logging.getLogger(__name__)


@method_decorator(csrf_exempt, name="dispatch")
class GatewayWebhookView(APIView):
    """Hand the raw body and signature header to the reconciliation engine."""

    authentication_classes = []
    permission_classes = []
    throttle_classes = [WebhookRateThrottle]
    http_method_names = ["post"]
    matrix_exempt = True

    gateway_name: str = ""
    signature_header: str = ""

    def post(self, request, *args, **kwargs):
        try:
            gateway = get_gateway(self.gateway_name)
        except GatewayConfigurationError as exc:
            logger.error("%s webhook received but gateway is not configured: %s", self.gateway_name, exc)
            return Response({"error": exc.code}, status=500)

        result = reconcile(
            self.gateway_name,
            gateway,
            request.body,
            request.headers.get(self.signature_header),
            headers=request.headers,
        )
        return Response(result.body, status=result.status_code)


class BTCPayWebhookView(GatewayWebhookView):
    gateway_name = Gateway.BTCPAY
    signature_header = "BTCPay-Sig"


class StripeWebhookView(GatewayWebhookView):
    gateway_name = Gateway.STRIPE
    signature_header = "Stripe-Signature"
