"""Bearer-token authentication for the service-to-service provisioning API."""
from __future__ import annotations

import hmac
import logging

from rest_framework import exceptions
from rest_framework.authentication import BaseAuthentication, get_authorization_header

from commerce.conf import api_secret

logger = logging.getLogger("commerce.security")


class ProvisioningClient:
    """Principal for a caller holding the shared commerce API secret."""

    is_authenticated = True
    is_anonymous = False
    pk = None
    username = "commerce-api"

    def __str__(self):
        return self.username


class ApiSecretNotConfigured(exceptions.APIException):
    status_code = 500
    default_detail = "Commerce API secret is not configured."
    default_code = "api_not_configured"


class CommerceApiTokenAuthentication(BaseAuthentication):
    keyword = "Bearer"

    def authenticate(self, request):
        header = get_authorization_header(request).split()
        if not header or header[0].lower() != self.keyword.lower().encode():
            raise exceptions.AuthenticationFailed("Bearer token required.")
        if len(header) != 2:
            raise exceptions.AuthenticationFailed("Invalid authorization header.")

        secret = api_secret()
        if not secret:
            logger.error("Provisioning request rejected: COMMERCE_API_SECRET is not set")
            raise ApiSecretNotConfigured()

        token = header[1]
        if not hmac.compare_digest(token, secret.encode("utf-8")):
            logger.warning("Provisioning request rejected: invalid bearer token")
            raise exceptions.AuthenticationFailed("Invalid token.")
        return ProvisioningClient(), None

    def authenticate_header(self, request):
        return self.keyword
