from rest_framework import status
from rest_framework.response import Response

from commerce.exceptions import CommerceError, GatewayConnectionError, GatewayError, GatewayRateLimitError


def commerce_error_response(exc: CommerceError, status_code: int = None) -> Response:
    """Machine-readable code plus the sanitised message; never the raw gateway error."""
    if status_code is None:
        if isinstance(exc, (GatewayConnectionError, GatewayRateLimitError)):
            status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        elif isinstance(exc, GatewayError):
            status_code = status.HTTP_502_BAD_GATEWAY
        else:
            status_code = status.HTTP_400_BAD_REQUEST
    return Response({"error": exc.code, "message": exc.safe_message}, status=status_code)
