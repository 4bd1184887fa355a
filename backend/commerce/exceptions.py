"""Domain errors raised by the commerce services and gateway adapters."""
from __future__ import annotations

from typing import Optional


class CommerceError(RuntimeError):
    """Base class for commerce failures that callers are expected to handle."""

    code = "commerce_error"
    safe_message = "The billing operation could not be completed."


class GatewayConfigurationError(CommerceError):
    """Raised when mandatory gateway configuration is missing."""

    code = "gateway_not_configured"
    safe_message = "Payment gateway is not configured."


class GatewayError(CommerceError):
    """Raised when a gateway returns an operational error; message is already sanitised."""

    code = "gateway_error"
    safe_message = "The payment provider rejected the request."


class CardError(GatewayError):
    """Card declined; the gateway's decline message is safe to show."""

    code = "card_declined"

    def __init__(self, message: str, *, decline_code: Optional[str] = None):
        super().__init__(message)
        self.decline_code = decline_code
        self.safe_message = message


class GatewayRateLimitError(GatewayError):
    code = "gateway_rate_limited"
    safe_message = "The payment provider is busy, please retry shortly."

    def __init__(self, message: str = "Rate limited by payment provider.", *, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class GatewayConnectionError(GatewayError):
    """Network failure or timeout talking to a gateway; the outcome of the call is unknown."""

    code = "gateway_unavailable"
    safe_message = "The payment provider could not be reached."


class SubscriptionError(CommerceError):
    code = "subscription_error"
    safe_message = "The subscription change is not allowed."

    def __init__(self, message: str):
        super().__init__(message)
        self.safe_message = message


class PauseLimitExceeded(SubscriptionError):
    code = "pause_limit_exceeded"

    def __init__(self, pause_count: int, max_cycles: int):
        super().__init__(
            f"Subscription has been paused {pause_count} times; the limit is {max_cycles}."
        )
        self.pause_count = pause_count
        self.max_cycles = max_cycles


class PermissionLocked(CommerceError):
    """Raised when training tries to override a decision locked by an ancestor entity."""

    code = "permission_locked"

    def __init__(self, key: str, locked_by=None):
        locked_label = getattr(locked_by, "code", None) or "an ancestor entity"
        super().__init__(f"Permission '{key}' is locked by {locked_label}.")
        self.key = key
        self.locked_by = locked_by
        self.safe_message = str(self)


class WebhookProcessingError(CommerceError):
    code = "webhook_processing_error"
    safe_message = "Webhook processing failed."


class PayoutError(CommerceError):
    """Referral payout request rejected (below minimum, over balance, missing address)."""

    code = "payout_rejected"

    def __init__(self, message: str):
        super().__init__(message)
        self.safe_message = message


class CreditNoteError(CommerceError):
    code = "credit_note_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.safe_message = message
