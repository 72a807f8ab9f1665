"""Error taxonomy of the payment-to-access pipeline."""
from typing import Optional


class HotspotError(Exception):
    """Base exception for pipeline errors."""

    pass


class InvalidInputError(HotspotError):
    """Raised when a request is malformed; nothing external has been called."""

    pass


class GatewayUnavailableError(HotspotError):
    """Raised when the payment provider call failed or timed out. Retryable."""

    pass


class CallbackIgnoredError(HotspotError):
    """
    A callback that must be acknowledged but not acted on.

    Never surfaced to the provider: withholding the acknowledgment would make
    it redeliver a callback that can never be processed differently.
    """

    def __init__(self, checkout_request_id: str, message: str):
        super().__init__(message)
        self.checkout_request_id = checkout_request_id


class UnknownCorrelationError(CallbackIgnoredError):
    """Raised when a callback names a token this system never issued."""

    def __init__(self, checkout_request_id: str):
        super().__init__(
            checkout_request_id, f"No transaction for checkout request {checkout_request_id}"
        )


class DuplicateCallbackError(CallbackIgnoredError):
    """Raised when a callback arrives for a transaction already in a terminal state."""

    def __init__(self, checkout_request_id: str, status: Optional[str] = None):
        super().__init__(
            checkout_request_id,
            f"Checkout request {checkout_request_id} already settled ({status})",
        )
        self.status = status


class InvalidOrUsedVoucherError(HotspotError):
    """Raised when a voucher code does not exist or was already redeemed."""

    pass
