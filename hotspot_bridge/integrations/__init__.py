"""External service integrations."""
from .daraja_client import (
    CircuitBreaker,
    DarajaClient,
    GatewayError,
    GatewayErrorType,
    PaymentGateway,
    StkPushResult,
)

__all__ = [
    "CircuitBreaker",
    "DarajaClient",
    "GatewayError",
    "GatewayErrorType",
    "PaymentGateway",
    "StkPushResult",
]
