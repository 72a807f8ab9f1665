"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CallbackAck,
    CallbackEnvelope,
    PaymentStatusResponse,
    StkPushRequest,
    StkPushResponse,
    VoucherRedeemRequest,
    VoucherRedeemResponse,
)

__all__ = [
    "app",
    "CallbackAck",
    "CallbackEnvelope",
    "PaymentStatusResponse",
    "StkPushRequest",
    "StkPushResponse",
    "VoucherRedeemRequest",
    "VoucherRedeemResponse",
]
