"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class StkPushRequest(BaseModel):
    """Request schema for initiating a purchase."""

    phone: Optional[str] = Field(default=None, description="Customer phone number (07..., 7..., or 254...)")
    plan: Optional[str] = Field(default=None, description="Plan identifier (e.g., 1hr)")
    amount: Optional[float] = Field(default=None, description="Price in whole shillings")

    model_config = {
        "json_schema_extra": {
            "examples": [{"phone": "0712345678", "plan": "1hr", "amount": 10}]
        }
    }


class StkPushResponse(BaseModel):
    """Response schema for an accepted STK push."""

    success: bool = Field(..., description="Always true on acceptance")
    checkoutID: str = Field(..., description="Provider checkout request ID to poll with")


class ErrorResponse(BaseModel):
    error: str = Field(..., description="Error message")


class PaymentStatusResponse(BaseModel):
    """Customer-facing payment status."""

    paid: bool = Field(..., description="True once the payment succeeded")
    plan: Optional[str] = Field(default=None, description="Purchased plan, when paid")


class CallbackItem(BaseModel):
    name: str = Field(..., alias="Name")
    value: Any = Field(default=None, alias="Value")

    model_config = ConfigDict(populate_by_name=True)


class CallbackMetadata(BaseModel):
    items: List[CallbackItem] = Field(default_factory=list, alias="Item")

    model_config = ConfigDict(populate_by_name=True)


class StkCallback(BaseModel):
    """The `stkCallback` object Daraja posts to the callback URL."""

    merchant_request_id: Optional[str] = Field(default=None, alias="MerchantRequestID")
    checkout_request_id: str = Field(..., min_length=1, alias="CheckoutRequestID")
    result_code: int = Field(..., alias="ResultCode")
    result_desc: Optional[str] = Field(default=None, alias="ResultDesc")
    callback_metadata: Optional[CallbackMetadata] = Field(default=None, alias="CallbackMetadata")

    model_config = ConfigDict(populate_by_name=True)

    def metadata_dict(self) -> Dict[str, Any]:
        """Flatten the metadata item list to name -> value."""
        if self.callback_metadata is None:
            return {}
        return {item.name: item.value for item in self.callback_metadata.items}


class CallbackBody(BaseModel):
    stk_callback: StkCallback = Field(..., alias="stkCallback")

    model_config = ConfigDict(populate_by_name=True)


class CallbackEnvelope(BaseModel):
    """Request schema for the payment callback webhook."""

    body: CallbackBody = Field(..., alias="Body")

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "Body": {
                        "stkCallback": {
                            "MerchantRequestID": "29115-34620561-1",
                            "CheckoutRequestID": "ws_CO_191220191020363925",
                            "ResultCode": 0,
                            "ResultDesc": "The service request is processed successfully.",
                            "CallbackMetadata": {
                                "Item": [
                                    {"Name": "Amount", "Value": 10},
                                    {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
                                    {"Name": "PhoneNumber", "Value": 254712345678},
                                ]
                            },
                        }
                    }
                }
            ]
        },
    )


class CallbackAck(BaseModel):
    """Acknowledgment payload the provider expects."""

    ResultCode: int = Field(default=0)
    ResultDesc: str = Field(default="Accepted")


class VoucherRedeemRequest(BaseModel):
    code: str = Field(default="", description="Voucher code")
    phone: str = Field(default="", description="Customer phone number")


class VoucherRedeemResponse(BaseModel):
    success: bool
    message: str


class QueueEntrySchema(BaseModel):
    phone: str
    plan: str


class QueueSnapshotResponse(BaseModel):
    """Debug view of the pull queue; not authoritative."""

    length: int = Field(..., description="Entries waiting")
    queue: List[QueueEntrySchema] = Field(..., description="Entries, head first")


class PingResponse(BaseModel):
    status: str = Field(default="Awake")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class SaleResponse(BaseModel):
    """A successful transaction as shown in the sales report."""

    checkout_request_id: str
    phone_number: str
    amount: int
    plan: str
    status: str
    mpesa_receipt: Optional[str] = None
    payer_name: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class VoucherIssueRequest(BaseModel):
    plan: str = Field(..., min_length=1, description="Plan granted by the voucher")
    amount: int = Field(default=0, ge=0, description="Face value in shillings")
    agent: Optional[str] = Field(default=None, description="Issuing agent label")
    code: Optional[str] = Field(
        default=None, min_length=4, max_length=32, description="Code to issue; generated when omitted"
    )


class VoucherResponse(BaseModel):
    code: str
    plan: str
    amount: int
    agent: Optional[str] = None
    used: bool
    redeemed_by: Optional[str] = None
    redeemed_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
