"""
Pydantic schemas for payment endpoints and the M-Pesa callback envelope.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class InitiatePaymentRequest(BaseModel):
    """Request schema for starting an M-Pesa STK push."""
    phone_number: str = Field(..., description="Payer phone number, e.g. 254712345678", pattern=r"^254[0-9]{9}$")
    amount: Decimal = Field(..., ge=1, max_digits=10, decimal_places=2, description="Amount to charge")
    plan_id: Literal["basic", "premium", "institution"] = Field(..., description="Plan being purchased")

    class Config:
        json_schema_extra = {
            "example": {
                "phone_number": "254712345678",
                "amount": 1200,
                "plan_id": "premium"
            }
        }


class InitiatePaymentData(BaseModel):
    payment_id: str
    checkout_request_id: str
    merchant_request_id: Optional[str] = None
    status: str


class InitiatePaymentResponse(BaseModel):
    """Response schema for a started payment."""
    success: bool = True
    message: str = "Payment initiated successfully"
    data: InitiatePaymentData


class PaymentIntentOut(BaseModel):
    """Owner-visible projection of a payment intent."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    amount: Decimal
    currency: str
    plan: str
    status: str
    checkout_request_id: Optional[str] = Field(default=None, validation_alias="correlation_id")
    receipt_number: Optional[str] = None
    failure_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    abandoned: bool = False


class PaymentStatusResponse(BaseModel):
    success: bool = True
    data: PaymentIntentOut


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class PaymentHistoryData(BaseModel):
    payments: List[PaymentIntentOut]
    pagination: Pagination


class PaymentHistoryResponse(BaseModel):
    success: bool = True
    data: PaymentHistoryData


# ============================================
# M-PESA STK CALLBACK ENVELOPE
# ============================================
# Unknown fields are ignored; required fields are enforced.

class CallbackItem(BaseModel):
    name: str = Field(..., alias="Name")
    value: Any = Field(default=None, alias="Value")


class CallbackMetadata(BaseModel):
    items: List[CallbackItem] = Field(default_factory=list, alias="Item")

    def get(self, name: str) -> Any:
        """Value of the item with the given Name, or None. Item order does not matter."""
        for item in self.items:
            if item.name == name:
                return item.value
        return None


class StkCallback(BaseModel):
    merchant_request_id: Optional[str] = Field(default=None, alias="MerchantRequestID")
    checkout_request_id: str = Field(..., alias="CheckoutRequestID", min_length=1)
    result_code: int = Field(..., alias="ResultCode")
    result_desc: str = Field(default="", alias="ResultDesc")
    callback_metadata: Optional[CallbackMetadata] = Field(default=None, alias="CallbackMetadata")

    @property
    def is_success(self) -> bool:
        return self.result_code == 0


class StkCallbackBody(BaseModel):
    stk_callback: StkCallback = Field(..., alias="stkCallback")


class StkCallbackEnvelope(BaseModel):
    body: StkCallbackBody = Field(..., alias="Body")

    @property
    def callback(self) -> StkCallback:
        return self.body.stk_callback


class CallbackAck(BaseModel):
    success: bool = True
