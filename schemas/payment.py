from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field


class CallbackEnvelope(BaseModel):
    """One parsed `Body.stkCallback` delivery, metadata already folded flat."""

    result_code: Optional[int] = None
    result_desc: Optional[str] = None
    merchant_request_id: Optional[str] = None
    checkout_request_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    amount: Optional[int] = None
    receipt: Optional[str] = None
    phone: Optional[str] = None
    transaction_date: Optional[datetime] = None

    @property
    def status(self) -> str:
        return "PAID" if self.result_code == 0 else "FAILED"


class MpesaEcho(BaseModel):
    """Gateway fields echoed verbatim, whatever their JSON type."""

    MerchantRequestID: Optional[Any] = None
    CheckoutRequestID: Optional[Any] = None
    ResponseCode: Optional[Any] = None
    ResponseDescription: Optional[Any] = None
    CustomerMessage: Optional[Any] = None


class StkInitiateResponse(BaseModel):
    ok: bool
    message: str
    mpesa: MpesaEcho
    env: str
    mode: Literal["paybill", "till"]
    paymentId: Optional[int] = None


class PaymentOut(BaseModel):
    id: int
    status: str
    amount: Optional[int] = None
    currency: str
    payer_phone: Optional[str] = None
    checkout_request_id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    mpesa_receipt: Optional[str] = None
    result_desc: Optional[str] = None
    paid_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class StkInitiateRequest(BaseModel):
    """Validated, normalized initiation input; never persisted as such."""

    amount: int = Field(ge=1)
    msisdn: str = Field(pattern=r"^254(7|1)\d{8}$")
    mode: Literal["paybill", "till"] = "paybill"
    account_ref: str = Field(max_length=12)
    description: str = Field(max_length=32)
