from typing import Optional

from pydantic import BaseModel, model_validator

from schemas.order import OrderOut


class PaymentInitRequest(BaseModel):
    order_id: int


class PaymentInitResponse(BaseModel):
    payment_url: str
    pidx: Optional[str] = None
    expires_at: Optional[str] = None
    expires_in: Optional[int] = None
    order: OrderOut


class KhaltiVerifyRequest(BaseModel):
    pidx: Optional[str] = None
    order_id: Optional[int] = None

    @model_validator(mode="after")
    def _needs_reference(self):
        if not self.pidx and self.order_id is None:
            raise ValueError("Payment ID (pidx) or order_id is required")
        return self


class EsewaVerifyRequest(BaseModel):
    order_id: int
    # Values eSewa appends to the success/failure redirect
    status: Optional[str] = "success"
    ref_id: Optional[str] = None


class PaymentVerifyResponse(BaseModel):
    success: bool
    message: str
    payment_status: str
    transaction_id: Optional[str] = None
    already_paid: bool = False
    order: OrderOut
