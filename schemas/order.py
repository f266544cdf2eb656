from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from models.order import MAX_AMOUNT, OrderStatus, PaymentMethod


class OrderItemIn(BaseModel):
    product_id: str = Field(min_length=1, max_length=100)
    name: str = Field(min_length=1, max_length=200)
    price: float = Field(ge=0)
    quantity: int = Field(ge=1)
    image: Optional[str] = None


class ShippingAddress(BaseModel):
    street: str
    city: str
    state: str
    zip_code: str
    country: str


class OrderCreate(BaseModel):
    items: List[OrderItemIn]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    total_amount: float = Field(ge=0, le=float(MAX_AMOUNT), allow_inf_nan=False)
    notes: Optional[str] = Field(default=None, max_length=500)


class OrderItemOut(BaseModel):
    id: int
    product_id: str
    name: str
    unit_price: float
    quantity: int
    image: Optional[str] = None

    class Config:
        from_attributes = True


class OrderOut(BaseModel):
    id: int
    customer_id: int
    items: List[OrderItemOut]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    items_price: float
    tax_price: float
    shipping_price: float
    total_price: float
    status: OrderStatus
    is_paid: bool
    paid_at: Optional[datetime] = None
    is_delivered: bool
    delivered_at: Optional[datetime] = None
    pidx: Optional[str] = None
    payment_result: Optional[Dict[str, Any]] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class StatusUpdate(BaseModel):
    # Free-form so unknown values reach the service and fail as a 400
    status: str
    tracking_number: Optional[str] = Field(default=None, max_length=100)
