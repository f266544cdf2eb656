from typing import List
from fastapi import APIRouter, Depends

from models.user import User
from schemas.order import OrderCreate, OrderOut
from security.dependencies import get_current_user, get_lifecycle
from services.lifecycle import OrderLifecycleService

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=OrderOut, status_code=201)
def create_order(
    data: OrderCreate,
    current_user: User = Depends(get_current_user),
    lifecycle: OrderLifecycleService = Depends(get_lifecycle),
):
    return lifecycle.create_order(
        customer=current_user,
        items=[item.model_dump() for item in data.items],
        shipping_address=data.shipping_address.model_dump(),
        payment_method=data.payment_method,
        declared_total=data.total_amount,
        notes=data.notes,
    )


@router.get("/mine", response_model=List[OrderOut])
def list_my_orders(
    current_user: User = Depends(get_current_user),
    lifecycle: OrderLifecycleService = Depends(get_lifecycle),
):
    return lifecycle.list_customer_orders(current_user)


@router.get("/{order_id}", response_model=OrderOut)
def get_order(
    order_id: int,
    current_user: User = Depends(get_current_user),
    lifecycle: OrderLifecycleService = Depends(get_lifecycle),
):
    return lifecycle.get_order(order_id, current_user)
