from typing import List, Optional
from fastapi import APIRouter, Depends

from models.user import User
from schemas.order import OrderOut, StatusUpdate
from security.dependencies import get_lifecycle, require_admin
from services.lifecycle import OrderLifecycleService

router = APIRouter(prefix="/admin/orders", tags=["admin"])


@router.get("", response_model=List[OrderOut])
def list_orders(
    status: Optional[str] = None,
    admin: User = Depends(require_admin),
    lifecycle: OrderLifecycleService = Depends(get_lifecycle),
):
    return lifecycle.list_all_orders(admin, status=status)


@router.patch("/{order_id}/status", response_model=OrderOut)
def update_status(
    order_id: int,
    data: StatusUpdate,
    admin: User = Depends(require_admin),
    lifecycle: OrderLifecycleService = Depends(get_lifecycle),
):
    return lifecycle.update_status(order_id, admin, data.status, tracking_number=data.tracking_number)


@router.put("/{order_id}/deliver", response_model=OrderOut)
def mark_delivered(
    order_id: int,
    admin: User = Depends(require_admin),
    lifecycle: OrderLifecycleService = Depends(get_lifecycle),
):
    return lifecycle.mark_delivered(order_id, admin)
