from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse

from core.config import settings
from core.exceptions import StorefrontError
from core.logging import get_logger
from models.order import PaymentMethod
from models.user import User
from schemas.payment import (
    EsewaVerifyRequest,
    KhaltiVerifyRequest,
    PaymentInitRequest,
    PaymentInitResponse,
    PaymentVerifyResponse,
)
from security.dependencies import get_current_user, get_lifecycle
from services.lifecycle import OrderLifecycleService, VerificationOutcome

logger = get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def _init_response(order, session) -> dict:
    return {
        "payment_url": session.payment_url,
        "pidx": session.pidx,
        "expires_at": session.expires_at,
        "expires_in": session.expires_in,
        "order": order,
    }


def _verify_response(outcome: VerificationOutcome) -> dict:
    return {
        "success": outcome.success,
        "message": outcome.message,
        "payment_status": outcome.payment_status,
        "transaction_id": outcome.transaction_id,
        "already_paid": outcome.already_paid,
        "order": outcome.order,
    }


def _result_page(**params) -> RedirectResponse:
    query = urlencode({k: v for k, v in params.items() if v is not None})
    return RedirectResponse(url=f"{settings.FRONTEND_URL}/payment/result?{query}", status_code=302)


@router.post("/khalti/initiate", response_model=PaymentInitResponse)
def initiate_khalti(
    data: PaymentInitRequest,
    current_user: User = Depends(get_current_user),
    lifecycle: OrderLifecycleService = Depends(get_lifecycle),
):
    order, session = lifecycle.initiate_payment(data.order_id, current_user, PaymentMethod.KHALTI)
    return _init_response(order, session)


@router.post("/khalti/verify", response_model=PaymentVerifyResponse)
def verify_khalti(
    data: KhaltiVerifyRequest,
    current_user: User = Depends(get_current_user),
    lifecycle: OrderLifecycleService = Depends(get_lifecycle),
):
    outcome = lifecycle.verify_payment(
        PaymentMethod.KHALTI,
        current_user,
        pidx=data.pidx,
        order_id=data.order_id,
    )
    return _verify_response(outcome)


@router.get("/khalti/callback", include_in_schema=False)
def khalti_callback(
    pidx: Optional[str] = None,
    status: Optional[str] = None,
    transaction_id: Optional[str] = None,
    tidx: Optional[str] = None,
    amount: Optional[str] = None,
    mobile: Optional[str] = None,
    purchase_order_id: Optional[str] = None,
    purchase_order_name: Optional[str] = None,
    total_amount: Optional[str] = None,
    lifecycle: OrderLifecycleService = Depends(get_lifecycle),
):
    """Browser lands here from Khalti; always answer with a redirect to the result page."""
    params = {
        "pidx": pidx,
        "status": status,
        "transaction_id": transaction_id,
        "tidx": tidx,
        "amount": amount,
        "mobile": mobile,
        "purchase_order_id": purchase_order_id,
        "purchase_order_name": purchase_order_name,
        "total_amount": total_amount,
    }
    logger.info("payment_callback_received", order_id=purchase_order_id, status=status, pidx=pidx)
    try:
        lifecycle.handle_callback(params)
    except StorefrontError as exc:
        logger.warning("payment_callback_rejected", order_id=purchase_order_id, error=exc.message)
        return _result_page(status="error")
    except Exception:
        logger.exception("payment_callback_failed", order_id=purchase_order_id)
        return _result_page(status="error")
    return _result_page(status=status, orderId=purchase_order_id)


@router.post("/esewa/initiate", response_model=PaymentInitResponse)
def initiate_esewa(
    data: PaymentInitRequest,
    current_user: User = Depends(get_current_user),
    lifecycle: OrderLifecycleService = Depends(get_lifecycle),
):
    order, session = lifecycle.initiate_payment(data.order_id, current_user, PaymentMethod.ESEWA)
    return _init_response(order, session)


@router.post("/esewa/verify", response_model=PaymentVerifyResponse)
def verify_esewa(
    data: EsewaVerifyRequest,
    current_user: User = Depends(get_current_user),
    lifecycle: OrderLifecycleService = Depends(get_lifecycle),
):
    outcome = lifecycle.verify_payment(
        PaymentMethod.ESEWA,
        current_user,
        order_id=data.order_id,
        reported_status=data.status,
        reference=data.ref_id,
    )
    return _verify_response(outcome)
