from typing import Optional
from urllib.parse import urlencode

from core.logging import get_logger
from models.order import Order, PaymentMethod
from models.user import User
from services.gateway import COMPLETED, PaymentGateway, PaymentLookup, PaymentSession

logger = get_logger(__name__)

PROVIDER = "esewa"


def _amount(value) -> str:
    # eSewa takes major units; drop a trailing ".00"
    text = f"{float(value):.2f}"
    return text[:-3] if text.endswith(".00") else text


class EsewaGateway(PaymentGateway):
    """
    eSewa ePay v1: initiation is a redirect built from query parameters.

    There is no authenticated server-to-server confirmation in this flow.
    ``verify`` trusts what the browser brings back from the success/failure
    redirect, so a forged return marks an order paid. Integrators that need a
    stronger guarantee must add a transaction status check.
    """

    method = PaymentMethod.ESEWA

    def __init__(self, merchant_code: str, base_url: str, frontend_url: str):
        self.merchant_code = merchant_code
        self.base_url = base_url.rstrip("/")
        self.frontend_url = frontend_url.rstrip("/")

    def _return_url(self, order: Order, outcome: str) -> str:
        query = urlencode({"payment": PROVIDER, "status": outcome, "oid": order.id})
        return f"{self.frontend_url}/payment/result?{query}"

    def build_payment_url(self, order: Order) -> str:
        params = {
            "amt": _amount(order.items_price),
            "pdc": _amount(order.shipping_price),
            "psc": _amount(0),
            "txAmt": _amount(order.tax_price),
            "tAmt": _amount(order.total_price),
            "pid": str(order.id),
            "scd": self.merchant_code,
            "su": self._return_url(order, "success"),
            "fu": self._return_url(order, "failure"),
        }
        return f"{self.base_url}/api/epay/main?{urlencode(params)}"

    def initiate(self, order: Order, customer: User) -> PaymentSession:
        return PaymentSession(payment_url=self.build_payment_url(order))

    def verify(self, order: Order, reference: Optional[str] = None, reported_status: Optional[str] = None) -> PaymentLookup:
        reported = (reported_status or "success").lower()
        logger.warning("esewa_trust_on_return", order_id=order.id, reported_status=reported)
        status = COMPLETED if reported == "success" else "Failed"
        return PaymentLookup(
            status=status,
            transaction_id=reference,
            total_amount=float(order.total_price),
            verification="trust-on-return",
            raw={"status": reported, "ref_id": reference},
        )
