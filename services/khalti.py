from typing import Any, Dict, Optional

import requests

from core.exceptions import GatewayError
from core.logging import get_logger
from models.order import Order, PaymentMethod
from models.user import User
from services.gateway import PaymentGateway, PaymentLookup, PaymentSession, to_minor_units

logger = get_logger(__name__)

PROVIDER = "khalti"
# Khalti rejects initiation without a phone number
DEFAULT_PHONE = "9800000000"


class KhaltiGateway(PaymentGateway):
    """Khalti e-Payment (KPG-2): server-side initiate plus authenticated lookup."""

    method = PaymentMethod.KHALTI

    def __init__(self, secret_key: str, base_url: str, frontend_url: str, timeout: float = 10.0):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.frontend_url = frontend_url.rstrip("/")
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Key {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            resp = requests.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.Timeout as exc:
            logger.warning("gateway_timeout", provider=PROVIDER, path=path, timeout=self.timeout)
            raise GatewayError(PROVIDER, str(exc)) from exc
        except requests.RequestException as exc:
            logger.warning("gateway_unreachable", provider=PROVIDER, path=path, error=str(exc))
            raise GatewayError(PROVIDER, str(exc)) from exc

        try:
            body = resp.json()
        except ValueError:
            body = None

        if resp.status_code >= 400:
            logger.warning("gateway_error", provider=PROVIDER, path=path, http_status=resp.status_code, error=body)
            raise GatewayError(PROVIDER, body if body is not None else resp.text, http_status=resp.status_code)
        if not isinstance(body, dict):
            raise GatewayError(
                PROVIDER, resp.text, http_status=resp.status_code,
                message="Malformed response from khalti payment service",
            )
        return body

    def build_initiate_payload(self, order: Order, customer: User) -> Dict[str, Any]:
        return {
            "return_url": f"{self.frontend_url}/payment/result",
            "website_url": self.frontend_url,
            "amount": to_minor_units(order.total_price),
            "purchase_order_id": str(order.id),
            "purchase_order_name": f"Order #{order.id}",
            "customer_info": {
                "name": customer.name,
                "email": customer.email,
                "phone": customer.phone or DEFAULT_PHONE,
            },
            "product_details": [
                {
                    "identity": item.product_id or f"item_{index}",
                    "name": item.name,
                    "total_price": to_minor_units(item.line_total),
                    "quantity": item.quantity,
                    "unit_price": to_minor_units(item.unit_price),
                }
                for index, item in enumerate(order.items)
            ],
        }

    def initiate(self, order: Order, customer: User) -> PaymentSession:
        data = self._post("/epayment/initiate/", self.build_initiate_payload(order, customer))
        if not data.get("pidx") or not data.get("payment_url"):
            raise GatewayError(PROVIDER, data, message="Failed to initiate payment with Khalti")
        return PaymentSession(
            payment_url=data["payment_url"],
            pidx=data["pidx"],
            expires_at=data.get("expires_at"),
            expires_in=data.get("expires_in"),
        )

    def lookup(self, pidx: str) -> PaymentLookup:
        data = self._post("/epayment/lookup/", {"pidx": pidx})
        if not data.get("status"):
            raise GatewayError(PROVIDER, data, message="Payment verification failed")
        return PaymentLookup(
            status=data["status"],
            pidx=data.get("pidx") or pidx,
            transaction_id=data.get("transaction_id"),
            total_amount=data.get("total_amount"),
            fee=data.get("fee"),
            refunded=data.get("refunded"),
            raw=data,
        )

    def verify(self, order: Order, reference: Optional[str] = None, reported_status: Optional[str] = None) -> PaymentLookup:
        # What the browser reports is ignored; Khalti's lookup is authoritative
        pidx = reference or order.pidx
        if not pidx:
            raise GatewayError(PROVIDER, "missing pidx", message="Order has no Khalti payment session")
        return self.lookup(pidx)
