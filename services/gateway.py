"""
Common contract for outbound payment providers.

Each provider implements ``initiate`` and ``verify``; the lifecycle service
picks one by the order's ``payment_method`` and never special-cases a
provider. Gateways are stateless and never touch order rows.
"""
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Mapping, Optional

from core.config import Settings
from models.order import Order, PaymentMethod
from models.user import User

COMPLETED = "Completed"

# Lookup states after which polling the provider again is pointless
TERMINAL_STATUSES = {"completed", "expired", "user canceled", "refunded", "partially refunded"}


@dataclass
class PaymentSession:
    payment_url: str
    pidx: Optional[str] = None
    expires_at: Optional[str] = None
    expires_in: Optional[int] = None


@dataclass
class PaymentLookup:
    """Provider-reported outcome of a payment, in the provider's own words."""

    status: str
    pidx: Optional[str] = None
    transaction_id: Optional[str] = None
    total_amount: Optional[Any] = None
    fee: Optional[Any] = None
    refunded: Optional[bool] = None
    mobile: Optional[str] = None
    verification: str = "lookup"
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def completed(self) -> bool:
        return self.status == COMPLETED

    @property
    def normalized_status(self) -> str:
        return normalize_status(self.status)


def normalize_status(raw_status: Optional[str]) -> str:
    return (raw_status or "").strip().lower()


def to_minor_units(amount) -> int:
    """Major currency units to paisa, rounded to the nearest integer."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentGateway:
    method: PaymentMethod

    def initiate(self, order: Order, customer: User) -> PaymentSession:
        raise NotImplementedError

    def verify(self, order: Order, reference: Optional[str] = None, reported_status: Optional[str] = None) -> PaymentLookup:
        raise NotImplementedError


def build_gateways(config: Settings) -> Mapping[PaymentMethod, PaymentGateway]:
    from services.esewa import EsewaGateway
    from services.khalti import KhaltiGateway

    return {
        PaymentMethod.KHALTI: KhaltiGateway(
            secret_key=config.KHALTI_SECRET_KEY,
            base_url=config.KHALTI_BASE_URL,
            frontend_url=config.FRONTEND_URL,
            timeout=config.GATEWAY_TIMEOUT_SECONDS,
        ),
        PaymentMethod.ESEWA: EsewaGateway(
            merchant_code=config.ESEWA_MERCHANT_CODE,
            base_url=config.ESEWA_BASE_URL,
            frontend_url=config.FRONTEND_URL,
        ),
    }
