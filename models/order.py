import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DateTime, ForeignKey, Numeric, Boolean, Integer, JSON, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base

# Largest amount a Numeric(12, 2) column holds
MAX_AMOUNT = Decimal("9999999999.99")


class PaymentMethod(str, enum.Enum):
    KHALTI = "khalti"
    ESEWA = "esewa"
    COD = "cod"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), index=True)
    shipping_address: Mapped[dict] = mapped_column(JSON)
    payment_method: Mapped[str] = mapped_column(String(20))

    items_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    tax_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    shipping_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    # Derived on every flush, see _derive_total_price
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)

    status: Mapped[str] = mapped_column(String(20), default=OrderStatus.PENDING.value, index=True)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_delivered: Mapped[bool] = mapped_column(Boolean, default=False)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Gateway correlation token, the lookup key for callbacks
    pidx: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True, index=True)
    payment_result: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    tracking_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    customer = relationship("User")
    items = relationship(
        "OrderItem",
        cascade="all, delete-orphan",
        back_populates="order",
        order_by="OrderItem.id",
    )

    __mapper_args__ = {"version_id_col": version}

    def is_owned_by(self, user_id: int) -> bool:
        return self.customer_id == user_id


def _money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def compute_total(items_price, tax_price, shipping_price) -> Decimal:
    return _money(items_price) + _money(tax_price) + _money(shipping_price)


@event.listens_for(Order, "before_insert")
@event.listens_for(Order, "before_update")
def _derive_total_price(mapper, connection, target: Order) -> None:
    for field in ("items_price", "tax_price", "shipping_price"):
        amount = _money(getattr(target, field))
        if amount < 0:
            raise ValueError(f"{field} must not be negative")
        setattr(target, field, amount)
    target.total_price = compute_total(target.items_price, target.tax_price, target.shipping_price)

    if target.is_paid and target.paid_at is None:
        raise ValueError("A paid order must carry paid_at")
