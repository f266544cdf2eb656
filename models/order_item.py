from decimal import Decimal

from sqlalchemy import ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from core.db import Base


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    # Catalog reference; the catalog lives in another service
    product_id: Mapped[str] = mapped_column(String(100), index=True)
    name: Mapped[str] = mapped_column(String(200))
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    image: Mapped[str | None] = mapped_column(String(500), nullable=True)

    order = relationship("Order", back_populates="items")

    @validates("quantity")
    def _check_quantity(self, key, value):
        if value is None or int(value) < 1:
            raise ValueError("Quantity must be at least 1")
        return int(value)

    @property
    def line_total(self) -> Decimal:
        return Decimal(str(self.unit_price)) * self.quantity
