from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from models.order import Order, OrderStatus, PaymentMethod, compute_total
from models.order_item import OrderItem


def _order(customer, **overrides):
    fields = dict(
        customer_id=customer.id,
        shipping_address={"street": "1 Main St", "city": "Pokhara", "state": "Gandaki", "zip_code": "33700", "country": "Nepal"},
        payment_method=PaymentMethod.KHALTI.value,
        items_price=Decimal("100.00"),
    )
    fields.update(overrides)
    order = Order(**fields)
    order.items = [OrderItem(product_id="p-1", name="Thing", unit_price=Decimal("100.00"), quantity=1)]
    return order


class TestOrder:
    """Test cases for the Order model"""

    def test_defaults(self, db_session_override, customer):
        order = _order(customer)
        db_session_override.add(order)
        db_session_override.commit()
        db_session_override.refresh(order)

        assert order.id is not None
        assert order.status == OrderStatus.PENDING.value
        assert order.is_paid is False
        assert order.paid_at is None
        assert order.is_delivered is False
        assert order.pidx is None
        assert order.payment_result is None
        assert order.version == 1
        assert isinstance(order.created_at, datetime)

    def test_total_price_derived_on_insert(self, db_session_override, customer):
        order = _order(customer, tax_price=Decimal("13.00"), shipping_price=Decimal("50.00"))
        db_session_override.add(order)
        db_session_override.commit()

        assert order.total_price == Decimal("163.00")

    def test_total_price_cannot_be_set_independently(self, db_session_override, customer):
        order = _order(customer)
        db_session_override.add(order)
        db_session_override.commit()

        order.total_price = Decimal("1.00")
        order.shipping_price = Decimal("25.00")
        db_session_override.commit()
        db_session_override.refresh(order)

        assert order.total_price == order.items_price + order.tax_price + order.shipping_price
        assert order.total_price == Decimal("125.00")

    def test_version_increments_on_update(self, db_session_override, customer):
        order = _order(customer)
        db_session_override.add(order)
        db_session_override.commit()

        order.status = OrderStatus.CONFIRMED.value
        db_session_override.commit()

        assert order.version == 2

    def test_negative_price_rejected(self, db_session_override, customer):
        db_session_override.add(_order(customer, items_price=Decimal("-1")))
        with pytest.raises(ValueError):
            db_session_override.flush()
        db_session_override.rollback()

    def test_paid_requires_paid_at(self, db_session_override, customer):
        db_session_override.add(_order(customer, is_paid=True))
        with pytest.raises(ValueError, match="paid_at"):
            db_session_override.flush()
        db_session_override.rollback()

    def test_pidx_unique(self, db_session_override, customer):
        db_session_override.add(_order(customer, pidx="dup"))
        db_session_override.commit()

        db_session_override.add(_order(customer, pidx="dup"))
        with pytest.raises(IntegrityError):
            db_session_override.commit()
        db_session_override.rollback()

    def test_many_orders_without_pidx(self, db_session_override, customer):
        db_session_override.add_all([_order(customer), _order(customer)])
        db_session_override.commit()

        assert db_session_override.query(Order).filter(Order.pidx.is_(None)).count() == 2

    def test_items_keep_insertion_order(self, db_session_override, customer):
        order = _order(customer)
        order.items.append(OrderItem(product_id="p-2", name="Second", unit_price=Decimal("5.00"), quantity=3))
        db_session_override.add(order)
        db_session_override.commit()
        db_session_override.expire(order, ["items"])

        assert [item.product_id for item in order.items] == ["p-1", "p-2"]
        assert order.items[1].line_total == Decimal("15.00")

    def test_ownership(self, customer, other_customer):
        order = _order(customer)

        assert order.is_owned_by(customer.id)
        assert not order.is_owned_by(other_customer.id)


class TestOrderItem:

    def test_quantity_must_be_positive(self):
        with pytest.raises(ValueError, match="at least 1"):
            OrderItem(product_id="p-1", name="Thing", unit_price=Decimal("1.00"), quantity=0)


def test_compute_total_handles_missing_parts():
    assert compute_total(Decimal("10.50"), None, 2) == Decimal("12.50")
