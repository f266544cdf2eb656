"""
Order lifecycle: creation, payment initiation, verification and fulfilment.

This is the only place that writes to ``Order`` rows. Gateway calls are made
with no row lock held; the order is re-read under ``SELECT ... FOR UPDATE``
once the call returns, and the version column rejects a concurrent flush that
slipped in anyway.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from core.config import Settings
from core.exceptions import (
    AuthorizationError,
    ConflictError,
    GatewayError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from core.logging import get_logger
from models.order import MAX_AMOUNT, Order, OrderStatus, PaymentMethod
from models.order_item import OrderItem
from models.user import User
from services.gateway import (
    COMPLETED,
    TERMINAL_STATUSES,
    PaymentGateway,
    PaymentLookup,
    PaymentSession,
    normalize_status,
)

logger = get_logger(__name__)

# Used only when STRICT_STATUS_TRANSITIONS is enabled
ALLOWED_TRANSITIONS: Dict[OrderStatus, set] = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

VALID_STATUSES = ", ".join(s.value for s in OrderStatus)


@dataclass
class VerificationOutcome:
    order: Order
    success: bool
    payment_status: str
    transaction_id: Optional[str] = None
    already_paid: bool = False

    @property
    def message(self) -> str:
        if self.already_paid:
            return "Order is already paid"
        if self.success:
            return "Payment verified successfully"
        return f"Payment status: {self.payment_status}"


class OrderLifecycleService:
    def __init__(self, db: Session, config: Settings, gateways: Mapping[PaymentMethod, PaymentGateway]):
        self.db = db
        self.config = config
        self.gateways = gateways

    # -- persistence helpers -------------------------------------------------

    def _load(self, order_id) -> Order:
        try:
            key = int(order_id)
        except (TypeError, ValueError):
            raise NotFoundError("Order not found") from None
        order = self.db.query(Order).filter(Order.id == key).one_or_none()
        if not order:
            raise NotFoundError("Order not found")
        return order

    def _lock(self, order_id: int) -> Order:
        """Re-read an order for mutation, discarding any stale in-session state."""
        order = (
            self.db.query(Order)
            .filter(Order.id == order_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
        if not order:
            raise NotFoundError("Order not found")
        return order

    def _commit(self) -> None:
        try:
            self.db.commit()
        except StaleDataError as exc:
            self.db.rollback()
            raise ConflictError() from exc
        except IntegrityError as exc:
            self.db.rollback()
            raise InternalError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise InternalError(str(exc)) from exc

    # -- guards ----------------------------------------------------------------

    @staticmethod
    def _ensure_owner(order: Order, requester: User) -> None:
        if not order.is_owned_by(requester.id):
            logger.warning("ownership_mismatch", order_id=order.id, requester_id=requester.id)
            raise AuthorizationError()

    @staticmethod
    def _ensure_admin(requester: User) -> None:
        if not requester.is_admin:
            raise AuthorizationError()

    @staticmethod
    def _ensure_provider(order: Order, provider: PaymentMethod) -> None:
        if order.payment_method == PaymentMethod.COD.value:
            raise ValidationError("Cash on delivery orders do not use a payment gateway")
        if order.payment_method != provider.value:
            raise ValidationError(f"Order was placed with {order.payment_method}, not {provider.value}")

    def _gateway_for(self, provider: PaymentMethod) -> PaymentGateway:
        gateway = self.gateways.get(provider)
        if gateway is None:
            raise ValidationError(f"Unsupported payment provider: {provider.value}")
        return gateway

    # -- creation and reads ----------------------------------------------------

    def create_order(
        self,
        customer: User,
        items: Iterable[Mapping[str, Any]],
        shipping_address: Mapping[str, Any],
        payment_method,
        declared_total,
        notes: Optional[str] = None,
    ) -> Order:
        items = list(items or [])
        if not items:
            raise ValidationError("No order items")

        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise ValidationError(f"Invalid payment method: {payment_method}")

        try:
            items_price = Decimal(str(declared_total))
        except (InvalidOperation, TypeError):
            raise ValidationError("Invalid order total")
        if not items_price.is_finite():
            raise ValidationError("Invalid order total")
        if items_price < 0:
            raise ValidationError("Order total must not be negative")
        if items_price > MAX_AMOUNT:
            raise ValidationError("Order total is too large")

        try:
            order_items = [
                OrderItem(
                    product_id=str(item["product_id"]),
                    name=item["name"],
                    unit_price=Decimal(str(item["price"])),
                    quantity=item["quantity"],
                    image=item.get("image"),
                )
                for item in items
            ]
        except (KeyError, ValueError, InvalidOperation) as exc:
            raise ValidationError(f"Invalid order item: {exc}")

        # itemsPrice is the caller's declared total; no catalog repricing here
        order = Order(
            customer_id=customer.id,
            shipping_address=dict(shipping_address),
            payment_method=method.value,
            items_price=items_price,
            tax_price=Decimal("0"),
            shipping_price=Decimal("0"),
            status=OrderStatus.PENDING.value,
            is_paid=False,
            is_delivered=False,
            notes=notes,
        )
        order.items = order_items

        if method == PaymentMethod.COD:
            order.payment_result = {
                "id": "COD",
                "status": "pending",
                "update_time": datetime.utcnow().isoformat(),
                "email_address": customer.email,
                "payment_method": PaymentMethod.COD.value,
            }

        self.db.add(order)
        self._commit()
        self.db.refresh(order)
        logger.info(
            "order_created",
            order_id=order.id,
            customer_id=customer.id,
            payment_method=method.value,
            total_price=str(order.total_price),
        )
        return order

    def list_customer_orders(self, customer: User) -> List[Order]:
        return (
            self.db.query(Order)
            .filter(Order.customer_id == customer.id)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .all()
        )

    def get_order(self, order_id, requester: User) -> Order:
        order = self._load(order_id)
        if not requester.is_admin:
            self._ensure_owner(order, requester)
        return order

    def list_all_orders(self, requester: User, status: Optional[str] = None) -> List[Order]:
        self._ensure_admin(requester)
        query = self.db.query(Order)
        if status:
            try:
                query = query.filter(Order.status == OrderStatus(status).value)
            except ValueError:
                raise ValidationError(f"Invalid status. Must be one of: {VALID_STATUSES}")
        return query.order_by(Order.created_at.desc(), Order.id.desc()).all()

    # -- payments ----------------------------------------------------------------

    def initiate_payment(self, order_id, requester: User, provider: PaymentMethod) -> tuple[Order, PaymentSession]:
        order = self._load(order_id)
        self._ensure_owner(order, requester)
        self._ensure_provider(order, provider)
        if order.is_paid:
            raise ValidationError("Order is already paid")
        if order.status == OrderStatus.CANCELLED.value:
            raise ValidationError("Order is cancelled")

        gateway = self._gateway_for(provider)
        # Nothing is written if this raises
        session = gateway.initiate(order, requester)

        if session.pidx:
            order = self._lock(order.id)
            if order.is_paid:
                raise ValidationError("Order is already paid")
            # A newer session replaces any earlier, unfinished one
            order.pidx = session.pidx
            self._commit()

        logger.info("payment_initiated", order_id=order.id, provider=provider.value, pidx=session.pidx)
        return order, session

    @staticmethod
    def _already_paid(order: Order) -> VerificationOutcome:
        return VerificationOutcome(
            order=order,
            success=True,
            payment_status=COMPLETED,
            transaction_id=(order.payment_result or {}).get("transaction_id"),
            already_paid=True,
        )

    def _apply_lookup(self, order: Order, lookup: PaymentLookup, provider: PaymentMethod, email: Optional[str]) -> None:
        now = datetime.utcnow()
        result = {
            "id": lookup.transaction_id or lookup.pidx or str(order.id),
            "status": lookup.normalized_status,
            "update_time": now.isoformat(),
            "email_address": email,
            "transaction_id": lookup.transaction_id,
            "payment_method": provider.value,
            "pidx": lookup.pidx,
            "total_amount": lookup.total_amount,
            "fee": lookup.fee,
            "refunded": lookup.refunded,
            "mobile": lookup.mobile,
            "verification": lookup.verification,
        }
        # Replace, never mutate in place, so the JSON column is flagged dirty
        order.payment_result = {key: value for key, value in result.items() if value is not None}
        if lookup.completed:
            order.is_paid = True
            order.paid_at = now

    def verify_payment(
        self,
        provider: PaymentMethod,
        requester: User,
        pidx: Optional[str] = None,
        order_id=None,
        reported_status: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> VerificationOutcome:
        if pidx:
            order = self.db.query(Order).filter(Order.pidx == pidx).one_or_none()
            if not order:
                raise NotFoundError("Order not found for this payment")
        elif order_id is not None:
            order = self._load(order_id)
        else:
            raise ValidationError("Payment ID (pidx) or order_id is required")

        self._ensure_owner(order, requester)
        self._ensure_provider(order, provider)

        if order.is_paid:
            return self._already_paid(order)

        gateway = self._gateway_for(provider)
        lookup = gateway.verify(order, reference=pidx or reference, reported_status=reported_status)

        order = self._lock(order.id)
        if order.is_paid:
            # Settled by a concurrent callback or verify while we were waiting
            return self._already_paid(order)

        self._apply_lookup(order, lookup, provider, requester.email)
        self._commit()

        logger.info(
            "payment_verified",
            order_id=order.id,
            provider=provider.value,
            payment_status=lookup.status,
            is_paid=order.is_paid,
        )
        return VerificationOutcome(
            order=order,
            success=lookup.completed,
            payment_status=lookup.status,
            transaction_id=lookup.transaction_id,
        )

    def handle_callback(self, params: Mapping[str, Any]) -> VerificationOutcome:
        """
        Apply a Khalti redirect/callback.

        The caller is unauthenticated, so the payload is only trusted for the
        order whose stored ``pidx`` it carries. A snapshot of the reported
        outcome is stored even when it is not a success.
        """
        raw_status = params.get("status")
        if not raw_status:
            raise ValidationError("Missing payment status")
        order = self._load(params.get("purchase_order_id"))
        if order.payment_method != PaymentMethod.KHALTI.value:
            raise ValidationError("Order is not a Khalti order")

        pidx = params.get("pidx")
        # Only a callback carrying the session this order started is trusted
        if not pidx or not order.pidx or pidx != order.pidx:
            logger.warning("callback_pidx_mismatch", order_id=order.id)
            raise AuthorizationError()

        if order.is_paid:
            return self._already_paid(order)

        lookup = PaymentLookup(
            status=raw_status,
            pidx=pidx,
            transaction_id=params.get("transaction_id"),
            total_amount=params.get("total_amount"),
            mobile=params.get("mobile"),
            verification="callback",
            raw=dict(params),
        )
        if lookup.completed and self.config.KHALTI_CONFIRM_CALLBACKS:
            lookup = self._gateway_for(PaymentMethod.KHALTI).verify(order, reference=pidx)

        order = self._lock(order.id)
        if order.is_paid:
            return self._already_paid(order)

        self._apply_lookup(order, lookup, PaymentMethod.KHALTI, order.customer.email if order.customer else None)
        self._commit()

        logger.info("payment_callback_applied", order_id=order.id, payment_status=lookup.status, is_paid=order.is_paid)
        return VerificationOutcome(
            order=order,
            success=lookup.completed,
            payment_status=lookup.status,
            transaction_id=lookup.transaction_id,
        )

    def reconcile_stale_payments(self, older_than_minutes: Optional[int] = None, now: Optional[datetime] = None) -> Dict[str, int]:
        """Look up unpaid Khalti sessions nobody came back to verify."""
        minutes = older_than_minutes if older_than_minutes is not None else self.config.STALE_PAYMENT_MINUTES
        cutoff = (now or datetime.utcnow()) - timedelta(minutes=minutes)
        candidates = (
            self.db.query(Order)
            .filter(
                Order.is_paid.is_(False),
                Order.pidx.isnot(None),
                Order.payment_method == PaymentMethod.KHALTI.value,
                Order.status != OrderStatus.CANCELLED.value,
                Order.updated_at <= cutoff,
            )
            .order_by(Order.id)
            .all()
        )

        stats = {"checked": 0, "paid": 0, "failed": 0}
        gateway = self._gateway_for(PaymentMethod.KHALTI)
        for candidate in candidates:
            if normalize_status((candidate.payment_result or {}).get("status")) in TERMINAL_STATUSES:
                continue
            stats["checked"] += 1
            pidx = candidate.pidx
            try:
                lookup = gateway.verify(candidate, reference=pidx)
            except GatewayError as exc:
                stats["failed"] += 1
                logger.warning("reconcile_lookup_failed", order_id=candidate.id, error=exc.raw_message)
                continue

            order = self._lock(candidate.id)
            # Paid meanwhile, or the customer started a newer session
            if order.is_paid or order.pidx != pidx:
                # Release the row lock before the next lookup goes out
                self.db.rollback()
                continue
            self._apply_lookup(order, lookup, PaymentMethod.KHALTI, order.customer.email if order.customer else None)
            try:
                self._commit()
            except ConflictError:
                logger.info("reconcile_conflict", order_id=order.id)
                continue
            except InternalError as exc:
                stats["failed"] += 1
                logger.error("reconcile_commit_failed", order_id=order.id, error=exc.message)
                continue
            if order.is_paid:
                stats["paid"] += 1

        logger.info("reconcile_finished", **stats)
        return stats

    # -- fulfilment ----------------------------------------------------------------

    def update_status(self, order_id, requester: User, new_status: str, tracking_number: Optional[str] = None) -> Order:
        self._ensure_admin(requester)
        try:
            target = OrderStatus(new_status)
        except ValueError:
            raise ValidationError(f"Invalid status. Must be one of: {VALID_STATUSES}")

        order = self._load(order_id)
        order = self._lock(order.id)
        current = OrderStatus(order.status)
        if self.config.STRICT_STATUS_TRANSITIONS and target != current and target not in ALLOWED_TRANSITIONS[current]:
            raise ValidationError(f"Cannot change status from {current.value} to {target.value}")

        order.status = target.value
        if target == OrderStatus.DELIVERED:
            order.is_delivered = True
            order.delivered_at = datetime.utcnow()
        elif target == OrderStatus.CANCELLED:
            order.is_delivered = False
            order.delivered_at = None
        if tracking_number:
            order.tracking_number = tracking_number

        self._commit()
        logger.info("order_status_updated", order_id=order.id, status=target.value, admin_id=requester.id)
        return order

    def mark_delivered(self, order_id, requester: User) -> Order:
        self._ensure_admin(requester)
        order = self._load(order_id)
        order = self._lock(order.id)
        order.is_delivered = True
        order.delivered_at = datetime.utcnow()
        self._commit()
        logger.info("order_marked_delivered", order_id=order.id, admin_id=requester.id)
        return order
