"""
Fulfillment coordinator.

The only place allowed to touch more than one aggregate in a single operation.
Every public method is one database transaction: it commits once at the end,
and any error rolls back everything it did, a rider claim or a processor-backed
refund step included.
"""
import logging
from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from . import config, orders, payments, riders
from .catalog import MenuCatalog
from .errors import (
    CancellationFailedError,
    FulfillmentError,
    InvalidPaymentError,
    InvalidRiderError,
    InvalidTransitionError,
    PaymentStateError,
    RiderRequiredError,
    StaleTransitionError,
)
from .models import Order, Payment, Rider, utcnow
from .processor import PaymentProcessor
from .statuses import (
    ASSIGNABLE_STATUSES,
    CANCELLABLE_STATUSES,
    REFUNDABLE_PAYMENT_STATUSES,
    UNSETTLED_PAYMENT_STATUSES,
    OrderStatus,
    OrderType,
    PaymentMethod,
    PaymentStatus,
    RiderAvailability,
)

logger = logging.getLogger(__name__)


class FulfillmentCoordinator:
    def __init__(
        self,
        db: Session,
        catalog: Optional[MenuCatalog] = None,
        processor: Optional[PaymentProcessor] = None,
    ):
        self.db = db
        self.catalog = catalog
        self.processor = processor

    @contextmanager
    def _transaction(self):
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # -------------------- ORDERS --------------------

    def place_order(self, data, actor: str = "system") -> Order:
        with self._transaction():
            order = orders.create(
                self.db,
                self.catalog,
                branch_id=data.branch_id,
                customer=data.customer_info,
                items=data.items,
                order_type=data.order_type,
                coupon_code=data.coupon_code,
                special_instructions=data.special_instructions,
                actor=actor,
            )
        return order

    def get_order(self, ident) -> Order:
        return orders.get_order(self.db, ident)

    def advance_status(
        self,
        ident,
        target,
        actor: str = "system",
        note: Optional[str] = None,
        expected_status=None,
    ) -> Order:
        try:
            target = OrderStatus(target)
        except ValueError:
            raise InvalidTransitionError(f"Unknown order status {target!r}")
        if target == OrderStatus.CANCELLED:
            # cancellation carries rider and refund obligations
            return self.cancel_order(ident, note or "Cancelled by staff", actor, expected_status)

        with self._transaction():
            order = orders.get_order(self.db, ident)
            self._check_expected(order, expected_status)
            if (
                target == OrderStatus.OUT_FOR_DELIVERY
                and order.order_type == OrderType.DELIVERY
                and order.assigned_rider_id is None
            ):
                raise RiderRequiredError(f"Assign a rider before dispatching order {order.order_id}")

            rider_id = order.assigned_rider_id
            orders.transition_status(self.db, order, target, actor, note)
            if target == OrderStatus.DELIVERED and rider_id is not None:
                riders.release(self.db, rider_id, order.id)
        return order

    def assign_rider(self, ident, rider_id: int, actor: str = "system") -> Order:
        with self._transaction():
            order = orders.get_order(self.db, ident)
            if order.order_type != OrderType.DELIVERY:
                raise InvalidTransitionError(
                    f"{order.order_type.value} order {order.order_id} does not take a rider"
                )
            if order.order_status not in ASSIGNABLE_STATUSES:
                raise InvalidTransitionError(
                    f"Riders are assigned while Preparing or Baking; order {order.order_id} "
                    f"is {order.order_status.value}"
                )
            if order.assigned_rider_id is not None:
                if order.assigned_rider_id == rider_id:
                    return order
                raise InvalidTransitionError(
                    f"Order {order.order_id} already has rider {order.assigned_rider_id}"
                )

            riders.claim(self.db, rider_id, order.id)
            order.assigned_rider_id = rider_id
            order.delivery_rider_id = rider_id
            orders.flush_order(self.db, order)
            logger.info("rider %s assigned to order %s by %s", rider_id, order.order_id, actor)
        return order

    def cancel_order(
        self,
        ident,
        reason: str,
        actor: str = "system",
        expected_status=None,
    ) -> Order:
        """Cancel an order and settle its obligations in one step.

        Releases the rider, refunds what is left of a completed payment and
        voids an unsettled one. If any of that fails the order keeps its
        previous status and CancellationFailedError carries the cause.
        """
        with self._transaction():
            order = orders.get_order(self.db, ident)
            self._check_expected(order, expected_status)
            if order.order_status not in CANCELLABLE_STATUSES:
                raise InvalidTransitionError(
                    f"Order {order.order_id} is {order.order_status.value} and can no longer be cancelled"
                )

            ref = order.order_id
            rider_id = order.assigned_rider_id
            orders.transition_status(self.db, order, OrderStatus.CANCELLED, actor, note=reason)
            order.cancel_reason = reason
            if rider_id is not None:
                riders.release(self.db, rider_id, order.id)

            try:
                self._settle_obligations(order, reason)
            except FulfillmentError as e:
                logger.error("cancellation of order %s failed: %s", ref, e.message)
                raise CancellationFailedError(
                    f"Order {ref} was not cancelled: {e.message}", cause=e
                ) from e
            orders.flush_order(self.db, order)
        return order

    def _settle_obligations(self, order: Order, reason: str):
        payment = payments.active_payment(self.db, order.id)
        if payment is None:
            return
        if payment.payment_status in REFUNDABLE_PAYMENT_STATUSES:
            payments.refund(
                self.db, payment, None, self.processor, reason=f"Order cancelled: {reason}"
            )
        elif payment.payment_status in UNSETTLED_PAYMENT_STATUSES:
            payments.void(self.db, payment, self.processor, reason=f"Order cancelled: {reason}")
        payments.sync_order_payment_status(self.db, order)

    @staticmethod
    def _check_expected(order: Order, expected_status):
        if expected_status is None:
            return
        if order.order_status != OrderStatus(expected_status):
            raise StaleTransitionError(
                f"Order {order.order_id} is {order.order_status.value}, not {OrderStatus(expected_status).value}"
            )

    # -------------------- PAYMENTS --------------------

    def record_payment(self, ident, method, amount: Optional[Decimal] = None) -> Payment:
        with self._transaction():
            order = orders.get_order(self.db, ident)
            payment = payments.record_attempt(self.db, order, amount, method, self.processor)
            self._sync(order)
        return payment

    def settle_payment(
        self,
        payment_id: int,
        outcome,
        transaction_id: Optional[str] = None,
        failure_message: Optional[str] = None,
    ) -> Tuple[Payment, bool]:
        with self._transaction():
            payment = payments.get_payment(self.db, payment_id)
            applied = payments.settle(self.db, payment, outcome, transaction_id, failure_message)
            if applied:
                self._sync(payment.order)
        return payment, applied

    def refund_payment(
        self,
        payment_id: int,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> Payment:
        with self._transaction():
            payment = payments.get_payment(self.db, payment_id)
            payments.refund(self.db, payment, amount, self.processor, reason)
            self._sync(payment.order)
        return payment

    def refund_order(self, ident, amount: Optional[Decimal] = None, reason: Optional[str] = None) -> Payment:
        """Refund against whichever payment currently holds the order's money."""
        order = orders.get_order(self.db, ident)
        payment = payments.active_payment(self.db, order.id)
        if payment is None or payment.payment_status not in REFUNDABLE_PAYMENT_STATUSES:
            raise PaymentStateError(f"Order {order.order_id} has no completed payment to refund")
        return self.refund_payment(payment.id, amount, reason)

    def collect_cash(
        self,
        ident,
        amount_received: Decimal,
        method=PaymentMethod.CASH,
    ) -> Payment:
        """Record and settle a cash-in-hand payment (counter cash or COD)."""
        method = PaymentMethod(method)
        if method.is_external:
            raise InvalidPaymentError(f"{method.value} payments are not collected in cash")

        with self._transaction():
            order = orders.get_order(self.db, ident)
            payment = payments.active_payment(self.db, order.id)
            if payment is None:
                payment = payments.record_attempt(self.db, order, None, method)
            elif payment.payment_status != PaymentStatus.PENDING or payment.payment_method.is_external:
                raise PaymentStateError(
                    f"Order {order.order_id} already has a {payment.payment_method.value} payment "
                    f"({payment.payment_status.value})"
                )

            received = orders.money(amount_received)
            if received < payment.amount:
                raise InvalidPaymentError(
                    f"Insufficient amount. Required: {payment.amount}, received: {received}"
                )
            payment.amount_received = received
            payment.change_given = received - payment.amount
            payments.settle(self.db, payment, PaymentStatus.COMPLETED)
            self._sync(order)
        return payment

    def get_payment(self, payment_id: int) -> Payment:
        return payments.get_payment(self.db, payment_id)

    def receipt(self, payment_id: int) -> Payment:
        return payments.receipt_for(self.db, payment_id)

    def payments_for_order(self, ident) -> List[Payment]:
        order = orders.get_order(self.db, ident)
        return payments.payments_for_order(self.db, order.id)

    def expire_stale_payments(self, window_minutes: Optional[int] = None) -> List[Payment]:
        window = config.PAYMENT_CONFIRMATION_WINDOW_MINUTES if window_minutes is None else window_minutes
        with self._transaction():
            expired = payments.expire_stale(self.db, utcnow() - timedelta(minutes=window))
            for order in {p.order for p in expired}:
                self._sync(order)
        return expired

    def _sync(self, order: Order):
        payments.sync_order_payment_status(self.db, order)
        orders.flush_order(self.db, order)

    # -------------------- RIDERS --------------------

    def register_rider(self, data) -> Rider:
        with self._transaction():
            rider = riders.create_rider(
                self.db,
                name=data.name,
                phone=data.phone,
                vehicle_type=data.vehicle_type,
                vehicle_number=data.vehicle_number,
                branch_id=data.branch_id,
                email=data.email,
            )
        return rider

    def set_rider_availability(self, rider_id: int, availability) -> Rider:
        try:
            availability = RiderAvailability(availability)
        except ValueError:
            raise InvalidRiderError(f"Unknown availability {availability!r}")

        with self._transaction():
            if availability == RiderAvailability.OFFLINE:
                rider = riders.set_offline(self.db, rider_id)
            elif availability == RiderAvailability.AVAILABLE:
                rider = riders.set_available(self.db, rider_id)
            else:
                raise InvalidRiderError("Riders become busy only through order assignment")
        return rider
