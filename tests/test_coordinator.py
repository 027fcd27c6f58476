"""
Cross-aggregate flows: rider assignment, dispatch, delivery and cancellation
with its refund and void obligations.
"""
from decimal import Decimal

import pytest

from fulfillment_service import riders
from fulfillment_service.errors import (
    CancellationFailedError,
    InvalidRiderError,
    InvalidTransitionError,
    ProcessorUnavailableError,
    RiderBusyError,
    RiderRequiredError,
    RiderUnavailableError,
)
from fulfillment_service.statuses import (
    OrderStatus,
    OrderType,
    PaymentMethod,
    PaymentStatus,
    RiderAvailability,
)

TWO_LARGE_BBQ = [{"menu_id": "bbq-chicken", "size": "large", "quantity": 2}]


@pytest.fixture
def order(make_order):
    return make_order(items=TWO_LARGE_BBQ)


def _advance(coordinator, order, *statuses):
    for status in statuses:
        order = coordinator.advance_status(order.id, status, actor="kitchen")
    return order


# ============================================================================
# Delivery lifecycle
# ============================================================================

class TestDeliveryLifecycle:

    def test_full_delivery(self, coordinator, order, make_rider, db):
        assert order.subtotal == Decimal("2000.00")
        assert order.tax == Decimal("300.00")
        assert order.delivery_fee == Decimal("100.00")
        assert order.total == Decimal("2400.00")

        rider = make_rider()
        _advance(coordinator, order, OrderStatus.PREPARING, OrderStatus.BAKING)
        order = coordinator.assign_rider(order.id, rider.id, actor="manager")
        assert order.assigned_rider_id == rider.id
        assert riders.get_rider(db, rider.id, refresh=True).availability == RiderAvailability.BUSY

        order = _advance(coordinator, order, OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED)
        assert order.order_status == OrderStatus.DELIVERED
        assert order.assigned_rider_id is None
        assert order.delivery_rider_id == rider.id
        assert order.total == order.subtotal + order.tax + order.delivery_fee - order.discount_amount

        rider = riders.get_rider(db, rider.id, refresh=True)
        assert rider.availability == RiderAvailability.AVAILABLE
        assert rider.active_order_id is None
        assert [o.id for o in riders.delivery_history(db, rider.id)] == [order.id]

    def test_dispatch_without_rider(self, coordinator, order):
        _advance(coordinator, order, OrderStatus.PREPARING, OrderStatus.BAKING)
        with pytest.raises(RiderRequiredError):
            coordinator.advance_status(order.id, OrderStatus.OUT_FOR_DELIVERY)
        assert coordinator.get_order(order.id).order_status == OrderStatus.BAKING

    def test_rider_can_be_assigned_while_preparing(self, coordinator, order, make_rider):
        rider = make_rider()
        _advance(coordinator, order, OrderStatus.PREPARING)
        order = coordinator.assign_rider(order.id, rider.id)
        assert order.assigned_rider_id == rider.id

    def test_rider_not_assigned_to_placed_order(self, coordinator, order, make_rider):
        with pytest.raises(InvalidTransitionError, match="Preparing or Baking"):
            coordinator.assign_rider(order.id, make_rider().id)

    def test_takeaway_takes_no_rider(self, coordinator, make_order, make_rider):
        order = make_order(order_type=OrderType.TAKEAWAY)
        _advance(coordinator, order, OrderStatus.PREPARING)
        with pytest.raises(InvalidTransitionError, match="does not take a rider"):
            coordinator.assign_rider(order.id, make_rider().id)

    def test_same_rider_twice_is_idempotent(self, coordinator, order, make_rider):
        rider = make_rider()
        _advance(coordinator, order, OrderStatus.PREPARING)
        coordinator.assign_rider(order.id, rider.id)
        order = coordinator.assign_rider(order.id, rider.id)
        assert order.assigned_rider_id == rider.id

    def test_second_rider_is_rejected(self, coordinator, order, make_rider, db):
        first, second = make_rider(), make_rider()
        _advance(coordinator, order, OrderStatus.PREPARING)
        coordinator.assign_rider(order.id, first.id)
        with pytest.raises(InvalidTransitionError, match="already has rider"):
            coordinator.assign_rider(order.id, second.id)
        assert riders.get_rider(db, second.id, refresh=True).availability == RiderAvailability.AVAILABLE

    def test_busy_rider_cannot_take_second_order(self, coordinator, make_order, make_rider):
        rider = make_rider()
        first, second = make_order(), make_order()
        _advance(coordinator, first, OrderStatus.PREPARING)
        _advance(coordinator, second, OrderStatus.PREPARING)
        coordinator.assign_rider(first.id, rider.id)
        with pytest.raises(RiderUnavailableError):
            coordinator.assign_rider(second.id, rider.id)
        assert coordinator.get_order(second.id).assigned_rider_id is None

    def test_busy_rider_cannot_go_offline(self, coordinator, order, make_rider):
        rider = make_rider()
        _advance(coordinator, order, OrderStatus.PREPARING)
        coordinator.assign_rider(order.id, rider.id)
        with pytest.raises(RiderBusyError):
            coordinator.set_rider_availability(rider.id, "offline")

    def test_busy_is_not_set_by_hand(self, coordinator, make_rider):
        with pytest.raises(InvalidRiderError):
            coordinator.set_rider_availability(make_rider().id, "busy")


# ============================================================================
# Cancellation
# ============================================================================

class TestCancellation:

    def test_refunds_completed_payment(self, coordinator, order, make_rider, db, processor):
        rider = make_rider()
        payment = coordinator.record_payment(order.id, PaymentMethod.CARD)
        coordinator.settle_payment(payment.id, PaymentStatus.COMPLETED, "txn_2400")
        _advance(coordinator, order, OrderStatus.PREPARING)
        coordinator.assign_rider(order.id, rider.id)

        order = coordinator.cancel_order(order.id, "customer changed mind", actor="manager")

        assert order.order_status == OrderStatus.CANCELLED
        assert order.cancel_reason == "customer changed mind"
        assert order.cancelled_at is not None
        assert order.assigned_rider_id is None
        assert order.payment_status == PaymentStatus.REFUNDED
        payment = coordinator.payments_for_order(order.id)[0]
        assert payment.refunded_amount == Decimal("2400.00")
        assert payment.payment_status == PaymentStatus.REFUNDED
        assert ("refund", payment.id, Decimal("2400.00")) in processor.calls
        assert riders.get_rider(db, rider.id, refresh=True).availability == RiderAvailability.AVAILABLE

    def test_refunds_only_the_remainder(self, coordinator, order):
        payment = coordinator.collect_cash(order.id, Decimal("2400"))
        coordinator.refund_payment(payment.id, Decimal("400"))
        coordinator.cancel_order(order.id, "oven broke")
        payment = coordinator.payments_for_order(order.id)[0]
        assert payment.refunded_amount == Decimal("2400.00")
        assert payment.payment_status == PaymentStatus.REFUNDED

    def test_voids_processing_payment(self, coordinator, order, processor):
        payment = coordinator.record_payment(order.id, PaymentMethod.STRIPE)
        order = coordinator.cancel_order(order.id, "duplicate order")
        payment = coordinator.payments_for_order(order.id)[0]
        assert payment.payment_status == PaymentStatus.FAILED
        assert payment.failure_code == "voided"
        assert ("void", payment.id, None) in processor.calls
        assert order.payment_status == PaymentStatus.PENDING

    def test_voids_pending_cash_locally(self, coordinator, order, processor):
        coordinator.record_payment(order.id, PaymentMethod.COD)
        coordinator.cancel_order(order.id, "no answer")
        payment = coordinator.payments_for_order(order.id)[0]
        assert payment.failure_code == "voided"
        assert processor.calls == []

    def test_failed_refund_rolls_everything_back(self, coordinator, order, make_rider, db, processor):
        rider = make_rider()
        payment = coordinator.record_payment(order.id, PaymentMethod.CARD)
        coordinator.settle_payment(payment.id, PaymentStatus.COMPLETED, "txn_1")
        _advance(coordinator, order, OrderStatus.PREPARING)
        coordinator.assign_rider(order.id, rider.id)
        processor.fail = True

        with pytest.raises(CancellationFailedError) as exc_info:
            coordinator.cancel_order(order.id, "customer changed mind")
        assert isinstance(exc_info.value.cause, ProcessorUnavailableError)
        assert exc_info.value.status_code == 503

        order = coordinator.get_order(order.id)
        assert order.order_status == OrderStatus.PREPARING
        assert order.assigned_rider_id == rider.id
        assert order.payment_status == PaymentStatus.COMPLETED
        assert coordinator.payments_for_order(order.id)[0].refunded_amount == Decimal("0.00")
        assert riders.get_rider(db, rider.id, refresh=True).availability == RiderAvailability.BUSY

    def test_out_for_delivery_cannot_be_cancelled(self, coordinator, order, make_rider):
        _advance(coordinator, order, OrderStatus.PREPARING, OrderStatus.BAKING)
        coordinator.assign_rider(order.id, make_rider().id)
        _advance(coordinator, order, OrderStatus.OUT_FOR_DELIVERY)
        with pytest.raises(InvalidTransitionError):
            coordinator.cancel_order(order.id, "too late")

    def test_cancel_through_status_update(self, coordinator, order):
        order = coordinator.advance_status(order.id, OrderStatus.CANCELLED, note="kitchen closed")
        assert order.order_status == OrderStatus.CANCELLED
        assert order.cancel_reason == "kitchen closed"

    def test_cancelled_is_final(self, coordinator, order):
        coordinator.cancel_order(order.id, "dup")
        with pytest.raises(InvalidTransitionError):
            coordinator.advance_status(order.id, OrderStatus.BAKING)
        with pytest.raises(InvalidTransitionError):
            coordinator.cancel_order(order.id, "again")
