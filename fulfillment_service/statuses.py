"""
Status types for orders, riders and payments, and the transition tables
that drive them. Anything not listed in a table is an illegal move.
"""
from enum import Enum
from typing import Dict, FrozenSet


class OrderType(str, Enum):
    DELIVERY = "Delivery"
    TAKEAWAY = "Takeaway"
    DINE_IN = "DineIn"


class OrderStatus(str, Enum):
    PLACED = "Placed"
    PREPARING = "Preparing"
    BAKING = "Baking"
    OUT_FOR_DELIVERY = "OutForDelivery"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ORDER_STATUSES


class RiderAvailability(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class VehicleType(str, Enum):
    BIKE = "Bike"
    CAR = "Car"
    SCOOTER = "Scooter"


class PaymentMethod(str, Enum):
    CASH = "Cash"
    CARD = "Card"
    COD = "COD"
    STRIPE = "Stripe"

    @property
    def is_external(self) -> bool:
        """Card and Stripe payments are confirmed by the external processor."""
        return self in (PaymentMethod.CARD, PaymentMethod.STRIPE)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


TERMINAL_ORDER_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.DELIVERED, OrderStatus.CANCELLED}
)

CANCELLABLE_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.PLACED, OrderStatus.PREPARING, OrderStatus.BAKING}
)

# Statuses during which a delivery order may hold a rider
RIDER_WINDOW_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.PREPARING, OrderStatus.BAKING, OrderStatus.OUT_FOR_DELIVERY}
)

ASSIGNABLE_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.PREPARING, OrderStatus.BAKING}
)

_COMMON_EDGES: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PLACED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.BAKING, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

ORDER_TRANSITIONS: Dict[OrderType, Dict[OrderStatus, FrozenSet[OrderStatus]]] = {
    OrderType.DELIVERY: {
        **_COMMON_EDGES,
        OrderStatus.BAKING: frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED}),
        OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED}),
    },
    OrderType.TAKEAWAY: {
        **_COMMON_EDGES,
        OrderStatus.BAKING: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
        OrderStatus.OUT_FOR_DELIVERY: frozenset(),
    },
    OrderType.DINE_IN: {
        **_COMMON_EDGES,
        OrderStatus.BAKING: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
        OrderStatus.OUT_FOR_DELIVERY: frozenset(),
    },
}

# Payments that block a new attempt for the same order
ACTIVE_PAYMENT_STATUSES: FrozenSet[PaymentStatus] = frozenset(
    {
        PaymentStatus.PENDING,
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
        PaymentStatus.PARTIALLY_REFUNDED,
    }
)

UNSETTLED_PAYMENT_STATUSES: FrozenSet[PaymentStatus] = frozenset(
    {PaymentStatus.PENDING, PaymentStatus.PROCESSING}
)

REFUNDABLE_PAYMENT_STATUSES: FrozenSet[PaymentStatus] = frozenset(
    {PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED}
)

SETTLEMENT_OUTCOMES: FrozenSet[PaymentStatus] = frozenset(
    {PaymentStatus.COMPLETED, PaymentStatus.FAILED}
)


def can_transition(order_type: OrderType, current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS[order_type].get(current, frozenset())
