import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship

from .database import Base
from .statuses import (
    OrderStatus,
    OrderType,
    PaymentMethod,
    PaymentStatus,
    RiderAvailability,
    VehicleType,
)


def utcnow():
    # naive UTC, SQLite drops tzinfo anyway
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def _enum(enum_cls):
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


def money_column(**kwargs):
    return Column(Numeric(12, 2, asdecimal=True), **kwargs)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(40), unique=True, index=True, nullable=False)
    branch_id = Column(String(64), index=True)

    customer_name = Column(String(100))
    customer_phone = Column(String(20))
    customer_email = Column(String(100), nullable=True)
    delivery_address = Column(String(255), nullable=True)
    special_instructions = Column(String(255), nullable=True)

    order_type = Column(_enum(OrderType), nullable=False)
    order_status = Column(_enum(OrderStatus), nullable=False, default=OrderStatus.PLACED, index=True)
    # Derived from the payment ledger, never written directly by callers
    payment_status = Column(_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)

    subtotal = money_column(nullable=False)
    tax = money_column(nullable=False)
    delivery_fee = money_column(nullable=False, default=0)
    discount_amount = money_column(nullable=False, default=0)
    total = money_column(nullable=False)
    coupon_code = Column(String(50), nullable=True)

    assigned_rider_id = Column(Integer, ForeignKey("riders.id"), nullable=True, index=True)
    # Who carried the order; kept after delivery for rider history
    delivery_rider_id = Column(Integer, ForeignKey("riders.id"), nullable=True, index=True)

    cancel_reason = Column(String(255), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    version = Column(Integer, nullable=False)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    payments = relationship("Payment", back_populates="order", order_by="Payment.id")
    status_events = relationship(
        "OrderStatusEvent", back_populates="order", order_by="OrderStatusEvent.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)

    menu_id = Column(String(64), nullable=False)
    name = Column(String(100))
    size = Column(String(30))
    unit_price = money_column(nullable=False)
    quantity = Column(Integer, nullable=False)
    line_total = money_column(nullable=False)

    order = relationship("Order", back_populates="items")


class OrderStatusEvent(Base):
    __tablename__ = "order_status_events"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    from_status = Column(_enum(OrderStatus), nullable=True)
    to_status = Column(_enum(OrderStatus), nullable=False)
    actor = Column(String(100))
    note = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    order = relationship("Order", back_populates="status_events")


class Rider(Base):
    __tablename__ = "riders"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    phone = Column(String(20), unique=True, nullable=False)
    email = Column(String(100), nullable=True)
    vehicle_type = Column(_enum(VehicleType), nullable=False)
    vehicle_number = Column(String(30), nullable=False)
    branch_id = Column(String(64), nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)

    availability = Column(
        _enum(RiderAvailability), nullable=False, default=RiderAvailability.AVAILABLE, index=True
    )
    # Weak back-reference to orders.id; unique so an order never holds two riders
    active_order_id = Column(Integer, unique=True, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    amount = money_column(nullable=False)
    payment_method = Column(_enum(PaymentMethod), nullable=False)
    payment_status = Column(_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)

    # Processor transaction id, or the cash receipt reference
    transaction_id = Column(String(100), unique=True, nullable=True)
    processor_reference = Column(String(100), nullable=True, index=True)
    receipt_number = Column(String(50), nullable=True)

    refunded_amount = money_column(nullable=False, default=0)
    refund_reason = Column(String(255), nullable=True)
    failure_code = Column(String(50), nullable=True)
    failure_message = Column(String(255), nullable=True)

    amount_received = money_column(nullable=True)
    change_given = money_column(nullable=True)

    # Equals order_id while the payment is active, NULL otherwise; the unique
    # constraint allows at most one active payment per order
    active_order_id = Column(Integer, unique=True, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="payments")

    __mapper_args__ = {"version_id_col": version}
