"""
Order aggregate: creation with server-side pricing, and the status state machine.

Functions here flush but never commit; the coordinator owns the transaction.
"""
import logging
import time
import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session, joinedload
from sqlalchemy.orm.exc import StaleDataError

from . import config
from .catalog import Coupon, MenuCatalog
from .errors import (
    InvalidOrderError,
    InvalidTransitionError,
    NotFoundError,
    RiderRequiredError,
    StaleTransitionError,
)
from .models import Order, OrderItem, OrderStatusEvent, utcnow
from .statuses import OrderStatus, OrderType, can_transition

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class Totals:
    subtotal: Decimal
    tax: Decimal
    delivery_fee: Decimal
    discount_amount: Decimal
    total: Decimal


def coupon_discount(coupon: Coupon, subtotal: Decimal) -> Decimal:
    if subtotal < coupon.min_order_amount:
        raise InvalidOrderError(
            f"Coupon {coupon.code} requires a minimum order of {coupon.min_order_amount}"
        )
    if coupon.discount_type == "percentage":
        discount = subtotal * coupon.discount_value / 100
        if coupon.max_discount is not None:
            discount = min(discount, coupon.max_discount)
    elif coupon.discount_type == "fixed":
        discount = coupon.discount_value
    else:
        raise InvalidOrderError(f"Unsupported coupon type {coupon.discount_type!r}")
    return money(max(ZERO, min(discount, subtotal)))


def compute_totals(
    line_totals: Iterable[Decimal],
    order_type: OrderType,
    coupon: Optional[Coupon] = None,
    tax_rate: Optional[Decimal] = None,
    delivery_fee: Optional[Decimal] = None,
) -> Totals:
    tax_rate = config.TAX_RATE if tax_rate is None else tax_rate
    flat_fee = config.DELIVERY_FEE if delivery_fee is None else delivery_fee

    subtotal = money(sum(line_totals, ZERO))
    tax = money(subtotal * tax_rate)
    fee = money(flat_fee) if order_type == OrderType.DELIVERY else money(0)
    discount = coupon_discount(coupon, subtotal) if coupon else money(0)
    return Totals(
        subtotal=subtotal,
        tax=tax,
        delivery_fee=fee,
        discount_amount=discount,
        total=subtotal + tax + fee - discount,
    )


def generate_order_id() -> str:
    return f"ORD-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6].upper()}"


def _price_items(catalog: MenuCatalog, items) -> List[OrderItem]:
    lines = []
    for idx, item in enumerate(items, start=1):
        quantity = item.quantity
        if not isinstance(quantity, int) or quantity < 1:
            raise InvalidOrderError(f"Item {idx}: quantity must be a positive integer")

        entry = catalog.get_menu_entry(item.menu_id)
        if entry is None:
            raise InvalidOrderError(f"Item {idx}: unknown menu item {item.menu_id}")
        if not entry.is_available:
            raise InvalidOrderError(f"Item {idx}: {entry.name} is not available")

        unit_price = entry.price_for(item.size)
        if unit_price is None:
            raise InvalidOrderError(f"Item {idx}: {entry.name} has no size {item.size!r}")
        if unit_price <= 0:
            raise InvalidOrderError(f"Item {idx}: {entry.name} ({item.size}) has no positive price")

        unit_price = money(unit_price)
        lines.append(
            OrderItem(
                menu_id=entry.id,
                name=entry.name,
                size=item.size,
                unit_price=unit_price,
                quantity=quantity,
                line_total=money(unit_price * quantity),
            )
        )
    return lines


def create(
    db: Session,
    catalog: MenuCatalog,
    branch_id: Optional[str],
    customer,
    items,
    order_type,
    coupon_code: Optional[str] = None,
    special_instructions: Optional[str] = None,
    actor: str = "system",
) -> Order:
    """Validate, price and persist a new order in status Placed.

    Raises InvalidOrderError before anything is added to the session, so a
    rejected order never leaves a partial row behind.
    """
    try:
        order_type = OrderType(order_type)
    except ValueError:
        raise InvalidOrderError(f"Unknown order type {order_type!r}")

    if not items:
        raise InvalidOrderError("Order must contain at least one item")

    address = (getattr(customer, "address", None) or "").strip()
    if order_type == OrderType.DELIVERY and not address:
        raise InvalidOrderError("Delivery orders require a delivery address")

    lines = _price_items(catalog, items)

    coupon = None
    if coupon_code:
        coupon = catalog.verify_coupon(coupon_code, branch_id)
        if coupon is None:
            raise InvalidOrderError(f"Coupon {coupon_code} is not valid")

    totals = compute_totals([line.line_total for line in lines], order_type, coupon)

    order = Order(
        order_id=generate_order_id(),
        branch_id=branch_id,
        customer_name=customer.name,
        customer_phone=customer.phone,
        customer_email=getattr(customer, "email", None),
        delivery_address=address or None,
        special_instructions=special_instructions,
        order_type=order_type,
        order_status=OrderStatus.PLACED,
        subtotal=totals.subtotal,
        tax=totals.tax,
        delivery_fee=totals.delivery_fee,
        discount_amount=totals.discount_amount,
        total=totals.total,
        coupon_code=coupon.code if coupon else None,
    )
    order.items = lines
    order.status_events.append(
        OrderStatusEvent(from_status=None, to_status=OrderStatus.PLACED, actor=actor)
    )
    db.add(order)
    db.flush()
    logger.info(
        "order %s placed: %d line(s), %s total %s",
        order.order_id, len(lines), order_type.value, order.total,
    )
    return order


def transition_status(
    db: Session,
    order: Order,
    target,
    actor: str,
    note: Optional[str] = None,
) -> Order:
    try:
        target = OrderStatus(target)
    except ValueError:
        raise InvalidTransitionError(f"Unknown order status {target!r}")

    current = order.order_status
    if current.is_terminal:
        raise InvalidTransitionError(
            f"Order {order.order_id} is {current.value}; it cannot move to {target.value}"
        )
    if not can_transition(order.order_type, current, target):
        raise InvalidTransitionError(
            f"{order.order_type.value} order {order.order_id} cannot move from "
            f"{current.value} to {target.value}"
        )
    if target == OrderStatus.OUT_FOR_DELIVERY and order.assigned_rider_id is None:
        raise RiderRequiredError(f"Assign a rider before dispatching order {order.order_id}")

    now = utcnow()
    order.order_status = target
    if target == OrderStatus.DELIVERED:
        order.delivered_at = now
    elif target == OrderStatus.CANCELLED:
        order.cancelled_at = now
    if target.is_terminal:
        order.assigned_rider_id = None

    order.status_events.append(
        OrderStatusEvent(from_status=current, to_status=target, actor=actor, note=note)
    )
    flush_order(db, order)
    logger.info("order %s: %s -> %s by %s", order.order_id, current.value, target.value, actor)
    return order


def flush_order(db: Session, order: Order):
    """Flush pending changes; a concurrent writer bumping the version wins."""
    # a failed flush rolls the session back, so the id cannot be read afterwards
    ref = order.order_id
    try:
        db.flush()
    except StaleDataError as e:
        raise StaleTransitionError(
            f"Order {ref} was modified concurrently; reload and retry"
        ) from e



def get_order(db: Session, ident) -> Order:
    """Look an order up by internal id or by its human-readable order id."""
    query = db.query(Order).options(joinedload(Order.items))
    ident = str(ident)
    if ident.isdigit():
        order = query.filter(Order.id == int(ident)).first()
    else:
        order = query.filter(Order.order_id == ident).first()
    if not order:
        raise NotFoundError(f"Order {ident} not found")
    return order


def list_orders(
    db: Session,
    branch_id: Optional[str] = None,
    status: Optional[OrderStatus] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Order]:
    query = db.query(Order).options(joinedload(Order.items))
    if branch_id:
        query = query.filter(Order.branch_id == branch_id)
    if status:
        query = query.filter(Order.order_status == status)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit).all()
