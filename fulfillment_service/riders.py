"""
Rider availability registry.

A rider is the contended resource of the system: several staff screens may
try to put the same rider on different orders at once. ``claim`` is therefore a
single conditional UPDATE and only the caller whose UPDATE matched a row wins.
"""
import logging
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import (
    InvalidRiderError,
    NotFoundError,
    RiderBusyError,
    RiderUnavailableError,
    StaleTransitionError,
)
from .models import Order, Rider, utcnow
from .statuses import TERMINAL_ORDER_STATUSES, RiderAvailability, VehicleType

logger = logging.getLogger(__name__)


def get_rider(db: Session, rider_id: int, refresh: bool = False) -> Rider:
    rider = db.get(Rider, rider_id)
    if rider is None:
        raise NotFoundError(f"Rider {rider_id} not found")
    if refresh:
        # registry writes bypass the identity map
        db.refresh(rider)
    return rider


def create_rider(
    db: Session,
    name: str,
    phone: str,
    vehicle_type,
    vehicle_number: str,
    branch_id: Optional[str] = None,
    email: Optional[str] = None,
) -> Rider:
    try:
        vehicle_type = VehicleType(vehicle_type)
    except ValueError:
        raise InvalidRiderError(f"Unknown vehicle type {vehicle_type!r}")
    if db.query(Rider).filter(Rider.phone == phone).first():
        raise InvalidRiderError(f"A rider with phone {phone} already exists")

    rider = Rider(
        name=name,
        phone=phone,
        email=email,
        vehicle_type=vehicle_type,
        vehicle_number=vehicle_number,
        branch_id=branch_id,
        availability=RiderAvailability.AVAILABLE,
    )
    db.add(rider)
    db.flush()
    logger.info("rider %s registered (%s)", rider.id, rider.name)
    return rider


def claim(db: Session, rider_id: int, order_id: int) -> Rider:
    """Atomically move a rider from available to busy for ``order_id``.

    Raises RiderUnavailableError if the rider is busy, offline or inactive,
    including when another caller claimed it a moment earlier.
    """
    stmt = (
        update(Rider)
        .where(
            Rider.id == rider_id,
            Rider.availability == RiderAvailability.AVAILABLE,
            Rider.active_order_id.is_(None),
            Rider.is_active.is_(True),
        )
        .values(
            availability=RiderAvailability.BUSY,
            active_order_id=order_id,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    try:
        result = db.execute(stmt)
    except IntegrityError as e:
        # riders.active_order_id is unique: the order already holds another rider
        raise StaleTransitionError(f"Order {order_id} already has a rider") from e

    if result.rowcount != 1:
        rider = get_rider(db, rider_id, refresh=True)
        logger.warning(
            "claim of rider %s for order %s rejected: %s",
            rider_id, order_id, rider.availability.value,
        )
        if not rider.is_active:
            raise RiderUnavailableError(f"Rider {rider.name} is inactive")
        raise RiderUnavailableError(f"Rider {rider.name} is {rider.availability.value}")

    logger.info("rider %s claimed for order %s", rider_id, order_id)
    return get_rider(db, rider_id, refresh=True)


def release(db: Session, rider_id: int, order_id: Optional[int] = None) -> bool:
    """Return a busy rider to available. Idempotent.

    With ``order_id`` only a claim held by that order is released, so a late
    release can never free a rider that has moved on to another order.
    Returns True when a claim was actually released.
    """
    stmt = update(Rider).where(
        Rider.id == rider_id,
        Rider.availability == RiderAvailability.BUSY,
    )
    if order_id is not None:
        stmt = stmt.where(Rider.active_order_id == order_id)
    stmt = stmt.values(
        availability=RiderAvailability.AVAILABLE,
        active_order_id=None,
        updated_at=utcnow(),
    ).execution_options(synchronize_session=False)

    released = db.execute(stmt).rowcount == 1
    if released:
        logger.info("rider %s released (order %s)", rider_id, order_id)
    else:
        logger.debug("release of rider %s was a no-op", rider_id)
    return released


def set_offline(db: Session, rider_id: int) -> Rider:
    stmt = (
        update(Rider)
        .where(Rider.id == rider_id, Rider.active_order_id.is_(None))
        .values(availability=RiderAvailability.OFFLINE, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if db.execute(stmt).rowcount != 1:
        rider = get_rider(db, rider_id, refresh=True)
        raise RiderBusyError(
            f"Rider {rider.name} is delivering order {rider.active_order_id} and cannot go offline"
        )
    logger.info("rider %s went offline", rider_id)
    return get_rider(db, rider_id, refresh=True)


def set_available(db: Session, rider_id: int) -> Rider:
    """Manual return to service. Busy riders are freed only by their order."""
    stmt = (
        update(Rider)
        .where(Rider.id == rider_id, Rider.availability == RiderAvailability.OFFLINE)
        .values(availability=RiderAvailability.AVAILABLE, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if db.execute(stmt).rowcount != 1:
        rider = get_rider(db, rider_id, refresh=True)
        if rider.availability == RiderAvailability.BUSY:
            raise RiderBusyError(
                f"Rider {rider.name} is delivering order {rider.active_order_id}"
            )
        return rider
    logger.info("rider %s is available", rider_id)
    return get_rider(db, rider_id, refresh=True)


def list_riders(
    db: Session,
    branch_id: Optional[str] = None,
    availability: Optional[RiderAvailability] = None,
) -> List[Rider]:
    query = db.query(Rider)
    if branch_id:
        query = query.filter(Rider.branch_id == branch_id)
    if availability:
        query = query.filter(Rider.availability == availability)
    return query.order_by(Rider.id).all()


def list_available(db: Session, branch_id: Optional[str] = None) -> List[Rider]:
    query = db.query(Rider).filter(
        Rider.availability == RiderAvailability.AVAILABLE,
        Rider.is_active.is_(True),
    )
    if branch_id:
        query = query.filter(Rider.branch_id == branch_id)
    return query.order_by(Rider.id).all()


def active_orders(db: Session, rider_id: int) -> List[Order]:
    get_rider(db, rider_id)
    return (
        db.query(Order)
        .filter(Order.assigned_rider_id == rider_id)
        .order_by(Order.created_at.desc())
        .all()
    )


def delivery_history(db: Session, rider_id: int, limit: int = 20, offset: int = 0) -> List[Order]:
    get_rider(db, rider_id)
    return (
        db.query(Order)
        .filter(
            Order.delivery_rider_id == rider_id,
            Order.order_status.in_(list(TERMINAL_ORDER_STATUSES)),
        )
        .order_by(Order.created_at.desc(), Order.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
