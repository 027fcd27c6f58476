"""
Payment ledger.

An order may collect several payment rows over its life (a failed card attempt
followed by cash, say) but only one may be active at a time. Refunds move
``refunded_amount`` on the original row; they never add rows.

Settlement callbacks from the processor are delivered at least once, so
``settle`` treats a repeat of an already applied (transaction id, outcome)
pair as a no-op.
"""
import logging
import time
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .errors import (
    DuplicateActivePaymentError,
    InvalidPaymentError,
    NotFoundError,
    OverRefundError,
    PaymentStateError,
    ProcessorUnavailableError,
    StaleTransitionError,
)
from .models import Order, Payment, utcnow
from .orders import money
from .processor import PaymentProcessor
from .statuses import (
    REFUNDABLE_PAYMENT_STATUSES,
    SETTLEMENT_OUTCOMES,
    UNSETTLED_PAYMENT_STATUSES,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)

logger = logging.getLogger(__name__)

# statuses a payment can be in after having been completed once
_WAS_COMPLETED = frozenset(
    {PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED}
)


def get_payment(db: Session, payment_id: int) -> Payment:
    payment = db.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


def receipt_for(db: Session, payment_id: int) -> Payment:
    """A payment that has been completed at least once, and so carries a receipt."""
    payment = get_payment(db, payment_id)
    if payment.payment_status not in _WAS_COMPLETED or not payment.receipt_number:
        raise PaymentStateError(
            f"Payment {payment_id} is {payment.payment_status.value}; no receipt has been issued"
        )
    return payment


def payments_for_order(db: Session, order_id: int) -> List[Payment]:
    return db.query(Payment).filter(Payment.order_id == order_id).order_by(Payment.id).all()


def active_payment(db: Session, order_id: int) -> Optional[Payment]:
    return db.query(Payment).filter(Payment.active_order_id == order_id).first()


def _flush(db: Session, *rows: Payment):
    # a failed flush rolls the session back, so ids are read up front
    ids = ", ".join(str(p.id) for p in rows)
    try:
        db.flush()
    except StaleDataError as e:
        raise StaleTransitionError(
            f"Payment {ids} was modified concurrently; reload and retry"
        ) from e



def record_attempt(
    db: Session,
    order: Order,
    amount: Optional[Decimal],
    method,
    processor: Optional[PaymentProcessor] = None,
) -> Payment:
    """Open a payment attempt against ``order``.

    Cash and COD start pending until collected; Card and Stripe start
    processing with an intent opened at the processor.
    """
    try:
        method = PaymentMethod(method)
    except ValueError:
        raise InvalidPaymentError(f"Unknown payment method {method!r}")

    if order.order_status == OrderStatus.CANCELLED:
        raise InvalidPaymentError(f"Order {order.order_id} is cancelled")

    amount = order.total if amount is None else money(amount)
    if amount <= 0:
        raise InvalidPaymentError("Payment amount must be positive")
    if amount > order.total:
        raise InvalidPaymentError(f"Payment amount {amount} exceeds order total {order.total}")

    existing = active_payment(db, order.id)
    if existing is not None:
        raise DuplicateActivePaymentError(
            f"Order {order.order_id} already has payment {existing.id} "
            f"({existing.payment_status.value})"
        )

    payment = Payment(
        order_id=order.id,
        amount=amount,
        payment_method=method,
        payment_status=PaymentStatus.PROCESSING if method.is_external else PaymentStatus.PENDING,
        refunded_amount=money(0),
        active_order_id=order.id,
    )
    ref = order.order_id
    db.add(payment)
    try:
        db.flush()
    except IntegrityError as e:
        # lost a race with another attempt for the same order
        raise DuplicateActivePaymentError(
            f"Order {ref} already has an active payment"
        ) from e

    if method.is_external:
        if processor is None:
            raise ProcessorUnavailableError("No payment processor configured")
        result = processor.create_intent(payment)
        payment.processor_reference = result.reference
        _flush(db, payment)

    logger.info(
        "payment %s recorded for order %s: %s %s (%s)",
        payment.id, order.order_id, method.value, amount, payment.payment_status.value,
    )
    return payment


def _cash_reference(payment: Payment) -> str:
    return f"CASH-{payment.id}-{uuid.uuid4().hex[:8].upper()}"


def settle(
    db: Session,
    payment: Payment,
    outcome,
    transaction_id: Optional[str] = None,
    failure_message: Optional[str] = None,
) -> bool:
    """Apply a settlement outcome. Returns False for a duplicate callback."""
    try:
        outcome = PaymentStatus(outcome)
    except ValueError:
        raise InvalidPaymentError(f"Unknown payment status {outcome!r}")
    if outcome not in SETTLEMENT_OUTCOMES:
        raise InvalidPaymentError("A settlement must be 'completed' or 'failed'")

    current = payment.payment_status

    if current not in UNSETTLED_PAYMENT_STATUSES:
        same_outcome = (
            current in _WAS_COMPLETED if outcome == PaymentStatus.COMPLETED
            else current == PaymentStatus.FAILED
        )
        if transaction_id and transaction_id == payment.transaction_id and same_outcome:
            logger.info("duplicate settlement for payment %s (%s) ignored", payment.id, transaction_id)
            return False
        if outcome == PaymentStatus.COMPLETED and payment.failure_code in ("voided", "expired"):
            logger.error(
                "completion callback %s for %s payment %s needs manual reconciliation",
                transaction_id, payment.failure_code, payment.id,
            )
        raise PaymentStateError(f"Payment {payment.id} is already {current.value}")

    if not transaction_id:
        if payment.payment_method.is_external:
            raise InvalidPaymentError("transactionId is required for processor settlements")
        transaction_id = _cash_reference(payment)

    clash = (
        db.query(Payment)
        .filter(Payment.transaction_id == transaction_id, Payment.id != payment.id)
        .first()
    )
    if clash is not None:
        raise PaymentStateError(f"Transaction {transaction_id} already settled payment {clash.id}")

    now = utcnow()
    payment.transaction_id = transaction_id
    if outcome == PaymentStatus.COMPLETED:
        payment.payment_status = PaymentStatus.COMPLETED
        payment.completed_at = now
        payment.receipt_number = f"RCP-{int(time.time() * 1000)}-{payment.id}"
    else:
        payment.payment_status = PaymentStatus.FAILED
        payment.failure_code = "declined"
        payment.failure_message = failure_message
        payment.active_order_id = None
    _flush(db, payment)
    logger.info("payment %s: %s -> %s (%s)", payment.id, current.value, outcome.value, transaction_id)
    return True


def refundable_amount(payment: Payment) -> Decimal:
    return payment.amount - payment.refunded_amount


def refund(
    db: Session,
    payment: Payment,
    amount: Optional[Decimal],
    processor: Optional[PaymentProcessor] = None,
    reason: Optional[str] = None,
) -> Payment:
    """Refund part or all of a completed payment.

    ``amount`` defaults to everything not yet refunded. Processor refunds are
    requested before the ledger moves, so a declined or unreachable processor
    leaves ``refunded_amount`` untouched.
    """
    if payment.payment_status not in REFUNDABLE_PAYMENT_STATUSES:
        raise PaymentStateError(
            f"Payment {payment.id} is {payment.payment_status.value}; only completed payments can be refunded"
        )

    remaining = refundable_amount(payment)
    amount = remaining if amount is None else money(amount)
    if amount <= 0:
        raise InvalidPaymentError("Refund amount must be positive")
    if payment.refunded_amount + amount > payment.amount:
        raise OverRefundError(
            f"Refund of {amount} exceeds the {remaining} still refundable on payment {payment.id}"
        )

    if payment.payment_method.is_external:
        if processor is None:
            raise ProcessorUnavailableError("No payment processor configured")
        processor.refund(payment, amount)

    payment.refunded_amount = payment.refunded_amount + amount
    payment.refunded_at = utcnow()
    payment.refund_reason = reason or payment.refund_reason
    if payment.refunded_amount == payment.amount:
        payment.payment_status = PaymentStatus.REFUNDED
        payment.active_order_id = None
    else:
        payment.payment_status = PaymentStatus.PARTIALLY_REFUNDED
    _flush(db, payment)
    logger.info(
        "payment %s refunded %s (total refunded %s of %s)",
        payment.id, amount, payment.refunded_amount, payment.amount,
    )
    return payment


def void(
    db: Session,
    payment: Payment,
    processor: Optional[PaymentProcessor] = None,
    reason: Optional[str] = None,
) -> Payment:
    """Abandon an unsettled payment. Processing payments are voided at the processor."""
    if payment.payment_status not in UNSETTLED_PAYMENT_STATUSES:
        raise PaymentStateError(f"Payment {payment.id} is {payment.payment_status.value}; nothing to void")

    if payment.payment_status == PaymentStatus.PROCESSING and payment.processor_reference:
        if processor is None:
            raise ProcessorUnavailableError("No payment processor configured")
        processor.void(payment)

    payment.payment_status = PaymentStatus.FAILED
    payment.failure_code = "voided"
    payment.failure_message = reason
    payment.active_order_id = None
    _flush(db, payment)
    logger.info("payment %s voided", payment.id)
    return payment


def expire_stale(db: Session, older_than: datetime) -> List[Payment]:
    """Fail processing payments that never got a callback."""
    stale = (
        db.query(Payment)
        .filter(
            Payment.payment_status == PaymentStatus.PROCESSING,
            Payment.created_at < older_than,
        )
        .all()
    )
    for payment in stale:
        payment.payment_status = PaymentStatus.FAILED
        payment.failure_code = "expired"
        payment.failure_message = "No processor confirmation received"
        payment.active_order_id = None
    if stale:
        _flush(db, *stale)
        logger.warning("expired %d processing payment(s)", len(stale))
    return stale


def summarize(payments: List[Payment]) -> PaymentStatus:
    """Order-level payment status derived from its ledger rows.

    The active payment decides while there is one. Without it the most
    settled historical row wins, so a fully refunded order reads refunded.
    """
    for p in payments:
        if p.active_order_id is not None:
            if p.payment_status in REFUNDABLE_PAYMENT_STATUSES:
                return p.payment_status
            return PaymentStatus.PENDING
    statuses = {p.payment_status for p in payments}
    for status in (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED):
        if status in statuses:
            return status
    return PaymentStatus.PENDING


def sync_order_payment_status(db: Session, order: Order) -> PaymentStatus:
    order.payment_status = summarize(payments_for_order(db, order.id))
    return order.payment_status
