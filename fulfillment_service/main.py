import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import config, events, riders
from .catalog import HttpMenuCatalog, MenuCatalog
from .coordinator import FulfillmentCoordinator
from .database import Base, engine, get_db
from .errors import CancellationFailedError, FulfillmentError
from .events import publisher
from .orders import list_orders
from .processor import HttpPaymentProcessor, PaymentProcessor
from .schemas import (
    AvailabilityUpdate,
    CancelRequest,
    CashPayment,
    CodCollected,
    OrderCreate,
    OrderResponse,
    PaymentCreate,
    PaymentResponse,
    PaymentStatusUpdate,
    ReceiptResponse,
    RefundRequest,
    RiderAssignment,
    RiderCreate,
    RiderResponse,
    StatusUpdate,
)
from .statuses import OrderStatus, PaymentMethod, PaymentStatus, RiderAvailability

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    app.state.catalog = HttpMenuCatalog()
    app.state.processor = HttpPaymentProcessor()
    if config.KAFKA_ENABLED:
        await publisher.start()
    else:
        logger.warning("KAFKA_ENABLED is off; events will not be published")
    yield
    await publisher.stop()
    app.state.catalog.close()
    app.state.processor.close()


app = FastAPI(title="Fulfillment Service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- ERROR ENVELOPE ---

def _error(status_code: int, message, code: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message, "code": code, **extra},
    )


@app.exception_handler(FulfillmentError)
async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
    extra = {}
    if isinstance(exc, CancellationFailedError):
        extra["cause"] = exc.cause.code
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return _error(exc.status_code, exc.message, exc.code, **extra)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg")}
        for err in exc.errors()
    ]
    message = "; ".join(f"{d['field']}: {d['message']}" for d in details) or "Invalid request"
    return _error(400, message, "ValidationError", details=details)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, exc.detail, "HTTPException")


@app.exception_handler(StaleDataError)
async def stale_data_handler(request: Request, exc: StaleDataError):
    logger.warning("%s %s lost a concurrent update: %s", request.method, request.url.path, exc)
    return _error(409, "Record was modified concurrently; reload and retry", "StaleTransitionError")


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("%s %s crashed", request.method, request.url.path)
    return _error(500, "Internal server error", "InternalError")


def ok(data):
    return {"success": True, "data": data}


def dump(schema, obj):
    return schema.model_validate(obj).model_dump(mode="json", by_alias=True)


def dump_order(order, with_history: bool = False):
    return OrderResponse.from_order(order, with_history).model_dump(mode="json", by_alias=True)


# --- DEPENDENCIES ---

def get_catalog(request: Request) -> MenuCatalog:
    return request.app.state.catalog


def get_processor(request: Request) -> PaymentProcessor:
    return request.app.state.processor


def get_coordinator(
    db: Session = Depends(get_db),
    catalog: MenuCatalog = Depends(get_catalog),
    processor: PaymentProcessor = Depends(get_processor),
) -> FulfillmentCoordinator:
    return FulfillmentCoordinator(db, catalog, processor)


def get_actor(request: Request) -> str:
    """Who is acting. Verified by the auth service when one is configured."""
    token = request.headers.get("Authorization")
    if not config.AUTH_SERVICE_URL:
        return request.headers.get("X-Staff-Id") or "staff"
    if not token:
        raise HTTPException(401, "Missing Token")
    try:
        res = httpx.get(
            f"{config.AUTH_SERVICE_URL}/verify",
            headers={"Authorization": token},
            timeout=config.HTTP_TIMEOUT,
        )
    except httpx.RequestError as e:
        logger.error("auth service unreachable: %s", e)
        raise HTTPException(503, "Auth service unavailable")
    if res.status_code != 200:
        raise HTTPException(401, "Invalid Token")
    payload = res.json()
    return str(payload.get("id") or payload.get("sub") or "staff")


# --- ORDERS ---

@app.post("/orders", status_code=201)
def place_order(
    payload: OrderCreate,
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
    actor: str = Depends(get_actor),
):
    order = coordinator.place_order(payload, actor)
    publisher.publish(
        events.ORDER_PLACED,
        order_id=order.order_id,
        branch_id=order.branch_id,
        order_type=order.order_type.value,
        total=str(order.total),
    )
    return ok(dump_order(order))


@app.get("/orders")
def get_orders(
    branch: Optional[str] = None,
    status: Optional[OrderStatus] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    return ok([dump_order(o) for o in list_orders(db, branch, status, limit, offset)])


@app.get("/orders/{order_id}")
def get_order_detail(order_id: str, coordinator: FulfillmentCoordinator = Depends(get_coordinator)):
    return ok(dump_order(coordinator.get_order(order_id), with_history=True))


@app.put("/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: StatusUpdate,
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
    actor: str = Depends(get_actor),
):
    order = coordinator.advance_status(
        order_id, payload.status, actor, payload.note, payload.expected_status
    )
    event = events.ORDER_CANCELLED if payload.status == OrderStatus.CANCELLED else events.ORDER_STATUS_CHANGED
    publisher.publish(
        event, order_id=order.order_id, branch_id=order.branch_id, status=order.order_status.value
    )
    return ok(dump_order(order))


@app.put("/orders/{order_id}/assign-rider")
def assign_rider(
    order_id: str,
    payload: RiderAssignment,
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
    actor: str = Depends(get_actor),
):
    order = coordinator.assign_rider(order_id, payload.rider_id, actor)
    publisher.publish(
        events.RIDER_ASSIGNED,
        order_id=order.order_id,
        branch_id=order.branch_id,
        rider_id=payload.rider_id,
    )
    return ok(dump_order(order))


@app.put("/orders/{order_id}/cancel")
def cancel_order(
    order_id: str,
    payload: CancelRequest,
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
    actor: str = Depends(get_actor),
):
    order = coordinator.cancel_order(order_id, payload.reason, actor)
    publisher.publish(
        events.ORDER_CANCELLED,
        order_id=order.order_id,
        branch_id=order.branch_id,
        reason=payload.reason,
        payment_status=order.payment_status.value,
    )
    return ok(dump_order(order))


# --- PAYMENTS ---

@app.post("/payments", status_code=201)
def record_payment(payload: PaymentCreate, coordinator: FulfillmentCoordinator = Depends(get_coordinator)):
    payment = coordinator.record_payment(payload.order_id, payload.payment_method, payload.amount)
    return ok(dump(PaymentResponse, payment))


@app.post("/payments/cash", status_code=201)
def process_cash_payment(payload: CashPayment, coordinator: FulfillmentCoordinator = Depends(get_coordinator)):
    payment = coordinator.collect_cash(payload.order_id, payload.amount_received, PaymentMethod.CASH)
    _publish_paid(payment)
    return ok(dump(PaymentResponse, payment))


@app.post("/payments/cod-collected")
def mark_cod_collected(payload: CodCollected, coordinator: FulfillmentCoordinator = Depends(get_coordinator)):
    payment = coordinator.collect_cash(payload.order_id, payload.amount_collected, PaymentMethod.COD)
    _publish_paid(payment)
    return ok(dump(PaymentResponse, payment))


@app.patch("/payments/{payment_id}/status")
def update_payment_status(
    payment_id: int,
    payload: PaymentStatusUpdate,
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
):
    payment, applied = coordinator.settle_payment(
        payment_id, payload.status, payload.transaction_id, payload.failure_message
    )
    if applied:
        if payment.payment_status == PaymentStatus.COMPLETED:
            _publish_paid(payment)
        else:
            publisher.publish(events.PAYMENT_FAILED, payment_id=payment.id, order_id=payment.order_id)
    return ok(dump(PaymentResponse, payment))


@app.post("/payments/{payment_id}/refund")
def refund_payment(
    payment_id: int,
    payload: RefundRequest,
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
):
    payment = coordinator.refund_payment(payment_id, payload.amount, payload.reason)
    publisher.publish(
        events.PAYMENT_REFUNDED,
        payment_id=payment.id,
        order_id=payment.order_id,
        refunded_amount=str(payment.refunded_amount),
        payment_status=payment.payment_status.value,
    )
    return ok(dump(PaymentResponse, payment))


@app.get("/payments/order/{order_id}")
def get_payments_by_order(order_id: str, coordinator: FulfillmentCoordinator = Depends(get_coordinator)):
    return ok([dump(PaymentResponse, p) for p in coordinator.payments_for_order(order_id)])


@app.get("/payments/{payment_id}")
def get_payment(payment_id: int, coordinator: FulfillmentCoordinator = Depends(get_coordinator)):
    return ok(dump(PaymentResponse, coordinator.get_payment(payment_id)))


@app.get("/payments/{payment_id}/receipt")
def get_receipt(payment_id: int, coordinator: FulfillmentCoordinator = Depends(get_coordinator)):
    receipt = ReceiptResponse.from_payment(coordinator.receipt(payment_id))
    return ok(receipt.model_dump(mode="json", by_alias=True))


@app.post("/payments/expire-stale")
def expire_stale_payments(
    window_minutes: Optional[int] = None,
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
):
    expired = coordinator.expire_stale_payments(window_minutes)
    for payment in expired:
        publisher.publish(events.PAYMENT_FAILED, payment_id=payment.id, order_id=payment.order_id)
    return ok([dump(PaymentResponse, p) for p in expired])


def _publish_paid(payment):
    publisher.publish(
        events.ORDER_PAID,
        order_id=payment.order_id,
        payment_id=payment.id,
        amount=str(payment.amount),
        transaction_id=payment.transaction_id,
    )


# --- RIDERS ---

@app.post("/riders", status_code=201)
def create_rider(payload: RiderCreate, coordinator: FulfillmentCoordinator = Depends(get_coordinator)):
    return ok(dump(RiderResponse, coordinator.register_rider(payload)))


@app.get("/riders")
def get_riders(
    branch: Optional[str] = None,
    availability: Optional[RiderAvailability] = None,
    db: Session = Depends(get_db),
):
    return ok([dump(RiderResponse, r) for r in riders.list_riders(db, branch, availability)])


# must stay above /riders/{rider_id}
@app.get("/riders/available")
def get_available_riders(branch: Optional[str] = None, db: Session = Depends(get_db)):
    return ok([dump(RiderResponse, r) for r in riders.list_available(db, branch)])


@app.get("/riders/{rider_id}")
def get_rider(rider_id: int, db: Session = Depends(get_db)):
    return ok(dump(RiderResponse, riders.get_rider(db, rider_id)))


@app.get("/riders/{rider_id}/orders")
def get_rider_orders(rider_id: int, db: Session = Depends(get_db)):
    return ok([dump_order(o) for o in riders.active_orders(db, rider_id)])


@app.get("/riders/{rider_id}/history")
def get_rider_history(rider_id: int, limit: int = 20, offset: int = 0, db: Session = Depends(get_db)):
    return ok([dump_order(o) for o in riders.delivery_history(db, rider_id, limit, offset)])


@app.put("/riders/{rider_id}/availability")
def update_availability(
    rider_id: int,
    payload: AvailabilityUpdate,
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
):
    rider = coordinator.set_rider_availability(rider_id, payload.availability)
    return ok(dump(RiderResponse, rider))


@app.get("/health")
def health():
    return ok({"status": "ok"})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(config.PORT))
