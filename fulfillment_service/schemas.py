from datetime import datetime
from decimal import Decimal
from typing import Annotated, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

from .statuses import (
    OrderStatus,
    OrderType,
    PaymentMethod,
    PaymentStatus,
    RiderAvailability,
    VehicleType,
)

Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]
BRANCH_ALIASES = AliasChoices("branch", "branchId", "branch_id")


class CamelModel(BaseModel):
    # the admin UI speaks camelCase
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# --- REQUESTS ---

class CustomerInfo(CamelModel):
    name: str
    phone: str
    email: Optional[str] = None
    address: Optional[str] = None


class OrderItemCreate(CamelModel):
    menu_id: str
    size: str
    quantity: int


class OrderCreate(CamelModel):
    branch_id: Optional[str] = Field(None, validation_alias=BRANCH_ALIASES, serialization_alias="branch")
    customer_info: CustomerInfo
    items: List[OrderItemCreate]
    order_type: OrderType = OrderType.DELIVERY
    coupon_code: Optional[str] = None
    special_instructions: Optional[str] = None


class StatusUpdate(CamelModel):
    status: OrderStatus
    note: Optional[str] = None
    expected_status: Optional[OrderStatus] = None


class RiderAssignment(CamelModel):
    rider_id: int


class CancelRequest(CamelModel):
    reason: str = Field(..., min_length=1)


class PaymentCreate(CamelModel):
    order_id: str
    payment_method: PaymentMethod
    amount: Optional[Decimal] = None


class CashPayment(CamelModel):
    order_id: str
    amount_received: Decimal


class CodCollected(CamelModel):
    order_id: str
    amount_collected: Decimal


class PaymentStatusUpdate(CamelModel):
    status: PaymentStatus
    transaction_id: Optional[str] = None
    failure_message: Optional[str] = None


class RefundRequest(CamelModel):
    amount: Optional[Decimal] = None
    reason: Optional[str] = None


class RiderCreate(CamelModel):
    name: str
    phone: str
    email: Optional[str] = None
    vehicle_type: VehicleType
    vehicle_number: str
    branch_id: Optional[str] = Field(None, validation_alias=BRANCH_ALIASES, serialization_alias="branch")


class AvailabilityUpdate(CamelModel):
    availability: RiderAvailability


# --- RESPONSES ---

class OrderItemResponse(CamelModel):
    menu_id: str
    name: Optional[str] = None
    size: Optional[str] = None
    unit_price: Money
    quantity: int
    line_total: Money


class StatusEventResponse(CamelModel):
    from_status: Optional[OrderStatus] = None
    to_status: OrderStatus
    actor: Optional[str] = None
    note: Optional[str] = None
    created_at: Optional[datetime] = None


class OrderResponse(CamelModel):
    id: int
    order_id: str
    branch_id: Optional[str] = Field(None, validation_alias=BRANCH_ALIASES, serialization_alias="branch")
    customer_info: CustomerInfo
    items: List[OrderItemResponse] = []
    order_type: OrderType
    order_status: OrderStatus
    payment_status: PaymentStatus
    subtotal: Money
    tax: Money
    delivery_fee: Money
    discount_amount: Money
    total: Money
    coupon_code: Optional[str] = None
    special_instructions: Optional[str] = None
    assigned_rider: Optional[int] = None
    delivery_rider: Optional[int] = None
    cancel_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    status_history: Optional[List[StatusEventResponse]] = None

    @classmethod
    def from_order(cls, order, with_history: bool = False) -> "OrderResponse":
        return cls(
            id=order.id,
            order_id=order.order_id,
            branch_id=order.branch_id,
            customer_info=CustomerInfo(
                name=order.customer_name,
                phone=order.customer_phone,
                email=order.customer_email,
                address=order.delivery_address,
            ),
            items=[OrderItemResponse.model_validate(i) for i in order.items],
            order_type=order.order_type,
            order_status=order.order_status,
            payment_status=order.payment_status,
            subtotal=order.subtotal,
            tax=order.tax,
            delivery_fee=order.delivery_fee,
            discount_amount=order.discount_amount,
            total=order.total,
            coupon_code=order.coupon_code,
            special_instructions=order.special_instructions,
            assigned_rider=order.assigned_rider_id,
            delivery_rider=order.delivery_rider_id,
            cancel_reason=order.cancel_reason,
            cancelled_at=order.cancelled_at,
            delivered_at=order.delivered_at,
            created_at=order.created_at,
            updated_at=order.updated_at,
            status_history=(
                [StatusEventResponse.model_validate(e) for e in order.status_events]
                if with_history else None
            ),
        )


class PaymentResponse(CamelModel):
    id: int
    order_id: int
    amount: Money
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    transaction_id: Optional[str] = None
    processor_reference: Optional[str] = None
    receipt_number: Optional[str] = None
    refunded_amount: Money
    refund_reason: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    amount_received: Optional[Money] = None
    change_given: Optional[Money] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class ReceiptResponse(CamelModel):
    receipt_number: str
    order_id: str
    branch_id: Optional[str] = Field(None, validation_alias=BRANCH_ALIASES, serialization_alias="branch")
    items: List[OrderItemResponse] = []
    subtotal: Money
    tax: Money
    delivery_fee: Money
    discount_amount: Money
    payment_method: PaymentMethod
    amount: Money
    amount_received: Optional[Money] = None
    change_given: Optional[Money] = None
    refunded_amount: Money
    transaction_id: Optional[str] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_payment(cls, payment) -> "ReceiptResponse":
        order = payment.order
        return cls(
            receipt_number=payment.receipt_number,
            order_id=order.order_id,
            branch_id=order.branch_id,
            items=[OrderItemResponse.model_validate(i) for i in order.items],
            subtotal=order.subtotal,
            tax=order.tax,
            delivery_fee=order.delivery_fee,
            discount_amount=order.discount_amount,
            payment_method=payment.payment_method,
            amount=payment.amount,
            amount_received=payment.amount_received,
            change_given=payment.change_given,
            refunded_amount=payment.refunded_amount,
            transaction_id=payment.transaction_id,
            completed_at=payment.completed_at,
        )


class RiderResponse(CamelModel):
    id: int
    name: str
    phone: str
    email: Optional[str] = None
    vehicle_type: VehicleType
    vehicle_number: str
    branch_id: Optional[str] = Field(None, validation_alias=BRANCH_ALIASES, serialization_alias="branch")
    is_active: bool
    availability: RiderAvailability
    active_order_id: Optional[int] = None
