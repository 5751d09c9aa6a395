from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    READY = "READY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class OrderPaymentStatus(str, Enum):
    PENDING = "PENDING"
    DOWNPAYMENT = "DOWNPAYMENT"
    PAID = "PAID"
    REFUNDED = "REFUNDED"


class CancellationReason(str, Enum):
    OUT_OF_STOCK = "OUT_OF_STOCK"
    CUSTOMER_REQUEST = "CUSTOMER_REQUEST"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    OTHERS = "OTHERS"


class OrderItemIn(BaseModel):
    product_id: str
    product_title: str
    variant_id: Optional[str] = None
    variant_name: Optional[str] = None
    size: Optional[str] = None

    quantity: int = Field(..., gt=0)
    price: float = Field(..., ge=0)


class OrderCreate(BaseModel):
    organization_id: str
    items: List[OrderItemIn] = Field(..., min_length=1)
    discount_amount: float = Field(0, ge=0)
    voucher_code: Optional[str] = None
    order_date: Optional[datetime] = None
    checkout_session_id: Optional[str] = None
    customer_notes: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class OrderUpdate(BaseModel):
    status: Optional[OrderStatus] = None
    payment_status: Optional[OrderPaymentStatus] = None
    cancellation_reason: Optional[CancellationReason] = None
    customer_notes: Optional[str] = None


class OrderCancel(BaseModel):
    reason: CancellationReason
    message: Optional[str] = None
