from pydantic import BaseModel
from typing import Optional
from enum import Enum


class VoucherDiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"
    FREE_SHIPPING = "FREE_SHIPPING"
    REFUND = "REFUND"


class CancellationInitiator(str, Enum):
    SELLER = "SELLER"
    CUSTOMER = "CUSTOMER"


class VoucherRefundStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class VoucherRefundCreate(BaseModel):
    voucher_id: str
    requested_amount: Optional[float] = None


class VoucherRefundDecision(BaseModel):
    admin_message: str
