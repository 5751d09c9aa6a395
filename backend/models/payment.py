from pydantic import BaseModel, Field
from typing import Optional
from enum import Enum


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    VERIFIED = "VERIFIED"
    DECLINED = "DECLINED"
    FAILED = "FAILED"
    REFUND_PENDING = "REFUND_PENDING"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    BANK_TRANSFER = "BANK_TRANSFER"
    E_WALLET = "E_WALLET"
    OTHER = "OTHER"


class PaymentCreate(BaseModel):
    order_id: str
    amount: float = Field(..., gt=0)
    currency: str = "PHP"
    method: PaymentMethod
    reference_number: Optional[str] = Field(None, min_length=3, max_length=128)
    provider_metadata: Optional[dict] = None
    memo: Optional[str] = None


class PaymentReview(BaseModel):
    reason: Optional[str] = None
