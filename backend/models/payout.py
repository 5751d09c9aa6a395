from pydantic import BaseModel, EmailStr, Field
from typing import Optional
from datetime import datetime
from enum import Enum


class InvoiceStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class AdjustmentStatus(str, Enum):
    PENDING = "PENDING"
    APPLIED = "APPLIED"
    VOIDED = "VOIDED"


class AdjustmentType(str, Enum):
    REFUND = "REFUND"
    VOUCHER_REFUND = "VOUCHER_REFUND"
    CANCELLATION = "CANCELLATION"
    CORRECTION = "CORRECTION"


class GenerateInvoiceRequest(BaseModel):
    organization_id: str
    period_start: datetime


class GeneratePeriodRequest(BaseModel):
    period_start: Optional[datetime] = None


class MarkInvoicePaid(BaseModel):
    payment_reference: str = Field(..., min_length=1, max_length=128)
    payment_notes: Optional[str] = None


class CancelInvoice(BaseModel):
    reason: str = Field(..., min_length=3, max_length=500)


class BankDetailsUpdate(BaseModel):
    bank_name: str
    account_name: str
    account_number: str
    bank_code: Optional[str] = None
    notification_email: Optional[EmailStr] = None


class AdjustmentCreate(BaseModel):
    organization_id: str
    amount: float
    type: AdjustmentType = AdjustmentType.CORRECTION
    reason: str = Field(..., min_length=3, max_length=500)
    order_id: Optional[str] = None


class PayoutSettingsUpdate(BaseModel):
    default_platform_fee_percentage: Optional[float] = None
    minimum_payout_amount: Optional[float] = None
    cutoff_day_of_week: Optional[int] = None
    payout_day_of_week: Optional[int] = None
