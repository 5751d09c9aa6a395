from fastapi import APIRouter, Depends

from database import get_db
from models.payment import PaymentCreate, PaymentReview
from utils.errors import PermissionDeniedError
from utils.mongo import serialize_doc, serialize_docs
from utils.payment_service import (
    can_view_payment,
    cancel_payment,
    complete_refund,
    decline_payment,
    get_payment,
    list_order_payments,
    mark_payment_processing,
    record_payment,
    refund_payment,
    verify_payment,
)
from utils.security import get_current_user

router = APIRouter(prefix="/api/payments", tags=["Payments"])


@router.post("")
async def record(data: PaymentCreate, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(await record_payment(db, user, data))


@router.get("/order/{order_id}")
async def for_order(order_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    payments = await list_order_payments(db, user, order_id)
    return {"count": len(payments), "payments": serialize_docs(payments)}


@router.get("/{payment_id}")
async def get_one(payment_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    payment = await get_payment(db, payment_id)
    if not await can_view_payment(db, user, payment):
        raise PermissionDeniedError("Permission denied: MANAGE_PAYMENTS required")
    return serialize_doc(payment)


# ======================================================
# REVIEW
# ======================================================

@router.post("/{payment_id}/processing")
async def processing(payment_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(await mark_payment_processing(db, user, payment_id))


@router.post("/{payment_id}/verify")
async def verify(
    payment_id: str,
    data: PaymentReview | None = None,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    reason = data.reason if data else None
    return serialize_doc(await verify_payment(db, user, payment_id, reason))


@router.post("/{payment_id}/decline")
async def decline(
    payment_id: str,
    data: PaymentReview | None = None,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    reason = data.reason if data else None
    return serialize_doc(await decline_payment(db, user, payment_id, reason))


# ======================================================
# REFUND / CANCEL
# ======================================================

@router.post("/{payment_id}/refund")
async def refund(
    payment_id: str,
    data: PaymentReview | None = None,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    reason = data.reason if data else None
    return serialize_doc(await refund_payment(db, user, payment_id, reason))


@router.post("/{payment_id}/refund/complete")
async def refund_complete(payment_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(await complete_refund(db, user, payment_id))


@router.post("/{payment_id}/cancel")
async def cancel(
    payment_id: str,
    data: PaymentReview | None = None,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    reason = data.reason if data else None
    return serialize_doc(await cancel_payment(db, user, payment_id, reason))
