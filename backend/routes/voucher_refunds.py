from typing import Optional

from fastapi import APIRouter, Depends, Query

from database import get_db
from models.voucher import VoucherRefundCreate, VoucherRefundDecision
from utils.mongo import serialize_doc, serialize_docs
from utils.security import get_current_user
from utils.voucher_service import (
    approve_voucher_refund_request,
    list_voucher_refund_requests,
    reject_voucher_refund_request,
    submit_voucher_refund_request,
)

router = APIRouter(prefix="/api/voucher-refunds", tags=["Voucher Refunds"])


@router.post("")
async def submit(data: VoucherRefundCreate, user=Depends(get_current_user), db=Depends(get_db)):
    request = await submit_voucher_refund_request(db, user, data.voucher_id, data.requested_amount)
    return serialize_doc(request)


@router.get("")
async def list_requests(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    result = await list_voucher_refund_requests(db, user, status, page, page_size)
    return {**result, "requests": serialize_docs(result["requests"])}


@router.post("/{request_id}/approve")
async def approve(
    request_id: str,
    data: VoucherRefundDecision,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    return serialize_doc(await approve_voucher_refund_request(db, user, request_id, data.admin_message))


@router.post("/{request_id}/reject")
async def reject(
    request_id: str,
    data: VoucherRefundDecision,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    return serialize_doc(await reject_voucher_refund_request(db, user, request_id, data.admin_message))
