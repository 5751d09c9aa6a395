from typing import Optional

from fastapi import APIRouter, Depends, Query

from database import get_db
from models.payout import (
    AdjustmentCreate,
    BankDetailsUpdate,
    CancelInvoice,
    GenerateInvoiceRequest,
    GeneratePeriodRequest,
    MarkInvoicePaid,
    PayoutSettingsUpdate,
)
from utils.invoice_documents import generate_invoice_document
from utils.mongo import serialize_doc, serialize_docs
from utils.payout_service import (
    cancel_invoice,
    create_adjustment,
    generate_payout_invoice,
    generate_payout_invoices_for_period,
    get_payout_invoice,
    get_payout_settings,
    get_payout_summary,
    list_adjustments,
    list_payout_invoices,
    mark_invoice_paid,
    mark_invoice_processing,
    update_org_bank_details,
    update_payout_settings,
    verify_invoice_totals,
)
from utils.permissions import MANAGE_PAYOUTS, MANAGE_PAYOUT_SETTINGS, require_capability
from utils.security import get_current_user

router = APIRouter(prefix="/api/payouts", tags=["Payouts"])


# =====================================================
# GENERATION
# =====================================================

@router.post("/invoices/generate")
async def generate_one(data: GenerateInvoiceRequest, user=Depends(get_current_user), db=Depends(get_db)):
    invoice = await generate_payout_invoice(db, user, data.organization_id, data.period_start)
    return serialize_doc(invoice)


@router.post("/invoices/generate-all")
async def generate_all(data: GeneratePeriodRequest, user=Depends(get_current_user), db=Depends(get_db)):
    summary = await generate_payout_invoices_for_period(db, data.period_start, user=user)
    return serialize_doc(summary)


# =====================================================
# READ
# =====================================================

@router.get("/invoices")
async def list_invoices(
    organization_id: Optional[str] = None,
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    result = await list_payout_invoices(db, user, organization_id, status, page, page_size)
    return {**result, "invoices": serialize_docs(result["invoices"])}


@router.get("/invoices/{invoice_id}")
async def get_invoice(invoice_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    invoice = await get_payout_invoice(db, user, invoice_id)
    return {**serialize_doc(invoice), "totals_verified": verify_invoice_totals(invoice)}


@router.get("/summary/{organization_id}")
async def summary(organization_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return await get_payout_summary(db, user, organization_id)


# =====================================================
# LIFECYCLE
# =====================================================

@router.post("/invoices/{invoice_id}/processing")
async def processing(invoice_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(await mark_invoice_processing(db, user, invoice_id))


@router.post("/invoices/{invoice_id}/paid")
async def paid(invoice_id: str, data: MarkInvoicePaid, user=Depends(get_current_user), db=Depends(get_db)):
    invoice = await mark_invoice_paid(db, user, invoice_id, data.payment_reference, data.payment_notes)
    return serialize_doc(invoice)


@router.post("/invoices/{invoice_id}/cancel")
async def cancel(invoice_id: str, data: CancelInvoice, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(await cancel_invoice(db, user, invoice_id, data.reason))


@router.post("/invoices/{invoice_id}/document")
async def document(
    invoice_id: str,
    upload: bool = False,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    await require_capability(db, user, MANAGE_PAYOUTS)
    return await generate_invoice_document(db, invoice_id, upload=upload, user=user)


# =====================================================
# BANK DETAILS / ADJUSTMENTS / SETTINGS
# =====================================================

@router.put("/organizations/{organization_id}/bank-details")
async def bank_details(
    organization_id: str,
    data: BankDetailsUpdate,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    return serialize_doc(await update_org_bank_details(db, user, organization_id, data))


@router.post("/adjustments")
async def adjustment(data: AdjustmentCreate, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(await create_adjustment(db, user, data))


@router.get("/adjustments")
async def adjustments(
    organization_id: str,
    status: Optional[str] = None,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    rows = await list_adjustments(db, user, organization_id, status)
    return {"count": len(rows), "adjustments": serialize_docs(rows)}


@router.get("/settings")
async def settings(user=Depends(get_current_user), db=Depends(get_db)):
    await require_capability(db, user, MANAGE_PAYOUT_SETTINGS)
    return serialize_doc(await get_payout_settings(db))


@router.patch("/settings")
async def patch_settings(data: PayoutSettingsUpdate, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(await update_payout_settings(db, user, data))
