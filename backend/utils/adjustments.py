from datetime import datetime

from models.order import OrderPaymentStatus
from models.payout import AdjustmentStatus, AdjustmentType
from utils.audit import actor_fields
from utils.money import to_amount


async def insert_adjustment(
    db,
    *,
    organization_id,
    amount,
    adjustment_type: AdjustmentType,
    reason: str,
    order_id=None,
    source: dict | None = None,
    created_by=None,
) -> dict:
    """
    Signed correction waiting for the next payout invoice of the organization.
    Negative amounts reduce the payout.
    """
    now = datetime.utcnow()
    doc = {
        "organization_id": organization_id,
        "order_id": order_id,
        "amount": to_amount(amount),
        "type": AdjustmentType(adjustment_type).value,
        "reason": reason,
        "status": AdjustmentStatus.PENDING.value,
        "payout_invoice_id": None,
        "source": source or {},
        "created_by": created_by,
        "created_at": now,
        "applied_at": None,
    }
    await db.payout_adjustments.insert_one(doc)
    return doc


async def _on_live_invoice(db, order: dict) -> bool:
    invoice_id = order.get("payout_invoice_id")
    if not invoice_id:
        return False
    invoice = await db.payout_invoices.find_one({"_id": invoice_id})
    return bool(invoice) and not invoice.get("is_cancelled")


async def schedule_refund_adjustment(db, *, order: dict, amount, reason: str, actor: dict | None) -> dict | None:
    """
    Recover refunded money from the organization's payouts.

    Invoiced orders were already paid out, so every refund is clawed back.
    An uninvoiced order still PAID will be invoiced at its full total, so
    the refunded part is withheld the same way. An uninvoiced order that ends
    up REFUNDED drops out of generation, and earlier withholdings for it are
    voided.
    """
    invoiced = await _on_live_invoice(db, order)
    payment_status = order.get("payment_status")

    if not invoiced and payment_status == OrderPaymentStatus.REFUNDED.value:
        await db.payout_adjustments.update_many(
            {
                "order_id": order["_id"],
                "type": AdjustmentType.REFUND.value,
                "status": AdjustmentStatus.PENDING.value,
            },
            {"$set": {"status": AdjustmentStatus.VOIDED.value, "voided_at": datetime.utcnow()}},
        )
        return None
    if not invoiced and payment_status != OrderPaymentStatus.PAID.value:
        return None

    actor_id, _ = actor_fields(actor)
    return await insert_adjustment(
        db,
        organization_id=order["organization_id"],
        amount=-abs(float(amount)),
        adjustment_type=AdjustmentType.REFUND,
        reason=reason,
        order_id=order["_id"],
        source={"payout_invoice_id": str(order["payout_invoice_id"])} if invoiced else {},
        created_by=actor_id,
    )
