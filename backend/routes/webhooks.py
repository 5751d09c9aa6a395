import hashlib
import hmac
import json
import logging

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Request

from config.env import PAYMENT_WEBHOOK_SECRET
from database import get_db
from models.payment import PaymentStatus
from utils.errors import IllegalTransitionError
from utils.idempotency import (
    claim_idempotency_key,
    complete_idempotency_key,
    fail_idempotency_key,
)
from utils.payment_service import (
    apply_failure,
    apply_verification,
    find_payment_by_reference,
    mark_payment_processing,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])

WEBHOOK_SCOPE = "payment_gateway_webhook"
HANDLED_EVENTS = {"payment.paid", "payment.failed", "payment.processing"}


# =========================================================
# SIGNATURE VERIFICATION
# =========================================================

def verify_signature(raw_body: bytes, received_signature: str):
    if not PAYMENT_WEBHOOK_SECRET:
        raise HTTPException(500, "Webhook secret not configured")

    computed = hmac.new(
        PAYMENT_WEBHOOK_SECRET.encode(),
        raw_body,
        hashlib.sha256
    ).hexdigest()

    if not hmac.compare_digest(computed, received_signature):
        raise HTTPException(401, "Invalid webhook signature")


async def _find_payment(db, payload: dict):
    payment_id = payload.get("payment_id")
    if payment_id and ObjectId.is_valid(payment_id):
        payment = await db.payments.find_one({"_id": ObjectId(payment_id), "is_deleted": False})
        if payment:
            return payment
    reference = payload.get("reference_number")
    if reference:
        return await find_payment_by_reference(db, reference)
    return None


# =========================================================
# PAYMENT GATEWAY WEBHOOK (IDEMPOTENT)
# =========================================================

@router.post("/payments")
async def payment_webhook(request: Request, db=Depends(get_db)):
    """
    Records the gateway-reported outcome of a payment.

    Guarantees:
    - Signature verified
    - Deduplicated by event id
    - Terminal payments are acknowledged, not re-applied
    """
    signature = request.headers.get("X-Payment-Signature")
    if not signature:
        raise HTTPException(401, "Missing signature")

    raw_body = await request.body()
    verify_signature(raw_body, signature)

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except Exception:
        raise HTTPException(400, "Invalid JSON payload")

    event_id = payload.get("event_id")
    event_type = payload.get("type")
    if not event_id or event_type not in HANDLED_EVENTS:
        return {"ok": True, "ignored": True}

    existing = await claim_idempotency_key(db=db, key=event_id, scope=WEBHOOK_SCOPE)
    if existing is not None:
        return existing

    try:
        payment = await _find_payment(db, payload)
        if not payment:
            response = {"ok": True, "ignored": True, "reason": "unknown payment"}
        else:
            try:
                if event_type == "payment.paid":
                    updated = await apply_verification(db, payment, None, "Gateway confirmed")
                elif event_type == "payment.failed":
                    updated = await apply_failure(
                        db, payment, PaymentStatus.FAILED, None, payload.get("failure_reason")
                    )
                else:
                    updated = await mark_payment_processing(db, None, payment["_id"])
                response = {
                    "ok": True,
                    "payment_id": str(payment["_id"]),
                    "payment_status": updated["payment_status"],
                }
            except IllegalTransitionError as e:
                response = {"ok": True, "ignored": True, "reason": e.detail}

    except Exception as e:
        logger.exception("PAYMENT_WEBHOOK_ERROR event=%s", event_id)
        await fail_idempotency_key(db=db, key=event_id, scope=WEBHOOK_SCOPE, error=str(e))
        raise

    await complete_idempotency_key(db=db, key=event_id, scope=WEBHOOK_SCOPE, response=response)
    return response
