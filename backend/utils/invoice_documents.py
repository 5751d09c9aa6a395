import asyncio
import json
import logging
from datetime import datetime
from urllib import request, error

from config.env import INVOICE_RENDER_TIMEOUT_SECONDS, INVOICE_RENDER_URL
from utils.audit import actor_fields, log_audit
from utils.cloudinary import upload_document
from utils.mongo import serialize_doc
from utils.payout_service import get_invoice

logger = logging.getLogger(__name__)

INVOICE_FOLDER = "payout-invoices"


class DocumentRenderError(Exception):
    pass


def _render_pdf(payload: dict) -> bytes:
    if not INVOICE_RENDER_URL:
        raise DocumentRenderError("Invoice render service is not configured")

    req = request.Request(
        url=INVOICE_RENDER_URL,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json", "Accept": "application/pdf"},
        method="POST",
    )
    try:
        with request.urlopen(req, timeout=INVOICE_RENDER_TIMEOUT_SECONDS) as resp:
            body = resp.read()
    except error.HTTPError as e:
        details = e.read().decode("utf-8", errors="ignore")
        raise DocumentRenderError(f"Render service error {e.code}: {details[:200]}")
    except Exception as e:
        raise DocumentRenderError(f"Render service request failed: {e}")

    if not body:
        raise DocumentRenderError("Render service returned an empty document")
    return body


def _document_payload(invoice: dict) -> dict:
    data = serialize_doc(invoice)
    data.pop("status_history", None)
    return {"template": "payout_invoice", "invoice": data}


async def generate_invoice_document(db, invoice_id, upload: bool = False, user: dict | None = None) -> dict:
    """
    Best effort. Failures are recorded on the invoice and returned, never
    raised; financial fields are never touched here.
    """
    invoice = await get_invoice(db, invoice_id)
    now = datetime.utcnow()

    try:
        pdf = await asyncio.to_thread(_render_pdf, _document_payload(invoice))

        url = None
        storage_key = None
        if upload:
            uploaded = await asyncio.to_thread(upload_document, pdf, INVOICE_FOLDER, invoice["invoice_number"])
            url = uploaded.get("secure_url")
            storage_key = uploaded.get("public_id")

    except Exception as e:
        logger.exception("INVOICE_DOCUMENT_ERROR invoice=%s", invoice["_id"])
        await db.payout_invoices.update_one(
            {"_id": invoice["_id"]},
            {
                "$set": {"document.last_error": str(e), "document.last_attempt_at": now},
                "$inc": {"document.attempts": 1},
            },
        )
        return {"success": False, "error": str(e)}

    updates = {
        "document.generated_at": now,
        "document.last_attempt_at": now,
        "document.last_error": None,
    }
    if upload:
        updates["document.url"] = url
        updates["document.storage_key"] = storage_key

    await db.payout_invoices.update_one(
        {"_id": invoice["_id"]},
        {"$set": updates, "$inc": {"document.attempts": 1}},
    )

    actor_id, actor_role = actor_fields(user)
    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="PAYOUT_INVOICE_DOCUMENT_GENERATED",
        log_type="SYSTEM_EVENT",
        organization_id=invoice["organization_id"],
        resource_type="payout_invoice",
        resource_id=invoice["_id"],
        metadata={"uploaded": upload, "url": url},
    )

    return {"success": True, "url": url, "size": len(pdf)}
