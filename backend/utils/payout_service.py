import logging
import re
from datetime import datetime

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from config.constants import (
    DEFAULT_CURRENCY,
    DEFAULT_PAGE_SIZE,
    DEFAULT_PAYOUT_SETTINGS,
    MAX_PAGE_SIZE,
    ORDER_SUMMARY_LIMIT,
)
from models.order import OrderPaymentStatus
from models.payout import (
    AdjustmentCreate,
    AdjustmentStatus,
    BankDetailsUpdate,
    InvoiceStatus,
    PayoutSettingsUpdate,
)
from utils.adjustments import insert_adjustment
from utils.audit import actor_fields, log_audit
from utils.crypto import encrypt_sensitive_value, mask_account_number
from utils.errors import (
    ConflictError,
    IllegalTransitionError,
    NotFoundError,
    ValidationFailedError,
)
from utils.guards import get_live_document, parse_object_id, require_text_length
from utils.money import percentage_of, round_minor, sum_amounts, to_amount, to_decimal
from utils.mongo import next_sequence
from utils.order_service import load_order_items
from utils.order_state import check_invoice_transition
from utils.organizations import display_name, get_live_organization
from utils.payout_periods import previous_period, validate_period
from utils.permissions import (
    GENERATE_PAYOUTS,
    MANAGE_ADJUSTMENTS,
    MANAGE_BANK_DETAILS,
    MANAGE_PAYOUT_SETTINGS,
    MANAGE_PAYOUTS,
    VIEW_PAYOUTS,
    require_capability,
)

logger = logging.getLogger(__name__)

SETTINGS_ID = "global"
ACCOUNT_NUMBER_RE = re.compile(r"^[A-Za-z0-9 \-]{4,34}$")


# ======================================================
# SETTINGS (SINGLETON)
# ======================================================

async def get_payout_settings(db) -> dict:
    stored = await db.payout_settings.find_one({"_id": SETTINGS_ID}) or {}
    return {**DEFAULT_PAYOUT_SETTINGS, **stored}


async def update_payout_settings(db, user: dict, data: PayoutSettingsUpdate) -> dict:
    await require_capability(db, user, MANAGE_PAYOUT_SETTINGS)

    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise ValidationFailedError("Nothing to update")

    pct = changes.get("default_platform_fee_percentage")
    if pct is not None and not 0 <= pct <= 100:
        raise ValidationFailedError("Platform fee percentage must be between 0 and 100")

    minimum = changes.get("minimum_payout_amount")
    if minimum is not None and minimum < 0:
        raise ValidationFailedError("Minimum payout amount cannot be negative")

    for field in ("cutoff_day_of_week", "payout_day_of_week"):
        if field in changes and not 0 <= changes[field] <= 6:
            raise ValidationFailedError(f"{field} must be between 0 and 6")

    previous = await get_payout_settings(db)
    actor_id, actor_role = actor_fields(user)

    await db.payout_settings.update_one(
        {"_id": SETTINGS_ID},
        {"$set": {**changes, "updated_at": datetime.utcnow(), "updated_by": actor_id}},
        upsert=True,
    )

    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="PAYOUT_SETTINGS_UPDATED",
        severity="HIGH",
        resource_type="payout_settings",
        resource_id=SETTINGS_ID,
        previous_value={k: previous.get(k) for k in changes},
        new_value=changes,
    )

    return await get_payout_settings(db)


def fee_percentage_for(org: dict, settings: dict) -> float:
    override = org.get("platform_fee_percentage")
    if override is not None:
        return float(override)
    return float(settings["default_platform_fee_percentage"])


# ======================================================
# INVOICE COMPUTATION (PURE)
# ======================================================

def compute_invoice_totals(orders: list, adjustments: list, fee_percentage) -> dict:
    """
    Fee is rounded once on the gross. Voucher discounts are already out of
    each order total and are reported, never subtracted again.
    """
    gross = round_minor(sum_amounts(o.get("total_amount") for o in orders))
    voucher_discount = round_minor(sum_amounts(o.get("discount_amount") for o in orders))
    fee = percentage_of(gross, fee_percentage)
    adjustments_total = round_minor(sum_amounts(a.get("amount") for a in adjustments))
    net = gross - fee + adjustments_total

    return {
        "gross_amount": to_amount(gross),
        "total_voucher_discount": to_amount(voucher_discount),
        "platform_fee_percentage": float(fee_percentage),
        "platform_fee_amount": to_amount(fee),
        "total_adjustment_amount": to_amount(adjustments_total),
        "net_amount": to_amount(net),
    }


def verify_invoice_totals(invoice: dict) -> bool:
    gross = round_minor(invoice.get("gross_amount"))
    fee = round_minor(invoice.get("platform_fee_amount"))
    adjustments_total = round_minor(invoice.get("total_adjustment_amount"))
    net = round_minor(invoice.get("net_amount"))

    if fee != percentage_of(gross, invoice.get("platform_fee_percentage")):
        return False
    return gross - fee + adjustments_total == net


def build_order_summary(orders: list) -> tuple[list, int]:
    summary = [
        {
            "order_id": o["_id"],
            "order_number": o.get("order_number"),
            "order_date": o.get("order_date"),
            "customer_name": display_name(o.get("customer_info")),
            "total_amount": o.get("total_amount"),
            "discount_amount": o.get("discount_amount") or 0.0,
            "item_count": o.get("item_count") or 0,
        }
        for o in orders
    ]
    return summary[:ORDER_SUMMARY_LIMIT], max(0, len(summary) - ORDER_SUMMARY_LIMIT)


def build_product_summary(items: list) -> list:
    """Product -> variant -> size, each level sorted by quantity."""
    products = {}
    for item in items:
        qty = int(item.get("quantity") or 0)
        amount = to_decimal(item.get("price")) * qty

        product = products.setdefault(item.get("product_id"), {
            "product_id": item.get("product_id"),
            "product_title": item.get("product_title"),
            "quantity": 0,
            "amount": to_decimal(0),
            "variants": {},
        })
        product["quantity"] += qty
        product["amount"] += amount

        variant = product["variants"].setdefault(item.get("variant_id") or "", {
            "variant_id": item.get("variant_id"),
            "variant_name": item.get("variant_name"),
            "quantity": 0,
            "amount": to_decimal(0),
            "sizes": {},
        })
        variant["quantity"] += qty
        variant["amount"] += amount

        size = variant["sizes"].setdefault(item.get("size") or "", {
            "size": item.get("size"),
            "quantity": 0,
            "amount": to_decimal(0),
        })
        size["quantity"] += qty
        size["amount"] += amount

    def _by_quantity(entries):
        return sorted(entries, key=lambda e: e["quantity"], reverse=True)

    result = []
    for product in _by_quantity(products.values()):
        variants = []
        for variant in _by_quantity(product["variants"].values()):
            sizes = [
                {**s, "amount": to_amount(s["amount"])}
                for s in _by_quantity(variant["sizes"].values())
            ]
            variants.append({**variant, "amount": to_amount(variant["amount"]), "sizes": sizes})
        result.append({**product, "amount": to_amount(product["amount"]), "variants": variants})
    return result


def _invoice_organization_info(org: dict) -> dict:
    bank = org.get("bank_details") or {}
    return {
        "name": org.get("name"),
        "slug": org.get("slug"),
        "logo_url": org.get("logo_url"),
        "bank_details": {
            "bank_name": bank.get("bank_name"),
            "account_name": bank.get("account_name"),
            "account_number_masked": bank.get("account_number_masked"),
            "bank_code": bank.get("bank_code"),
            "notification_email": bank.get("notification_email"),
        } if bank else None,
    }


def _invoice_number(period_start: datetime, org: dict, sequence: int) -> str:
    slug = re.sub(r"[^A-Z0-9]", "", (org.get("slug") or "ORG").upper())[:10] or "ORG"
    return f"PI-{period_start.strftime('%Y%m%d')}-{slug}-{sequence:03d}"


# ======================================================
# GENERATION
# ======================================================

async def _find_live_invoice(db, organization_id, period_start: datetime):
    return await db.payout_invoices.find_one({
        "organization_id": organization_id,
        "period_start": period_start,
        "is_cancelled": False,
    })


async def _generate_for_organization(db, org: dict, start: datetime, end: datetime, settings: dict, actor: dict | None) -> dict:
    if await _find_live_invoice(db, org["_id"], start):
        raise ConflictError("Payout invoice already generated for this period")

    orders = await db.orders.find({
        "organization_id": org["_id"],
        "is_deleted": False,
        "payment_status": OrderPaymentStatus.PAID.value,
        "order_date": {"$gte": start, "$lt": end},
        "payout_invoice_id": None,
    }).sort("order_date", 1).to_list(None)

    adjustments = await db.payout_adjustments.find({
        "organization_id": org["_id"],
        "status": AdjustmentStatus.PENDING.value,
        "created_at": {"$lt": end},
    }).sort("created_at", 1).to_list(None)

    if not orders and not adjustments:
        raise ValidationFailedError("Nothing to invoice for this period")

    totals = compute_invoice_totals(orders, adjustments, fee_percentage_for(org, settings))

    minimum = float(settings.get("minimum_payout_amount") or 0)
    if orders and totals["gross_amount"] < minimum:
        raise ValidationFailedError(
            f"Gross amount {totals['gross_amount']} is below the minimum payout of {minimum}"
        )

    items = []
    for order in orders:
        items.extend(await load_order_items(db, order))

    order_summary, more = build_order_summary(orders)
    now = datetime.utcnow()
    actor_id, actor_role = actor_fields(actor)
    sequence = await next_sequence(db, f"payout_invoice:{org['_id']}")

    invoice = {
        "organization_id": org["_id"],
        "invoice_number": _invoice_number(start, org, sequence),
        "organization_info": _invoice_organization_info(org),
        "period_start": start,
        "period_end": end,
        **totals,
        "adjustment_count": len(adjustments),
        "adjustment_summary": [
            {
                "adjustment_id": a["_id"],
                "type": a.get("type"),
                "amount": a.get("amount"),
                "reason": a.get("reason"),
                "order_id": a.get("order_id"),
            }
            for a in adjustments
        ],
        "currency": DEFAULT_CURRENCY,
        "order_count": len(orders),
        "item_count": sum(int(o.get("item_count") or 0) for o in orders),
        "order_summary": order_summary,
        "order_summary_more": more,
        "product_summary": build_product_summary(items),
        "status": InvoiceStatus.PENDING.value,
        "is_cancelled": False,
        "status_history": [{
            "status": InvoiceStatus.PENDING.value,
            "changed_by": actor_id,
            "reason": "Invoice generated",
            "changed_at": now,
        }],
        "paid_at": None,
        "paid_by": None,
        "paid_by_info": None,
        "payment_reference": None,
        "payment_notes": None,
        "document": {"url": None, "storage_key": None, "generated_at": None, "last_error": None, "attempts": 0},
        "generated_by": actor_id or "system",
        "created_at": now,
        "updated_at": now,
    }

    try:
        await db.payout_invoices.insert_one(invoice)
    except DuplicateKeyError:
        raise ConflictError("Payout invoice already generated for this period")

    if orders:
        result = await db.orders.update_many(
            {"_id": {"$in": [o["_id"] for o in orders]}, "payout_invoice_id": None},
            {"$set": {"payout_invoice_id": invoice["_id"]}},
        )
        if result.modified_count != len(orders):
            logger.warning(
                "PAYOUT_ORDER_ATTACH_MISMATCH invoice=%s expected=%s attached=%s",
                invoice["_id"], len(orders), result.modified_count,
            )

    if adjustments:
        await db.payout_adjustments.update_many(
            {"_id": {"$in": [a["_id"] for a in adjustments]}, "status": AdjustmentStatus.PENDING.value},
            {"$set": {
                "status": AdjustmentStatus.APPLIED.value,
                "payout_invoice_id": invoice["_id"],
                "applied_at": now,
            }},
        )

    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="PAYOUT_INVOICE_GENERATED",
        log_type="SYSTEM_EVENT" if actor is None else "DATA_CHANGE",
        severity="MEDIUM",
        organization_id=org["_id"],
        resource_type="payout_invoice",
        resource_id=invoice["_id"],
        new_value={
            "invoice_number": invoice["invoice_number"],
            "gross_amount": invoice["gross_amount"],
            "platform_fee_amount": invoice["platform_fee_amount"],
            "total_adjustment_amount": invoice["total_adjustment_amount"],
            "net_amount": invoice["net_amount"],
        },
        metadata={"period_start": start.isoformat(), "order_count": len(orders)},
    )

    logger.info(
        "PAYOUT_INVOICE_GENERATED org=%s invoice=%s net=%s",
        org["_id"], invoice["invoice_number"], invoice["net_amount"],
    )
    return invoice


async def generate_payout_invoice(db, user: dict, organization_id, period_start: datetime, now: datetime | None = None) -> dict:
    await require_capability(db, user, GENERATE_PAYOUTS)
    org = await get_live_organization(db, organization_id)
    start, end = validate_period(period_start, now)
    settings = await get_payout_settings(db)
    return await _generate_for_organization(db, org, start, end, settings, user)


async def generate_payout_invoices_for_period(
    db,
    period_start: datetime | None = None,
    *,
    user: dict | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Generate the period for every active organization. One organization
    failing never stops the run.
    """
    if user is not None:
        await require_capability(db, user, GENERATE_PAYOUTS)

    if period_start is None:
        start, end = previous_period(now)
    else:
        start, end = validate_period(period_start, now)

    settings = await get_payout_settings(db)
    summary = {
        "period_start": start,
        "period_end": end,
        "generated": [],
        "skipped_existing": [],
        "skipped_empty": [],
        "failed": [],
    }

    organizations = db.organizations.find({"is_deleted": {"$ne": True}, "is_active": {"$ne": False}})
    async for org in organizations:
        try:
            invoice = await _generate_for_organization(db, org, start, end, settings, user)
            summary["generated"].append({
                "organization_id": str(org["_id"]),
                "invoice_id": str(invoice["_id"]),
                "invoice_number": invoice["invoice_number"],
            })
        except ConflictError:
            summary["skipped_existing"].append(str(org["_id"]))
        except ValidationFailedError:
            summary["skipped_empty"].append(str(org["_id"]))
        except Exception as e:
            logger.exception("PAYOUT_GENERATION_ERROR org=%s", org["_id"])
            summary["failed"].append({"organization_id": str(org["_id"]), "error": str(e)})

    run_status = "FAILED" if summary["failed"] else "SUCCESS"
    await db.payout_settings.update_one(
        {"_id": SETTINGS_ID},
        {"$set": {
            "last_run_at": datetime.utcnow(),
            "last_run_status": run_status,
            "last_run_invoices_generated": len(summary["generated"]),
            "last_run_period_start": start,
        }},
        upsert=True,
    )

    actor_id, actor_role = actor_fields(user)
    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="PAYOUT_GENERATION_RUN",
        log_type="SYSTEM_EVENT",
        severity="HIGH" if summary["failed"] else "LOW",
        metadata={
            "period_start": start.isoformat(),
            "generated": len(summary["generated"]),
            "skipped_existing": len(summary["skipped_existing"]),
            "skipped_empty": len(summary["skipped_empty"]),
            "failed": len(summary["failed"]),
        },
    )

    return summary


# ======================================================
# INVOICE LIFECYCLE
# ======================================================

async def get_invoice(db, invoice_id) -> dict:
    invoice = await db.payout_invoices.find_one({"_id": parse_object_id(invoice_id, "invoice_id")})
    if not invoice:
        raise NotFoundError("Payout invoice not found")
    return invoice


async def _move_invoice(db, user: dict, invoice: dict, target: InvoiceStatus, extra: dict, reason: str | None) -> dict:
    current = check_invoice_transition(invoice["status"], target)
    now = datetime.utcnow()
    actor_id, actor_role = actor_fields(user)

    updated = await db.payout_invoices.find_one_and_update(
        {"_id": invoice["_id"], "status": current.value},
        {
            "$set": {"status": target.value, "updated_at": now, **extra},
            "$push": {"status_history": {
                "status": target.value,
                "changed_by": actor_id,
                "reason": reason,
                "changed_at": now,
            }},
        },
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise IllegalTransitionError("Payout invoice changed concurrently; reload and retry")

    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action=f"PAYOUT_INVOICE_{target.value}",
        severity="HIGH",
        organization_id=invoice["organization_id"],
        resource_type="payout_invoice",
        resource_id=invoice["_id"],
        previous_value={"status": current.value},
        new_value={"status": target.value},
        metadata={"reason": reason, **{k: v for k, v in extra.items() if isinstance(v, (str, int, float))}},
    )
    return updated


async def mark_invoice_processing(db, user: dict, invoice_id) -> dict:
    await require_capability(db, user, MANAGE_PAYOUTS)
    invoice = await get_invoice(db, invoice_id)
    return await _move_invoice(db, user, invoice, InvoiceStatus.PROCESSING, {}, "Payout processing")


async def mark_invoice_paid(db, user: dict, invoice_id, payment_reference: str, payment_notes: str | None = None) -> dict:
    await require_capability(db, user, MANAGE_PAYOUTS)
    reference = (payment_reference or "").strip()
    if not reference:
        raise ValidationFailedError("Payment reference is required")

    invoice = await get_invoice(db, invoice_id)
    check_invoice_transition(invoice["status"], InvoiceStatus.PAID)

    return await _move_invoice(
        db,
        user,
        invoice,
        InvoiceStatus.PAID,
        {
            "paid_at": datetime.utcnow(),
            "paid_by": str(user["_id"]),
            "paid_by_info": {
                "first_name": user.get("first_name"),
                "last_name": user.get("last_name"),
                "email": user.get("email"),
            },
            "payment_reference": reference,
            "payment_notes": payment_notes,
        },
        f"Paid with reference {reference}",
    )


async def cancel_invoice(db, user: dict, invoice_id, reason: str) -> dict:
    """
    Cancelling releases the invoice's orders and adjustments so a
    superseding invoice can be generated for the same period.
    """
    await require_capability(db, user, MANAGE_PAYOUTS)
    reason = require_text_length(reason, "Cancellation reason", 3, 500)
    invoice = await get_invoice(db, invoice_id)

    updated = await _move_invoice(
        db,
        user,
        invoice,
        InvoiceStatus.CANCELLED,
        {"is_cancelled": True, "cancelled_at": datetime.utcnow(), "cancel_reason": reason},
        reason,
    )

    await db.orders.update_many(
        {"payout_invoice_id": invoice["_id"]},
        {"$set": {"payout_invoice_id": None}},
    )
    await db.payout_adjustments.update_many(
        {"payout_invoice_id": invoice["_id"], "status": AdjustmentStatus.APPLIED.value},
        {"$set": {"status": AdjustmentStatus.PENDING.value, "payout_invoice_id": None, "applied_at": None}},
    )

    return updated


# ======================================================
# BANK DETAILS / ADJUSTMENTS
# ======================================================

async def update_org_bank_details(db, user: dict, organization_id, data: BankDetailsUpdate) -> dict:
    org = await get_live_organization(db, organization_id)
    await require_capability(db, user, MANAGE_BANK_DETAILS, org["_id"])

    bank_name = (data.bank_name or "").strip()
    account_name = (data.account_name or "").strip()
    account_number = (data.account_number or "").strip()

    missing = [
        name for name, value in (
            ("bank_name", bank_name),
            ("account_name", account_name),
            ("account_number", account_number),
        ) if not value
    ]
    if missing:
        raise ValidationFailedError(f"Missing bank details: {', '.join(missing)}")
    if not ACCOUNT_NUMBER_RE.match(account_number):
        raise ValidationFailedError("Invalid account number")

    bank_details = {
        "bank_name": bank_name,
        "account_name": account_name,
        "account_number_encrypted": encrypt_sensitive_value(account_number),
        "account_number_masked": mask_account_number(account_number),
        "bank_code": (data.bank_code or "").strip() or None,
        "notification_email": data.notification_email,
        "updated_at": datetime.utcnow(),
    }

    await db.organizations.update_one(
        {"_id": org["_id"]},
        {"$set": {"bank_details": bank_details, "updated_at": datetime.utcnow()}},
    )

    actor_id, actor_role = actor_fields(user)
    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="ORG_BANK_DETAILS_UPDATED",
        log_type="SECURITY_EVENT",
        severity="HIGH",
        organization_id=org["_id"],
        resource_type="organization",
        resource_id=org["_id"],
        new_value={
            "bank_name": bank_name,
            "account_number_masked": bank_details["account_number_masked"],
        },
    )

    return {k: v for k, v in bank_details.items() if k != "account_number_encrypted"}


async def create_adjustment(db, user: dict, data: AdjustmentCreate) -> dict:
    await require_capability(db, user, MANAGE_ADJUSTMENTS)
    org = await get_live_organization(db, data.organization_id)

    amount = round_minor(data.amount)
    if amount == 0:
        raise ValidationFailedError("Adjustment amount cannot be zero")

    order_id = None
    if data.order_id:
        order = await get_live_document(db.orders, data.order_id, "Order")
        if order["organization_id"] != org["_id"]:
            raise ValidationFailedError("Order belongs to another organization")
        order_id = order["_id"]

    actor_id, actor_role = actor_fields(user)
    adjustment = await insert_adjustment(
        db,
        organization_id=org["_id"],
        amount=amount,
        adjustment_type=data.type,
        reason=data.reason.strip(),
        order_id=order_id,
        source={"manual": True},
        created_by=actor_id,
    )

    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="PAYOUT_ADJUSTMENT_CREATED",
        severity="HIGH",
        organization_id=org["_id"],
        resource_type="payout_adjustment",
        resource_id=adjustment["_id"],
        new_value={"amount": adjustment["amount"], "type": adjustment["type"]},
        metadata={"reason": adjustment["reason"]},
    )

    return adjustment


async def list_adjustments(db, user: dict, organization_id, status: str | None = None) -> list:
    org_id = parse_object_id(organization_id, "organization_id")
    await require_capability(db, user, VIEW_PAYOUTS, org_id)

    query = {"organization_id": org_id}
    if status:
        query["status"] = AdjustmentStatus(status).value
    return await db.payout_adjustments.find(query).sort("created_at", DESCENDING).to_list(None)


# ======================================================
# READ MODELS
# ======================================================

async def get_payout_invoice(db, user: dict, invoice_id) -> dict:
    invoice = await get_invoice(db, invoice_id)
    await require_capability(db, user, VIEW_PAYOUTS, invoice["organization_id"])
    return invoice


async def list_payout_invoices(
    db,
    user: dict,
    organization_id=None,
    status: str | None = None,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> dict:
    query = {}
    if organization_id:
        query["organization_id"] = parse_object_id(organization_id, "organization_id")
        await require_capability(db, user, VIEW_PAYOUTS, query["organization_id"])
    else:
        await require_capability(db, user, MANAGE_PAYOUTS)

    if status:
        query["status"] = InvoiceStatus(status).value

    page = max(1, int(page))
    size = max(1, min(int(page_size), MAX_PAGE_SIZE))
    total = await db.payout_invoices.count_documents(query)
    invoices = await (
        db.payout_invoices.find(query, {"order_summary": 0, "product_summary": 0})
        .sort([("period_start", DESCENDING), ("created_at", DESCENDING)])
        .skip((page - 1) * size)
        .limit(size)
        .to_list(size)
    )

    return {"invoices": invoices, "total": total, "page": page, "page_size": size}


async def get_payout_summary(db, user: dict, organization_id) -> dict:
    org_id = parse_object_id(organization_id, "organization_id")
    await require_capability(db, user, VIEW_PAYOUTS, org_id)

    invoices = await db.payout_invoices.find(
        {"organization_id": org_id},
        {"status": 1, "net_amount": 1, "gross_amount": 1, "platform_fee_amount": 1},
    ).to_list(None)

    by_status = {}
    for status in InvoiceStatus:
        matching = [i for i in invoices if i.get("status") == status.value]
        by_status[status.value] = {
            "count": len(matching),
            "net_amount": to_amount(sum_amounts(i.get("net_amount") for i in matching)),
        }

    live = [i for i in invoices if i.get("status") != InvoiceStatus.CANCELLED.value]
    pending_adjustments = await db.payout_adjustments.find(
        {"organization_id": org_id, "status": AdjustmentStatus.PENDING.value},
        {"amount": 1},
    ).to_list(None)

    return {
        "organization_id": str(org_id),
        "by_status": by_status,
        "total_paid": by_status[InvoiceStatus.PAID.value]["net_amount"],
        "total_outstanding": to_amount(
            sum_amounts([
                by_status[InvoiceStatus.PENDING.value]["net_amount"],
                by_status[InvoiceStatus.PROCESSING.value]["net_amount"],
            ])
        ),
        "total_gross": to_amount(sum_amounts(i.get("gross_amount") for i in live)),
        "total_platform_fees": to_amount(sum_amounts(i.get("platform_fee_amount") for i in live)),
        "pending_adjustment_amount": to_amount(sum_amounts(a.get("amount") for a in pending_adjustments)),
        "pending_adjustment_count": len(pending_adjustments),
    }
