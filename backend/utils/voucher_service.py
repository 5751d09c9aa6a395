import math
import secrets
from datetime import datetime, timedelta

from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from config.constants import (
    ADMIN_MESSAGE_MAX_LENGTH,
    ADMIN_MESSAGE_MIN_LENGTH,
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    MONETARY_REFUND_DELAY_DAYS,
)
from models.payout import AdjustmentType
from models.voucher import CancellationInitiator, VoucherDiscountType, VoucherRefundStatus
from utils.adjustments import insert_adjustment
from utils.audit import actor_fields, log_audit
from utils.errors import (
    ConflictError,
    IllegalTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationFailedError,
)
from utils.guards import parse_object_id, require_positive_amount, require_text_length
from utils.money import to_amount, to_decimal
from utils.order_state import check_refund_request_transition
from utils.permissions import REVIEW_VOUCHER_REFUNDS, is_platform_admin, require_capability

REFUND_VOUCHER_VALIDITY_DAYS = 365


# =====================================================
# ISSUANCE
# =====================================================

def _refund_voucher_code() -> str:
    return f"RFD-{secrets.token_hex(4).upper()}"


async def issue_refund_voucher(db, *, order: dict, amount, initiator: CancellationInitiator, actor: dict | None) -> dict:
    """
    Store credit for a cancelled order. One per order: a retry returns the
    voucher already issued.
    """
    existing = await db.vouchers.find_one({
        "source_order_id": order["_id"],
        "discount_type": VoucherDiscountType.REFUND.value,
    })
    if existing:
        return existing

    initiator = CancellationInitiator(initiator)
    now = datetime.utcnow()
    voucher = {
        "code": _refund_voucher_code(),
        "discount_type": VoucherDiscountType.REFUND.value,
        "discount_value": to_amount(amount),
        "owner_id": order.get("customer_id"),
        "organization_id": order["organization_id"],
        "source_order_id": order["_id"],
        "source_order_number": order.get("order_number"),
        "usage_limit": 1,
        "used_count": 0,
        "is_active": True,
        "expires_at": now + timedelta(days=REFUND_VOUCHER_VALIDITY_DAYS),
        "cancellation_initiator": initiator.value,
        # Customer-initiated cancellations keep the credit as store credit only
        "monetary_refund_eligible_at": (
            now + timedelta(days=MONETARY_REFUND_DELAY_DAYS)
            if initiator == CancellationInitiator.SELLER else None
        ),
        "monetary_refund_requested_at": None,
        "monetary_refunded_amount": 0.0,
        "created_at": now,
        "updated_at": now,
    }
    await db.vouchers.insert_one(voucher)

    actor_id, actor_role = actor_fields(actor)
    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="REFUND_VOUCHER_ISSUED",
        organization_id=order["organization_id"],
        resource_type="voucher",
        resource_id=voucher["_id"],
        new_value={"code": voucher["code"], "discount_value": voucher["discount_value"]},
        metadata={"order_id": str(order["_id"]), "initiator": initiator.value},
    )

    return voucher


# =====================================================
# ELIGIBILITY (PURE)
# =====================================================

def check_monetary_refund_eligibility(voucher: dict, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()

    def _result(eligible: bool, reason: str | None = None, days_remaining: int = 0) -> dict:
        return {"eligible": eligible, "reason": reason, "days_remaining": days_remaining}

    if voucher.get("discount_type") != VoucherDiscountType.REFUND.value:
        return _result(False, "Only refund vouchers can be converted to money")
    if (voucher.get("used_count") or 0) > 0:
        return _result(False, "Voucher has already been used")
    if not voucher.get("is_active"):
        return _result(False, "Voucher is no longer active")
    if voucher.get("expires_at") and voucher["expires_at"] <= now:
        return _result(False, "Voucher has expired")
    if voucher.get("cancellation_initiator") != CancellationInitiator.SELLER.value:
        return _result(False, "Only seller-cancelled orders qualify for a monetary refund")

    eligible_at = voucher.get("monetary_refund_eligible_at") or (
        voucher["created_at"] + timedelta(days=MONETARY_REFUND_DELAY_DAYS)
    )
    if now < eligible_at:
        days = math.ceil((eligible_at - now).total_seconds() / 86400)
        return _result(False, f"Monetary refund available in {days} day(s)", days)

    return _result(True)


# =====================================================
# REFUND REQUESTS
# =====================================================

async def _get_voucher(db, voucher_id) -> dict:
    voucher = await db.vouchers.find_one({"_id": parse_object_id(voucher_id, "voucher_id")})
    if not voucher:
        raise NotFoundError("Voucher not found")
    return voucher


async def _find_pending_request(db, voucher_id):
    return await db.voucher_refund_requests.find_one({
        "voucher_id": voucher_id,
        "status": VoucherRefundStatus.PENDING.value,
    })


async def submit_voucher_refund_request(db, user: dict, voucher_id, requested_amount=None) -> dict:
    voucher = await _get_voucher(db, voucher_id)

    if voucher.get("owner_id") != user["_id"]:
        raise PermissionDeniedError("Permission denied: voucher belongs to another customer")

    if (voucher.get("used_count") or 0) > 0:
        raise ValidationFailedError("Voucher has already been used")

    value = to_decimal(voucher["discount_value"])
    amount = to_decimal(
        value if requested_amount is None
        else require_positive_amount(requested_amount, "Requested amount")
    )
    if amount > value:
        raise ValidationFailedError(
            f"Requested amount ({to_amount(amount)}) exceeds voucher value ({to_amount(value)})"
        )

    eligibility = check_monetary_refund_eligibility(voucher)
    if not eligibility["eligible"]:
        raise ValidationFailedError(eligibility["reason"])

    if await _find_pending_request(db, voucher["_id"]):
        raise ConflictError("A refund request for this voucher is already pending")

    now = datetime.utcnow()
    request = {
        "voucher_id": voucher["_id"],
        "voucher_code": voucher["code"],
        "user_id": user["_id"],
        "organization_id": voucher.get("organization_id"),
        "source_order_id": voucher.get("source_order_id"),
        "voucher_value": to_amount(value),
        "requested_amount": to_amount(amount),
        "status": VoucherRefundStatus.PENDING.value,
        "admin_message": None,
        "reviewed_by": None,
        "reviewed_at": None,
        "adjustment_id": None,
        "created_at": now,
        "updated_at": now,
    }

    try:
        await db.voucher_refund_requests.insert_one(request)
    except DuplicateKeyError:
        raise ConflictError("A refund request for this voucher is already pending")

    await db.vouchers.update_one(
        {"_id": voucher["_id"]},
        {"$set": {"monetary_refund_requested_at": now, "updated_at": now}},
    )

    actor_id, actor_role = actor_fields(user)
    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="VOUCHER_REFUND_REQUESTED",
        log_type="USER_ACTION",
        organization_id=voucher.get("organization_id"),
        resource_type="voucher_refund_request",
        resource_id=request["_id"],
        new_value={"requested_amount": request["requested_amount"]},
        metadata={"voucher_id": str(voucher["_id"])},
    )

    return request


async def _decide(db, user: dict, request_id, target: VoucherRefundStatus, admin_message: str):
    await require_capability(db, user, REVIEW_VOUCHER_REFUNDS)
    message = require_text_length(
        admin_message,
        "Admin message",
        ADMIN_MESSAGE_MIN_LENGTH,
        ADMIN_MESSAGE_MAX_LENGTH,
    )

    request = await db.voucher_refund_requests.find_one(
        {"_id": parse_object_id(request_id, "request_id")}
    )
    if not request:
        raise NotFoundError("Refund request not found")

    check_refund_request_transition(request["status"], target)
    voucher = await _get_voucher(db, request["voucher_id"])
    return request, voucher, message


async def _flip_request(db, request: dict, target: VoucherRefundStatus, user: dict, message: str, extra: dict | None = None):
    now = datetime.utcnow()
    result = await db.voucher_refund_requests.update_one(
        {"_id": request["_id"], "status": VoucherRefundStatus.PENDING.value},
        {"$set": {
            "status": target.value,
            "admin_message": message,
            "reviewed_by": user["_id"],
            "reviewed_at": now,
            "updated_at": now,
            **(extra or {}),
        }},
    )
    if result.modified_count != 1:
        raise IllegalTransitionError("Refund request was already reviewed")
    return now


async def approve_voucher_refund_request(db, user: dict, request_id, admin_message: str) -> dict:
    request, voucher, message = await _decide(db, user, request_id, VoucherRefundStatus.APPROVED, admin_message)

    if (voucher.get("used_count") or 0) > 0 or not voucher.get("is_active"):
        raise ValidationFailedError("Voucher has already been used or deactivated")

    requested = to_decimal(request["requested_amount"])
    remaining = to_decimal(voucher["discount_value"]) - requested
    if remaining < 0:
        raise ValidationFailedError("Requested amount exceeds the remaining voucher value")

    now = await _flip_request(db, request, VoucherRefundStatus.APPROVED, user, message)

    # A partial refund leaves the rest of the credit on the voucher
    voucher_updates = {
        "monetary_refunded_at": now,
        "monetary_refund_requested_at": None,
        "monetary_refunded_amount": 0.0,
        "refund_request_id": request["_id"],
        "updated_at": now,
    }
    if remaining > 0:
        voucher_updates["discount_value"] = to_amount(remaining)
    else:
        voucher_updates["is_active"] = False

    await db.vouchers.update_one(
        {"_id": voucher["_id"]},
        {
            "$set": voucher_updates,
            "$inc": {"monetary_refunded_amount": to_amount(requested)},
        },
    )

    # The refunded money is recovered from the seller on the next invoice
    organization_id = request.get("organization_id")
    if request.get("source_order_id"):
        order = await db.orders.find_one({"_id": request["source_order_id"]})
        if order:
            organization_id = order["organization_id"]

    adjustment = await insert_adjustment(
        db,
        organization_id=organization_id,
        amount=-abs(request["requested_amount"]),
        adjustment_type=AdjustmentType.VOUCHER_REFUND,
        reason=f"Voucher {request['voucher_code']} refunded to customer",
        order_id=request.get("source_order_id"),
        source={"voucher_refund_request_id": str(request["_id"])},
        created_by=str(user["_id"]),
    )
    await db.voucher_refund_requests.update_one(
        {"_id": request["_id"]},
        {"$set": {"adjustment_id": adjustment["_id"]}},
    )

    actor_id, actor_role = actor_fields(user)
    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="VOUCHER_REFUND_APPROVED",
        severity="HIGH",
        organization_id=organization_id,
        resource_type="voucher_refund_request",
        resource_id=request["_id"],
        previous_value={"status": VoucherRefundStatus.PENDING.value},
        new_value={"status": VoucherRefundStatus.APPROVED.value},
        metadata={
            "requested_amount": request["requested_amount"],
            "adjustment_id": str(adjustment["_id"]),
        },
    )

    return await db.voucher_refund_requests.find_one({"_id": request["_id"]})


async def reject_voucher_refund_request(db, user: dict, request_id, admin_message: str) -> dict:
    request, voucher, message = await _decide(db, user, request_id, VoucherRefundStatus.REJECTED, admin_message)

    now = await _flip_request(db, request, VoucherRefundStatus.REJECTED, user, message)
    await db.vouchers.update_one(
        {"_id": voucher["_id"]},
        {"$set": {"monetary_refund_requested_at": None, "updated_at": now}},
    )

    actor_id, actor_role = actor_fields(user)
    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="VOUCHER_REFUND_REJECTED",
        severity="MEDIUM",
        organization_id=request.get("organization_id"),
        resource_type="voucher_refund_request",
        resource_id=request["_id"],
        previous_value={"status": VoucherRefundStatus.PENDING.value},
        new_value={"status": VoucherRefundStatus.REJECTED.value},
    )

    return await db.voucher_refund_requests.find_one({"_id": request["_id"]})


async def list_voucher_refund_requests(
    db,
    user: dict,
    status: str | None = None,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> dict:
    query = {}
    if status:
        query["status"] = VoucherRefundStatus(status).value
    if not is_platform_admin(user):
        query["user_id"] = user["_id"]

    page = max(1, int(page))
    size = max(1, min(int(page_size), MAX_PAGE_SIZE))
    total = await db.voucher_refund_requests.count_documents(query)
    items = await (
        db.voucher_refund_requests.find(query)
        .sort("created_at", DESCENDING)
        .skip((page - 1) * size)
        .limit(size)
        .to_list(size)
    )

    return {"requests": items, "total": total, "page": page, "page_size": size}
