import base64
import json
from datetime import datetime

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument

from config.constants import (
    DEFAULT_CURRENCY,
    DEFAULT_PAGE_SIZE,
    EMBEDDED_ITEMS_LIMIT,
    MAX_PAGE_SIZE,
    RECENT_STATUS_HISTORY_SIZE,
)
from models.order import (
    CancellationReason,
    OrderCreate,
    OrderPaymentStatus,
    OrderStatus,
)
from models.voucher import CancellationInitiator
from utils.adjustments import schedule_refund_adjustment
from utils.audit import actor_fields, log_audit
from utils.batch_service import assign_batches_for_order
from utils.errors import IllegalTransitionError, ValidationFailedError
from utils.guards import get_live_document, naive_utc, parse_object_id
from utils.money import sum_amounts, to_amount, to_decimal
from utils.mongo import next_sequence
from utils.order_state import check_order_payment_transition, check_order_transition
from utils.order_timeline import record_order_event
from utils.organizations import customer_snapshot, get_live_organization, organization_snapshot
from utils.permissions import MANAGE_ORDERS, has_capability, require_capability
from utils.voucher_service import issue_refund_voucher

ORDER_LIST_SORT = [("order_date", DESCENDING), ("created_at", DESCENDING), ("_id", DESCENDING)]


# ======================================================
# LOADERS
# ======================================================

async def get_order(db, order_id) -> dict:
    return await get_live_document(db.orders, order_id, "Order")


async def load_order_items(db, order: dict) -> list[dict]:
    """
    Items are either embedded on the order or, for large orders, kept in
    order_items. Callers never branch on the representation.
    """
    if order.get("items_ref"):
        return await (
            db.order_items
            .find({"order_id": order["_id"]})
            .sort("position", 1)
            .to_list(None)
        )
    return list(order.get("embedded_items") or [])


def _history_entry(user: dict | None, status: str, reason: str, now: datetime) -> dict:
    actor_id, _ = actor_fields(user)
    return {
        "status": status,
        "changed_by": actor_id,
        "reason": reason,
        "changed_at": now,
    }


def _push_history(order: dict, entry: dict) -> list[dict]:
    return ([entry] + list(order.get("recent_status_history") or []))[:RECENT_STATUS_HISTORY_SIZE]


# ======================================================
# CREATE (CHECKOUT RECORD)
# ======================================================

async def create_order(db, user: dict, data: OrderCreate) -> dict:
    org = await get_live_organization(db, data.organization_id)
    now = datetime.utcnow()
    order_date = naive_utc(data.order_date) or now

    items = []
    for position, item in enumerate(data.items):
        items.append({
            "position": position,
            "product_id": item.product_id,
            "product_title": item.product_title,
            "variant_id": item.variant_id,
            "variant_name": item.variant_name,
            "size": item.size,
            "quantity": item.quantity,
            "price": to_amount(item.price),
        })

    subtotal = sum_amounts(to_decimal(i["price"]) * i["quantity"] for i in items)
    discount = to_decimal(data.discount_amount)
    if discount > subtotal:
        raise ValidationFailedError("Discount cannot exceed order subtotal")

    sequence = await next_sequence(db, f"order:{org['_id']}")
    slug = (org.get("slug") or "ORD").upper()[:6]
    batch_ids, batch_info = await assign_batches_for_order(db, org["_id"], order_date)
    items_ref = len(items) > EMBEDDED_ITEMS_LIMIT

    order = {
        "organization_id": org["_id"],
        "customer_id": user["_id"],
        "order_number": f"ORD-{slug}-{sequence:05d}",
        "organization_info": organization_snapshot(org),
        "customer_info": customer_snapshot(user),
        "embedded_items": [] if items_ref else items,
        "items_ref": items_ref,
        "subtotal_amount": to_amount(subtotal),
        "discount_amount": to_amount(discount),
        "total_amount": to_amount(subtotal - discount),
        "currency": DEFAULT_CURRENCY,
        "item_count": sum(i["quantity"] for i in items),
        "voucher_code": data.voucher_code,
        "status": OrderStatus.PENDING.value,
        "payment_status": OrderPaymentStatus.PENDING.value,
        "amount_collected": 0.0,
        "paid_at": None,
        "order_date": order_date,
        "batch_ids": batch_ids,
        "batch_info": batch_info,
        "checkout_session_id": data.checkout_session_id,
        "survey_response_id": None,
        "payout_invoice_id": None,
        "refund_voucher_id": None,
        "customer_notes": data.customer_notes,
        "recent_status_history": [
            _history_entry(user, OrderStatus.PENDING.value, "Order placed", now)
        ],
        "is_deleted": False,
        "created_at": now,
        "updated_at": now,
    }

    await db.orders.insert_one(order)

    if items_ref:
        await db.order_items.insert_many([
            {**item, "order_id": order["_id"]} for item in items
        ])

    await record_order_event(
        db,
        order_id=order["_id"],
        event="ORDER_CREATED",
        actor_role=user.get("role", "customer"),
        actor_id=user["_id"],
        new_value=OrderStatus.PENDING.value,
        is_public=True,
        metadata={"total_amount": order["total_amount"], "batch_ids": [str(b) for b in batch_ids]},
    )

    actor_id, actor_role = actor_fields(user)
    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="ORDER_CREATED",
        organization_id=org["_id"],
        resource_type="order",
        resource_id=order["_id"],
        new_value={"status": order["status"], "total_amount": order["total_amount"]},
    )

    return order


# ======================================================
# STATUS MUTATIONS
# ======================================================

async def update_order_status(db, user: dict, order_id, new_status: OrderStatus) -> dict:
    return await update_order(db, user, order_id, status=new_status)


async def update_order(
    db,
    user: dict,
    order_id,
    *,
    status: OrderStatus | None = None,
    payment_status: OrderPaymentStatus | None = None,
    cancellation_reason: CancellationReason | None = None,
    customer_notes: str | None = None,
) -> dict:
    order = await get_order(db, order_id)
    await require_capability(db, user, MANAGE_ORDERS, order["organization_id"])

    if status == OrderStatus.CANCELLED:
        if payment_status is not None:
            raise ValidationFailedError("Cancel the order and change payment status separately")
        return await _cancel(
            db,
            user,
            order,
            reason=cancellation_reason or CancellationReason.OTHERS,
            message=None,
            initiator=CancellationInitiator.SELLER,
        )

    now = datetime.utcnow()
    query = {"_id": order["_id"], "is_deleted": False}
    updates = {"updated_at": now}
    previous = {}
    new = {}
    history = list(order.get("recent_status_history") or [])

    if status is not None:
        current = check_order_transition(order["status"], status)
        query["status"] = current.value
        updates["status"] = status.value
        previous["status"] = current.value
        new["status"] = status.value
        history = _push_history(
            {"recent_status_history": history},
            _history_entry(user, status.value, f"Status changed from {current.value} to {status.value}", now),
        )
        updates["recent_status_history"] = history
        if status == OrderStatus.DELIVERED:
            updates["delivered_at"] = now

    if payment_status is not None:
        current_payment = check_order_payment_transition(order["payment_status"], payment_status)
        _check_collected_amount(order, payment_status)
        query["payment_status"] = current_payment.value
        updates["payment_status"] = payment_status.value
        previous["payment_status"] = current_payment.value
        new["payment_status"] = payment_status.value
        if payment_status == OrderPaymentStatus.PAID and not order.get("paid_at"):
            updates["paid_at"] = now

    if customer_notes is not None:
        updates["customer_notes"] = customer_notes

    if not previous and customer_notes is None:
        raise ValidationFailedError("Nothing to update")

    updated = await db.orders.find_one_and_update(
        query,
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise IllegalTransitionError("Order changed concurrently; reload and retry")

    actor_id, actor_role = actor_fields(user)

    if "status" in new:
        await record_order_event(
            db,
            order_id=order["_id"],
            event="ORDER_STATUS_CHANGED",
            actor_role=actor_role,
            actor_id=user["_id"],
            previous_value=previous["status"],
            new_value=new["status"],
            is_public=True,
        )
    if "payment_status" in new:
        await record_order_event(
            db,
            order_id=order["_id"],
            event="ORDER_PAYMENT_STATUS_CHANGED",
            actor_role=actor_role,
            actor_id=user["_id"],
            previous_value=previous["payment_status"],
            new_value=new["payment_status"],
        )
        if payment_status == OrderPaymentStatus.REFUNDED:
            await schedule_refund_adjustment(
                db,
                order=updated,
                amount=updated.get("amount_collected") or updated["total_amount"],
                reason=f"Order {order.get('order_number')} refunded after payout",
                actor=user,
            )

    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="ORDER_UPDATED",
        organization_id=order["organization_id"],
        severity="MEDIUM" if "payment_status" in new else "LOW",
        resource_type="order",
        resource_id=order["_id"],
        previous_value=previous or None,
        new_value=new or None,
        metadata={"updated_fields": sorted(k for k in updates if k != "updated_at")},
    )

    return updated


def _check_collected_amount(order: dict, target: OrderPaymentStatus):
    collected = to_decimal(order.get("amount_collected"))
    total = to_decimal(order.get("total_amount"))

    if target == OrderPaymentStatus.PAID and collected < total:
        raise ValidationFailedError(
            f"Verified payments ({to_amount(collected)}) do not cover order total ({to_amount(total)})"
        )
    if target == OrderPaymentStatus.DOWNPAYMENT and collected <= 0:
        raise ValidationFailedError("No verified payment recorded for this order")


# ======================================================
# CANCELLATION
# ======================================================

async def cancel_order(
    db,
    user: dict,
    order_id,
    reason: CancellationReason,
    message: str | None = None,
) -> dict:
    order = await get_order(db, order_id)

    is_staff = await has_capability(db, user, MANAGE_ORDERS, order["organization_id"])
    is_owner = order.get("customer_id") == user["_id"]

    if not is_staff:
        if not is_owner:
            await require_capability(db, user, MANAGE_ORDERS, order["organization_id"])
        elif order["status"] != OrderStatus.PENDING.value and order["status"] != OrderStatus.CANCELLED.value:
            raise IllegalTransitionError("Customers can only cancel pending orders")

    initiator = CancellationInitiator.SELLER if is_staff else CancellationInitiator.CUSTOMER
    return await _cancel(db, user, order, reason=reason, message=message, initiator=initiator)


async def _cancel(
    db,
    user: dict,
    order: dict,
    *,
    reason: CancellationReason,
    message: str | None,
    initiator: CancellationInitiator,
) -> dict:
    """
    Cancellation and voucher credit issuance are one unit: the status flip is
    conditional on the observed status, and only the winner issues the credit.
    """
    current = check_order_transition(order["status"], OrderStatus.CANCELLED)
    now = datetime.utcnow()
    reason = CancellationReason(reason)
    history = _push_history(
        order,
        _history_entry(user, OrderStatus.CANCELLED.value, message or f"Order cancelled: {reason.value}", now),
    )

    updated = await db.orders.find_one_and_update(
        {"_id": order["_id"], "is_deleted": False, "status": current.value},
        {"$set": {
            "status": OrderStatus.CANCELLED.value,
            "cancellation_reason": reason.value,
            "cancellation_message": message,
            "cancelled_at": now,
            "recent_status_history": history,
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise IllegalTransitionError("Order changed concurrently; reload and retry")

    credit = to_decimal(updated.get("discount_amount")) + to_decimal(updated.get("amount_collected"))
    voucher = None
    if credit > 0:
        voucher = await issue_refund_voucher(
            db,
            order=updated,
            amount=to_amount(credit),
            initiator=initiator,
            actor=user,
        )
        updated = await db.orders.find_one_and_update(
            {"_id": updated["_id"]},
            {"$set": {"refund_voucher_id": voucher["_id"]}},
            return_document=ReturnDocument.AFTER,
        )

    actor_id, actor_role = actor_fields(user)

    await record_order_event(
        db,
        order_id=order["_id"],
        event="ORDER_CANCELLED",
        actor_role=actor_role,
        actor_id=user["_id"],
        previous_value=current.value,
        new_value=OrderStatus.CANCELLED.value,
        reason=f"Order cancelled: {reason.value}",
        message=message,
        is_public=True,
        metadata={"voucher_id": str(voucher["_id"]) if voucher else None},
    )

    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="ORDER_CANCELLED",
        organization_id=order["organization_id"],
        severity="MEDIUM",
        resource_type="order",
        resource_id=order["_id"],
        previous_value={"status": current.value},
        new_value={"status": OrderStatus.CANCELLED.value},
        metadata={
            "reason": reason.value,
            "initiator": initiator.value,
            "voucher_id": str(voucher["_id"]) if voucher else None,
            "voucher_value": voucher["discount_value"] if voucher else None,
        },
    )

    return updated


# ======================================================
# LISTINGS (OFFSET + CURSOR, SAME ORDERING)
# ======================================================

def _listing_query(organization_id, status=None, payment_status=None, batch_id=None) -> dict:
    query = {"organization_id": parse_object_id(organization_id, "organization_id"), "is_deleted": False}
    if status:
        query["status"] = OrderStatus(status).value
    if payment_status:
        query["payment_status"] = OrderPaymentStatus(payment_status).value
    if batch_id:
        query["batch_ids"] = parse_object_id(batch_id, "batch_id")
    return query


def _page_size(value) -> int:
    return max(1, min(int(value or DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE))


def encode_cursor(order: dict) -> str:
    raw = json.dumps({
        "d": order["order_date"].isoformat(),
        "c": order["created_at"].isoformat(),
        "i": str(order["_id"]),
    })
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("utf-8")


def decode_cursor(cursor: str) -> tuple[datetime, datetime, ObjectId]:
    try:
        data = json.loads(base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
        return (
            datetime.fromisoformat(data["d"]),
            datetime.fromisoformat(data["c"]),
            ObjectId(data["i"]),
        )
    except Exception:
        raise ValidationFailedError("Invalid cursor")


async def list_orders_page(
    db,
    user: dict,
    organization_id,
    *,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    status=None,
    payment_status=None,
    batch_id=None,
) -> dict:
    await require_capability(db, user, MANAGE_ORDERS, organization_id)

    page = max(1, int(page))
    size = _page_size(page_size)
    query = _listing_query(organization_id, status, payment_status, batch_id)

    total = await db.orders.count_documents(query)
    orders = await (
        db.orders.find(query)
        .sort(ORDER_LIST_SORT)
        .skip((page - 1) * size)
        .limit(size)
        .to_list(size)
    )

    return {
        "orders": orders,
        "total": total,
        "page": page,
        "page_size": size,
        "has_more": page * size < total,
    }


async def list_orders_cursor(
    db,
    user: dict,
    organization_id,
    *,
    cursor: str | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
    status=None,
    payment_status=None,
    batch_id=None,
) -> dict:
    await require_capability(db, user, MANAGE_ORDERS, organization_id)

    size = _page_size(limit)
    query = _listing_query(organization_id, status, payment_status, batch_id)

    if cursor:
        order_date, created_at, last_id = decode_cursor(cursor)
        query["$or"] = [
            {"order_date": {"$lt": order_date}},
            {"order_date": order_date, "created_at": {"$lt": created_at}},
            {"order_date": order_date, "created_at": created_at, "_id": {"$lt": last_id}},
        ]

    orders = await db.orders.find(query).sort(ORDER_LIST_SORT).limit(size + 1).to_list(size + 1)
    has_more = len(orders) > size
    orders = orders[:size]

    return {
        "orders": orders,
        "next_cursor": encode_cursor(orders[-1]) if has_more and orders else None,
    }
