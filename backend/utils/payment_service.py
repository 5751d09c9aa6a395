import logging
from datetime import datetime

from pymongo import DESCENDING, ReturnDocument

from models.order import OrderPaymentStatus, OrderStatus
from models.payment import PaymentCreate, PaymentStatus
from utils.adjustments import schedule_refund_adjustment
from utils.audit import actor_fields, log_audit
from utils.errors import ConflictError, IllegalTransitionError, ValidationFailedError
from utils.guards import get_live_document
from utils.money import sum_amounts, to_amount
from utils.order_state import (
    ORDER_PAYMENT_TRANSITIONS,
    check_payment_transition,
    derive_order_payment_status,
)
from utils.order_timeline import record_order_event
from utils.permissions import MANAGE_PAYMENTS, VERIFY_PAYMENTS, has_capability, require_capability

logger = logging.getLogger(__name__)

# Bounded retries when a concurrent writer moves the order first
RECOMPUTE_ATTEMPTS = 5

# Payments whose money the platform currently holds
COLLECTED_STATUSES = {PaymentStatus.VERIFIED.value, PaymentStatus.REFUND_PENDING.value}
REFUNDABLE_ORDER_STATUSES = {OrderPaymentStatus.PAID, OrderPaymentStatus.DOWNPAYMENT}


async def get_payment(db, payment_id) -> dict:
    return await get_live_document(db.payments, payment_id, "Payment")


# ======================================================
# RECORD
# ======================================================

async def record_payment(db, user: dict, data: PaymentCreate) -> dict:
    order = await get_live_document(db.orders, data.order_id, "Order")

    is_owner = order.get("customer_id") == user["_id"]
    if not is_owner:
        await require_capability(db, user, MANAGE_PAYMENTS, order["organization_id"])

    if order["status"] == OrderStatus.CANCELLED.value:
        raise ValidationFailedError("Cannot record a payment for a cancelled order")
    if order["payment_status"] in {OrderPaymentStatus.PAID.value, OrderPaymentStatus.REFUNDED.value}:
        raise ValidationFailedError(f"Order is already {order['payment_status']}")

    reference = (data.reference_number or "").strip() or None
    if reference:
        duplicate = await db.payments.find_one({
            "organization_id": order["organization_id"],
            "reference_number": reference,
            "is_deleted": False,
        })
        if duplicate:
            raise ConflictError("Payment reference number already recorded")

    now = datetime.utcnow()
    actor_id, actor_role = actor_fields(user)
    payment = {
        "order_id": order["_id"],
        "organization_id": order["organization_id"],
        "customer_id": order.get("customer_id"),
        "amount": to_amount(data.amount),
        "currency": data.currency,
        "method": data.method.value,
        "reference_number": reference,
        "provider_metadata": data.provider_metadata or {},
        "memo": data.memo,
        "payment_status": PaymentStatus.PENDING.value,
        "status_history": [{"status": PaymentStatus.PENDING.value, "changed_by": actor_id, "changed_at": now}],
        "recorded_by": actor_id,
        "is_deleted": False,
        "created_at": now,
        "updated_at": now,
    }
    await db.payments.insert_one(payment)

    await record_order_event(
        db,
        order_id=order["_id"],
        event="PAYMENT_RECORDED",
        actor_role=actor_role,
        actor_id=user["_id"],
        new_value=PaymentStatus.PENDING.value,
        metadata={"payment_id": str(payment["_id"]), "amount": payment["amount"]},
    )
    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="PAYMENT_RECORDED",
        organization_id=order["organization_id"],
        resource_type="payment",
        resource_id=payment["_id"],
        new_value={"amount": payment["amount"], "method": payment["method"]},
    )

    return payment


# ======================================================
# TRANSITIONS
# ======================================================

async def _move_payment(db, payment: dict, target: PaymentStatus, actor: dict | None, extra: dict | None = None) -> dict:
    """
    Compare-and-set on the observed status. The loser of a race sees an
    IllegalTransition, never a silent success.
    """
    current = check_payment_transition(payment["payment_status"], target)
    now = datetime.utcnow()
    actor_id, _ = actor_fields(actor)

    updated = await db.payments.find_one_and_update(
        {"_id": payment["_id"], "payment_status": current.value},
        {
            "$set": {"payment_status": target.value, "updated_at": now, **(extra or {})},
            "$push": {"status_history": {"status": target.value, "changed_by": actor_id, "changed_at": now}},
        },
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        latest = await db.payments.find_one({"_id": payment["_id"]})
        raise IllegalTransitionError(
            f"Payment is already {latest['payment_status']} and cannot change"
            if latest else "Payment changed concurrently"
        )
    return updated


async def _collected_amount(db, order_id) -> float:
    payments = await db.payments.find(
        {"order_id": order_id, "is_deleted": False, "payment_status": {"$in": list(COLLECTED_STATUSES)}},
        {"amount": 1},
    ).to_list(None)
    return to_amount(sum_amounts(p.get("amount") for p in payments))


def _target_payment_status(current: OrderPaymentStatus, collected: float, total: float, refunding: bool) -> OrderPaymentStatus:
    if refunding:
        if collected <= 0 and current in REFUNDABLE_ORDER_STATUSES:
            return OrderPaymentStatus.REFUNDED
        return current

    target = derive_order_payment_status(collected, total)
    if target not in ORDER_PAYMENT_TRANSITIONS[current]:
        return current
    return target


async def _sync_order_payment(db, order_id, actor: dict | None, *, refunding: bool = False) -> dict:
    """
    Bring the order's amount_collected and payment status in line with its
    collected payments.

    The collected amount is re-derived from the payments on every call, so a
    verification interrupted after its payment write is healed by the next
    sync. The write is filtered on both observed values: a stale reader
    retries, and only one writer logs a status change.
    """
    for _ in range(RECOMPUTE_ATTEMPTS):
        order = await db.orders.find_one({"_id": order_id})
        collected = await _collected_amount(db, order_id)
        current = OrderPaymentStatus(order["payment_status"])
        target = _target_payment_status(current, collected, order.get("total_amount") or 0, refunding)

        if target == current and collected == order.get("amount_collected"):
            return order

        now = datetime.utcnow()
        updates = {"amount_collected": collected, "updated_at": now}
        if target != current:
            updates["payment_status"] = target.value
            if target == OrderPaymentStatus.PAID and not order.get("paid_at"):
                updates["paid_at"] = now
            if target == OrderPaymentStatus.REFUNDED:
                updates["refunded_at"] = now

        result = await db.orders.update_one(
            {
                "_id": order_id,
                "payment_status": current.value,
                "amount_collected": order.get("amount_collected"),
            },
            {"$set": updates},
        )
        if result.matched_count != 1:
            continue

        if target != current:
            actor_id, actor_role = actor_fields(actor)
            reason = "Payment refunded" if refunding else "Verified payments recomputed"
            await record_order_event(
                db,
                order_id=order_id,
                event="ORDER_PAYMENT_STATUS_CHANGED",
                actor_role=actor_role,
                actor_id=actor_id,
                previous_value=current.value,
                new_value=target.value,
                reason=reason,
            )
            await log_audit(
                db,
                actor_id=actor_id,
                actor_role=actor_role,
                action="ORDER_PAYMENT_STATUS_CHANGED",
                organization_id=order["organization_id"],
                severity="MEDIUM",
                resource_type="order",
                resource_id=order_id,
                previous_value={"payment_status": current.value},
                new_value={"payment_status": target.value},
                metadata={"amount_collected": collected, "reason": reason},
            )
        return await db.orders.find_one({"_id": order_id})

    logger.warning("ORDER_PAYMENT_SYNC_CONTENDED order=%s", order_id)
    return await db.orders.find_one({"_id": order_id})


async def apply_verification(db, payment: dict, actor: dict | None, reason: str | None = None) -> dict:
    now = datetime.utcnow()
    actor_id, actor_role = actor_fields(actor)

    try:
        updated = await _move_payment(
            db,
            payment,
            PaymentStatus.VERIFIED,
            actor,
            {"verified_at": now, "verified_by": actor_id, "review_note": reason},
        )
    except IllegalTransitionError:
        # A repeat stays an error, but first finishes any sync a previous
        # attempt left behind.
        latest = await db.payments.find_one({"_id": payment["_id"]})
        if latest and latest["payment_status"] == PaymentStatus.VERIFIED.value:
            await _sync_order_payment(db, payment["order_id"], actor)
        raise

    order = await _sync_order_payment(db, payment["order_id"], actor)

    await record_order_event(
        db,
        order_id=payment["order_id"],
        event="PAYMENT_VERIFIED",
        actor_role=actor_role,
        actor_id=actor_id,
        previous_value=payment["payment_status"],
        new_value=PaymentStatus.VERIFIED.value,
        metadata={"payment_id": str(payment["_id"]), "amount": updated["amount"]},
    )
    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="PAYMENT_VERIFIED",
        organization_id=payment["organization_id"],
        severity="HIGH",
        resource_type="payment",
        resource_id=payment["_id"],
        previous_value={"payment_status": payment["payment_status"]},
        new_value={"payment_status": PaymentStatus.VERIFIED.value},
        metadata={"amount": updated["amount"], "order_payment_status": order["payment_status"]},
    )

    return updated


async def verify_payment(db, user: dict, payment_id, reason: str | None = None) -> dict:
    payment = await get_payment(db, payment_id)
    await require_capability(db, user, VERIFY_PAYMENTS, payment["organization_id"])
    return await apply_verification(db, payment, user, reason)


async def apply_failure(db, payment: dict, target: PaymentStatus, actor: dict | None, reason: str | None = None) -> dict:
    now = datetime.utcnow()
    actor_id, actor_role = actor_fields(actor)

    updated = await _move_payment(
        db,
        payment,
        target,
        actor,
        {"reviewed_at": now, "reviewed_by": actor_id, "review_note": reason},
    )

    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action=f"PAYMENT_{target.value}",
        organization_id=payment["organization_id"],
        severity="MEDIUM",
        resource_type="payment",
        resource_id=payment["_id"],
        previous_value={"payment_status": payment["payment_status"]},
        new_value={"payment_status": target.value},
        metadata={"reason": reason},
    )
    return updated


async def decline_payment(db, user: dict, payment_id, reason: str | None = None) -> dict:
    payment = await get_payment(db, payment_id)
    await require_capability(db, user, VERIFY_PAYMENTS, payment["organization_id"])
    return await apply_failure(db, payment, PaymentStatus.DECLINED, user, reason)


async def mark_payment_processing(db, user: dict | None, payment_id) -> dict:
    payment = await get_payment(db, payment_id)
    if user is not None:
        await require_capability(db, user, MANAGE_PAYMENTS, payment["organization_id"])
    return await _move_payment(db, payment, PaymentStatus.PROCESSING, user)


# ======================================================
# REFUNDS / CANCELLATION
# ======================================================

async def refund_payment(db, user: dict, payment_id, reason: str | None = None) -> dict:
    payment = await get_payment(db, payment_id)
    await require_capability(db, user, MANAGE_PAYMENTS, payment["organization_id"])

    updated = await _move_payment(
        db,
        payment,
        PaymentStatus.REFUND_PENDING,
        user,
        {"refund_reason": reason, "refund_requested_at": datetime.utcnow()},
    )

    actor_id, actor_role = actor_fields(user)
    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="PAYMENT_REFUND_REQUESTED",
        organization_id=payment["organization_id"],
        severity="MEDIUM",
        resource_type="payment",
        resource_id=payment["_id"],
        previous_value={"payment_status": payment["payment_status"]},
        new_value={"payment_status": PaymentStatus.REFUND_PENDING.value},
        metadata={"reason": reason},
    )
    return updated


async def complete_refund(db, user: dict, payment_id) -> dict:
    payment = await get_payment(db, payment_id)
    await require_capability(db, user, VERIFY_PAYMENTS, payment["organization_id"])

    updated = await _move_payment(db, payment, PaymentStatus.REFUNDED, user, {"refunded_at": datetime.utcnow()})

    # Only a refund that leaves nothing collected refunds the whole order
    order = await _sync_order_payment(db, payment["order_id"], user, refunding=True)

    adjustment = await schedule_refund_adjustment(
        db,
        order=order,
        amount=updated["amount"],
        reason=f"Payment refunded on order {order.get('order_number')}",
        actor=user,
    )

    actor_id, actor_role = actor_fields(user)
    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="PAYMENT_REFUNDED",
        organization_id=payment["organization_id"],
        severity="HIGH",
        resource_type="payment",
        resource_id=payment["_id"],
        previous_value={"payment_status": PaymentStatus.REFUND_PENDING.value},
        new_value={"payment_status": PaymentStatus.REFUNDED.value},
        metadata={
            "amount": updated["amount"],
            "order_payment_status": order["payment_status"],
            "amount_collected": order.get("amount_collected"),
            "adjustment_id": str(adjustment["_id"]) if adjustment else None,
        },
    )
    return updated


async def cancel_payment(db, user: dict, payment_id, reason: str | None = None) -> dict:
    payment = await get_payment(db, payment_id)
    await require_capability(db, user, MANAGE_PAYMENTS, payment["organization_id"])

    was_collected = payment["payment_status"] in COLLECTED_STATUSES
    updated = await _move_payment(
        db,
        payment,
        PaymentStatus.CANCELLED,
        user,
        {"cancelled_at": datetime.utcnow(), "cancel_reason": reason},
    )

    # Voiding a verified payment removes it from the collected amount; the
    # order payment status never moves backwards.
    if was_collected:
        await _sync_order_payment(db, payment["order_id"], user)

    actor_id, actor_role = actor_fields(user)
    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="PAYMENT_CANCELLED",
        organization_id=payment["organization_id"],
        severity="HIGH" if was_collected else "MEDIUM",
        resource_type="payment",
        resource_id=payment["_id"],
        previous_value={"payment_status": payment["payment_status"]},
        new_value={"payment_status": PaymentStatus.CANCELLED.value},
        metadata={"reason": reason},
    )
    return updated


async def list_order_payments(db, user: dict, order_id) -> list:
    order = await get_live_document(db.orders, order_id, "Order")
    if order.get("customer_id") != user["_id"]:
        await require_capability(db, user, MANAGE_PAYMENTS, order["organization_id"])

    return await (
        db.payments.find({"order_id": order["_id"], "is_deleted": False})
        .sort("created_at", DESCENDING)
        .to_list(None)
    )


async def find_payment_by_reference(db, reference: str) -> dict | None:
    return await db.payments.find_one({"reference_number": reference, "is_deleted": False})


async def can_view_payment(db, user: dict, payment: dict) -> bool:
    if payment.get("customer_id") == user["_id"]:
        return True
    return await has_capability(db, user, MANAGE_PAYMENTS, payment["organization_id"])
