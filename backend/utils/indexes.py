from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure

from utils.idempotency import IDEMPOTENCY_TTL_SECONDS


def _normalize_key_pairs(keys):
    return [(k, v) for k, v in keys]


async def _create_index_safe(collection, keys, **kwargs):
    """
    Create index safely.
    If Mongo reports IndexOptionsConflict/IndexKeySpecsConflict for same key pattern,
    drop the conflicting index and recreate with desired options.
    """
    desired_key = _normalize_key_pairs(keys)
    desired_name = kwargs.get("name")
    try:
        await collection.create_index(keys, **kwargs)
        return
    except OperationFailure as e:
        if getattr(e, "code", None) not in {85, 86}:
            raise

        conflicting_names = []
        async for idx in collection.list_indexes():
            idx_key = _normalize_key_pairs(list(idx.get("key", {}).items()))
            if idx_key == desired_key:
                idx_name = idx.get("name")
                if idx_name and idx_name != desired_name:
                    conflicting_names.append(idx_name)

        for idx_name in conflicting_names:
            await collection.drop_index(idx_name)

        await collection.create_index(keys, **kwargs)


async def ensure_indexes(db):
    # Orders
    await _create_index_safe(
        db.orders,
        [("organization_id", ASCENDING), ("status", ASCENDING)],
        name="orders_org_status_idx",
    )
    await _create_index_safe(
        db.orders,
        [("organization_id", ASCENDING), ("order_date", DESCENDING), ("created_at", DESCENDING)],
        name="orders_org_order_date_idx",
    )
    await _create_index_safe(
        db.orders,
        [("organization_id", ASCENDING), ("payment_status", ASCENDING), ("order_date", ASCENDING)],
        name="orders_org_payment_date_idx",
    )
    await _create_index_safe(
        db.orders,
        [("payout_invoice_id", ASCENDING)],
        name="orders_payout_invoice_idx",
        sparse=True,
    )
    await _create_index_safe(
        db.order_items,
        [("order_id", ASCENDING), ("position", ASCENDING)],
        name="order_items_order_position_idx",
    )
    await _create_index_safe(
        db.order_logs,
        [("order_id", ASCENDING), ("created_at", DESCENDING)],
        name="order_logs_order_created_at_idx",
    )

    # Payments
    await _create_index_safe(
        db.payments,
        [("order_id", ASCENDING)],
        name="payments_order_idx",
    )
    await _create_index_safe(
        db.payments,
        [("organization_id", ASCENDING), ("payment_status", ASCENDING)],
        name="payments_org_status_idx",
    )

    # Batches
    await _create_index_safe(
        db.order_batches,
        [("organization_id", ASCENDING), ("start_date", ASCENDING), ("end_date", ASCENDING)],
        name="order_batches_org_range_idx",
    )

    # Payout invoices: one live invoice per organization and period
    await _create_index_safe(
        db.payout_invoices,
        [("organization_id", ASCENDING), ("period_start", ASCENDING)],
        name="payout_invoices_org_period_live_unique",
        unique=True,
        partialFilterExpression={"is_cancelled": False},
    )
    await _create_index_safe(
        db.payout_invoices,
        [("invoice_number", ASCENDING)],
        name="payout_invoices_number_unique",
        unique=True,
    )
    await _create_index_safe(
        db.payout_adjustments,
        [("organization_id", ASCENDING), ("status", ASCENDING)],
        name="payout_adjustments_org_status_idx",
    )

    # Vouchers
    await _create_index_safe(
        db.vouchers,
        [("code", ASCENDING)],
        name="vouchers_code_unique",
        unique=True,
    )
    await _create_index_safe(
        db.vouchers,
        [("source_order_id", ASCENDING)],
        name="vouchers_source_order_idx",
        sparse=True,
    )
    await _create_index_safe(
        db.voucher_refund_requests,
        [("voucher_id", ASCENDING)],
        name="voucher_refund_requests_pending_unique",
        unique=True,
        partialFilterExpression={"status": "PENDING"},
    )

    # Surveys
    await _create_index_safe(
        db.survey_responses,
        [("order_id", ASCENDING)],
        name="survey_responses_order_unique",
        unique=True,
    )

    # Membership / audit
    await _create_index_safe(
        db.organization_members,
        [("organization_id", ASCENDING), ("user_id", ASCENDING)],
        name="organization_members_org_user_idx",
    )
    await _create_index_safe(
        db.audit_logs,
        [("organization_id", ASCENDING), ("created_at", DESCENDING)],
        name="audit_logs_org_created_at_idx",
    )

    # Idempotency
    await _create_index_safe(
        db.idempotency_keys,
        [("key", ASCENDING), ("scope", ASCENDING)],
        name="idempotency_key_scope_unique",
        unique=True,
    )
    await _create_index_safe(
        db.idempotency_keys,
        [("created_at", ASCENDING)],
        name="idempotency_ttl_idx",
        expireAfterSeconds=IDEMPOTENCY_TTL_SECONDS,
    )
