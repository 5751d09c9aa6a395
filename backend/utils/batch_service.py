from collections import Counter
from datetime import datetime, timedelta

from pymongo import ASCENDING, ReturnDocument

from config.constants import BATCH_MAX_RANGE_DAYS, BATCH_SCAN_LIMIT
from models.batch import BatchCreate, BatchUpdate
from utils.audit import actor_fields, log_audit
from utils.errors import ConflictError, NotFoundError, ValidationFailedError
from utils.guards import get_live_document, naive_utc, parse_object_id
from utils.money import sum_amounts, to_amount
from utils.organizations import get_live_organization
from utils.permissions import MANAGE_BATCHES, require_capability


# ======================================================
# HELPERS
# ======================================================

def _validate_range(start_date: datetime, end_date: datetime):
    if start_date >= end_date:
        raise ValidationFailedError("Batch start date must be before end date")
    if end_date - start_date > timedelta(days=BATCH_MAX_RANGE_DAYS):
        raise ValidationFailedError(f"Batch range cannot exceed {BATCH_MAX_RANGE_DAYS} days")


def _batch_label(batch: dict) -> dict:
    return {"batch_id": batch["_id"], "name": batch["name"]}


async def get_batch(db, batch_id) -> dict:
    return await get_live_document(db.order_batches, batch_id, "Batch")


async def _ensure_unique_name(db, organization_id, name: str, exclude_id=None):
    query = {"organization_id": organization_id, "name": name, "is_deleted": False}
    if exclude_id:
        query["_id"] = {"$ne": exclude_id}
    if await db.order_batches.find_one(query):
        raise ConflictError(f"Batch '{name}' already exists")


async def assign_batches_for_order(db, organization_id, order_date: datetime) -> tuple[list, list]:
    """
    Batch membership for an order being created: every active batch of the
    organization whose [start, end) contains the order date.
    """
    batches = await db.order_batches.find({
        "organization_id": organization_id,
        "is_deleted": False,
        "is_active": True,
        "start_date": {"$lte": order_date},
        "end_date": {"$gt": order_date},
    }).sort("start_date", ASCENDING).to_list(None)

    return [b["_id"] for b in batches], [_batch_label(b) for b in batches]


async def _attach_orders_in_range(db, batch: dict) -> int:
    candidates = await db.orders.find(
        {
            "organization_id": batch["organization_id"],
            "is_deleted": False,
            "order_date": {"$gte": batch["start_date"], "$lt": batch["end_date"]},
            "batch_ids": {"$ne": batch["_id"]},
        },
        {"_id": 1},
    ).limit(BATCH_SCAN_LIMIT).to_list(BATCH_SCAN_LIMIT)

    if not candidates:
        return 0

    result = await db.orders.update_many(
        {"_id": {"$in": [o["_id"] for o in candidates]}, "batch_ids": {"$ne": batch["_id"]}},
        {
            "$addToSet": {"batch_ids": batch["_id"]},
            "$push": {"batch_info": _batch_label(batch)},
        },
    )
    return result.modified_count


async def _detach_orders_outside_range(db, batch: dict) -> int:
    result = await db.orders.update_many(
        {
            "batch_ids": batch["_id"],
            "$or": [
                {"order_date": {"$lt": batch["start_date"]}},
                {"order_date": {"$gte": batch["end_date"]}},
            ],
        },
        {"$pull": {"batch_ids": batch["_id"], "batch_info": {"batch_id": batch["_id"]}}},
    )
    return result.modified_count


async def _relabel_orders(db, batch: dict):
    await db.orders.update_many(
        {"batch_info.batch_id": batch["_id"]},
        {"$set": {"batch_info.$.name": batch["name"]}},
    )


async def refresh_batch_stats(db, batch_id) -> dict:
    orders = await db.orders.find(
        {"batch_ids": batch_id, "is_deleted": False},
        {"status": 1, "total_amount": 1},
    ).to_list(None)

    by_status = Counter(o.get("status") for o in orders)
    stats = {
        "total_orders": len(orders),
        "by_status": dict(by_status),
        "total_amount": to_amount(sum_amounts(
            o.get("total_amount") for o in orders if o.get("status") != "CANCELLED"
        )),
        "refreshed_at": datetime.utcnow(),
    }

    await db.order_batches.update_one({"_id": batch_id}, {"$set": {"stats": stats}})
    return stats


# ======================================================
# MUTATIONS
# ======================================================

async def create_batch(db, user: dict, data: BatchCreate) -> dict:
    org = await get_live_organization(db, data.organization_id)
    await require_capability(db, user, MANAGE_BATCHES, org["_id"])

    start_date = naive_utc(data.start_date)
    end_date = naive_utc(data.end_date)
    _validate_range(start_date, end_date)
    name = data.name.strip()
    await _ensure_unique_name(db, org["_id"], name)

    now = datetime.utcnow()
    actor_id, actor_role = actor_fields(user)
    batch = {
        "organization_id": org["_id"],
        "name": name,
        "description": data.description,
        "start_date": start_date,
        "end_date": end_date,
        "is_active": data.is_active,
        "is_deleted": False,
        "stats": {"total_orders": 0, "by_status": {}, "total_amount": 0.0},
        "created_by": actor_id,
        "created_at": now,
        "updated_at": now,
    }
    await db.order_batches.insert_one(batch)

    attached = await _attach_orders_in_range(db, batch) if batch["is_active"] else 0
    batch["stats"] = await refresh_batch_stats(db, batch["_id"])

    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="BATCH_CREATED",
        organization_id=org["_id"],
        resource_type="order_batch",
        resource_id=batch["_id"],
        new_value={
            "name": name,
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
        },
        metadata={"orders_attached": attached},
    )

    return batch


async def update_batch(db, user: dict, batch_id, data: BatchUpdate) -> dict:
    batch = await get_batch(db, batch_id)
    await require_capability(db, user, MANAGE_BATCHES, batch["organization_id"])

    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    for field in ("start_date", "end_date"):
        if changes.get(field) is not None:
            changes[field] = naive_utc(changes[field])
    if not changes:
        raise ValidationFailedError("Nothing to update")

    start_date = changes.get("start_date") or batch["start_date"]
    end_date = changes.get("end_date") or batch["end_date"]
    _validate_range(start_date, end_date)

    if "name" in changes:
        changes["name"] = changes["name"].strip()
        if changes["name"] != batch["name"]:
            await _ensure_unique_name(db, batch["organization_id"], changes["name"], exclude_id=batch["_id"])

    changes["updated_at"] = datetime.utcnow()
    updated = await db.order_batches.find_one_and_update(
        {"_id": batch["_id"], "is_deleted": False},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFoundError("Batch not found")

    detached = attached = 0
    if updated["name"] != batch["name"]:
        await _relabel_orders(db, updated)

    range_changed = (updated["start_date"], updated["end_date"]) != (batch["start_date"], batch["end_date"])
    if updated["is_active"] and (range_changed or not batch["is_active"]):
        detached = await _detach_orders_outside_range(db, updated)
        attached = await _attach_orders_in_range(db, updated)

    updated["stats"] = await refresh_batch_stats(db, updated["_id"])

    actor_id, actor_role = actor_fields(user)
    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="BATCH_UPDATED",
        organization_id=batch["organization_id"],
        resource_type="order_batch",
        resource_id=batch["_id"],
        previous_value={k: _plain(batch.get(k)) for k in changes if k != "updated_at"},
        new_value={k: _plain(v) for k, v in changes.items() if k != "updated_at"},
        metadata={"orders_attached": attached, "orders_detached": detached},
    )

    return updated


def _plain(value):
    return value.isoformat() if isinstance(value, datetime) else value


async def delete_batch(db, user: dict, batch_id) -> dict:
    batch = await get_batch(db, batch_id)
    await require_capability(db, user, MANAGE_BATCHES, batch["organization_id"])

    now = datetime.utcnow()
    await db.order_batches.update_one(
        {"_id": batch["_id"]},
        {"$set": {"is_deleted": True, "is_active": False, "deleted_at": now, "updated_at": now}},
    )

    actor_id, actor_role = actor_fields(user)
    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="BATCH_DELETED",
        organization_id=batch["organization_id"],
        severity="MEDIUM",
        resource_type="order_batch",
        resource_id=batch["_id"],
        previous_value={"name": batch["name"]},
    )

    return {"message": "Batch deleted"}


async def _load_batch_orders(db, batch: dict, order_ids: list) -> list:
    ids = [parse_object_id(oid, "order_id") for oid in order_ids]
    orders = await db.orders.find({
        "_id": {"$in": ids},
        "organization_id": batch["organization_id"],
        "is_deleted": False,
    }, {"_id": 1}).to_list(None)

    found = {o["_id"] for o in orders}
    missing = [str(i) for i in ids if i not in found]
    if missing:
        raise NotFoundError(f"Orders not found: {', '.join(missing)}")
    return ids


async def assign_orders_to_batch(db, user: dict, batch_id, order_ids: list) -> dict:
    batch = await get_batch(db, batch_id)
    await require_capability(db, user, MANAGE_BATCHES, batch["organization_id"])

    ids = await _load_batch_orders(db, batch, order_ids)
    result = await db.orders.update_many(
        {"_id": {"$in": ids}, "batch_ids": {"$ne": batch["_id"]}},
        {
            "$addToSet": {"batch_ids": batch["_id"]},
            "$push": {"batch_info": _batch_label(batch)},
        },
    )
    stats = await refresh_batch_stats(db, batch["_id"])

    actor_id, actor_role = actor_fields(user)
    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="BATCH_ORDERS_ASSIGNED",
        organization_id=batch["organization_id"],
        resource_type="order_batch",
        resource_id=batch["_id"],
        metadata={"order_ids": [str(i) for i in ids], "assigned": result.modified_count},
    )

    return {"assigned": result.modified_count, "stats": stats}


async def remove_orders_from_batch(db, user: dict, batch_id, order_ids: list) -> dict:
    batch = await get_batch(db, batch_id)
    await require_capability(db, user, MANAGE_BATCHES, batch["organization_id"])

    ids = await _load_batch_orders(db, batch, order_ids)
    result = await db.orders.update_many(
        {"_id": {"$in": ids}, "batch_ids": batch["_id"]},
        {"$pull": {"batch_ids": batch["_id"], "batch_info": {"batch_id": batch["_id"]}}},
    )
    stats = await refresh_batch_stats(db, batch["_id"])

    actor_id, actor_role = actor_fields(user)
    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="BATCH_ORDERS_REMOVED",
        organization_id=batch["organization_id"],
        resource_type="order_batch",
        resource_id=batch["_id"],
        metadata={"order_ids": [str(i) for i in ids], "removed": result.modified_count},
    )

    return {"removed": result.modified_count, "stats": stats}


async def list_batches(db, user: dict, organization_id, include_inactive: bool = True) -> list:
    org_id = parse_object_id(organization_id, "organization_id")
    await require_capability(db, user, MANAGE_BATCHES, org_id)

    query = {"organization_id": org_id, "is_deleted": False}
    if not include_inactive:
        query["is_active"] = True

    return await db.order_batches.find(query).sort("start_date", -1).to_list(None)
