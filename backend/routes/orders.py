from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query

from database import get_db
from models.order import OrderCancel, OrderCreate, OrderStatusUpdate, OrderUpdate
from utils.analytics import get_dashboard_analytics
from utils.mongo import serialize_doc, serialize_docs
from utils.order_service import (
    cancel_order,
    create_order,
    get_order,
    list_orders_cursor,
    list_orders_page,
    load_order_items,
    update_order,
    update_order_status,
)
from utils.permissions import MANAGE_ORDERS, require_capability
from utils.security import get_current_user

router = APIRouter(prefix="/api/orders", tags=["Orders"])


# ======================================================
# CREATE (CHECKOUT RECORD)
# ======================================================

@router.post("")
async def create(data: OrderCreate, user=Depends(get_current_user), db=Depends(get_db)):
    order = await create_order(db, user, data)
    return serialize_doc(order)


# ======================================================
# LISTINGS
# ======================================================

@router.get("")
async def list_orders(
    organization_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    batch_id: Optional[str] = None,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    result = await list_orders_page(
        db,
        user,
        organization_id,
        page=page,
        page_size=page_size,
        status=status,
        payment_status=payment_status,
        batch_id=batch_id,
    )
    return {**result, "orders": serialize_docs(result["orders"])}


@router.get("/feed")
async def order_feed(
    organization_id: str,
    cursor: Optional[str] = None,
    limit: int = Query(20, ge=1, le=100),
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    result = await list_orders_cursor(
        db,
        user,
        organization_id,
        cursor=cursor,
        limit=limit,
        status=status,
        payment_status=payment_status,
    )
    return {**result, "orders": serialize_docs(result["orders"])}


@router.get("/analytics")
async def analytics(
    organization_id: str,
    period: Literal["day", "week", "month", "year"] = "week",
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    return serialize_doc(await get_dashboard_analytics(db, user, organization_id, period))


# ======================================================
# SINGLE ORDER
# ======================================================

@router.get("/{order_id}")
async def get_one(order_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    order = await get_order(db, order_id)
    if order.get("customer_id") != user["_id"]:
        await require_capability(db, user, MANAGE_ORDERS, order["organization_id"])

    items = await load_order_items(db, order)
    return {**serialize_doc(order), "items": serialize_docs(items)}


@router.get("/{order_id}/timeline")
async def timeline(order_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    order = await get_order(db, order_id)
    query = {"order_id": order["_id"]}
    if order.get("customer_id") == user["_id"]:
        query["is_public"] = True
    else:
        await require_capability(db, user, MANAGE_ORDERS, order["organization_id"])

    events = await db.order_logs.find(query).sort("created_at", 1).to_list(None)
    return {"order_id": order_id, "events": serialize_docs(events)}


@router.patch("/{order_id}/status")
async def change_status(
    order_id: str,
    data: OrderStatusUpdate,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    return serialize_doc(await update_order_status(db, user, order_id, data.status))


@router.patch("/{order_id}")
async def patch_order(
    order_id: str,
    data: OrderUpdate,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    order = await update_order(
        db,
        user,
        order_id,
        status=data.status,
        payment_status=data.payment_status,
        cancellation_reason=data.cancellation_reason,
        customer_notes=data.customer_notes,
    )
    return serialize_doc(order)


@router.post("/{order_id}/cancel")
async def cancel(
    order_id: str,
    data: OrderCancel,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    order = await cancel_order(db, user, order_id, data.reason, data.message)
    return serialize_doc(order)
