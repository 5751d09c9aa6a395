from fastapi import APIRouter, Depends

from database import get_db
from models.batch import BatchCreate, BatchOrders, BatchUpdate
from utils.batch_service import (
    assign_orders_to_batch,
    create_batch,
    delete_batch,
    get_batch,
    list_batches,
    remove_orders_from_batch,
    update_batch,
)
from utils.mongo import serialize_doc, serialize_docs
from utils.permissions import MANAGE_BATCHES, require_capability
from utils.security import get_current_user

router = APIRouter(prefix="/api/batches", tags=["Batches"])


@router.post("")
async def create(data: BatchCreate, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(await create_batch(db, user, data))


@router.get("")
async def list_all(
    organization_id: str,
    include_inactive: bool = True,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    batches = await list_batches(db, user, organization_id, include_inactive)
    return {"count": len(batches), "batches": serialize_docs(batches)}


@router.get("/{batch_id}")
async def get_one(batch_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    batch = await get_batch(db, batch_id)
    await require_capability(db, user, MANAGE_BATCHES, batch["organization_id"])
    return serialize_doc(batch)


@router.patch("/{batch_id}")
async def update(batch_id: str, data: BatchUpdate, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(await update_batch(db, user, batch_id, data))


@router.delete("/{batch_id}")
async def delete(batch_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return await delete_batch(db, user, batch_id)


@router.post("/{batch_id}/orders")
async def assign(batch_id: str, data: BatchOrders, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(await assign_orders_to_batch(db, user, batch_id, data.order_ids))


@router.post("/{batch_id}/orders/remove")
async def remove(batch_id: str, data: BatchOrders, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(await remove_orders_from_batch(db, user, batch_id, data.order_ids))
