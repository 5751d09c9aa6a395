from datetime import datetime
from bson import ObjectId

async def record_order_event(
    db,
    *,
    order_id,
    event: str,
    actor_role: str,
    actor_id=None,
    previous_value=None,
    new_value=None,
    reason: str | None = None,
    message: str | None = None,
    is_public: bool = False,
    metadata: dict | None = None,
):
    """
    Single source of truth for order timeline events.
    """

    doc = {
        "order_id": ObjectId(order_id),
        "event": event,
        "actor_role": actor_role,
        "actor_id": ObjectId(actor_id) if actor_id else None,
        "previous_value": previous_value,
        "new_value": new_value,
        "reason": reason,
        "message": message,
        "is_public": is_public,
        "metadata": metadata or {},
        "created_at": datetime.utcnow(),
    }

    await db.order_logs.insert_one(doc)
