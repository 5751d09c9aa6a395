from datetime import datetime

from pymongo.errors import DuplicateKeyError

IDEMPOTENCY_TTL_SECONDS = 60 * 60 * 24 * 7  # gateways retry for days
IN_PROGRESS_STALE_SECONDS = 60 * 10

IN_PROGRESS = {"ok": True, "status": "processing"}


async def claim_idempotency_key(*, db, key: str, scope: str) -> dict | None:
    """
    Claim a key before doing the work.

    Returns None when the caller owns the key and must process it, otherwise
    the response to send back (stored result or "processing").
    """
    existing = await db.idempotency_keys.find_one({"key": key, "scope": scope})

    if existing:
        if existing.get("status") == "completed":
            return existing.get("response")

        created_at = existing.get("created_at")
        age = (datetime.utcnow() - created_at).total_seconds() if created_at else 0
        if existing.get("status") == "reserved" and age <= IN_PROGRESS_STALE_SECONDS:
            return IN_PROGRESS

        # stale or failed claim: free it for this attempt
        await db.idempotency_keys.delete_one({"_id": existing["_id"]})

    try:
        await db.idempotency_keys.insert_one({
            "key": key,
            "scope": scope,
            "status": "reserved",
            "response": None,
            "created_at": datetime.utcnow(),
        })
    except DuplicateKeyError:
        concurrent = await db.idempotency_keys.find_one({"key": key, "scope": scope})
        if concurrent and concurrent.get("status") == "completed":
            return concurrent.get("response")
        return IN_PROGRESS

    return None


async def complete_idempotency_key(*, db, key: str, scope: str, response: dict):
    await db.idempotency_keys.update_one(
        {"key": key, "scope": scope},
        {"$set": {
            "status": "completed",
            "response": response,
            "completed_at": datetime.utcnow(),
        }},
    )


async def fail_idempotency_key(*, db, key: str, scope: str, error: str):
    await db.idempotency_keys.update_one(
        {"key": key, "scope": scope},
        {"$set": {
            "status": "failed",
            "error": error,
            "failed_at": datetime.utcnow(),
        }},
    )
