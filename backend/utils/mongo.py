from datetime import datetime
from bson import ObjectId
from pymongo import ReturnDocument

def serialize_doc(doc: dict) -> dict:
    if not doc:
        return doc

    doc = dict(doc)
    for k, v in doc.items():
        doc[k] = _serialize_value(v)
    if "_id" in doc:
        doc["id"] = doc.pop("_id")
    return doc


def serialize_docs(docs):
    return [serialize_doc(d) for d in docs]


def _serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _serialize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


async def next_sequence(db, key: str) -> int:
    """
    Atomic per-key counter (org-scoped order and invoice numbers).
    """
    counter = await db.counters.find_one_and_update(
        {"_id": key},
        {"$inc": {"value": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return counter["value"]
