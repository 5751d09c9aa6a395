from datetime import datetime
from bson import ObjectId

from utils.errors import NotFoundError, ValidationFailedError

# -------------------------------
# ObjectId Guard
# -------------------------------

def parse_object_id(value, name: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except Exception:
        raise ValidationFailedError(f"Invalid {name}")


# -------------------------------
# Live Document Guard
# -------------------------------

async def get_live_document(collection, doc_id, label: str) -> dict:
    """
    Load a document that must exist and must not be soft-deleted.
    Soft-deleted documents are indistinguishable from missing ones.
    """
    doc = await collection.find_one({"_id": parse_object_id(doc_id, f"{label.lower()}_id")})
    if not doc or doc.get("is_deleted"):
        raise NotFoundError(f"{label} not found")
    return doc


# -------------------------------
# Amount Guards
# -------------------------------

def require_positive_amount(value, name: str = "Amount") -> float:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationFailedError(f"{name} must be a number")

    if amount != amount or amount in (float("inf"), float("-inf")):
        raise ValidationFailedError(f"{name} must be a finite number")
    if amount <= 0:
        raise ValidationFailedError(f"{name} must be greater than zero")
    return amount


def require_text_length(value: str | None, name: str, min_length: int, max_length: int) -> str:
    text = (value or "").strip()
    if len(text) < min_length or len(text) > max_length:
        raise ValidationFailedError(
            f"{name} must be between {min_length} and {max_length} characters"
        )
    return text


# -------------------------------
# Datetime Guard
# -------------------------------

def naive_utc(value: datetime | None) -> datetime | None:
    """Stored datetimes are naive UTC; aware inputs are converted."""
    if value is None or value.tzinfo is None:
        return value
    return (value - value.utcoffset()).replace(tzinfo=None)
