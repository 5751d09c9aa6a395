from datetime import datetime

from pymongo.errors import DuplicateKeyError

from config.constants import SURVEY_POSITIVE_THRESHOLD
from models.survey import SurveyQuestion
from utils.audit import actor_fields, log_audit
from utils.errors import ConflictError, NotFoundError, ValidationFailedError
from utils.guards import get_live_document, parse_object_id
from utils.organizations import display_name
from utils.permissions import MANAGE_ORDERS, require_capability

SCORE_MIN = 0
SCORE_MAX = 5


# =====================================================
# SCORING (PURE)
# =====================================================

def _clamp(value: float) -> float:
    return min(SCORE_MAX, max(SCORE_MIN, value))


def normalize_answer(question_type: str, value: float) -> float:
    """Map any answer onto 0..5. Yes/no answers are all or nothing."""
    if question_type == "yesno":
        return SCORE_MAX if value >= 3 else SCORE_MIN
    return _clamp(value)


def compute_weighted_score(questions: dict, answers: dict) -> float:
    total_weight = 0.0
    weighted = 0.0
    for key, question in questions.items():
        weight = max(0.0, float(question.get("weight", 1.0)))
        total_weight += weight
        weighted += normalize_answer(question["type"], float(answers.get(key, 0))) * weight

    return weighted / (total_weight or 1)


# =====================================================
# SUBMISSION
# =====================================================

async def submit_survey_response(db, user: dict, order_id, category_id, answers: dict, comments: str | None = None) -> dict:
    order = await get_live_document(db.orders, order_id, "Order")
    if order.get("customer_id") != user["_id"]:
        await require_capability(db, user, MANAGE_ORDERS, order["organization_id"])

    category = await db.survey_categories.find_one({"_id": parse_object_id(category_id, "category_id")})
    if not category or category.get("is_deleted") or not category.get("is_active", True):
        raise NotFoundError("Survey category not found or inactive")

    questions = {
        key: SurveyQuestion(**question).model_dump()
        for key, question in (category.get("questions") or {}).items()
    }
    unknown = sorted(set(answers) - set(questions))
    if unknown:
        raise ValidationFailedError(f"Unknown survey questions: {', '.join(unknown)}")
    for key, value in answers.items():
        if value < 0:
            raise ValidationFailedError(f"Answer to {key} cannot be negative")

    if order.get("survey_response_id") or await db.survey_responses.find_one({"order_id": order["_id"]}):
        raise ConflictError("A survey response has already been submitted for this order")

    now = datetime.utcnow()
    score = compute_weighted_score(questions, answers)
    is_positive = score >= SURVEY_POSITIVE_THRESHOLD

    response = {
        "order_id": order["_id"],
        "organization_id": order["organization_id"],
        "category_id": category["_id"],
        "order_info": {
            "customer_name": display_name(order.get("customer_info")),
            "total_amount": order.get("total_amount"),
            "order_date": order.get("order_date"),
            "item_count": order.get("item_count"),
        },
        "category_info": {"name": category.get("name"), "description": category.get("description")},
        "survey_data": {
            key: {
                "question": questions[key].get("text"),
                "answer": _clamp(float(value)),
            }
            for key, value in answers.items()
        },
        "answers": answers,
        "comments": comments,
        "overall_score": score,
        "is_positive": is_positive,
        "needs_follow_up": not is_positive or bool(comments),
        "response_time_seconds": (now - order["order_date"]).total_seconds() if order.get("order_date") else None,
        "submitted_by": user["_id"],
        "created_at": now,
    }

    try:
        await db.survey_responses.insert_one(response)
    except DuplicateKeyError:
        raise ConflictError("A survey response has already been submitted for this order")

    await db.orders.update_one(
        {"_id": order["_id"]},
        {"$set": {"survey_response_id": response["_id"], "updated_at": now}},
    )

    actor_id, actor_role = actor_fields(user)
    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="SURVEY_SUBMITTED",
        log_type="USER_ACTION",
        organization_id=order["organization_id"],
        resource_type="survey_response",
        resource_id=response["_id"],
        new_value={"overall_score": score, "is_positive": is_positive},
    )

    return response
